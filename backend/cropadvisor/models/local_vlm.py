"""Local VLM wrapper: runs the diagnosis prompt through a transformers pipeline."""

from __future__ import annotations

import io
import logging
from typing import Any

from PIL import Image

from cropadvisor.errors import InferenceUnavailable
from cropadvisor.models.gemini import DIAGNOSIS_PROMPT, mock_diagnosis_text

logger = logging.getLogger(__name__)


class LocalVisionWrapper:
    """Thin wrapper around an on-host image-text-to-text pipeline."""

    def __init__(self, model_name: str, device: str, *, mock: bool = False) -> None:
        self.model_name = model_name
        self.device = device
        self.mock = mock
        self._pipe: Any = None

    def load(self) -> None:
        if self.mock:
            logger.info("Local VLM running in MOCK mode.")
            return
        from transformers import pipeline  # type: ignore[import-untyped]

        logger.info("Loading local VLM %s on %s ...", self.model_name, self.device)
        self._pipe = pipeline(
            "image-text-to-text",
            model=self.model_name,
            torch_dtype="auto",
            device=self.device,
        )
        logger.info("Local VLM loaded.")

    def close(self) -> None:
        self._pipe = None

    def analyze(self, image_bytes: bytes, mime_type: str) -> str:
        if self.mock:
            return mock_diagnosis_text(image_bytes)
        if self._pipe is None:
            raise InferenceUnavailable("Local model is not loaded.")

        try:
            image = Image.open(io.BytesIO(image_bytes)).convert("RGB")
            messages = [
                {
                    "role": "user",
                    "content": [
                        {"type": "image", "image": image},
                        {"type": "text", "text": DIAGNOSIS_PROMPT},
                    ],
                }
            ]
            output = self._pipe(text=messages, max_new_tokens=512)
            text: str = output[0]["generated_text"][-1]["content"]
        except Exception as exc:
            logger.warning("Local VLM inference failed (%s): %s", mime_type, exc)
            raise InferenceUnavailable("Local model inference failed.") from exc

        if not text:
            raise InferenceUnavailable("Local model returned an empty response.")
        logger.debug("Local VLM raw output (first 500 chars): %s", text[:500])
        return text
