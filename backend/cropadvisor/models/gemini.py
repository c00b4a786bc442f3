"""Gemini wrapper: crop disease diagnosis from a single photo."""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

from cropadvisor.errors import InferenceUnavailable

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Prompt template
# ---------------------------------------------------------------------------

DIAGNOSIS_PROMPT = """\
You are an expert agricultural pathologist. Analyze this crop/plant image for diseases, pests, or health issues.

Provide a response in the following JSON format:
{
  "diagnosis": "Brief diagnosis of what you see",
  "advice": "Detailed treatment recommendations and next steps",
  "severity": "low|medium|high",
  "confidence": 0.95
}

Focus on:
- Disease identification
- Pest damage assessment
- Nutrient deficiencies
- Environmental stress factors
- Specific treatment recommendations
- Prevention strategies"""


# ---------------------------------------------------------------------------
# Mock helpers
# ---------------------------------------------------------------------------

_MOCK_FINDINGS: list[tuple[str, str, str]] = [
    (
        "Healthy foliage with no visible lesions or pest damage.",
        "No treatment needed. Keep the current irrigation and fertilization schedule.",
        "low",
    ),
    (
        "Early leaf rust: scattered orange pustules on the upper leaf surface.",
        "Remove affected leaves and apply a triazole fungicide. Avoid overhead watering.",
        "medium",
    ),
    (
        "Nitrogen deficiency: uniform yellowing of older leaves.",
        "Apply a nitrogen side-dressing and confirm with a soil test.",
        "medium",
    ),
    (
        "Late blight: dark water-soaked lesions spreading across leaves and stems.",
        "Destroy infected plants, apply a copper-based fungicide to the rest of the field and rotate crops next season.",
        "high",
    ),
    (
        "Aphid infestation with sticky honeydew on the underside of leaves.",
        "Spray insecticidal soap or neem oil and encourage natural predators such as ladybirds.",
        "medium",
    ),
]


def _hash_to_fraction(data: bytes, salt: str) -> float:
    """Derive a deterministic fraction in [0, 1) from image bytes and a salt."""
    h = hashlib.sha256(salt.encode() + data).hexdigest()
    return int(h[:8], 16) / 0x100000000


def mock_diagnosis_text(image_bytes: bytes) -> str:
    """Return a deterministic, model-like response for the given image.

    The JSON is wrapped in prose the way real responses often are, so the
    normalizer's extraction path is exercised in development too.
    """
    idx = int(_hash_to_fraction(image_bytes, "finding") * len(_MOCK_FINDINGS))
    diagnosis, advice, severity = _MOCK_FINDINGS[idx]
    confidence = round(0.6 + _hash_to_fraction(image_bytes, "confidence") * 0.35, 2)
    payload = json.dumps(
        {"diagnosis": diagnosis, "advice": advice, "severity": severity, "confidence": confidence},
        indent=2,
    )
    return f"Here is my assessment of the plant in the photo:\n\n{payload}\n\nLet me know if you need more detail."


# ---------------------------------------------------------------------------
# Wrapper
# ---------------------------------------------------------------------------

class GeminiVisionWrapper:
    """Thin wrapper around the Gemini multimodal API.

    Returns the raw response text; parsing belongs to the normalizer.  No
    retries: every failure surfaces as ``InferenceUnavailable``.
    """

    def __init__(
        self,
        model_name: str,
        api_key: str,
        *,
        timeout_s: float = 60.0,
        mock: bool = False,
    ) -> None:
        self.model_name = model_name
        self.api_key = api_key
        self.timeout_s = timeout_s
        self.mock = mock
        self._client: Any = None
        self._types: Any = None

    def load(self) -> None:
        if self.mock:
            logger.info("Gemini running in MOCK mode.")
            return
        from google import genai
        from google.genai import types

        logger.info("Connecting Gemini client for model %s (timeout %.0fs).", self.model_name, self.timeout_s)
        self._types = types
        self._client = genai.Client(
            api_key=self.api_key,
            http_options=types.HttpOptions(timeout=int(self.timeout_s * 1000)),
        )

    def close(self) -> None:
        if self._client is None:
            return
        close = getattr(self._client, "close", None)
        if callable(close):
            close()
        self._client = None
        logger.info("Gemini client closed.")

    def analyze(self, image_bytes: bytes, mime_type: str) -> str:
        """Send the photo with the diagnosis prompt and return the raw text."""
        if self.mock:
            return mock_diagnosis_text(image_bytes)
        if self._client is None:
            raise InferenceUnavailable("Inference client is not loaded.")

        try:
            image_part = self._types.Part.from_bytes(data=image_bytes, mime_type=mime_type)
            response = self._client.models.generate_content(
                model=self.model_name,
                contents=[DIAGNOSIS_PROMPT, image_part],
            )
        except Exception as exc:
            logger.warning("Gemini request failed: %s", exc)
            raise InferenceUnavailable("AI analysis service is unavailable. Please try again later.") from exc

        text = response.text
        if not text:
            raise InferenceUnavailable("AI analysis service returned an empty response.")
        logger.debug("Gemini raw output (first 500 chars): %s", text[:500])
        return text
