"""Staging of uploaded images on local disk for the duration of one request."""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO

from cropadvisor.errors import InvalidInput, UnsupportedMediaType, UploadTooLarge

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024


@dataclass
class StagedUpload:
    """An uploaded image written to disk, removed by ``release()``."""

    path: str
    mime_type: str
    filename: str = "upload"

    def read_bytes(self) -> bytes:
        with open(self.path, "rb") as f:
            return f.read()

    def release(self) -> None:
        """Delete the staged file. Safe to call more than once."""
        try:
            os.remove(self.path)
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.error("Failed to remove staged upload %s: %s", self.path, exc)
            return
        logger.debug("Released staged upload %s", self.path)


def check_image_type(mime_type: str | None) -> str:
    """Return *mime_type* if it names an image, else raise ``UnsupportedMediaType``."""
    if not mime_type or not mime_type.startswith("image/"):
        raise UnsupportedMediaType("Only image files are allowed.")
    return mime_type


def stage_upload(
    stream: BinaryIO,
    filename: str | None,
    mime_type: str | None,
    upload_dir: str,
    max_bytes: int,
) -> StagedUpload:
    """Copy an upload stream to UPLOAD_DIR/pending, enforcing type and size limits."""
    mime_type = check_image_type(mime_type)

    ts = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    # Strip directory components to prevent path traversal, then add UUID for uniqueness
    raw_name = Path(filename).name if filename else "upload"
    safe_name = raw_name.replace(" ", "_")
    dest_dir = os.path.join(upload_dir, "pending")
    os.makedirs(dest_dir, exist_ok=True)
    dest = os.path.join(dest_dir, f"{ts}_{uuid.uuid4().hex[:8]}_{safe_name}")

    staged = StagedUpload(path=dest, mime_type=mime_type, filename=raw_name)
    written = 0
    try:
        with open(dest, "wb") as f:
            while chunk := stream.read(_CHUNK_SIZE):
                written += len(chunk)
                if written > max_bytes:
                    raise UploadTooLarge(
                        f"Image exceeds the upload limit of {max_bytes} bytes."
                    )
                f.write(chunk)
    except Exception:
        staged.release()
        raise
    if written == 0:
        staged.release()
        raise InvalidInput("Uploaded image is empty.")
    return staged
