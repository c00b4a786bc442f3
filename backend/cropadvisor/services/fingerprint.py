"""Content fingerprint of uploaded images."""

from __future__ import annotations

import hashlib

FINGERPRINT_HEX_LENGTH = 64


def fingerprint_image(data: bytes) -> str:
    """Return the SHA-256 hex digest of the raw image bytes.

    The digest is the durable reference to what was analyzed and is committed
    on-chain with the payment, so it depends on the bytes alone.
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise TypeError(f"Expected image bytes, got {type(data).__name__}.")
    return hashlib.sha256(data).hexdigest()
