"""
Pytest configuration and fixtures
"""
from __future__ import annotations

import io
import os
from typing import Callable

import pytest
from PIL import Image

# Keep the app from reaching real services while tests import it
os.environ.setdefault("CROPADVISOR_MOCK_MODELS", "true")
os.environ.setdefault("CROPADVISOR_PAYMENT_MODE", "gasless")

from cropadvisor.db import AnalysisStore
from cropadvisor.errors import InferenceUnavailable
from cropadvisor.schemas.analysis import PaymentReceipt
from cropadvisor.services.uploads import StagedUpload

OWNER = "0x" + "ab" * 20


def make_png(colour: tuple[int, int, int] = (34, 139, 34), size: int = 16) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (size, size), colour).save(buf, format="PNG")
    return buf.getvalue()


class FakePayments:
    """Ledger stand-in that hands out a fixed analysis id."""

    def __init__(self, correlation_id: str = "42", price: int = 10**15) -> None:
        self.correlation_id = correlation_id
        self.price = price
        self.requests: list[tuple[str, str]] = []
        self.confirmed: dict[str, PaymentReceipt] = {}

    def analysis_price(self) -> int:
        return self.price

    def request_analysis(self, owner: str, fingerprint: str) -> PaymentReceipt:
        self.requests.append((owner, fingerprint))
        return PaymentReceipt(
            correlation_id=self.correlation_id,
            owner=owner,
            image_fingerprint=fingerprint,
            tx_hash="0x" + "11" * 32,
            amount_wei=self.price,
        )

    def confirm_payment(self, tx_hash: str) -> PaymentReceipt:
        return self.confirmed[tx_hash]

    def close(self) -> None:
        self.closed = True


class FakeInference:
    """Inference stand-in returning canned text, or failing on demand."""

    def __init__(self, text: str = "", *, fail: bool = False) -> None:
        self.text = text or (
            'Assessment follows. {"diagnosis":"leaf rust","advice":"apply fungicide",'
            '"severity":"high","confidence":0.9} Hope this helps.'
        )
        self.fail = fail
        self.calls = 0

    def analyze(self, image_bytes: bytes, mime_type: str) -> str:
        self.calls += 1
        if self.fail:
            raise InferenceUnavailable("AI analysis service is unavailable. Please try again later.")
        return self.text

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def store(tmp_path) -> AnalysisStore:
    """Fresh sqlite store per test"""
    s = AnalysisStore(str(tmp_path / "analyses.db"))
    s.init_db()
    return s


@pytest.fixture
def stage(tmp_path) -> Callable[..., StagedUpload]:
    """Write image bytes to disk the way the upload route does"""
    counter = {"n": 0}

    def _stage(data: bytes, mime_type: str = "image/png") -> StagedUpload:
        counter["n"] += 1
        path = tmp_path / f"upload_{counter['n']}.png"
        path.write_bytes(data)
        return StagedUpload(path=str(path), mime_type=mime_type)

    return _stage
