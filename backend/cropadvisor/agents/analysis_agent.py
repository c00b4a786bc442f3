"""AnalysisAgent: orchestrates the paid crop analysis pipeline.

States of one request:

    AWAITING_PAYMENT -> PENDING -> COMPLETED
                        PENDING -> FAILED

1. Validate the upload (MIME type, decodable image) and the owner address
2. Fingerprint the image bytes
3. Pay through the coordinator, or confirm a client-side payment by tx hash
4. Create the pending record keyed by the ledger's analysis id
5. Run inference on the image
6. Normalize the raw output (structured or fallback)
7. Complete the record

The staged upload is released on every path.  A failure after step 4 leaves
the record pending so the same image can be re-uploaded for the same id.
"""

from __future__ import annotations

import io
import logging
from typing import Any

from PIL import Image, UnidentifiedImageError

from cropadvisor.db import AnalysisStore
from cropadvisor.errors import (
    AlreadyCompleted,
    DuplicateId,
    FingerprintMismatch,
    InvalidInput,
    NotFound,
)
from cropadvisor.schemas.analysis import AnalysisRecord, AnalysisState, DiagnosisResult
from cropadvisor.services.fingerprint import fingerprint_image
from cropadvisor.services.normalizer import normalize_response
from cropadvisor.services.payment import normalize_owner
from cropadvisor.services.uploads import StagedUpload, check_image_type

logger = logging.getLogger(__name__)


def _verify_image(data: bytes) -> None:
    """Raise ``InvalidInput`` unless *data* decodes as an image."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            image.verify()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
        raise InvalidInput(f"Cannot open image file: {exc}") from exc


def _transition(correlation_id: str, old: AnalysisState, new: AnalysisState) -> None:
    logger.info("Analysis %s: %s -> %s", correlation_id, old.value, new.value)


class AnalysisAgent:
    """Sequences payment, inference, normalization and persistence."""

    def __init__(self, store: AnalysisStore, payments: Any, inference: Any) -> None:
        self.store = store
        self.payments = payments
        self.inference = inference

    # ---- Entry points -------------------------------------------------------

    def submit(self, owner: str, upload: StagedUpload) -> AnalysisRecord:
        """Pay for and analyze *upload* on behalf of *owner* in one call."""
        try:
            owner = normalize_owner(owner)
            image_bytes = self._load_image(upload)
            fingerprint = fingerprint_image(image_bytes)

            receipt = self.payments.request_analysis(owner, fingerprint)
            correlation_id = receipt.correlation_id
            self.store.create_pending(correlation_id, owner, fingerprint)
            _transition(correlation_id, AnalysisState.AWAITING_PAYMENT, AnalysisState.PENDING)

            return self._run(correlation_id, image_bytes, upload.mime_type)
        finally:
            upload.release()

    def analyze_upload(
        self,
        correlation_id: str,
        upload: StagedUpload,
        *,
        tx_hash: str | None = None,
    ) -> DiagnosisResult:
        """Analyze an image the client already paid for under *correlation_id*.

        A completed id returns its stored result without new inference.
        """
        try:
            if not correlation_id:
                raise InvalidInput("Analysis ID is required.")
            image_bytes = self._load_image(upload)
            fingerprint = fingerprint_image(image_bytes)

            record = self.store.get(correlation_id)
            if record is None:
                record = self._register_payment(correlation_id, fingerprint, tx_hash)

            if record.image_fingerprint != fingerprint:
                raise FingerprintMismatch(
                    f"Uploaded image does not match the image paid for in analysis {correlation_id}."
                )
            if record.completed_at is not None:
                logger.info("Analysis %s already completed, returning stored result.", correlation_id)
                return record.to_result()

            try:
                return self._run(correlation_id, image_bytes, upload.mime_type).to_result()
            except AlreadyCompleted:
                # A concurrent retry of the same id completed it first.
                logger.info("Analysis %s completed concurrently, returning stored result.", correlation_id)
                return self.store.get(correlation_id).to_result()  # type: ignore[union-attr]
        finally:
            upload.release()

    # ---- Steps --------------------------------------------------------------

    def _load_image(self, upload: StagedUpload) -> bytes:
        check_image_type(upload.mime_type)
        image_bytes = upload.read_bytes()
        _verify_image(image_bytes)
        return image_bytes

    def _register_payment(
        self, correlation_id: str, fingerprint: str, tx_hash: str | None,
    ) -> AnalysisRecord:
        if not tx_hash:
            raise NotFound(
                f"No pending analysis {correlation_id}. Complete the payment before uploading."
            )
        receipt = self.payments.confirm_payment(tx_hash)
        if receipt.correlation_id != correlation_id:
            raise InvalidInput(
                f"Transaction {tx_hash} paid for analysis {receipt.correlation_id}, not {correlation_id}."
            )
        if receipt.image_fingerprint != fingerprint:
            raise FingerprintMismatch(
                f"Uploaded image does not match the image paid for in transaction {tx_hash}."
            )
        try:
            record = self.store.create_pending(
                correlation_id, normalize_owner(receipt.owner), receipt.image_fingerprint,
            )
        except DuplicateId:
            # A concurrent upload registered the same payment first.
            existing = self.store.get(correlation_id)
            if existing is None:
                raise
            return existing
        _transition(correlation_id, AnalysisState.AWAITING_PAYMENT, AnalysisState.PENDING)
        return record

    def _run(self, correlation_id: str, image_bytes: bytes, mime_type: str) -> AnalysisRecord:
        try:
            raw_text = self.inference.analyze(image_bytes, mime_type)
            normalized = normalize_response(raw_text)
            if normalized.fallback:
                logger.warning("Analysis %s stored with fallback result.", correlation_id)
            record = self.store.complete(
                correlation_id, normalized.result, fallback=normalized.fallback,
            )
        except Exception as exc:
            logger.warning("Analysis %s failed, record stays pending: %s", correlation_id, exc)
            _transition(correlation_id, AnalysisState.PENDING, AnalysisState.FAILED)
            raise
        _transition(correlation_id, AnalysisState.PENDING, AnalysisState.COMPLETED)
        return record
