"""Error taxonomy for the analysis pipeline.

Every error carries the HTTP status it maps to; ``main.py`` renders them as
``{"error": <message>}``.  Third-party exceptions (web3, google-genai,
sqlite3) are translated into these at the component boundary.
"""

from __future__ import annotations


class AnalysisError(Exception):
    """Base class for errors that reach the API caller with a message."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# ---------------------------------------------------------------------------
# Input validation (rejected before any external call)
# ---------------------------------------------------------------------------

class InvalidInput(AnalysisError):
    status_code = 400


class InvalidAddress(InvalidInput):
    pass


class FingerprintMismatch(InvalidInput):
    pass


class UploadTooLarge(InvalidInput):
    status_code = 413


class UnsupportedMediaType(InvalidInput):
    status_code = 415


# ---------------------------------------------------------------------------
# Upstream services
# ---------------------------------------------------------------------------

class UpstreamUnavailable(AnalysisError):
    status_code = 502


class LedgerUnavailable(UpstreamUnavailable):
    pass


class InferenceUnavailable(UpstreamUnavailable):
    status_code = 503


# ---------------------------------------------------------------------------
# Payment
# ---------------------------------------------------------------------------

class PaymentFailed(AnalysisError):
    status_code = 402


class InsufficientFunds(PaymentFailed):
    pass


class SignatureRejected(PaymentFailed):
    pass


class EventNotFound(AnalysisError):
    """The payment transaction succeeded but carried no correlation event.

    Money was spent with no usable identifier, so this is reported on its own
    and never folded into a transport failure.
    """

    status_code = 502

    def __init__(self, message: str, tx_hash: str) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class PaymentUnsupported(AnalysisError):
    status_code = 501


# ---------------------------------------------------------------------------
# Store consistency
# ---------------------------------------------------------------------------

class DuplicateId(AnalysisError):
    status_code = 409


class AlreadyCompleted(AnalysisError):
    status_code = 409


class NotFound(AnalysisError):
    status_code = 404
