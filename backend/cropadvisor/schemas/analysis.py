"""Pydantic models for request / response validation."""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, computed_field, field_validator

Severity = Literal["low", "medium", "high"]


# ---------------------------------------------------------------------------
# Diagnosis (normalized model output)
# ---------------------------------------------------------------------------

class DiagnosisResult(BaseModel):
    """Model output after validation.  Types are checked strictly: a string
    or boolean confidence is rejected rather than coerced.
    """

    diagnosis: str = Field(min_length=1, strict=True)
    advice: str = Field(min_length=1, strict=True)
    severity: Severity
    confidence: float = Field(ge=0.0, le=1.0, allow_inf_nan=False, strict=True)

    @field_validator("severity", mode="before")
    @classmethod
    def _lower_severity(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("confidence", mode="before")
    @classmethod
    def _reject_bool_confidence(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError("confidence must be a number, not a boolean")
        return value


# ---------------------------------------------------------------------------
# Persisted analyses
# ---------------------------------------------------------------------------

class AnalysisState(str, Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class AnalysisRecord(BaseModel):
    correlation_id: str
    owner: str
    image_fingerprint: str
    diagnosis: str | None = None
    advice: str | None = None
    severity: Severity | None = None
    confidence: float | None = None
    fallback: bool = False
    created_at: str
    completed_at: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status(self) -> str:
        if self.completed_at is None:
            return AnalysisState.PENDING.value
        return AnalysisState.COMPLETED.value

    def to_result(self) -> DiagnosisResult:
        """Return the stored diagnosis of a completed record."""
        return DiagnosisResult(
            diagnosis=self.diagnosis,
            advice=self.advice,
            severity=self.severity,
            confidence=self.confidence,
        )


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

class PaymentReceipt(BaseModel):
    correlation_id: str
    owner: str
    image_fingerprint: str
    tx_hash: str
    amount_wei: int = 0


class PriceResponse(BaseModel):
    price_wei: int
