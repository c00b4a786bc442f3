"""Normalization of raw model output into a strict ``DiagnosisResult``.

The inference service does not guarantee structured output, so every
response goes through one of two paths:

1. the first balanced top-level ``{...}`` block that parses as a JSON object
   is validated against ``DiagnosisResult`` as a whole;
2. otherwise a deterministic fallback result is built from the raw text.
"""

from __future__ import annotations

import json
import logging
from typing import Any, NamedTuple

from pydantic import ValidationError

from cropadvisor.schemas.analysis import DiagnosisResult

logger = logging.getLogger(__name__)

FALLBACK_EXCERPT_CHARS = 200
FALLBACK_ELLIPSIS = "..."
FALLBACK_ADVICE = (
    "Please consult with a local agricultural expert for detailed treatment recommendations."
)
FALLBACK_SEVERITY = "medium"
FALLBACK_CONFIDENCE = 0.75


class NormalizedResult(NamedTuple):
    result: DiagnosisResult
    fallback: bool


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------

def _find_balanced_block(text: str, start: int) -> int | None:
    """Return the index of the ``}`` closing the ``{`` at *start*.

    Respects JSON string escaping so that braces inside strings are not
    counted.  Returns ``None`` when the block never closes.
    """
    depth = 0
    in_string = False
    escape_next = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape_next:
            escape_next = False
            continue
        if ch == "\\" and in_string:
            escape_next = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return None


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Return the first top-level brace block of *text* that is a JSON object.

    Balanced blocks that are not valid JSON (prose in braces, single quotes)
    are skipped whole, so nested objects inside them are never picked up.
    An opening brace that never closes is skipped on its own.
    """
    start = text.find("{")
    while start != -1:
        end = _find_balanced_block(text, start)
        if end is None:
            # Never closes: try the next opening brace inside it.
            start = text.find("{", start + 1)
            continue
        try:
            data = json.loads(text[start : end + 1])
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            return data
        start = text.find("{", end + 1)
    return None


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def fallback_result(text: str) -> DiagnosisResult:
    """Deterministic degraded result used when *text* has no valid diagnosis."""
    return DiagnosisResult(
        diagnosis=text[:FALLBACK_EXCERPT_CHARS] + FALLBACK_ELLIPSIS,
        advice=FALLBACK_ADVICE,
        severity=FALLBACK_SEVERITY,
        confidence=FALLBACK_CONFIDENCE,
    )


def normalize_response(text: str) -> NormalizedResult:
    """Parse model output into a ``DiagnosisResult``, falling back on failure."""
    data = extract_json_object(text)
    if data is None:
        logger.warning("No JSON object in model output, using fallback: %.200s", text)
        return NormalizedResult(fallback_result(text), True)

    try:
        result = DiagnosisResult.model_validate(data)
    except ValidationError as exc:
        logger.warning(
            "Model output failed validation (%d errors), using fallback: %.200s",
            exc.error_count(), text,
        )
        return NormalizedResult(fallback_result(text), True)
    return NormalizedResult(result, False)
