"""SQLite analysis store: thin wrapper around sqlite3, no ORM."""

from __future__ import annotations

import logging
import os
import sqlite3
from datetime import datetime, timezone
from typing import Iterator

from cropadvisor.errors import AlreadyCompleted, DuplicateId, InvalidInput, NotFound
from cropadvisor.schemas.analysis import AnalysisRecord, DiagnosisResult

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS analyses (
    correlation_id TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    image_fingerprint TEXT NOT NULL,
    diagnosis TEXT,
    advice TEXT,
    severity TEXT,
    confidence REAL,
    fallback BOOLEAN DEFAULT FALSE,
    created_at TIMESTAMP NOT NULL,
    completed_at TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_analyses_owner ON analyses (owner, created_at);
"""


def db_path_from_url(url: str) -> str:
    """Derive the SQLite file path from a DATABASE_URL."""
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "")
    return "./data/cropadvisor.db"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_record(row: sqlite3.Row) -> AnalysisRecord:
    data = dict(row)
    data["fallback"] = bool(data.get("fallback"))
    return AnalysisRecord(**data)


class AnalysisStore:
    """Durable analysis records keyed by the ledger correlation id.

    Each operation opens its own connection, so one store can be shared by
    the request threads.  Per-id serialization comes from the primary key
    (creation) and a conditional update (completion).
    """

    def __init__(self, path: str) -> None:
        self.path = path

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        conn = sqlite3.connect(self.path)
        try:
            conn.executescript(_SCHEMA)
            conn.commit()
        finally:
            conn.close()
        logger.info("Analysis store ready at %s", self.path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        return conn

    # ---- Writes -------------------------------------------------------------

    def create_pending(
        self, correlation_id: str, owner: str, image_fingerprint: str,
    ) -> AnalysisRecord:
        if not correlation_id:
            raise InvalidInput("Analysis ID is required.")
        if not owner:
            raise InvalidInput("Owner address is required.")
        conn = self._connect()
        try:
            conn.execute(
                "INSERT INTO analyses (correlation_id, owner, image_fingerprint, created_at) "
                "VALUES (?, ?, ?, ?)",
                (correlation_id, owner, image_fingerprint, _now()),
            )
            conn.commit()
        except sqlite3.IntegrityError as exc:
            raise DuplicateId(f"Analysis {correlation_id} already exists.") from exc
        finally:
            conn.close()
        logger.info("Created pending analysis %s for %s", correlation_id, owner)
        return self.get(correlation_id)  # type: ignore[return-value]

    def complete(
        self, correlation_id: str, result: DiagnosisResult, *, fallback: bool = False,
    ) -> AnalysisRecord:
        """Write all result fields and ``completed_at`` in one statement.

        Only a pending record is updated; of two concurrent completions the
        second sees no matching row and fails.
        """
        conn = self._connect()
        try:
            cursor = conn.execute(
                "UPDATE analyses SET diagnosis = ?, advice = ?, severity = ?, confidence = ?, "
                "fallback = ?, completed_at = ? "
                "WHERE correlation_id = ? AND completed_at IS NULL",
                (
                    result.diagnosis,
                    result.advice,
                    result.severity,
                    result.confidence,
                    fallback,
                    _now(),
                    correlation_id,
                ),
            )
            conn.commit()
            updated = cursor.rowcount
        finally:
            conn.close()

        record = self.get(correlation_id)
        if updated == 0:
            if record is None:
                raise NotFound(f"No pending analysis {correlation_id}.")
            raise AlreadyCompleted(f"Analysis {correlation_id} is already completed.")
        logger.info("Completed analysis %s (severity=%s)", correlation_id, result.severity)
        return record  # type: ignore[return-value]

    # ---- Reads --------------------------------------------------------------

    def get(self, correlation_id: str) -> AnalysisRecord | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM analyses WHERE correlation_id = ?", (correlation_id,),
            ).fetchone()
            return _row_to_record(row) if row is not None else None
        finally:
            conn.close()

    def iter_by_owner(self, owner: str) -> Iterator[AnalysisRecord]:
        """Yield the owner's records, most recent first.

        The connection stays open until the generator is exhausted or closed.
        """
        conn = self._connect()
        try:
            cursor = conn.execute(
                "SELECT * FROM analyses WHERE owner = ? ORDER BY created_at DESC, rowid DESC",
                (owner,),
            )
            for row in cursor:
                yield _row_to_record(row)
        finally:
            conn.close()
