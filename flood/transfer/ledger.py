"""SQLite-backed retry ledger and file record journal.

``attempt_records`` is an append-only audit trail: one row per upload
attempt, written in a single statement. ``file_records`` tracks each
occurrence of a file through the stages. Neither table is authoritative;
the filesystem stage is.
"""

import logging
import sqlite3
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

from flood.schemas.transfer import (
    AttemptOutcome,
    AttemptRecord,
    FileRecord,
    Identity,
    Stage,
)

logger = logging.getLogger(__name__)

_CREATE_ATTEMPTS = """
CREATE TABLE IF NOT EXISTS attempt_records (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    profile         TEXT NOT NULL,
    bucket          TEXT NOT NULL,
    key             TEXT NOT NULL,
    attempt_number  INTEGER NOT NULL,
    timestamp       TEXT NOT NULL,
    outcome         TEXT NOT NULL,
    detail          TEXT NOT NULL DEFAULT ''
)
"""

_CREATE_ATTEMPTS_INDEX = """
CREATE INDEX IF NOT EXISTS idx_attempt_identity ON attempt_records (profile, bucket, key)
"""

_CREATE_FILES = """
CREATE TABLE IF NOT EXISTS file_records (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    profile             TEXT NOT NULL,
    bucket              TEXT NOT NULL,
    filepath            TEXT NOT NULL,
    file_creation_date  TEXT NOT NULL,
    current_state       TEXT NOT NULL,
    last_updated        TEXT NOT NULL,
    upload_outcome      TEXT
)
"""

_INSERT_ATTEMPT = """
INSERT INTO attempt_records (profile, bucket, key, attempt_number, timestamp, outcome, detail)
VALUES (?, ?, ?, ?, ?, ?, ?)
"""

_SELECT_ATTEMPTS = """
SELECT * FROM attempt_records WHERE profile = ? AND bucket = ? AND key = ? ORDER BY id ASC
"""

_COUNT_OUTCOMES = """
SELECT outcome, COUNT(*) AS n FROM attempt_records WHERE timestamp > ? GROUP BY outcome
"""

_INSERT_FILE = """
INSERT INTO file_records
    (profile, bucket, filepath, file_creation_date, current_state, last_updated)
VALUES (?, ?, ?, ?, ?, ?)
"""

_UPDATE_FILE = """
UPDATE file_records SET current_state = ?, last_updated = ?, upload_outcome = COALESCE(?, upload_outcome)
WHERE id = ?
"""

_SELECT_FILES = """
SELECT * FROM file_records WHERE profile = ? AND bucket = ? AND filepath = ? ORDER BY id ASC
"""


def _row_to_attempt(row: sqlite3.Row) -> AttemptRecord:
    return AttemptRecord(
        id=row["id"],
        identity=Identity(profile=row["profile"], bucket=row["bucket"], key=row["key"]),
        attempt_number=row["attempt_number"],
        timestamp=datetime.fromisoformat(row["timestamp"]),
        outcome=AttemptOutcome(row["outcome"]),
        detail=row["detail"],
    )


def _row_to_file(row: sqlite3.Row) -> FileRecord:
    return FileRecord(
        id=row["id"],
        identity=Identity(profile=row["profile"], bucket=row["bucket"], key=row["filepath"]),
        file_creation_date=datetime.fromisoformat(row["file_creation_date"]),
        current_state=Stage(row["current_state"]),
        last_updated=datetime.fromisoformat(row["last_updated"]),
        upload_outcome=row["upload_outcome"],
    )


class RetryLedger:
    """Durable record of every upload attempt and file occurrence.

    Usage::

        with RetryLedger("/var/lib/flood/flood.db") as ledger:
            ledger.record_attempt(identity, 0, AttemptOutcome.TRANSIENT_FAILURE, "timeout")
            for row in ledger.attempts_for(identity):
                print(row.attempt_number, row.outcome)

    Writes are serialized by an internal lock, so concurrent appends from
    different files never interleave.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_CREATE_ATTEMPTS)
        self._conn.execute(_CREATE_ATTEMPTS_INDEX)
        self._conn.execute(_CREATE_FILES)
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "RetryLedger":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    def record_attempt(
        self,
        identity: Identity,
        attempt_number: int,
        outcome: AttemptOutcome,
        detail: str = "",
    ) -> AttemptRecord:
        """Append one attempt row.

        Returns:
            The stored record, including its generated ID.
        """
        now = datetime.now(UTC)
        with self._lock:
            cursor = self._conn.execute(
                _INSERT_ATTEMPT,
                (
                    identity.profile,
                    identity.bucket,
                    identity.key,
                    attempt_number,
                    now.isoformat(),
                    outcome.value,
                    detail,
                ),
            )
            self._conn.commit()
        logger.debug("Ledger: %s attempt=%d outcome=%s", identity, attempt_number, outcome)
        return AttemptRecord(
            id=cursor.lastrowid,
            identity=identity,
            attempt_number=attempt_number,
            timestamp=now,
            outcome=outcome,
            detail=detail,
        )

    def attempts_for(self, identity: Identity) -> list[AttemptRecord]:
        """All attempt rows for an identity, oldest first, across occurrences."""
        with self._lock:
            rows = self._conn.execute(
                _SELECT_ATTEMPTS, (identity.profile, identity.bucket, identity.key)
            ).fetchall()
        return [_row_to_attempt(r) for r in rows]

    def count_outcomes(self, *, hours: int = 24) -> dict[AttemptOutcome, int]:
        """Count attempts per outcome over the trailing window."""
        since = datetime.now(UTC) - timedelta(hours=hours)
        with self._lock:
            rows = self._conn.execute(_COUNT_OUTCOMES, (since.isoformat(),)).fetchall()
        counts = {outcome: 0 for outcome in AttemptOutcome}
        for row in rows:
            counts[AttemptOutcome(row["outcome"])] = row["n"]
        return counts

    # ------------------------------------------------------------------
    # File records
    # ------------------------------------------------------------------

    def open_file_record(
        self,
        identity: Identity,
        *,
        created_at: datetime,
        state: Stage = Stage.PROCESSING,
    ) -> int:
        """Start a journal row for a new occurrence of a file. Returns its ID."""
        now = datetime.now(UTC).isoformat()
        with self._lock:
            cursor = self._conn.execute(
                _INSERT_FILE,
                (
                    identity.profile,
                    identity.bucket,
                    identity.key,
                    created_at.isoformat(),
                    state.value,
                    now,
                ),
            )
            self._conn.commit()
        return cursor.lastrowid

    def update_file_record(
        self,
        record_id: int,
        state: Stage,
        *,
        upload_outcome: str | None = None,
    ) -> None:
        with self._lock:
            self._conn.execute(
                _UPDATE_FILE,
                (state.value, datetime.now(UTC).isoformat(), upload_outcome, record_id),
            )
            self._conn.commit()

    def file_records_for(self, identity: Identity) -> list[FileRecord]:
        with self._lock:
            rows = self._conn.execute(
                _SELECT_FILES, (identity.profile, identity.bucket, identity.key)
            ).fetchall()
        return [_row_to_file(r) for r in rows]
