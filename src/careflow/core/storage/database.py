"""SQLite database management for the care plan ledger.

Handles connection lifecycle, schema creation, migrations and the
unit-of-work transaction scope used by every multi-aggregate mutation.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

# Current schema version
SCHEMA_VERSION = 2

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_V1 = """
-- Enrollment record: one row per patient, carries the rolling progress counters
CREATE TABLE IF NOT EXISTS patients (
    id              TEXT PRIMARY KEY,
    timezone_offset INTEGER,
    progress_json   TEXT NOT NULL DEFAULT '{}',
    created_at      TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at      TEXT
);

-- Signed care plans; never hard-deleted, superseded via is_active
CREATE TABLE IF NOT EXISTS plans (
    id             TEXT PRIMARY KEY,
    patient_id     TEXT NOT NULL REFERENCES patients(id),
    creator_id     TEXT,
    content_json   TEXT NOT NULL,
    care_team_json TEXT NOT NULL DEFAULT '[]',
    start_date     TEXT NOT NULL,
    duration_days  INTEGER NOT NULL DEFAULT 0,
    is_active      INTEGER NOT NULL DEFAULT 0,
    sign_date      TEXT NOT NULL,
    created_at     TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Exactly one document per (patient, plan, calendar day)
CREATE TABLE IF NOT EXISTS daily_responses (
    id            TEXT PRIMARY KEY,
    patient_id    TEXT NOT NULL REFERENCES patients(id),
    plan_id       TEXT NOT NULL REFERENCES plans(id),
    calendar_date TEXT NOT NULL,
    created_at    TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE (patient_id, plan_id, calendar_date)
);

-- Expected task instances; the raw answer is encrypted, positivity is not
CREATE TABLE IF NOT EXISTS response_slots (
    id               TEXT PRIMARY KEY,
    document_id      TEXT NOT NULL REFERENCES daily_responses(id),
    position         INTEGER NOT NULL,
    measure          TEXT NOT NULL,
    subtype          TEXT,
    time             TEXT NOT NULL,
    response_enc     TEXT,
    is_positive      INTEGER,
    alerts_triggered INTEGER NOT NULL DEFAULT 0,
    answered_at      TEXT
);

CREATE TABLE IF NOT EXISTS alerts (
    id             TEXT PRIMARY KEY,
    patient_id     TEXT NOT NULL REFERENCES patients(id),
    plan_id        TEXT NOT NULL REFERENCES plans(id),
    care_team_json TEXT NOT NULL DEFAULT '[]',
    measure        TEXT NOT NULL,
    subtype        TEXT,
    policy_json    TEXT NOT NULL,
    trigger_time   TEXT NOT NULL,
    created_at     TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS alert_seen (
    alert_id TEXT NOT NULL REFERENCES alerts(id),
    user_id  TEXT NOT NULL,
    seen_at  TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (alert_id, user_id)
);

CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER NOT NULL,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Indexes for common query patterns
CREATE INDEX IF NOT EXISTS idx_plans_patient     ON plans(patient_id, is_active);
CREATE INDEX IF NOT EXISTS idx_daily_patient     ON daily_responses(patient_id, plan_id);
CREATE INDEX IF NOT EXISTS idx_slots_document    ON response_slots(document_id);
CREATE INDEX IF NOT EXISTS idx_slots_measure     ON response_slots(measure, subtype, time);
CREATE INDEX IF NOT EXISTS idx_alerts_patient    ON alerts(patient_id, measure, trigger_time);
"""

# ---------------------------------------------------------------------------
# V2: Audit log table (access logging for tool calls and domain events)
# ---------------------------------------------------------------------------

_SCHEMA_V2 = """
CREATE TABLE IF NOT EXISTS audit_log (
    id              TEXT PRIMARY KEY,
    timestamp       TEXT NOT NULL DEFAULT (datetime('now')),
    action          TEXT NOT NULL,
    tool_name       TEXT,
    tool_input_hash TEXT,
    plan_id         TEXT,
    duration_ms     REAL,
    status          TEXT NOT NULL DEFAULT 'success',
    error_type      TEXT,
    metadata_json   TEXT
);

CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_audit_action    ON audit_log(action);
CREATE INDEX IF NOT EXISTS idx_audit_tool      ON audit_log(tool_name);
"""


class DatabaseError(Exception):
    """Raised when database operations fail."""


class CarePlanDatabase:
    """SQLite database manager for the care plan ledger.

    Supports both file-based and in-memory (`:memory:`) databases.
    In-memory mode is used for testing.

    The connection runs in autocommit mode; all writes go through
    :meth:`transaction`, which opens ``BEGIN IMMEDIATE`` so concurrent
    writers on the same file serialize instead of interleaving.

    Usage::

        db = CarePlanDatabase(":memory:")
        db.initialize()
        with db.transaction() as conn:
            conn.execute(...)
        db.close()
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        """Initialize database manager.

        Args:
            db_path: Path to SQLite file, or ":memory:" for in-memory DB.
        """
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._depth = 0

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the active database connection.

        Raises:
            DatabaseError: If the database has not been initialized.
        """
        if self._conn is None:
            raise DatabaseError("Database not initialized. Call initialize() first.")
        return self._conn

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def initialize(self) -> None:
        """Create the database connection and ensure schema exists.

        For file-based databases, creates parent directories if needed.
        Idempotent: safe to call multiple times.
        """
        if self._conn is not None:
            return  # Already initialized

        if self._db_path != ":memory:":
            db_file = Path(self._db_path).expanduser()
            db_file.parent.mkdir(parents=True, exist_ok=True)
            target = str(db_file)
        else:
            target = ":memory:"

        self._conn = sqlite3.connect(
            target, isolation_level=None, check_same_thread=False, timeout=5.0
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")

        self._ensure_schema()
        logger.info("Care plan database initialized: %s", self._db_path)

    def _ensure_schema(self) -> None:
        """Create tables if they don't exist and apply migrations."""
        with self.transaction() as conn:
            # V1: Core tables (CREATE IF NOT EXISTS is idempotent)
            for statement in _split_script(_SCHEMA_V1):
                conn.execute(statement)

            row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
            current_version = row[0] if row[0] is not None else 0

            # V2: Audit log table
            if current_version < 2:
                for statement in _split_script(_SCHEMA_V2):
                    conn.execute(statement)
                logger.info("Applied schema migration V2: audit_log table")

            if current_version < SCHEMA_VERSION:
                conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)",
                    (SCHEMA_VERSION,),
                )
                logger.info(
                    "Schema updated from version %d to %d", current_version, SCHEMA_VERSION
                )

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Unit of work: commit on normal exit, roll back on any exception.

        Re-entrant. Only the outermost scope begins and ends the SQLite
        transaction; nested scopes join it, so an exception anywhere
        rolls back the whole unit.
        """
        conn = self.connection
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield conn
                finally:
                    self._depth -= 1
                return

            conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield conn
            except BaseException:
                self._depth = 0
                conn.execute("ROLLBACK")
                raise
            else:
                self._depth = 0
                conn.execute("COMMIT")

    def get_schema_version(self) -> int:
        """Return the current schema version."""
        cursor = self.connection.execute("SELECT MAX(version) FROM schema_version")
        row = cursor.fetchone()
        return row[0] if row[0] is not None else 0

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.info("Care plan database closed")

    def __enter__(self) -> CarePlanDatabase:
        self.initialize()
        return self

    def __exit__(self, *args) -> None:
        self.close()


def _split_script(script: str) -> list[str]:
    # executescript() would COMMIT implicitly, so DDL runs statement by statement
    lines = [line for line in script.splitlines() if not line.strip().startswith("--")]
    return [s.strip() for s in "\n".join(lines).split(";") if s.strip()]
