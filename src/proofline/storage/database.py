"""
SQLite database access for Proofline.

All persistent state (controls, integrations, the evidence chain, checks,
tickets, queued jobs and shared breaker state) lives in one SQLite file so
worker processes on the same host can share it.

Thread Safety:
    Connection-per-operation. Write paths that must be serialised across
    processes use BEGIN IMMEDIATE, which takes SQLite's write lock up front.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage errors."""

    pass


class IntegrityError(StorageError):
    """Raised when stored evidence fails an integrity check."""

    pass


class EvidenceNotFoundError(StorageError):
    """Raised when requested evidence is not found."""

    permanent = True


# Database schema version for migrations
SCHEMA_VERSION = 1


CREATE_TABLES_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Control catalog (reference data)
CREATE TABLE IF NOT EXISTS controls (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    frequency TEXT NOT NULL,
    integration_type TEXT,
    description TEXT,
    category TEXT
);

-- Customer integrations with encrypted configuration
CREATE TABLE IF NOT EXISTS integrations (
    id TEXT PRIMARY KEY,
    customer_id TEXT NOT NULL,
    integration_type TEXT NOT NULL,
    encrypted_config TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_integrations_customer ON integrations(customer_id, status);

-- Append-only evidence chain, one chain per (customer_id, control_id)
CREATE TABLE IF NOT EXISTS evidence (
    id TEXT PRIMARY KEY,
    customer_id TEXT NOT NULL,
    control_id TEXT NOT NULL,
    integration_id TEXT,
    collected_at TEXT NOT NULL,
    hash TEXT NOT NULL,
    previous_hash TEXT,
    data_json TEXT NOT NULL,
    offloaded INTEGER NOT NULL DEFAULT 0,
    job_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_evidence_chain ON evidence(customer_id, control_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_evidence_job ON evidence(job_id) WHERE job_id IS NOT NULL;

-- Compliance check results (never updated)
CREATE TABLE IF NOT EXISTS compliance_checks (
    id TEXT PRIMARY KEY,
    customer_id TEXT NOT NULL,
    control_id TEXT NOT NULL,
    evidence_id TEXT NOT NULL,
    status TEXT NOT NULL,
    checked_at TEXT NOT NULL,
    next_check_at TEXT NOT NULL,
    error_message TEXT,
    FOREIGN KEY (evidence_id) REFERENCES evidence(id)
);

CREATE INDEX IF NOT EXISTS idx_checks_control ON compliance_checks(customer_id, control_id);

-- Links between failed checks and external tickets
CREATE TABLE IF NOT EXISTS remediation_tickets (
    id TEXT PRIMARY KEY,
    check_id TEXT NOT NULL,
    customer_id TEXT NOT NULL,
    control_id TEXT NOT NULL,
    external_issue_key TEXT NOT NULL,
    external_issue_id TEXT,
    url TEXT,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    resolved_at TEXT,
    FOREIGN KEY (check_id) REFERENCES compliance_checks(id)
);

CREATE INDEX IF NOT EXISTS idx_tickets_control ON remediation_tickets(customer_id, control_id, status);

-- Durable job queue
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    queue TEXT NOT NULL,
    job_type TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    status TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    available_at REAL NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    last_error TEXT,
    result_json TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(queue, status, available_at);

-- Circuit breaker state shared between worker processes
CREATE TABLE IF NOT EXISTS breaker_state (
    name TEXT PRIMARY KEY,
    state TEXT NOT NULL,
    failure_count INTEGER NOT NULL,
    last_failure_at REAL,
    updated_at TEXT NOT NULL
);
"""


class Database:
    """
    Thin wrapper around a SQLite file.

    Example:
        db = Database(settings.db_path)
        with db.transaction(immediate=True) as conn:
            conn.execute("INSERT INTO ...")

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _init_database(self) -> None:
        """Initialize the database schema."""
        with self.connection() as conn:
            # WAL lets readers proceed while a worker holds the write lock
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(CREATE_TABLES_SQL)

            row = conn.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            ).fetchone()

            if row is None:
                conn.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, datetime.now(UTC).isoformat()),
                )
                logger.info(f"Initialized database schema version {SCHEMA_VERSION}")
            elif row[0] < SCHEMA_VERSION:
                logger.warning(
                    f"Database schema version {row[0]} is older than "
                    f"expected version {SCHEMA_VERSION}"
                )

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Get a database connection with proper settings.

        Yields:
            SQLite connection with row factory set.
        """
        conn = sqlite3.connect(
            str(self.db_path),
            isolation_level=None,  # Autocommit mode, we manage transactions manually
            check_same_thread=False,
            timeout=30,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self, immediate: bool = False
    ) -> Generator[sqlite3.Connection, None, None]:
        """
        Run a block inside one transaction.

        Args:
            immediate: Take the write lock at BEGIN rather than at the first
                write. Required for read-then-write sequences such as chain
                appends and job claims.

        Raises:
            StorageError: If the database operation fails.
        """
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield conn
            except sqlite3.Error as e:
                conn.execute("ROLLBACK")
                raise StorageError(f"Database operation failed: {e}") from e
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
