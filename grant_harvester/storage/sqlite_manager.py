"""SQLite connection management with schema guarantees."""

from __future__ import annotations

import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from itertools import count
from pathlib import Path
from threading import Lock
from typing import Iterator

from ..errors import TransactionTimeoutError
from .repository import TransactionContext

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS funders (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        name_key TEXT NOT NULL,
        website TEXT,
        contact_email TEXT,
        type TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_funders_name_key ON funders(name_key)",
    """
    CREATE TABLE IF NOT EXISTS grants (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        title_normalized TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        eligibility_criteria TEXT NOT NULL DEFAULT '',
        deadline TEXT,
        funding_amount_min REAL,
        funding_amount_max REAL,
        application_url TEXT,
        category TEXT NOT NULL,
        location_eligibility TEXT NOT NULL DEFAULT '[]',
        confidence_score REAL NOT NULL DEFAULT 0,
        content_hash TEXT NOT NULL,
        scraped_from TEXT,
        funder_id TEXT NOT NULL REFERENCES funders(id),
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        source_updated_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_grants_hash_status ON grants(content_hash, status)",
    "CREATE INDEX IF NOT EXISTS idx_grants_source ON grants(scraped_from, status)",
    """
    CREATE TABLE IF NOT EXISTS grant_tags (
        grant_id TEXT NOT NULL REFERENCES grants(id),
        tag TEXT NOT NULL,
        source TEXT NOT NULL DEFAULT 'system',
        UNIQUE (grant_id, tag)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scrape_jobs (
        id TEXT PRIMARY KEY,
        source_id TEXT NOT NULL,
        status TEXT NOT NULL,
        priority INTEGER NOT NULL DEFAULT 5,
        scheduled_at TEXT,
        started_at TEXT,
        finished_at TEXT,
        total_found INTEGER NOT NULL DEFAULT 0,
        total_inserted INTEGER NOT NULL DEFAULT 0,
        total_updated INTEGER NOT NULL DEFAULT 0,
        total_skipped INTEGER NOT NULL DEFAULT 0,
        duplicates_found INTEGER NOT NULL DEFAULT 0,
        duration REAL,
        log TEXT,
        metadata TEXT NOT NULL DEFAULT '{}'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        action TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT,
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_log(entity_type, entity_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_created ON audit_log(created_at)",
    """
    CREATE TABLE IF NOT EXISTS sources (
        id TEXT PRIMARY KEY,
        config TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        total_scrapes INTEGER NOT NULL DEFAULT 0,
        successful_scrapes INTEGER NOT NULL DEFAULT 0,
        failed_scrapes INTEGER NOT NULL DEFAULT 0,
        success_rate REAL NOT NULL DEFAULT 0,
        average_processing_time REAL NOT NULL DEFAULT 0,
        average_grants_found REAL NOT NULL DEFAULT 0,
        last_success_at TEXT,
        last_error TEXT,
        consecutive_failures INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
)


def to_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


class SQLiteTransaction(TransactionContext):
    """One ``BEGIN IMMEDIATE`` transaction on a dedicated connection."""

    def __init__(self, conn: sqlite3.Connection, timeout: float | None = None) -> None:
        self.conn = conn
        self.timeout = timeout
        self._deadline = time.monotonic() + timeout if timeout else None
        self._savepoint_ids = count(1)

    def check_deadline(self) -> None:
        if self._deadline is not None and time.monotonic() > self._deadline:
            raise TransactionTimeoutError(self.timeout or 0.0)

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        name = f"sp_{next(self._savepoint_ids)}"
        self.conn.execute(f"SAVEPOINT {name}")
        try:
            yield
        except BaseException:
            self.conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            self.conn.execute(f"RELEASE SAVEPOINT {name}")
            raise
        self.conn.execute(f"RELEASE SAVEPOINT {name}")


class SQLiteManager:
    """Open SQLite connections for one database file and guarantee the schema.

    Every transaction gets its own connection so concurrent source tasks never
    share cursor state; SQLite's write lock serialises the writers.
    """

    def __init__(self, path: Path, busy_timeout: float = 30.0) -> None:
        self.path = Path(path)
        self.busy_timeout = busy_timeout
        self._lock = Lock()
        self._schema_ready = False

    def connect(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self.path,
            timeout=self.busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        self._ensure_schema(conn)
        return conn

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        with self._lock:
            if self._schema_ready:
                return
            conn.execute("PRAGMA journal_mode = WAL")
            for statement in _SCHEMA:
                conn.execute(statement)
            self._schema_ready = True

    @contextmanager
    def transaction(self, timeout: float | None = None) -> Iterator[SQLiteTransaction]:
        """Run a unit of work; commit on success, roll back on any exception.

        A deadline that has passed by commit time rolls the work back and raises
        :class:`TransactionTimeoutError`.
        """

        conn = self.connect()
        tx = SQLiteTransaction(conn, timeout)
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield tx
            tx.check_deadline()
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()


__all__ = ["SQLiteManager", "SQLiteTransaction", "from_timestamp", "to_timestamp"]
