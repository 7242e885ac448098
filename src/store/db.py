"""SQLite database operations for webhook persistence.

This module provides the WebhookDB class for persistent storage of:
- Immutable captured webhooks
- Mutable webhook statuses
- The capture change-feed
- The retry queue
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

# SQL schema for webhook tables
SCHEMA_SQL = """
-- Webhooks table: immutable payload records, written once at capture
CREATE TABLE IF NOT EXISTS webhooks (
    partition_key TEXT NOT NULL,
    sort_key TEXT NOT NULL,
    origin TEXT NOT NULL,
    event_type TEXT NOT NULL,
    created_at TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    PRIMARY KEY (partition_key, sort_key)
);

-- Statuses table: mutable processing state, one row per webhook
CREATE TABLE IF NOT EXISTS webhook_statuses (
    partition_key TEXT NOT NULL,
    sort_key TEXT NOT NULL,
    status TEXT NOT NULL,
    retries INTEGER NOT NULL DEFAULT 0 CHECK (retries >= 0),
    updated_at TEXT NOT NULL,
    PRIMARY KEY (partition_key, sort_key)
);

-- Index for escalation / reaper lookups
CREATE INDEX IF NOT EXISTS idx_statuses_status ON webhook_statuses(status);

-- Change feed: one row per captured webhook
CREATE TABLE IF NOT EXISTS webhook_changes (
    sequence INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id TEXT NOT NULL UNIQUE,
    partition_key TEXT NOT NULL,
    sort_key TEXT NOT NULL,
    created_at TEXT NOT NULL
);

-- Retry queue: messages for failed webhooks awaiting redelivery
CREATE TABLE IF NOT EXISTS retry_messages (
    message_id TEXT PRIMARY KEY,
    body_json TEXT NOT NULL,
    enqueued_at TEXT NOT NULL,
    visible_at TEXT NOT NULL,
    receive_count INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_retry_visible ON retry_messages(visible_at);

-- Messages that exhausted their receive count
CREATE TABLE IF NOT EXISTS dead_retry_messages (
    message_id TEXT PRIMARY KEY,
    body_json TEXT NOT NULL,
    enqueued_at TEXT NOT NULL,
    dead_at TEXT NOT NULL,
    receive_count INTEGER NOT NULL
);
"""

DEFAULT_BUSY_TIMEOUT = 5.0


class WebhookDB:
    """SQLite database wrapper for webhook persistence.

    Provides:
    - WAL mode for crash recovery
    - Parameterized queries for SQL injection prevention
    - Schema initialization on first use
    - Multi-statement transactions
    """

    def __init__(self, db_path: str, busy_timeout: float = DEFAULT_BUSY_TIMEOUT) -> None:
        """Initialize the webhook database.

        Args:
            db_path: Path to the SQLite database file, or ``:memory:``.
            busy_timeout: Seconds to wait for another connection's write lock.
        """
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        self._conn: sqlite3.Connection | None = None
        self._initialize()

    def _initialize(self) -> None:
        """Initialize the database connection and schema."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        # isolation_level=None: transactions are opened explicitly
        self._conn = sqlite3.connect(
            self._db_path, timeout=self._busy_timeout, isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row

        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA_SQL)

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError("Database connection is closed")
        return self._conn

    def execute(self, sql: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        """Execute a single SQL statement in autocommit mode.

        Args:
            sql: SQL statement with ? placeholders.
            params: Tuple of parameter values.

        Returns:
            The cursor after execution.
        """
        return self._connection().execute(sql, params)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run several statements atomically.

        ``BEGIN IMMEDIATE`` takes the write lock up front so a concurrent
        writer cannot interleave between the statements.
        """
        conn = self._connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    def fetch_one(self, sql: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
        """Fetch a single row as a dictionary, or None if no row matched."""
        row = self._connection().execute(sql, params).fetchone()
        if row is None:
            return None
        return dict(row)

    def fetch_all(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        """Fetch all rows as a list of dictionaries."""
        cursor = self._connection().execute(sql, params)
        return [dict(row) for row in cursor.fetchall()]

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> WebhookDB:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()
