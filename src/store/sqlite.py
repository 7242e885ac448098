"""SQLite-backed WebhookStore."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import UTC, datetime
from typing import Any

from src.models import (
    ChangeRecord,
    WebhookKey,
    WebhookOrigin,
    WebhookRecord,
    WebhookStatus,
    WebhookStatusRecord,
)
from src.store.base import PutResult, TransitionResult, WebhookStore
from src.store.db import DEFAULT_BUSY_TIMEOUT, WebhookDB
from src.webhook.errors import StorageError

logger = logging.getLogger(__name__)


class SQLiteWebhookStore(WebhookStore):
    """Stores webhooks and their statuses in two SQLite tables.

    Provides:
    - Atomic capture of record + status in one transaction
    - Compare-and-swap status transitions
    - A change-feed of captured webhooks

    Queries run synchronously on the calling thread. The async methods
    therefore block the event loop while SQLite works, and for up to
    ``busy_timeout`` seconds when another process holds the write lock.
    """

    def __init__(self, db_path: str, busy_timeout: float = DEFAULT_BUSY_TIMEOUT) -> None:
        """Initialize the store.

        Args:
            db_path: Path to the SQLite database file.
            busy_timeout: Seconds a query waits on another writer before failing.
        """
        try:
            self._db = WebhookDB(db_path, busy_timeout)
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to open webhook database: {exc}") from exc

    def close(self) -> None:
        """Close the database connection."""
        self._db.close()

    async def get_status(self, key: WebhookKey) -> WebhookStatusRecord | None:
        row = self._fetch_one(
            """SELECT partition_key, sort_key, status, retries
               FROM webhook_statuses WHERE partition_key = ? AND sort_key = ?""",
            (key.partition_key, key.sort_key),
        )
        if row is None:
            return None
        return WebhookStatusRecord(
            key=key,
            status=WebhookStatus(row["status"]),
            retries=row["retries"],
        )

    async def get_record(self, key: WebhookKey) -> WebhookRecord | None:
        row = self._fetch_one(
            "SELECT * FROM webhooks WHERE partition_key = ? AND sort_key = ?",
            (key.partition_key, key.sort_key),
        )
        if row is None:
            return None
        return self._row_to_record(row)

    async def put_new(self, record: WebhookRecord, status: WebhookStatusRecord) -> PutResult:
        now = datetime.now(UTC).isoformat()
        key = record.key
        try:
            with self._db.transaction() as conn:
                conn.execute(
                    """INSERT INTO webhooks
                       (partition_key, sort_key, origin, event_type, created_at, payload_json)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (
                        key.partition_key,
                        key.sort_key,
                        record.origin.value,
                        record.event_type,
                        record.created_at,
                        json.dumps(record.payload, sort_keys=True),
                    ),
                )
                conn.execute(
                    """INSERT INTO webhook_statuses
                       (partition_key, sort_key, status, retries, updated_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    (key.partition_key, key.sort_key, status.status.value, status.retries, now),
                )
                conn.execute(
                    """INSERT INTO webhook_changes
                       (event_id, partition_key, sort_key, created_at)
                       VALUES (?, ?, ?, ?)""",
                    (uuid.uuid4().hex, key.partition_key, key.sort_key, now),
                )
        except sqlite3.IntegrityError:
            logger.debug("Capture lost insert race for %s", key)
            return PutResult.ALREADY_EXISTS
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to capture webhook {key}: {exc}") from exc
        return PutResult.CREATED

    async def transition_status(
        self,
        key: WebhookKey,
        to: WebhookStatus,
        from_expected: WebhookStatus | None = None,
        increment_retries: bool = False,
    ) -> TransitionResult:
        now = datetime.now(UTC).isoformat()
        sql = """UPDATE webhook_statuses
                 SET status = ?, retries = retries + ?, updated_at = ?
                 WHERE partition_key = ? AND sort_key = ?"""
        params: tuple[Any, ...] = (
            to.value,
            1 if increment_retries else 0,
            now,
            key.partition_key,
            key.sort_key,
        )
        if from_expected is not None:
            sql += " AND status = ?"
            params += (from_expected.value,)

        try:
            cursor = self._db.execute(sql, params)
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to update status for {key}: {exc}") from exc

        # rowcount == 1 means the stored status matched
        if cursor.rowcount == 1:
            return TransitionResult.APPLIED
        if await self.get_status(key) is None:
            return TransitionResult.NOT_FOUND
        return TransitionResult.CONDITION_FAILED

    async def read_changes(self, after_sequence: int = 0, limit: int = 100) -> list[ChangeRecord]:
        rows = self._fetch_all(
            """SELECT c.sequence, c.event_id, w.*
               FROM webhook_changes c
               JOIN webhooks w
                 ON w.partition_key = c.partition_key AND w.sort_key = c.sort_key
               WHERE c.sequence > ?
               ORDER BY c.sequence ASC
               LIMIT ?""",
            (after_sequence, limit),
        )
        return [
            ChangeRecord(
                sequence=row["sequence"],
                event_id=row["event_id"],
                record=self._row_to_record(row),
            )
            for row in rows
        ]

    async def list_by_status(self, status: WebhookStatus, limit: int = 100) -> list[WebhookStatusRecord]:
        rows = self._fetch_all(
            """SELECT partition_key, sort_key, status, retries
               FROM webhook_statuses WHERE status = ?
               ORDER BY updated_at ASC LIMIT ?""",
            (status.value, limit),
        )
        return [
            WebhookStatusRecord(
                key=WebhookKey(partition_key=row["partition_key"], sort_key=row["sort_key"]),
                status=WebhookStatus(row["status"]),
                retries=row["retries"],
            )
            for row in rows
        ]

    def _fetch_one(self, sql: str, params: tuple[Any, ...]) -> dict[str, Any] | None:
        try:
            return self._db.fetch_one(sql, params)
        except sqlite3.Error as exc:
            raise StorageError(f"Webhook database read failed: {exc}") from exc

    def _fetch_all(self, sql: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        try:
            return self._db.fetch_all(sql, params)
        except sqlite3.Error as exc:
            raise StorageError(f"Webhook database read failed: {exc}") from exc

    @staticmethod
    def _row_to_record(row: dict[str, Any]) -> WebhookRecord:
        """Convert a database row to a WebhookRecord."""
        return WebhookRecord(
            key=WebhookKey(partition_key=row["partition_key"], sort_key=row["sort_key"]),
            origin=WebhookOrigin(row["origin"]),
            event_type=row["event_type"],
            created_at=row["created_at"],
            payload=json.loads(row["payload_json"]),
        )
