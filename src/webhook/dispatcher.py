"""Retry channel for failed webhooks.

A dispatcher publishes a RetryMessage carrying the webhook key and the
denormalized record, so a consumer can resume the pipeline without the
original transport payload. Publishing failures raise DispatchError; the
pipeline then reports the item as a batch failure instead of dropping it.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from src.models import RetryMessage
from src.store.db import DEFAULT_BUSY_TIMEOUT, WebhookDB
from src.webhook.errors import DispatchError, StorageError
from src.webhook.models import PipelineItem, RetryDelivery

logger = logging.getLogger(__name__)

_BACKOFF_CAP_SECONDS = 30


def _iso(moment: datetime) -> str:
    # Fixed precision keeps lexical and chronological order identical
    return moment.isoformat(timespec="microseconds")


def build_retry_message(item: PipelineItem) -> RetryMessage:
    return RetryMessage(
        key=item.key,
        record=item.record,
        reason=item.error,
        retries=item.retries,
    )


class RetryDispatcher(ABC):
    """Publishes failed pipeline items for later redelivery."""

    @abstractmethod
    async def dispatch(self, item: PipelineItem) -> None:
        """Publish a retry message for ``item``.

        Raises:
            DispatchError: If the message could not be published.
        """
        ...


class InMemoryRetryQueue(RetryDispatcher):
    """asyncio.Queue-backed retry channel for tests and single-process runs."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[RetryDelivery] = asyncio.Queue()

    async def dispatch(self, item: PipelineItem) -> None:
        delivery = RetryDelivery(
            batch_item_id=uuid.uuid4().hex,
            message=build_retry_message(item),
        )
        await self._queue.put(delivery)

    def qsize(self) -> int:
        return self._queue.qsize()

    def drain(self, limit: int = 10) -> list[RetryDelivery]:
        """Remove and return up to ``limit`` queued deliveries."""
        deliveries: list[RetryDelivery] = []
        while len(deliveries) < limit and not self._queue.empty():
            deliveries.append(self._queue.get_nowait())
        return deliveries


class SQLiteRetryQueue(RetryDispatcher):
    """Durable retry queue with visibility timeouts.

    Received messages stay hidden for ``visibility_timeout`` seconds; a
    consumer acks successes and lets failures reappear (nack) with backoff.
    A message already received ``max_receive_count`` times is moved to the
    ``dead_retry_messages`` table instead of being delivered again.

    Every call runs synchronously on the calling thread, so from a coroutine
    it blocks the event loop for the duration of the query, up to
    ``busy_timeout`` seconds when another process holds the write lock.
    """

    def __init__(
        self,
        db_path: str,
        visibility_timeout: int = 30,
        max_receive_count: int = 2,
        max_backoff_seconds: int = _BACKOFF_CAP_SECONDS,
        busy_timeout: float = DEFAULT_BUSY_TIMEOUT,
    ) -> None:
        self._db = WebhookDB(db_path, busy_timeout)
        self._visibility_timeout = visibility_timeout
        self._max_receive_count = max_receive_count
        self._max_backoff = max_backoff_seconds

    def close(self) -> None:
        self._db.close()

    async def dispatch(self, item: PipelineItem) -> None:
        message = build_retry_message(item)
        now = _iso(datetime.now(UTC))
        try:
            self._db.execute(
                """INSERT INTO retry_messages
                   (message_id, body_json, enqueued_at, visible_at, receive_count)
                   VALUES (?, ?, ?, ?, 0)""",
                (uuid.uuid4().hex, message.model_dump_json(), now, now),
            )
        except sqlite3.Error as exc:
            raise DispatchError(f"Failed to enqueue retry for {item.key}: {exc}") from exc
        logger.info("Queued retry for %s", item.key)

    def receive(self, limit: int = 10) -> list[RetryDelivery]:
        """Claim up to ``limit`` visible messages.

        Raises:
            StorageError: If the queue database cannot be read or updated.
        """
        now = datetime.now(UTC)
        hidden_until = _iso(now + timedelta(seconds=self._visibility_timeout))
        delivered: list[dict[str, Any]] = []
        with self._storage_errors("receive"):
            with self._db.transaction() as conn:
                rows = conn.execute(
                    """SELECT message_id, body_json, enqueued_at, receive_count
                       FROM retry_messages
                       WHERE visible_at <= ? ORDER BY enqueued_at ASC LIMIT ?""",
                    (_iso(now), limit),
                ).fetchall()
                for row in rows:
                    if row["receive_count"] >= self._max_receive_count:
                        self._dead_letter(conn, row, now)
                        continue
                    conn.execute(
                        """UPDATE retry_messages
                           SET visible_at = ?, receive_count = receive_count + 1
                           WHERE message_id = ?""",
                        (hidden_until, row["message_id"]),
                    )
                    delivered.append(dict(row))
        return [
            RetryDelivery(
                batch_item_id=row["message_id"],
                message=RetryMessage.model_validate_json(row["body_json"]),
            )
            for row in delivered
        ]

    def ack(self, message_id: str) -> None:
        with self._storage_errors("ack"):
            self._db.execute("DELETE FROM retry_messages WHERE message_id = ?", (message_id,))

    def nack(self, message_id: str) -> None:
        """Make a message visible again after an exponential backoff."""
        with self._storage_errors("nack"):
            row = self._db.fetch_one(
                "SELECT receive_count FROM retry_messages WHERE message_id = ?",
                (message_id,),
            )
            if row is None:
                return
            delay = min(2 ** row["receive_count"], self._max_backoff)
            visible_at = _iso(datetime.now(UTC) + timedelta(seconds=delay))
            self._db.execute(
                "UPDATE retry_messages SET visible_at = ? WHERE message_id = ?",
                (visible_at, message_id),
            )

    def pending_count(self) -> int:
        with self._storage_errors("count"):
            row = self._db.fetch_one("SELECT COUNT(*) AS n FROM retry_messages")
        return row["n"] if row else 0

    def dead_letter_count(self) -> int:
        with self._storage_errors("count"):
            row = self._db.fetch_one("SELECT COUNT(*) AS n FROM dead_retry_messages")
        return row["n"] if row else 0

    def dead_letters(self, limit: int = 100) -> list[RetryDelivery]:
        """Return dead-lettered messages, oldest first."""
        with self._storage_errors("read dead letters"):
            rows = self._db.fetch_all(
                """SELECT message_id, body_json FROM dead_retry_messages
                   ORDER BY dead_at ASC LIMIT ?""",
                (limit,),
            )
        return [
            RetryDelivery(
                batch_item_id=row["message_id"],
                message=RetryMessage.model_validate_json(row["body_json"]),
            )
            for row in rows
        ]

    def _dead_letter(self, conn: sqlite3.Connection, row: sqlite3.Row, now: datetime) -> None:
        conn.execute(
            """INSERT OR REPLACE INTO dead_retry_messages
               (message_id, body_json, enqueued_at, dead_at, receive_count)
               VALUES (?, ?, ?, ?, ?)""",
            (row["message_id"], row["body_json"], row["enqueued_at"], _iso(now),
             row["receive_count"]),
        )
        conn.execute("DELETE FROM retry_messages WHERE message_id = ?", (row["message_id"],))
        logger.error(
            "Dead-lettered retry message %s after %d receives",
            row["message_id"], row["receive_count"],
        )

    @contextmanager
    def _storage_errors(self, action: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.Error as exc:
            raise StorageError(f"Retry queue {action} failed: {exc}") from exc


class HttpRetryDispatcher(RetryDispatcher):
    """Publishes retry messages to a remote queue endpoint over HTTP."""

    def __init__(
        self,
        queue_url: str,
        token: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._queue_url = queue_url
        self._token = token
        self._timeout = timeout
        self._transport = transport

    async def dispatch(self, item: PipelineItem) -> None:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        body = build_retry_message(item).model_dump(mode="json")

        try:
            async with httpx.AsyncClient(verify=True, transport=self._transport) as client:
                resp = await client.post(
                    self._queue_url, json=body, headers=headers, timeout=self._timeout,
                )
        except httpx.HTTPError as exc:
            raise DispatchError(f"Retry queue unavailable: {exc}") from exc

        if resp.status_code >= 400:
            raise DispatchError(
                f"Retry queue rejected message for {item.key}: HTTP {resp.status_code}"
            )
