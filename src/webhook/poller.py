"""Background consumers that feed the processing pipeline.

ChangeFeedPoller reads newly captured webhooks from the store change-feed;
RetryQueueWorker drains the durable retry queue. Both deliver at least once:
batch items reported in ``retry_item_ids`` are offered again on a later poll.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from src.webhook.errors import StorageError
from src.webhook.models import BatchResult

if TYPE_CHECKING:
    from src.models import ChangeRecord
    from src.store.base import WebhookStore
    from src.webhook.dispatcher import SQLiteRetryQueue
    from src.webhook.triggers import BatchProcessor

logger = logging.getLogger(__name__)


class _PollLoop(ABC):
    def __init__(self, interval_seconds: float) -> None:
        self._interval = interval_seconds
        self._stopping = asyncio.Event()

    @abstractmethod
    async def poll_once(self) -> BatchResult:
        """Process one batch and report the items that need redelivery."""
        ...

    async def run_forever(self) -> None:
        """Poll until :meth:`stop` is called."""
        while not self._stopping.is_set():
            try:
                result = await self.poll_once()
                if result.retry_item_ids:
                    logger.warning("%d batch item(s) need redelivery", len(result.retry_item_ids))
            except StorageError as exc:
                logger.error("Poll failed: %s", exc)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)
            except TimeoutError:
                pass

    def stop(self) -> None:
        self._stopping.set()


class ChangeFeedPoller(_PollLoop):
    """Feeds captured webhooks from the store change-feed to the pipeline."""

    def __init__(
        self,
        store: WebhookStore,
        processor: BatchProcessor,
        batch_size: int = 10,
        interval_seconds: float = 5.0,
        after_sequence: int = 0,
    ) -> None:
        super().__init__(interval_seconds)
        self._store = store
        self._processor = processor
        self._batch_size = batch_size
        self.cursor = after_sequence
        self._redeliver: dict[str, ChangeRecord] = {}

    async def poll_once(self) -> BatchResult:
        changes = list(self._redeliver.values())
        changes += await self._store.read_changes(self.cursor, self._batch_size)
        if not changes:
            return BatchResult(retry_item_ids=[])

        result = await self._processor.process_changes(changes)
        self.cursor = max(self.cursor, *(c.sequence for c in changes))
        failed = set(result.retry_item_ids)
        self._redeliver = {c.event_id: c for c in changes if c.event_id in failed}
        logger.info(
            "Processed %d change(s) up to sequence %d; %d to redeliver",
            len(changes), self.cursor, len(self._redeliver),
        )
        return result


class RetryQueueWorker(_PollLoop):
    """Drains the SQLite retry queue, acking delivered items."""

    def __init__(
        self,
        queue: SQLiteRetryQueue,
        processor: BatchProcessor,
        batch_size: int = 10,
        interval_seconds: float = 5.0,
    ) -> None:
        super().__init__(interval_seconds)
        self._queue = queue
        self._processor = processor
        self._batch_size = batch_size

    async def poll_once(self) -> BatchResult:
        deliveries = self._queue.receive(self._batch_size)
        if not deliveries:
            return BatchResult(retry_item_ids=[])

        result = await self._processor.process_retries(deliveries)
        failed = set(result.retry_item_ids)
        for delivery in deliveries:
            if delivery.batch_item_id in failed:
                self._queue.nack(delivery.batch_item_id)
            else:
                self._queue.ack(delivery.batch_item_id)
        logger.info("Processed %d retry message(s); %d nacked", len(deliveries), len(failed))
        return result
