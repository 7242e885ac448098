"""Entry points that turn processing triggers into pipeline runs.

Processing is triggered from two places: the store change-feed (a webhook was
just captured) and the retry channel (a previous attempt failed). Both map
their input to PipelineItems, run one batch through the pipeline, and report
which batch items the transport must redeliver.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from src.models import ChangeRecord
from src.webhook.batch import BatchResultBuilder
from src.webhook.errors import StorageError
from src.webhook.models import BatchResult, PipelineItem, ProcessingTrigger, RetryDelivery

if TYPE_CHECKING:
    from src.store.base import WebhookStore
    from src.webhook.pipeline import ProcessingPipeline

logger = logging.getLogger(__name__)


def map_trigger(trigger: ProcessingTrigger) -> PipelineItem:
    return PipelineItem(
        key=trigger.key,
        record=trigger.stored_record,
        batch_item_id=trigger.batch_item_id,
    )


def map_change_record(change: ChangeRecord) -> PipelineItem:
    return PipelineItem(
        key=change.record.key,
        record=change.record,
        batch_item_id=change.event_id,
    )


async def map_retry_delivery(delivery: RetryDelivery, store: WebhookStore) -> PipelineItem | None:
    """Build an item from a retry message, re-reading the record if needed.

    Returns None when the record cannot be resolved; the caller reports the
    delivery as a batch failure.
    """
    message = delivery.message
    record = message.record
    if record is None:
        try:
            record = await store.get_record(message.key)
        except StorageError as exc:
            logger.error("Failed to re-read %s for retry: %s", message.key, exc)
            return None
    if record is None:
        logger.error("Retry message references unknown webhook %s", message.key)
        return None
    return PipelineItem(key=message.key, record=record, batch_item_id=delivery.batch_item_id)


class BatchProcessor:
    """Runs inbound batches through a pipeline and builds the batch report."""

    def __init__(self, pipeline: ProcessingPipeline, store: WebhookStore) -> None:
        self._pipeline = pipeline
        self._store = store
        self._results = BatchResultBuilder()

    async def process_items(
        self, items: Iterable[PipelineItem], unresolved: Iterable[str] = (),
    ) -> tuple[list[PipelineItem], BatchResult]:
        processed = await self._pipeline.run_batch(items)
        return processed, self._results.build(processed, extra_failures=unresolved)

    async def process_triggers(self, triggers: Iterable[ProcessingTrigger]) -> BatchResult:
        _, result = await self.process_items(map_trigger(t) for t in triggers)
        return result

    async def process_changes(self, changes: Iterable[ChangeRecord]) -> BatchResult:
        _, result = await self.process_items(map_change_record(c) for c in changes)
        return result

    async def process_retries(self, deliveries: Iterable[RetryDelivery]) -> BatchResult:
        items: list[PipelineItem] = []
        unresolved: list[str] = []
        for delivery in deliveries:
            item = await map_retry_delivery(delivery, self._store)
            if item is None:
                unresolved.append(delivery.batch_item_id)
            else:
                items.append(item)
        _, result = await self.process_items(items, unresolved)
        return result
