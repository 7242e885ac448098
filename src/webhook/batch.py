"""Partial-batch failure reporting."""

from __future__ import annotations

from collections.abc import Iterable

from src.webhook.models import BatchResult, PipelineItem
from src.webhook.status_machine import StageStatus


class BatchResultBuilder:
    """Aggregates per-item outcomes into a ``retry_item_ids`` report.

    Only items that are still stuck are reported: failed items whose retry
    could not be dispatched, and items that hit an unhandled fault. Duplicate,
    escalated, completed and successfully redispatched items count as
    delivered, so the upstream transport does not redeliver them.
    """

    @staticmethod
    def needs_redelivery(item: PipelineItem) -> bool:
        return item.stage_status is StageStatus.FAILED and not item.redispatched

    def build(self, items: Iterable[PipelineItem], extra_failures: Iterable[str] = ()) -> BatchResult:
        retry_ids = [item.batch_item_id for item in items if self.needs_redelivery(item)]
        retry_ids.extend(extra_failures)
        return BatchResult(retry_item_ids=retry_ids)
