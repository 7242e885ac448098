"""Data models for the webhook processing pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field, replace

from pydantic import BaseModel, ConfigDict

from src.models import RetryMessage, WebhookKey, WebhookRecord, WebhookStatus
from src.webhook.status_machine import StageStatus


@dataclass(frozen=True)
class PipelineItem:
    """One webhook moving through the processing stages.

    Transient: built per processing trigger and discarded once the batch
    result is built. Stages return updated copies via :meth:`evolve`.
    """

    key: WebhookKey
    record: WebhookRecord
    batch_item_id: str
    stage_status: StageStatus = StageStatus.CONTINUE
    observed_status: WebhookStatus | None = None
    claimed: bool = False  # this run moved the status to processing
    retries: int = 0
    redispatched: bool = False
    error: str | None = None
    stages: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_terminal(self) -> bool:
        return self.stage_status.is_terminal

    def evolve(self, **changes: object) -> PipelineItem:
        return replace(self, **changes)  # type: ignore[arg-type]

    def fail(self, error: str) -> PipelineItem:
        return replace(self, stage_status=StageStatus.FAILED, error=error)


class ProcessingTrigger(BaseModel):
    """One entry of an inbound processing batch."""

    model_config = ConfigDict(frozen=True)

    batch_item_id: str
    key: WebhookKey
    stored_record: WebhookRecord


class RetryDelivery(BaseModel):
    """A retry message as delivered by the retry channel."""

    model_config = ConfigDict(frozen=True)

    batch_item_id: str
    message: RetryMessage


class BatchResult(BaseModel):
    """Partial-batch-failure report: only these items should be redelivered."""

    retry_item_ids: list[str]
