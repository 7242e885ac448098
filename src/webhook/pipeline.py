"""Webhook processing pipeline.

Each captured webhook runs through the same ordered stages:

1. validate: read the stored status, drop duplicates / escalated
2. mark_processing: CAS the status to processing (race losers -> duplicate)
3. do_work: call the injected business handler
4. finalize_status: record completed or failed
5. dispatch_retry: re-queue a failure, or escalate once retries run out
6. log_result: log and audit the outcome

Every stage always runs. Once an item carries a terminal stage status, the
remaining state-changing stages pass it through untouched, so a duplicate or
escalated webhook is still logged without re-triggering side effects.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import TYPE_CHECKING, Any

from src.models import AuditEventType, RiskLevel, WebhookRecord, WebhookStatus
from src.store.base import TransitionResult
from src.webhook import status_machine
from src.webhook.errors import DispatchError, StorageError
from src.webhook.models import PipelineItem
from src.webhook.status_machine import StageStatus

if TYPE_CHECKING:
    from src.audit.logger import AuditLogger
    from src.store.base import WebhookStore
    from src.webhook.dispatcher import RetryDispatcher

logger = logging.getLogger(__name__)

WorkHandler = Callable[[WebhookRecord], Any]


class ProcessingPipeline:
    """Runs pipeline items through the processing stages.

    Args:
        store: Status and record storage.
        handler: Business handler invoked for each webhook. Raising (or
            returning an exception) marks the attempt failed. Timeouts are
            the caller's concern.
        dispatcher: Retry channel for failed items.
        max_retries: Processing attempts allowed before escalating to
            operator_required.
        audit_logger: Optional audit trail.
    """

    def __init__(
        self,
        store: WebhookStore,
        handler: WorkHandler,
        dispatcher: RetryDispatcher,
        max_retries: int = status_machine.DEFAULT_MAX_RETRIES,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self._store = store
        self._handler = handler
        self._dispatcher = dispatcher
        self._max_retries = max_retries
        self._audit = audit_logger

    @property
    def stages(self) -> list[Callable[[PipelineItem], Awaitable[PipelineItem]]]:
        return [
            self.validate,
            self.mark_processing,
            self.do_work,
            self.finalize_status,
            self.dispatch_retry_or_escalate,
        ]

    async def run(self, item: PipelineItem) -> PipelineItem:
        """Run one item through every stage. Never raises for item faults."""
        try:
            for stage in self.stages:
                item = await stage(item)
        except Exception as exc:
            logger.exception("Unhandled fault processing %s", item.key)
            item = item.fail(f"unhandled fault: {exc!r}")
        return self.log_result(item)

    async def run_batch(self, items: Iterable[PipelineItem]) -> list[PipelineItem]:
        """Run independent items concurrently; one failure never affects another."""
        return list(await asyncio.gather(*(self.run(item) for item in items)))

    # --- Stages ---

    async def validate(self, item: PipelineItem) -> PipelineItem:
        item = item.evolve(stages=(*item.stages, "validate"))
        if item.is_terminal:
            return item

        try:
            status = await self._store.get_status(item.key)
        except StorageError as exc:
            logger.error("Failed to read status for %s: %s", item.key, exc)
            return item.fail(str(exc))

        if status is None:
            return item.fail(f"Invalid reference: webhook {item.key} was never captured")

        decision = status_machine.is_duplicate_or_blocked(status.status)
        logger.debug("Validated %s: stored=%s decision=%s", item.key, status.status.value, decision.value)
        return item.evolve(
            stage_status=decision,
            observed_status=status.status,
            retries=status.retries,
        )

    async def mark_processing(self, item: PipelineItem) -> PipelineItem:
        item = item.evolve(stages=(*item.stages, "mark_processing"))
        if item.is_terminal:
            return item

        observed = item.observed_status or WebhookStatus.RECEIVED
        from_expected, increment = status_machine.claim_transition(observed)
        try:
            result = await self._store.transition_status(
                item.key,
                WebhookStatus.PROCESSING,
                from_expected=from_expected,
                increment_retries=increment,
            )
        except StorageError as exc:
            logger.error("Failed to set %s to processing: %s", item.key, exc)
            return item.fail(str(exc))

        if result is TransitionResult.CONDITION_FAILED:
            logger.info("Lost processing race for %s; treating as duplicate", item.key)
            return item.evolve(stage_status=StageStatus.DUPLICATE)
        if result is TransitionResult.NOT_FOUND:
            return item.fail(f"Webhook {item.key} disappeared before processing")

        logger.info("Set webhook %s to processing", item.key)
        return item.evolve(
            claimed=True,
            observed_status=WebhookStatus.PROCESSING,
            retries=item.retries + 1 if increment else item.retries,
        )

    async def do_work(self, item: PipelineItem) -> PipelineItem:
        item = item.evolve(stages=(*item.stages, "do_work"))
        if item.is_terminal:
            return item

        try:
            outcome = self._handler(item.record)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as exc:
            logger.error("Failed to process webhook %s: %s", item.key, exc)
            return item.fail(f"work failed: {exc}")

        if isinstance(outcome, Exception):
            logger.error("Failed to process webhook %s: %s", item.key, outcome)
            return item.fail(f"work failed: {outcome}")

        logger.info("Processed webhook %s", item.key)
        return item

    async def finalize_status(self, item: PipelineItem) -> PipelineItem:
        item = item.evolve(stages=(*item.stages, "finalize_status"))
        if item.stage_status is StageStatus.CONTINUE:
            target = status_machine.next_on_success(WebhookStatus.PROCESSING)
        elif item.stage_status is StageStatus.FAILED and item.claimed:
            target = status_machine.next_on_failure(WebhookStatus.PROCESSING)
        else:
            return item

        try:
            result = await self._store.transition_status(
                item.key, target, from_expected=WebhookStatus.PROCESSING,
            )
        except StorageError as exc:
            logger.error("Failed to set final status %s for %s: %s", target.value, item.key, exc)
            return item.fail(item.error or str(exc))

        if result is not TransitionResult.APPLIED:
            logger.warning(
                "Final status %s for %s not applied: %s", target.value, item.key, result.value,
            )
            return item.evolve(
                stage_status=StageStatus.FAILED,
                claimed=False,
                error=item.error or f"status changed during processing ({result.value})",
            )

        logger.info("Set final webhook status for %s to %s", item.key, target.value)
        if target is WebhookStatus.COMPLETED:
            return item.evolve(stage_status=StageStatus.COMPLETED, observed_status=target)
        return item.evolve(observed_status=target)

    async def dispatch_retry_or_escalate(self, item: PipelineItem) -> PipelineItem:
        item = item.evolve(stages=(*item.stages, "dispatch_retry"))
        if item.stage_status is not StageStatus.FAILED:
            return item

        try:
            status = await self._store.get_status(item.key)
        except StorageError as exc:
            logger.error("Cannot read retries for %s: %s", item.key, exc)
            return item
        if status is None:
            return item

        if status.status is WebhookStatus.OPERATOR_REQUIRED:
            return item.evolve(stage_status=StageStatus.OPERATOR_REQUIRED)
        if status.status is WebhookStatus.COMPLETED:
            return item.evolve(stage_status=StageStatus.DUPLICATE)
        if status.status is WebhookStatus.PROCESSING:
            # Someone else owns it, or our failed write never landed
            if item.claimed:
                return item
            return item.evolve(stage_status=StageStatus.DUPLICATE)

        item = item.evolve(retries=status.retries)
        if status_machine.should_escalate(status.retries, self._max_retries):
            return await self._escalate(item)

        try:
            await self._dispatcher.dispatch(item)
        except DispatchError as exc:
            logger.error("Failed to dispatch retry for %s: %s", item.key, exc)
            return item.evolve(error=f"{item.error}; dispatch failed: {exc}")

        logger.info("Dispatched retry for %s (retries=%d)", item.key, status.retries)
        if self._audit:
            self._audit.record(
                AuditEventType.WEBHOOK_RETRY_DISPATCHED, item.key,
                action="dispatch_retry", result="success",
                retries=status.retries, reason=item.error,
            )
        return item.evolve(redispatched=True)

    async def _escalate(self, item: PipelineItem) -> PipelineItem:
        try:
            result = await self._store.transition_status(item.key, WebhookStatus.OPERATOR_REQUIRED)
        except StorageError as exc:
            logger.error("Failed to escalate %s: %s", item.key, exc)
            return item

        if result is not TransitionResult.APPLIED:
            return item

        logger.warning(
            "Webhook %s escalated to operator_required after %d attempts",
            item.key, item.retries + 1,
        )
        if self._audit:
            self._audit.record(
                AuditEventType.WEBHOOK_ESCALATED, item.key,
                action="escalate", result="escalated",
                risk_level=RiskLevel.HIGH,
                retries=item.retries, reason=item.error,
            )
        return item.evolve(
            stage_status=StageStatus.OPERATOR_REQUIRED,
            observed_status=WebhookStatus.OPERATOR_REQUIRED,
        )

    def log_result(self, item: PipelineItem) -> PipelineItem:
        item = item.evolve(stages=(*item.stages, "log_result"))
        if item.stage_status is StageStatus.FAILED:
            logger.error(
                "Webhook processing failed: key=%s redispatched=%s error=%s",
                item.key, item.redispatched, item.error,
            )
        else:
            logger.info(
                "Webhook processing result: key=%s status=%s",
                item.key, item.stage_status.value,
            )

        if self._audit and item.stage_status in (StageStatus.COMPLETED, StageStatus.FAILED):
            completed = item.stage_status is StageStatus.COMPLETED
            self._audit.record(
                AuditEventType.WEBHOOK_PROCESSED if completed else AuditEventType.WEBHOOK_FAILED,
                item.key,
                action="process",
                result="success" if completed else "failure",
                risk_level=RiskLevel.INFO if completed else RiskLevel.MEDIUM,
                batch_item_id=item.batch_item_id,
                retries=item.retries,
                redispatched=item.redispatched,
                error=item.error,
            )
        return item
