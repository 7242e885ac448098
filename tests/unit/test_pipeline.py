"""Tests for the webhook processing pipeline."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.models import AuditEventType, WebhookStatus, WebhookStatusRecord
from src.store.memory import InMemoryWebhookStore
from src.webhook.dispatcher import InMemoryRetryQueue
from src.webhook.errors import DispatchError, StorageError, WorkError
from src.webhook.models import PipelineItem
from src.webhook.pipeline import ProcessingPipeline
from src.webhook.status_machine import StageStatus
from tests.conftest import make_item, make_key, make_record

_ALL_STAGES = (
    "validate",
    "mark_processing",
    "do_work",
    "finalize_status",
    "dispatch_retry",
    "log_result",
)


async def _ok(record) -> None:
    return None


async def _boom(record) -> None:
    raise WorkError("downstream unavailable")


async def _seed(
    store: InMemoryWebhookStore,
    webhook_id: str = "abc",
    status: WebhookStatus = WebhookStatus.RECEIVED,
    retries: int = 0,
) -> None:
    record = make_record(webhook_id)
    await store.put_new(
        record, WebhookStatusRecord(key=record.key, status=status, retries=retries),
    )


def _pipeline(store, handler=_ok, dispatcher=None, **kwargs) -> ProcessingPipeline:
    return ProcessingPipeline(
        store=store,
        handler=handler,
        dispatcher=dispatcher or InMemoryRetryQueue(),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_success_completes_webhook(memory_store: InMemoryWebhookStore) -> None:
    await _seed(memory_store)

    item = await _pipeline(memory_store).run(make_item())

    assert item.stage_status is StageStatus.COMPLETED
    assert item.stages == _ALL_STAGES
    status = await memory_store.get_status(make_key())
    assert status.status is WebhookStatus.COMPLETED
    assert status.retries == 0


@pytest.mark.asyncio
async def test_sync_handler_is_supported(memory_store: InMemoryWebhookStore) -> None:
    await _seed(memory_store)
    seen = []

    item = await _pipeline(memory_store, handler=seen.append).run(make_item())

    assert item.stage_status is StageStatus.COMPLETED
    assert [r.key for r in seen] == [make_key()]


@pytest.mark.asyncio
async def test_failure_marks_failed_and_dispatches(
    memory_store: InMemoryWebhookStore, retry_queue: InMemoryRetryQueue,
) -> None:
    await _seed(memory_store)

    item = await _pipeline(memory_store, _boom, retry_queue).run(make_item())

    assert item.stage_status is StageStatus.FAILED
    assert item.redispatched
    assert "downstream unavailable" in item.error
    assert (await memory_store.get_status(make_key())).status is WebhookStatus.FAILED
    [delivery] = retry_queue.drain()
    assert delivery.message.key == make_key()
    assert delivery.message.record == make_record()


@pytest.mark.asyncio
async def test_returned_exception_counts_as_failure(memory_store: InMemoryWebhookStore) -> None:
    await _seed(memory_store)

    item = await _pipeline(memory_store, handler=lambda r: ValueError("bad")).run(make_item())

    assert item.stage_status is StageStatus.FAILED
    assert (await memory_store.get_status(make_key())).status is WebhookStatus.FAILED


@pytest.mark.parametrize(
    ("stored", "expected"),
    [
        (WebhookStatus.PROCESSING, StageStatus.DUPLICATE),
        (WebhookStatus.COMPLETED, StageStatus.DUPLICATE),
        (WebhookStatus.OPERATOR_REQUIRED, StageStatus.OPERATOR_REQUIRED),
    ],
)
@pytest.mark.asyncio
async def test_blocked_statuses_skip_work(
    memory_store: InMemoryWebhookStore, stored: WebhookStatus, expected: StageStatus,
) -> None:
    await _seed(memory_store, status=stored)
    handler = AsyncMock()
    queue = InMemoryRetryQueue()

    item = await _pipeline(memory_store, handler, queue).run(make_item())

    assert item.stage_status is expected
    assert item.stages == _ALL_STAGES
    handler.assert_not_awaited()
    assert queue.qsize() == 0
    assert (await memory_store.get_status(make_key())).status is stored


@pytest.mark.asyncio
async def test_never_captured_webhook_fails_without_dispatch(
    memory_store: InMemoryWebhookStore, retry_queue: InMemoryRetryQueue,
) -> None:
    handler = AsyncMock()

    item = await _pipeline(memory_store, handler, retry_queue).run(make_item("ghost"))

    assert item.stage_status is StageStatus.FAILED
    assert "Invalid reference" in item.error
    assert not item.redispatched
    handler.assert_not_awaited()
    assert retry_queue.qsize() == 0


@pytest.mark.asyncio
async def test_racing_items_have_single_winner(memory_store: InMemoryWebhookStore) -> None:
    await _seed(memory_store)
    pipeline = _pipeline(memory_store)
    a = make_item(batch_item_id="a")
    b = make_item(batch_item_id="b")

    a = await pipeline.validate(a)
    b = await pipeline.validate(b)
    assert a.stage_status is StageStatus.CONTINUE
    assert b.stage_status is StageStatus.CONTINUE

    a = await pipeline.mark_processing(a)
    b = await pipeline.mark_processing(b)

    assert a.claimed
    assert a.stage_status is StageStatus.CONTINUE
    assert not b.claimed
    assert b.stage_status is StageStatus.DUPLICATE


@pytest.mark.asyncio
async def test_concurrent_batch_processes_once(memory_store: InMemoryWebhookStore) -> None:
    await _seed(memory_store)
    handler = AsyncMock(return_value=None)

    items = await _pipeline(memory_store, handler).run_batch(
        [make_item(batch_item_id=str(i)) for i in range(4)],
    )

    statuses = sorted(i.stage_status.value for i in items)
    assert statuses == ["completed", "duplicate", "duplicate", "duplicate"]
    handler.assert_awaited_once()


@pytest.mark.asyncio
async def test_retry_is_counted_and_escalates_after_max_attempts(
    memory_store: InMemoryWebhookStore, retry_queue: InMemoryRetryQueue,
    mock_audit_logger: MagicMock,
) -> None:
    await _seed(memory_store)
    pipeline = _pipeline(
        memory_store, _boom, retry_queue, max_retries=3, audit_logger=mock_audit_logger,
    )

    first = await pipeline.run(make_item())
    assert first.redispatched
    assert (await memory_store.get_status(make_key())).retries == 0

    second = await pipeline.run(make_item())
    assert second.redispatched
    assert (await memory_store.get_status(make_key())).retries == 1

    third = await pipeline.run(make_item())
    assert third.stage_status is StageStatus.OPERATOR_REQUIRED
    assert not third.redispatched

    status = await memory_store.get_status(make_key())
    assert status.status is WebhookStatus.OPERATOR_REQUIRED
    assert status.retries == 2
    assert retry_queue.qsize() == 2

    escalations = [
        c for c in mock_audit_logger.record.call_args_list
        if c.args[0] is AuditEventType.WEBHOOK_ESCALATED
    ]
    assert len(escalations) == 1


@pytest.mark.asyncio
async def test_escalated_webhook_is_not_reprocessed(memory_store: InMemoryWebhookStore) -> None:
    await _seed(memory_store)
    pipeline = _pipeline(memory_store, _boom, max_retries=1)

    first = await pipeline.run(make_item())
    assert first.stage_status is StageStatus.OPERATOR_REQUIRED

    handler = AsyncMock()
    again = await _pipeline(memory_store, handler).run(make_item())
    assert again.stage_status is StageStatus.OPERATOR_REQUIRED
    handler.assert_not_awaited()


@pytest.mark.asyncio
async def test_retry_from_failed_increments_retries(memory_store: InMemoryWebhookStore) -> None:
    await _seed(memory_store, status=WebhookStatus.FAILED, retries=0)

    item = await _pipeline(memory_store).run(make_item())

    assert item.stage_status is StageStatus.COMPLETED
    assert item.retries == 1
    assert (await memory_store.get_status(make_key())).retries == 1


@pytest.mark.asyncio
async def test_dispatch_failure_leaves_item_failed(memory_store: InMemoryWebhookStore) -> None:
    await _seed(memory_store)
    dispatcher = MagicMock()
    dispatcher.dispatch = AsyncMock(side_effect=DispatchError("queue down"))

    item = await _pipeline(memory_store, _boom, dispatcher).run(make_item())

    assert item.stage_status is StageStatus.FAILED
    assert not item.redispatched
    assert "dispatch failed" in item.error
    assert (await memory_store.get_status(make_key())).status is WebhookStatus.FAILED


@pytest.mark.asyncio
async def test_unhandled_fault_is_contained(memory_store: InMemoryWebhookStore) -> None:
    store = MagicMock(wraps=memory_store)
    store.get_status = AsyncMock(side_effect=RuntimeError("driver bug"))

    item = await _pipeline(store).run(make_item())

    assert item.stage_status is StageStatus.FAILED
    assert "unhandled fault" in item.error
    assert item.stages[-1] == "log_result"


@pytest.mark.asyncio
async def test_storage_error_on_validate_fails_item() -> None:
    store = MagicMock()
    store.get_status = AsyncMock(side_effect=StorageError("timeout"))
    handler = AsyncMock()

    item = await _pipeline(store, handler).run(make_item())

    assert item.stage_status is StageStatus.FAILED
    assert not item.redispatched
    handler.assert_not_awaited()


@pytest.mark.asyncio
async def test_terminal_item_passes_through_stages(memory_store: InMemoryWebhookStore) -> None:
    await _seed(memory_store)
    pipeline = _pipeline(memory_store)
    item = make_item(stage_status=StageStatus.DUPLICATE)

    for stage in pipeline.stages:
        item = await stage(item)

    assert item.stage_status is StageStatus.DUPLICATE
    assert (await memory_store.get_status(make_key())).status is WebhookStatus.RECEIVED


@pytest.mark.asyncio
async def test_failure_does_not_clobber_other_owner(memory_store: InMemoryWebhookStore) -> None:
    await _seed(memory_store, status=WebhookStatus.PROCESSING)
    pipeline = _pipeline(memory_store)
    item = PipelineItem(key=make_key(), record=make_record(), batch_item_id="x").fail("oops")

    item = await pipeline.finalize_status(item)
    item = await pipeline.dispatch_retry_or_escalate(item)

    assert item.stage_status is StageStatus.DUPLICATE
    assert (await memory_store.get_status(make_key())).status is WebhookStatus.PROCESSING


@pytest.mark.asyncio
async def test_log_result_audits_completion(
    memory_store: InMemoryWebhookStore, mock_audit_logger: MagicMock,
) -> None:
    await _seed(memory_store)

    await _pipeline(memory_store, audit_logger=mock_audit_logger).run(make_item())

    mock_audit_logger.record.assert_called_once()
    assert mock_audit_logger.record.call_args.args[0] is AuditEventType.WEBHOOK_PROCESSED


def test_max_retries_must_be_positive(memory_store: InMemoryWebhookStore) -> None:
    with pytest.raises(ValueError):
        _pipeline(memory_store, max_retries=0)
