"""Shared test fixtures for serverless-webhook-client."""

from __future__ import annotations

from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from src.audit.logger import AuditLogger
from src.models import (
    AuditEvent,
    AuditEventType,
    RiskLevel,
    WebhookKey,
    WebhookOrigin,
    WebhookRecord,
)
from src.store.memory import InMemoryWebhookStore
from src.store.sqlite import SQLiteWebhookStore
from src.webhook.dispatcher import InMemoryRetryQueue
from src.webhook.models import PipelineItem


@pytest.fixture
def memory_store() -> InMemoryWebhookStore:
    return InMemoryWebhookStore()


@pytest.fixture
def webhook_db_path(tmp_path: Path) -> str:
    """Temporary database path for SQLite-backed tests."""
    return str(tmp_path / "webhooks.db")


@pytest.fixture
def sqlite_store(webhook_db_path: str):
    store = SQLiteWebhookStore(webhook_db_path)
    yield store
    store.close()


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request: pytest.FixtureRequest, tmp_path: Path):
    """Each WebhookStore implementation in turn."""
    if request.param == "memory":
        yield InMemoryWebhookStore()
        return
    store = SQLiteWebhookStore(str(tmp_path / "param-webhooks.db"))
    yield store
    store.close()


@pytest.fixture
def retry_queue() -> InMemoryRetryQueue:
    return InMemoryRetryQueue()


@pytest.fixture
def mock_audit_logger() -> MagicMock:
    return MagicMock(spec=AuditLogger)


# --- Factory functions for test data ---


def make_bigcommerce_payload(**kwargs: Any) -> dict[str, Any]:
    """Factory for a BigCommerce webhook payload with sensible defaults."""
    defaults: dict[str, Any] = {
        "hash": "abc",
        "scope": "store/order/created",
        "created_at": 1700000000,
        "store_id": "1025646",
        "producer": "stores/abc123",
        "data": {"type": "order", "id": 250},
    }
    defaults.update(kwargs)
    return defaults


def make_stripe_payload(**kwargs: Any) -> dict[str, Any]:
    """Factory for a Stripe event payload with sensible defaults."""
    defaults: dict[str, Any] = {
        "id": "evt_1NG8Du2eZvKYlo2CUI79vXWy",
        "object": "event",
        "type": "payment_intent.succeeded",
        "created": 1700000100,
        "data": {"object": {"id": "pi_123", "amount": 2000}},
    }
    defaults.update(kwargs)
    return defaults


def make_key(webhook_id: str = "abc") -> WebhookKey:
    return WebhookKey(partition_key=f"WH#{webhook_id}", sort_key="WEBHOOK")


def make_record(webhook_id: str = "abc", **kwargs: Any) -> WebhookRecord:
    """Factory for WebhookRecord with sensible defaults."""
    defaults: dict[str, Any] = {
        "key": make_key(webhook_id),
        "origin": WebhookOrigin.BIGCOMMERCE,
        "event_type": "store/order/created",
        "created_at": "2023-11-14T22:13:20+00:00",
        "payload": make_bigcommerce_payload(hash=webhook_id),
    }
    defaults.update(kwargs)
    return WebhookRecord(**defaults)


def make_item(webhook_id: str = "abc", batch_item_id: str | None = None, **kwargs: Any) -> PipelineItem:
    """Factory for PipelineItem with sensible defaults."""
    record = make_record(webhook_id)
    defaults: dict[str, Any] = {
        "key": record.key,
        "record": record,
        "batch_item_id": batch_item_id or f"batch-{webhook_id}",
    }
    defaults.update(kwargs)
    return PipelineItem(**defaults)


def make_audit_event(**kwargs: Any) -> AuditEvent:
    """Factory for AuditEvent with sensible defaults."""
    defaults: dict[str, object] = {
        "event_type": AuditEventType.WEBHOOK_CAPTURED,
        "action": "capture",
        "result": "success",
        "risk_level": RiskLevel.INFO,
    }
    defaults.update(kwargs)
    return AuditEvent(**defaults)  # type: ignore[arg-type]
