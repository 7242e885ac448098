"""Shared Pydantic data models for serverless-webhook-client."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# --- Enums ---


class WebhookOrigin(str, Enum):
    BIGCOMMERCE = "bigcommerce"
    STRIPE = "stripe"


class WebhookStatus(str, Enum):
    """Persisted processing state of a captured webhook."""

    RECEIVED = "received"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    OPERATOR_REQUIRED = "operator_required"


class AuditEventType(str, Enum):
    WEBHOOK_CAPTURED = "webhook_captured"
    WEBHOOK_DUPLICATE = "webhook_duplicate"
    WEBHOOK_REJECTED = "webhook_rejected"
    WEBHOOK_PROCESSED = "webhook_processed"
    WEBHOOK_FAILED = "webhook_failed"
    WEBHOOK_RETRY_DISPATCHED = "webhook_retry_dispatched"
    WEBHOOK_ESCALATED = "webhook_escalated"
    SIGNATURE_FAILURE = "signature_failure"


class RiskLevel(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


# --- Webhook Models ---

WEBHOOK_PK_PREFIX = "WH#"
WEBHOOK_SORT_KEY = "WEBHOOK"


class WebhookKey(BaseModel):
    """Composite key identifying one webhook occurrence."""

    model_config = ConfigDict(frozen=True)

    partition_key: str = Field(min_length=1)
    sort_key: str = Field(min_length=1)

    def __str__(self) -> str:
        return f"{self.partition_key}/{self.sort_key}"


class WebhookRecord(BaseModel):
    """Immutable captured webhook."""

    model_config = ConfigDict(frozen=True)

    key: WebhookKey
    origin: WebhookOrigin
    event_type: str
    created_at: str  # ISO8601
    payload: dict[str, Any]


class WebhookStatusRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: WebhookKey
    status: WebhookStatus = WebhookStatus.RECEIVED
    retries: int = Field(default=0, ge=0)


class ChangeRecord(BaseModel):
    """One entry of the store change-feed, emitted when a webhook is captured."""

    model_config = ConfigDict(frozen=True)

    sequence: int = Field(ge=1)
    event_id: str
    record: WebhookRecord


class RetryMessage(BaseModel):
    """Message published to the retry channel for a failed webhook.

    ``record`` is denormalized so the consumer can rebuild the pipeline item
    without a second read; it may be omitted, in which case the record is
    re-read from the store.
    """

    model_config = ConfigDict(frozen=True)

    key: WebhookKey
    record: WebhookRecord | None = None
    reason: str | None = None
    retries: int = Field(default=0, ge=0)


# --- Audit Models ---


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class AuditEvent(BaseModel):
    timestamp: str = Field(default_factory=_now_iso)
    event_type: AuditEventType
    source_ip: str | None = None
    webhook_key: str | None = None
    action: str
    result: str  # "success" | "failure" | "duplicate" | "escalated"
    risk_level: RiskLevel
    details: dict[str, object] | None = None
