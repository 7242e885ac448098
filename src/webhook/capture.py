"""Idempotent webhook capture.

Providers retry on any non-2xx response, so the same webhook may arrive many
times. Capture writes it at most once per composite key and reports repeats
as duplicates rather than errors.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from src.models import AuditEventType, RiskLevel, WebhookKey, WebhookOrigin, WebhookStatusRecord
from src.store.base import PutResult
from src.webhook.errors import StorageError, ValidationError
from src.webhook.origins import get_adapter

if TYPE_CHECKING:
    from src.audit.logger import AuditLogger
    from src.store.base import WebhookStore

logger = logging.getLogger(__name__)

DUPLICATE_MESSAGE = (
    "Unable to process webhook: Duplicate Received, either the webhook is "
    "already being processed or has been completed."
)


class CaptureResult(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


@dataclass(frozen=True)
class CaptureOutcome:
    """Result of a capture call.

    ``retryable`` is only meaningful for rejections: True when the provider
    should redeliver later (storage failure), False when the request can
    never succeed (validation failure).
    """

    result: CaptureResult
    key: WebhookKey | None = None
    reason: str | None = None
    retryable: bool = False

    @property
    def accepted(self) -> bool:
        """True for outcomes the provider should treat as delivered."""
        return self.result is not CaptureResult.REJECTED


class CaptureService:
    """Dedupe-check and durable write of inbound webhooks."""

    def __init__(self, store: WebhookStore, audit_logger: AuditLogger | None = None) -> None:
        self._store = store
        self._audit = audit_logger

    async def capture(self, origin: str | WebhookOrigin, payload: dict[str, Any]) -> CaptureOutcome:
        origin_name = origin.value if isinstance(origin, WebhookOrigin) else origin
        try:
            adapter = get_adapter(origin)
            key = adapter.derive_key(payload)
        except ValidationError as exc:
            return self._rejected(None, str(exc), retryable=False, origin=origin_name)

        try:
            existing = await self._store.get_status(key)
            if existing is not None:
                return self._duplicate(key, existing.status.value)

            record = adapter.normalize(payload)
            put = await self._store.put_new(record, WebhookStatusRecord(key=key))
        except ValidationError as exc:
            return self._rejected(key, str(exc), retryable=False, origin=origin_name)
        except StorageError as exc:
            logger.error("Storage failure capturing %s: %s", key, exc)
            return self._rejected(key, str(exc), retryable=True, origin=origin_name)

        if put is PutResult.ALREADY_EXISTS:
            # Another delivery won the race between the status check and the write
            return self._duplicate(key, "race")

        logger.info("Captured webhook %s (%s %s)", key, record.origin.value, record.event_type)
        if self._audit:
            self._audit.record(
                AuditEventType.WEBHOOK_CAPTURED, key,
                action="capture", result="success",
                origin=record.origin.value, webhook_event_type=record.event_type,
            )
        return CaptureOutcome(result=CaptureResult.ACCEPTED, key=key)

    def _duplicate(self, key: WebhookKey, observed: str) -> CaptureOutcome:
        logger.info("Duplicate webhook %s ignored (%s)", key, observed)
        if self._audit:
            self._audit.record(
                AuditEventType.WEBHOOK_DUPLICATE, key,
                action="capture", result="duplicate", observed=observed,
            )
        return CaptureOutcome(result=CaptureResult.DUPLICATE, key=key, reason=DUPLICATE_MESSAGE)

    def _rejected(
        self, key: WebhookKey | None, reason: str, retryable: bool, origin: str,
    ) -> CaptureOutcome:
        logger.warning("Rejected webhook from %s: %s", origin, reason)
        if self._audit:
            self._audit.record(
                AuditEventType.WEBHOOK_REJECTED, key,
                action="capture", result="failure",
                risk_level=RiskLevel.MEDIUM if retryable else RiskLevel.LOW,
                origin=origin, reason=reason,
            )
        return CaptureOutcome(
            result=CaptureResult.REJECTED, key=key, reason=reason, retryable=retryable,
        )
