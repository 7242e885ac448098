"""In-process WebhookStore for tests and single-worker deployments."""

from __future__ import annotations

import uuid

from src.models import ChangeRecord, WebhookKey, WebhookRecord, WebhookStatus, WebhookStatusRecord
from src.store.base import PutResult, TransitionResult, WebhookStore


class InMemoryWebhookStore(WebhookStore):
    """Dict-backed store.

    Methods never suspend between reading and writing a status, so each
    ``transition_status`` call is atomic with respect to other coroutines on
    the same event loop.
    """

    def __init__(self) -> None:
        self._records: dict[WebhookKey, WebhookRecord] = {}
        self._statuses: dict[WebhookKey, WebhookStatusRecord] = {}
        self._changes: list[ChangeRecord] = []

    async def get_status(self, key: WebhookKey) -> WebhookStatusRecord | None:
        return self._statuses.get(key)

    async def get_record(self, key: WebhookKey) -> WebhookRecord | None:
        return self._records.get(key)

    async def put_new(self, record: WebhookRecord, status: WebhookStatusRecord) -> PutResult:
        if record.key in self._records or record.key in self._statuses:
            return PutResult.ALREADY_EXISTS
        self._records[record.key] = record
        self._statuses[record.key] = status
        self._changes.append(ChangeRecord(
            sequence=len(self._changes) + 1,
            event_id=uuid.uuid4().hex,
            record=record,
        ))
        return PutResult.CREATED

    async def transition_status(
        self,
        key: WebhookKey,
        to: WebhookStatus,
        from_expected: WebhookStatus | None = None,
        increment_retries: bool = False,
    ) -> TransitionResult:
        current = self._statuses.get(key)
        if current is None:
            return TransitionResult.NOT_FOUND
        if from_expected is not None and current.status is not from_expected:
            return TransitionResult.CONDITION_FAILED
        retries = current.retries + 1 if increment_retries else current.retries
        self._statuses[key] = current.model_copy(update={"status": to, "retries": retries})
        return TransitionResult.APPLIED

    async def read_changes(self, after_sequence: int = 0, limit: int = 100) -> list[ChangeRecord]:
        return self._changes[after_sequence:after_sequence + limit]

    async def list_by_status(self, status: WebhookStatus, limit: int = 100) -> list[WebhookStatusRecord]:
        return [s for s in self._statuses.values() if s.status is status][:limit]
