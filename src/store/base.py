"""WebhookStore interface.

A store keeps two logical records per key: the immutable WebhookRecord and the
mutable WebhookStatusRecord. All status mutation goes through
``transition_status``, a compare-and-swap on the stored status; it is the only
concurrency control the pipeline relies on.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum

from src.models import ChangeRecord, WebhookKey, WebhookRecord, WebhookStatus, WebhookStatusRecord


class PutResult(str, Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"


class TransitionResult(str, Enum):
    APPLIED = "applied"
    CONDITION_FAILED = "condition_failed"
    NOT_FOUND = "not_found"


class WebhookStore(ABC):
    """Durable key-value storage for captured webhooks.

    Implementations raise ``StorageError`` for I/O failures; races and missing
    keys are reported through result values instead.
    """

    @abstractmethod
    async def get_status(self, key: WebhookKey) -> WebhookStatusRecord | None:
        """Strongly consistent read of the status record."""
        ...

    @abstractmethod
    async def get_record(self, key: WebhookKey) -> WebhookRecord | None:
        ...

    @abstractmethod
    async def put_new(self, record: WebhookRecord, status: WebhookStatusRecord) -> PutResult:
        """Atomically create the record and its initial status.

        Never overwrites: an existing key yields ``PutResult.ALREADY_EXISTS``.
        """
        ...

    @abstractmethod
    async def transition_status(
        self,
        key: WebhookKey,
        to: WebhookStatus,
        from_expected: WebhookStatus | None = None,
        increment_retries: bool = False,
    ) -> TransitionResult:
        """Conditionally set the status.

        Applies only if the stored status equals ``from_expected`` (or always
        when it is None).
        """
        ...

    @abstractmethod
    async def read_changes(self, after_sequence: int = 0, limit: int = 100) -> list[ChangeRecord]:
        """Return captured-webhook changes with ``sequence > after_sequence``."""
        ...

    @abstractmethod
    async def list_by_status(self, status: WebhookStatus, limit: int = 100) -> list[WebhookStatusRecord]:
        ...

    def close(self) -> None:  # noqa: B027
        """Release any held resources."""
