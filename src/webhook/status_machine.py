"""Webhook status state machine.

Pure decision functions with no I/O. Every status write performed by the
processing pipeline is decided here:

    received          -> processing           (first attempt)
    failed            -> processing           (retry, increments retries)
    processing        -> completed | failed
    any               -> operator_required    (escalation, terminal)
"""

from __future__ import annotations

from enum import Enum

from src.models import WebhookStatus
from src.webhook.errors import IllegalTransitionError

DEFAULT_MAX_RETRIES = 3


class StageStatus(str, Enum):
    """Outcome carried by a pipeline item between stages."""

    CONTINUE = "continue"
    DUPLICATE = "duplicate"
    OPERATOR_REQUIRED = "operator_required"
    FAILED = "failed"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self is not StageStatus.CONTINUE


_LEGAL_TRANSITIONS: dict[WebhookStatus, frozenset[WebhookStatus]] = {
    WebhookStatus.RECEIVED: frozenset({WebhookStatus.PROCESSING}),
    WebhookStatus.PROCESSING: frozenset({WebhookStatus.COMPLETED, WebhookStatus.FAILED}),
    WebhookStatus.FAILED: frozenset({WebhookStatus.PROCESSING}),
    WebhookStatus.COMPLETED: frozenset(),
    WebhookStatus.OPERATOR_REQUIRED: frozenset(),
}


def is_legal_transition(current: WebhookStatus, target: WebhookStatus) -> bool:
    # operator_required may be entered from anywhere but never left
    if target is WebhookStatus.OPERATOR_REQUIRED:
        return current is not WebhookStatus.OPERATOR_REQUIRED
    return target in _LEGAL_TRANSITIONS[current]


def check_transition(current: WebhookStatus, target: WebhookStatus) -> WebhookStatus:
    """Return ``target`` if the transition is legal.

    Raises:
        IllegalTransitionError: If ``current -> target`` is not allowed.
    """
    if not is_legal_transition(current, target):
        raise IllegalTransitionError(current.value, target.value)
    return target


def is_duplicate_or_blocked(status: WebhookStatus) -> StageStatus:
    """Decide whether a stored status may be (re)processed."""
    if status in (WebhookStatus.PROCESSING, WebhookStatus.COMPLETED):
        return StageStatus.DUPLICATE
    if status is WebhookStatus.OPERATOR_REQUIRED:
        return StageStatus.OPERATOR_REQUIRED
    return StageStatus.CONTINUE


def claim_transition(current: WebhookStatus) -> tuple[WebhookStatus, bool]:
    """Return ``(from_expected, increment_retries)`` for entering processing.

    Only a first attempt (from received) or a retry (from failed) can claim a
    webhook; retries are counted only for the latter.
    """
    check_transition(current, WebhookStatus.PROCESSING)
    return current, current is WebhookStatus.FAILED


def next_on_success(current: WebhookStatus) -> WebhookStatus:
    return check_transition(current, WebhookStatus.COMPLETED)


def next_on_failure(current: WebhookStatus) -> WebhookStatus:
    """Always ``failed``; escalation is decided by :func:`should_escalate`."""
    return check_transition(current, WebhookStatus.FAILED)


def should_escalate(retries: int, max_retries: int = DEFAULT_MAX_RETRIES) -> bool:
    """Return True once the processing attempt budget is spent.

    ``retries`` counts attempts after the first, so ``retries + 1`` attempts
    have been made when a failure is observed.
    """
    return retries + 1 >= max_retries


def apply(current: WebhookStatus, target: WebhookStatus, retries: int) -> tuple[WebhookStatus, int]:
    """Apply a transition to an in-memory ``(status, retries)`` pair."""
    check_transition(current, target)
    if target is WebhookStatus.PROCESSING and current is WebhookStatus.FAILED:
        retries += 1
    return target, retries
