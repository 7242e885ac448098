"""Exception taxonomy for webhook capture and processing."""

from __future__ import annotations


class WebhookError(Exception):
    """Base class for webhook pipeline errors."""

    pass


class ValidationError(WebhookError):
    """Raised for input that can never succeed: unknown origin, malformed key.

    Never retried.
    """

    pass


class UnsupportedOriginError(ValidationError):
    """Raised when no adapter is registered for an origin."""

    def __init__(self, origin: str) -> None:
        self.origin = origin
        super().__init__(f"Webhook Not Supported: origin '{origin}' not supported")


class MalformedPayloadError(ValidationError):
    """Raised when a payload lacks the fields needed to build its key."""

    pass


class StorageError(WebhookError):
    """Raised by a WebhookStore for transient I/O failures."""

    pass


class WorkError(WebhookError):
    """Raised when the injected business handler fails."""

    pass


class DispatchError(WebhookError):
    """Raised when a retry message cannot be published."""

    pass


class IllegalTransitionError(WebhookError):
    """Raised when a status change is not allowed by the status machine."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Illegal status transition: {current} -> {target}")
