"""Per-provider origin adapters.

Each adapter maps a raw provider payload to a stable composite key and to the
normalized WebhookRecord that is stored at capture time. Adapters are pure:
the same payload always yields the same key, which is what makes redelivered
capture requests safe to deduplicate.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any

from src.models import (
    WEBHOOK_PK_PREFIX,
    WEBHOOK_SORT_KEY,
    WebhookKey,
    WebhookOrigin,
    WebhookRecord,
)
from src.webhook.errors import MalformedPayloadError, UnsupportedOriginError

_PATH_PREFIX = "/webhooks/"


class OriginAdapter(ABC):
    """Base class for provider adapters."""

    origin: WebhookOrigin

    @abstractmethod
    def extract_id(self, payload: dict[str, Any]) -> str:
        """Return the provider's unique identifier for this webhook."""
        ...

    @abstractmethod
    def extract_event_type(self, payload: dict[str, Any]) -> str:
        ...

    @abstractmethod
    def extract_created(self, payload: dict[str, Any]) -> Any:
        """Return the provider's creation timestamp (epoch seconds)."""
        ...

    def derive_key(self, payload: dict[str, Any]) -> WebhookKey:
        webhook_id = self.extract_id(payload)
        return WebhookKey(
            partition_key=f"{WEBHOOK_PK_PREFIX}{webhook_id}",
            sort_key=WEBHOOK_SORT_KEY,
        )

    def normalize(self, payload: dict[str, Any]) -> WebhookRecord:
        return WebhookRecord(
            key=self.derive_key(payload),
            origin=self.origin,
            event_type=self.extract_event_type(payload),
            created_at=_epoch_to_iso(self.extract_created(payload)),
            payload=payload,
        )

    def _require(self, payload: dict[str, Any], field: str) -> Any:
        if not isinstance(payload, dict):
            raise MalformedPayloadError(
                f"{self.origin.value} payload must be a JSON object"
            )
        value = payload.get(field)
        if value is None or value == "":
            raise MalformedPayloadError(
                f"{self.origin.value} payload missing required field '{field}'"
            )
        return value


class BigCommerceAdapter(OriginAdapter):
    """BigCommerce: identity is the payload ``hash``, type is ``scope``."""

    origin = WebhookOrigin.BIGCOMMERCE

    def extract_id(self, payload: dict[str, Any]) -> str:
        return str(self._require(payload, "hash"))

    def extract_event_type(self, payload: dict[str, Any]) -> str:
        return str(self._require(payload, "scope"))

    def extract_created(self, payload: dict[str, Any]) -> Any:
        return self._require(payload, "created_at")


class StripeAdapter(OriginAdapter):
    """Stripe: identity is the event ``id``, type is ``type``."""

    origin = WebhookOrigin.STRIPE

    def extract_id(self, payload: dict[str, Any]) -> str:
        return str(self._require(payload, "id"))

    def extract_event_type(self, payload: dict[str, Any]) -> str:
        return str(self._require(payload, "type"))

    def extract_created(self, payload: dict[str, Any]) -> Any:
        if isinstance(payload, dict) and payload.get("created") is not None:
            return payload["created"]
        return self._require(payload, "created_at")


_ADAPTERS: dict[WebhookOrigin, OriginAdapter] = {
    WebhookOrigin.BIGCOMMERCE: BigCommerceAdapter(),
    WebhookOrigin.STRIPE: StripeAdapter(),
}


def get_adapter(origin: str | WebhookOrigin) -> OriginAdapter:
    """Return the adapter for an origin.

    Raises:
        UnsupportedOriginError: If the origin has no adapter.
    """
    try:
        return _ADAPTERS[WebhookOrigin(origin)]
    except (ValueError, KeyError):
        raise UnsupportedOriginError(str(origin)) from None


def derive_key(origin: str | WebhookOrigin, payload: dict[str, Any]) -> WebhookKey:
    return get_adapter(origin).derive_key(payload)


def normalize(origin: str | WebhookOrigin, payload: dict[str, Any]) -> WebhookRecord:
    return get_adapter(origin).normalize(payload)


def determine_origin(path: str) -> WebhookOrigin:
    """Map a request path such as ``/webhooks/stripe`` to its origin."""
    if not path.startswith(_PATH_PREFIX):
        raise UnsupportedOriginError(path)
    return get_adapter(path[len(_PATH_PREFIX):].strip("/")).origin


def _epoch_to_iso(value: Any) -> str:
    try:
        seconds = float(value)
        return datetime.fromtimestamp(seconds, UTC).isoformat()
    except (TypeError, ValueError, OverflowError, OSError):
        raise MalformedPayloadError(f"Invalid epoch timestamp: {value!r}") from None
