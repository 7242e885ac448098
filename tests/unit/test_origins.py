"""Tests for per-provider origin adapters."""

from __future__ import annotations

import pytest

from src.models import WebhookKey, WebhookOrigin
from src.webhook.errors import MalformedPayloadError, UnsupportedOriginError, ValidationError
from src.webhook.origins import (
    BigCommerceAdapter,
    StripeAdapter,
    derive_key,
    determine_origin,
    get_adapter,
    normalize,
)
from tests.conftest import make_bigcommerce_payload, make_stripe_payload


class TestKeyDerivation:
    def test_bigcommerce_key_uses_hash(self) -> None:
        key = derive_key("bigcommerce", make_bigcommerce_payload(hash="abc"))
        assert key == WebhookKey(partition_key="WH#abc", sort_key="WEBHOOK")

    def test_stripe_key_uses_event_id(self) -> None:
        key = derive_key("stripe", make_stripe_payload(id="evt_42"))
        assert key.partition_key == "WH#evt_42"
        assert key.sort_key == "WEBHOOK"

    def test_same_payload_same_key(self) -> None:
        payload = make_bigcommerce_payload()
        assert derive_key("bigcommerce", payload) == derive_key("bigcommerce", dict(payload))

    def test_key_ignores_non_identity_fields(self) -> None:
        first = derive_key("bigcommerce", make_bigcommerce_payload(store_id="1"))
        second = derive_key("bigcommerce", make_bigcommerce_payload(store_id="2"))
        assert first == second

    def test_key_preserves_case(self) -> None:
        lower = derive_key("stripe", make_stripe_payload(id="evt_abc"))
        upper = derive_key("stripe", make_stripe_payload(id="evt_ABC"))
        assert lower != upper

    def test_key_is_immutable(self) -> None:
        key = derive_key("bigcommerce", make_bigcommerce_payload())
        with pytest.raises(Exception):
            key.partition_key = "WH#other"  # type: ignore[misc]


class TestNormalize:
    def test_bigcommerce_record(self) -> None:
        payload = make_bigcommerce_payload(hash="abc", scope="order.created", created_at=1700000000)
        record = normalize("bigcommerce", payload)
        assert record.origin is WebhookOrigin.BIGCOMMERCE
        assert record.event_type == "order.created"
        assert record.created_at == "2023-11-14T22:13:20+00:00"
        assert record.payload == payload
        assert record.key.partition_key == "WH#abc"

    def test_stripe_record_prefers_created(self) -> None:
        record = normalize("stripe", make_stripe_payload(created=1700000000))
        assert record.origin is WebhookOrigin.STRIPE
        assert record.event_type == "payment_intent.succeeded"
        assert record.created_at == "2023-11-14T22:13:20+00:00"

    def test_stripe_record_falls_back_to_created_at(self) -> None:
        payload = make_stripe_payload()
        del payload["created"]
        payload["created_at"] = 1700000000
        record = normalize("stripe", payload)
        assert record.created_at == "2023-11-14T22:13:20+00:00"

    def test_missing_identity_field(self) -> None:
        payload = make_bigcommerce_payload()
        del payload["hash"]
        with pytest.raises(MalformedPayloadError, match="hash"):
            derive_key("bigcommerce", payload)

    def test_non_object_payload(self) -> None:
        with pytest.raises(MalformedPayloadError):
            derive_key("stripe", ["not", "an", "object"])  # type: ignore[arg-type]

    def test_bad_timestamp(self) -> None:
        with pytest.raises(MalformedPayloadError, match="timestamp"):
            normalize("bigcommerce", make_bigcommerce_payload(created_at="yesterday"))

    @pytest.mark.parametrize("created_at", [1e20, "nan", float("inf"), "-inf"])
    def test_out_of_range_timestamp(self, created_at: object) -> None:
        with pytest.raises(MalformedPayloadError, match="timestamp"):
            normalize("bigcommerce", make_bigcommerce_payload(created_at=created_at))


class TestOriginLookup:
    def test_get_adapter(self) -> None:
        assert isinstance(get_adapter("bigcommerce"), BigCommerceAdapter)
        assert isinstance(get_adapter(WebhookOrigin.STRIPE), StripeAdapter)

    def test_unsupported_origin_is_validation_error(self) -> None:
        with pytest.raises(UnsupportedOriginError) as exc_info:
            get_adapter("shopify")
        assert isinstance(exc_info.value, ValidationError)
        assert exc_info.value.origin == "shopify"

    def test_determine_origin_from_path(self) -> None:
        assert determine_origin("/webhooks/bigcommerce") is WebhookOrigin.BIGCOMMERCE
        assert determine_origin("/webhooks/stripe/") is WebhookOrigin.STRIPE

    @pytest.mark.parametrize("path", ["/webhooks/paypal", "/hooks/stripe", "/"])
    def test_determine_origin_rejects_unknown_paths(self, path: str) -> None:
        with pytest.raises(UnsupportedOriginError):
            determine_origin(path)
