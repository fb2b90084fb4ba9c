"""
Stripe adapter: webhook signature verification, event normalization and
error classification. No network calls.
"""
import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import pytest
import stripe

from streamvault.features.billing.provider import (
    INVOICE_PAYMENT_FAILED,
    SUBSCRIPTION_UPDATED,
    ProviderRejectedError,
    ProviderTransientError,
    WebhookVerificationError,
)
from streamvault.features.billing.stripe_provider import StripeProvider

WEBHOOK_SECRET = "whsec_test_secret"


def _sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    ts = timestamp or int(time.time())
    signature = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


@pytest.fixture
def provider():
    return StripeProvider(secret_key="sk_test_123", webhook_secret=WEBHOOK_SECRET)


def _subscription_event(ts):
    return {
        "id": "evt_sub_1",
        "type": "customer.subscription.updated",
        "created": ts,
        "data": {"object": {
            "id": "sub_123",
            "customer": "cus_123",
            "status": "past_due",
            "metadata": {"email": "viewer@example.com"},
            "items": {"data": [{"price": {"id": "price_standard"}, "current_period_end": ts + 3600}]},
        }},
    }


def test_subscription_event_is_verified_and_normalized(provider):
    ts = int(time.time())
    payload = json.dumps(_subscription_event(ts))

    event = provider.parse_webhook({"stripe-signature": _sign(payload)}, payload.encode("utf-8"))

    assert event.event_id == "evt_sub_1"
    assert event.kind == SUBSCRIPTION_UPDATED
    assert event.external_subscription_id == "sub_123"
    assert event.external_customer_id == "cus_123"
    assert event.provider_status == "past_due"
    assert event.price_id == "price_standard"
    # Plan resolved from the configured price ids
    assert event.plan_id == "standard"
    assert event.email == "viewer@example.com"
    assert int(event.occurred_at.timestamp()) == ts
    assert int(event.current_period_end.timestamp()) == ts + 3600


def test_invoice_event_with_parent_subscription(provider):
    ts = int(time.time())
    payload = json.dumps({
        "id": "evt_inv_1",
        "type": "invoice.payment_failed",
        "created": ts,
        "data": {"object": {
            "customer": "cus_123",
            "customer_email": "viewer@example.com",
            "parent": {"subscription_details": {"subscription": "sub_123", "metadata": {"plan_id": "premium"}}},
            "lines": {"data": [{"period": {"end": ts + 100}, "pricing": {"price_details": {"price": "price_premium"}}}]},
        }},
    })

    event = provider.parse_webhook({"Stripe-Signature": _sign(payload)}, payload.encode("utf-8"))

    assert event.kind == INVOICE_PAYMENT_FAILED
    assert event.external_subscription_id == "sub_123"
    assert event.plan_id == "premium"
    assert event.price_id == "price_premium"


def test_unhandled_event_type_has_no_kind(provider):
    payload = json.dumps({"id": "evt_c", "type": "customer.created", "created": int(time.time()), "data": {"object": {}}})

    event = provider.parse_webhook({"stripe-signature": _sign(payload)}, payload.encode("utf-8"))

    assert event.kind is None
    assert event.event_type == "customer.created"


@pytest.mark.parametrize("headers", [
    {},
    {"stripe-signature": "t=1,v1=deadbeef"},
])
def test_bad_signature_rejected(provider, headers):
    payload = json.dumps(_subscription_event(int(time.time())))

    with pytest.raises(WebhookVerificationError):
        provider.parse_webhook(headers, payload.encode("utf-8"))


def test_signature_with_wrong_secret_rejected(provider):
    payload = json.dumps(_subscription_event(int(time.time())))

    with pytest.raises(WebhookVerificationError):
        provider.parse_webhook({"stripe-signature": _sign(payload, secret="whsec_other")}, payload.encode("utf-8"))


def test_stale_signature_rejected(provider):
    payload = json.dumps(_subscription_event(int(time.time())))
    old = int(time.time()) - 3600

    with pytest.raises(WebhookVerificationError):
        provider.parse_webhook({"stripe-signature": _sign(payload, timestamp=old)}, payload.encode("utf-8"))


def test_retrieve_subscription_maps_fields(provider, monkeypatch):
    remote = SimpleNamespace(
        id="sub_123",
        customer="cus_123",
        status="active",
        metadata={"email": "viewer@example.com"},
        items={"data": [{"price": {"id": "price_standard"}, "current_period_end": 1900000000}]},
        current_period_end=None,
    )
    monkeypatch.setattr(stripe.Subscription, "retrieve", lambda subscription_id: remote)

    sub = provider.retrieve_subscription("sub_123")

    assert sub.status == "active"
    assert sub.customer_id == "cus_123"
    assert sub.price_id == "price_standard"
    assert int(sub.current_period_end.timestamp()) == 1900000000
    assert sub.metadata == {"email": "viewer@example.com"}


@pytest.mark.parametrize("error,expected", [
    (stripe.APIConnectionError("network down"), ProviderTransientError),
    (stripe.RateLimitError("slow down"), ProviderTransientError),
    (stripe.InvalidRequestError("No such subscription", "id"), ProviderRejectedError),
])
def test_stripe_errors_are_classified(provider, monkeypatch, error, expected):
    def _raise(subscription_id):
        raise error

    monkeypatch.setattr(stripe.Subscription, "retrieve", _raise)

    with pytest.raises(expected):
        provider.retrieve_subscription("sub_123")
