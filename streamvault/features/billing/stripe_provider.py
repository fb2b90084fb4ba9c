"""
Stripe payment provider implementation.

Implements the PaymentProvider protocol using the Stripe API.
Handles webhook signature verification and event parsing.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Mapping, Optional

import stripe

from streamvault.core.config import settings
from streamvault.features.billing.provider import (
    INVOICE_PAYMENT_FAILED,
    INVOICE_PAYMENT_SUCCEEDED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
    PaymentProviderError,
    ProviderEvent,
    ProviderRejectedError,
    ProviderSubscription,
    ProviderTransientError,
    SignupIntentResult,
    WebhookVerificationError,
)

logger = logging.getLogger("streamvault")

# Stripe event type -> normalized kind
_EVENT_KINDS = {
    "customer.subscription.created": SUBSCRIPTION_CREATED,
    "customer.subscription.updated": SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": SUBSCRIPTION_DELETED,
    "invoice.payment_failed": INVOICE_PAYMENT_FAILED,
    "invoice.payment_succeeded": INVOICE_PAYMENT_SUCCEEDED,
    "invoice.paid": INVOICE_PAYMENT_SUCCEEDED,
}

_TRANSIENT_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)


def _field(obj: Any, name: str) -> Any:
    """Read a field from a StripeObject or plain dict."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _ts(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _translate(e: "stripe.StripeError", operation: str) -> PaymentProviderError:
    if isinstance(e, _TRANSIENT_ERRORS):
        return ProviderTransientError(f"Stripe {operation} failed: {e}")
    return ProviderRejectedError(f"Stripe {operation} failed: {e}")


class StripeProvider:
    """Stripe implementation of PaymentProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to settings.STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to settings.STRIPE_WEBHOOK_SECRET)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.tolerance = settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS

        if not self.secret_key:
            raise PaymentProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def create_signup_subscription(
        self,
        email: str,
        name: str,
        payment_method_id: str,
        price_id: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> SignupIntentResult:
        """Create customer + subscription with payment_behavior=default_incomplete."""
        try:
            customer = stripe.Customer.create(
                email=email,
                name=name,
                payment_method=payment_method_id,
                invoice_settings={"default_payment_method": payment_method_id},
                metadata=metadata,
                idempotency_key=f"{idempotency_key}:customer",
            )
            subscription = stripe.Subscription.create(
                customer=customer.id,
                items=[{"price": price_id}],
                payment_behavior="default_incomplete",
                payment_settings={"save_default_payment_method": "on_subscription"},
                expand=["latest_invoice.payment_intent"],
                metadata=metadata,
                idempotency_key=f"{idempotency_key}:subscription",
            )
        except stripe.StripeError as e:
            raise _translate(e, "signup subscription creation")

        invoice = _field(subscription, "latest_invoice")
        payment_intent = _field(invoice, "payment_intent")
        client_secret = _field(payment_intent, "client_secret") or _field(
            _field(invoice, "confirmation_secret"), "client_secret"
        )
        return SignupIntentResult(
            customer_id=customer.id,
            subscription_id=subscription.id,
            client_secret=client_secret,
        )

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            raise _translate(e, "subscription lookup")

        item = self._first_item(subscription)
        period_end = _field(subscription, "current_period_end") or _field(item, "current_period_end")
        customer = _field(subscription, "customer")
        metadata = _field(subscription, "metadata") or {}
        return ProviderSubscription(
            subscription_id=subscription.id,
            customer_id=customer if isinstance(customer, str) else _field(customer, "id"),
            status=_field(subscription, "status"),
            price_id=_field(_field(item, "price"), "id"),
            current_period_end=_ts(period_end),
            metadata={str(k): str(v) for k, v in dict(metadata).items()},
        )

    def create_checkout_session(
        self,
        price_id: str,
        success_url: str,
        cancel_url: str,
        customer_id: Optional[str] = None,
        customer_email: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """Create Stripe checkout session."""
        params: Dict[str, Any] = {
            "line_items": [{"price": price_id, "quantity": 1}],
            "mode": "subscription",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata or {},
            # Subscription metadata lets the webhook reconciler resolve the owner
            "subscription_data": {"metadata": metadata or {}},
        }
        if customer_id:
            params["customer"] = customer_id
        elif customer_email:
            params["customer_email"] = customer_email
        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            raise _translate(e, "checkout session creation")
        return session.url

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> ProviderEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise WebhookVerificationError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise WebhookVerificationError("Missing stripe-signature header")

        try:
            payload = body.decode("utf-8")
            stripe.WebhookSignature.verify_header(payload, sig_header, self.webhook_secret, self.tolerance)
            event = json.loads(payload)
        except UnicodeDecodeError as e:
            raise WebhookVerificationError(f"Invalid payload encoding: {e}")
        except ValueError as e:
            raise WebhookVerificationError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError(f"Invalid signature: {e}")

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise WebhookVerificationError("Invalid payload: missing event id or type")

        return self._parse_event(event)

    def _parse_event(self, event: Dict[str, Any]) -> ProviderEvent:
        """Parse Stripe event into a normalized ProviderEvent."""
        event_type = event["type"]
        data = (event.get("data") or {}).get("object") or {}
        occurred_at = _ts(event.get("created")) or datetime.now(timezone.utc)
        kind = _EVENT_KINDS.get(event_type)

        subscription_id = None
        customer_id = data.get("customer")
        status = None
        period_end = None
        price_id = None
        metadata: Dict[str, Any] = {}
        email = None

        if event_type.startswith("customer.subscription."):
            subscription_id = data.get("id")
            status = data.get("status")
            metadata = data.get("metadata") or {}
            item = self._first_item(data)
            price_id = (item.get("price") or {}).get("id") if item else None
            period_end = _ts(data.get("current_period_end") or (item or {}).get("current_period_end"))
        elif event_type.startswith("invoice."):
            # Older API versions put the subscription on the invoice, newer ones under parent
            details = (data.get("parent") or {}).get("subscription_details") or {}
            subscription_id = data.get("subscription") or details.get("subscription")
            metadata = (data.get("subscription_details") or {}).get("metadata") or details.get("metadata") or {}
            email = data.get("customer_email")
            lines = (data.get("lines") or {}).get("data") or []
            if lines:
                period_end = _ts((lines[0].get("period") or {}).get("end"))
                price_id = ((lines[0].get("pricing") or {}).get("price_details") or {}).get("price") or (
                    lines[0].get("price") or {}
                ).get("id")

        plan_id = metadata.get("plan_id") or self._map_price_to_plan(price_id)

        return ProviderEvent(
            event_id=event["id"],
            kind=kind,
            event_type=event_type,
            occurred_at=occurred_at,
            external_subscription_id=subscription_id,
            external_customer_id=customer_id if isinstance(customer_id, str) else None,
            provider_status=status,
            current_period_end=period_end,
            price_id=price_id,
            email=metadata.get("email") or email,
            plan_id=plan_id,
            user_id=metadata.get("user_id"),
            payload=event,
        )

    @staticmethod
    def _first_item(subscription: Any) -> Any:
        items = _field(_field(subscription, "items"), "data") or []
        return items[0] if items else None

    def _map_price_to_plan(self, price_id: Optional[str]) -> Optional[str]:
        """Map Stripe price ID to internal plan ID."""
        if not price_id:
            return None
        by_price = {price: plan_id for plan_id, price in settings.plan_price_ids().items() if price}
        return by_price.get(price_id)
