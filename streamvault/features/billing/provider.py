"""
Payment provider protocol.

Defines the interface the signup saga, checkout and webhook reconciler use
to talk to the payment provider (Stripe, or a fake in tests), plus the
normalized value objects that cross that boundary.
"""
from typing import Protocol, Dict, Any, Mapping, Optional
from dataclasses import dataclass, field
from datetime import datetime


# Normalized webhook kinds
SUBSCRIPTION_CREATED = "subscription.created"
SUBSCRIPTION_UPDATED = "subscription.updated"
SUBSCRIPTION_DELETED = "subscription.deleted"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"

HANDLED_KINDS = frozenset({
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_UPDATED,
    SUBSCRIPTION_DELETED,
    INVOICE_PAYMENT_FAILED,
    INVOICE_PAYMENT_SUCCEEDED,
})

# Provider subscription statuses that count as paid
PAID_STATUSES = frozenset({"active", "trialing"})


@dataclass(frozen=True)
class SignupIntentResult:
    """Customer + incomplete subscription created for a signup intent."""
    customer_id: str
    subscription_id: str
    client_secret: Optional[str]


@dataclass(frozen=True)
class ProviderSubscription:
    """Provider's current view of one subscription."""
    subscription_id: str
    customer_id: str
    status: str  # active, trialing, incomplete, past_due, canceled, ...
    price_id: Optional[str]
    current_period_end: Optional[datetime]
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderEvent:
    """A verified webhook event normalized into provider-neutral fields."""
    event_id: str
    kind: Optional[str]  # one of HANDLED_KINDS, None for event types we do not act on
    event_type: str  # provider's raw type string
    occurred_at: datetime
    external_subscription_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    provider_status: Optional[str] = None
    current_period_end: Optional[datetime] = None
    price_id: Optional[str] = None
    email: Optional[str] = None
    plan_id: Optional[str] = None
    user_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


class PaymentProvider(Protocol):
    """
    Protocol for payment providers.

    Implementations must handle:
    - Signup: customer + subscription in an incomplete state
    - Subscription lookup for payment confirmation
    - Checkout session creation for returning users
    - Webhook signature verification and parsing

    Transient failures raise ProviderTransientError so call sites can retry;
    permanent rejections raise ProviderRejectedError.
    """

    def create_signup_subscription(
        self,
        email: str,
        name: str,
        payment_method_id: str,
        price_id: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> SignupIntentResult:
        """
        Create a customer and an incomplete subscription awaiting client confirmation.

        `idempotency_key` is forwarded to the provider so a retried call
        returns the objects created by the first one.
        """
        ...

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        """
        Fetch the provider's current view of a subscription.

        Raises:
            ProviderRejectedError: unknown subscription
        """
        ...

    def create_checkout_session(
        self,
        price_id: str,
        success_url: str,
        cancel_url: str,
        customer_id: Optional[str] = None,
        customer_email: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """Create a hosted checkout session and return its URL."""
        ...

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> ProviderEvent:
        """
        Verify webhook signature and parse event.

        Raises:
            WebhookVerificationError: signature invalid or payload unparseable
        """
        ...


class PaymentProviderError(Exception):
    """Base exception for payment provider errors."""
    pass


class ProviderTransientError(PaymentProviderError):
    """Timeouts, connection failures, 5xx and rate limits. Safe to retry."""
    pass


class ProviderRejectedError(PaymentProviderError):
    """Permanent rejection (card declined, invalid request, unknown object)."""
    pass


class WebhookVerificationError(PaymentProviderError):
    """Exception for webhook signature or payload errors."""
    pass
