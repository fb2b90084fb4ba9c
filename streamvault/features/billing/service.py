"""
Billing service orchestrator.

Pure-ish business logic that coordinates:
- Provider selection (Stripe, or an injected provider in tests)
- Provider calls with bounded retries
- Checkout for returning users
- Subscription status for the caller

All Stripe-specific code is in stripe_provider.py; webhook handling is in
reconciler.py.
"""
import logging
from datetime import datetime
from typing import Optional, Dict, Any, Callable, TypeVar

from streamvault.core.config import settings
from streamvault.core.database import get_db_session
from streamvault.core.errors import DuplicateSubscription, NotFoundError, ProviderUnavailable, ValidationError
from streamvault.core.retry import call_with_retries
from streamvault.features.billing.provider import (
    PaymentProvider,
    PaymentProviderError,
    ProviderRejectedError,
    ProviderTransientError,
)
from streamvault.features.entitlements.service import load_current_subscription
from streamvault.features.entitlements.store import get_live_subscription
from streamvault.features.plans.service import require_plan
from streamvault.features.users.service import get_user_row
from streamvault.models.subscription import SubscriptionState

logger = logging.getLogger("streamvault")

T = TypeVar("T")

_provider_override: Optional[PaymentProvider] = None


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured or a provider injected)."""
    return _provider_override is not None or bool(settings.STRIPE_SECRET_KEY)


def set_provider(provider: Optional[PaymentProvider]) -> None:
    """Install a provider for the process (tests, alternative adapters). None restores Stripe."""
    global _provider_override
    _provider_override = provider


def get_provider() -> PaymentProvider:
    """
    Get the payment provider.

    Raises:
        ProviderUnavailable: billing not configured
    """
    if _provider_override is not None:
        return _provider_override
    if not settings.STRIPE_SECRET_KEY:
        raise ProviderUnavailable("Payment provider is not configured")

    from streamvault.features.billing.stripe_provider import StripeProvider
    try:
        return StripeProvider()
    except PaymentProviderError as e:
        raise ProviderUnavailable(str(e))


def call_provider(fn: Callable[..., T], *args, **kwargs) -> T:
    """Call a provider method, retrying transient failures with backoff."""
    return call_with_retries(fn, *args, retry_on=(ProviderTransientError,), **kwargs)


def start_checkout(
    user_id: str,
    plan_id: str,
    success_url: str,
    cancel_url: str,
    provider: Optional[PaymentProvider] = None,
) -> str:
    """
    Start a hosted checkout session for an existing user.

    The subscription it creates reaches us through webhooks; metadata names
    the user and plan so the reconciler can attach it.

    Returns:
        Checkout URL

    Raises:
        NotFoundError: unknown user
        ValidationError: unknown plan or plan without a provider price
        DuplicateSubscription: user already has a PENDING/ACTIVE subscription
        ProviderUnavailable: provider down after retries
    """
    plan = require_plan(plan_id)
    if not plan.external_price_id:
        raise ValidationError(f"No provider price configured for plan: {plan_id}")

    with get_db_session() as session:
        user = get_user_row(session, user_id)
        if not user:
            raise NotFoundError("User not found")
        live = get_live_subscription(session, user_id)

    if live is not None:
        raise DuplicateSubscription("User already has an active or pending subscription")

    provider = provider or get_provider()
    try:
        checkout_url = call_provider(
            provider.create_checkout_session,
            price_id=plan.external_price_id,
            success_url=success_url,
            cancel_url=cancel_url,
            customer_id=user.external_customer_id,
            customer_email=None if user.external_customer_id else user.email,
            metadata={"plan_id": plan.plan_id, "user_id": user_id, "email": user.email},
        )
    except ProviderRejectedError as e:
        raise ValidationError(str(e))

    logger.info("billing.checkout_started", extra={"user_id": user_id, "plan_id": plan.plan_id})
    return checkout_url


def get_subscription_status(user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Subscription status for the caller.

    Returns:
        {isSubscribed, planId, currentPeriodEnd, state, createdAt}
    """
    subscription = load_current_subscription(user_id, now=now)
    if subscription is None:
        return {
            "isSubscribed": False,
            "planId": None,
            "currentPeriodEnd": None,
            "state": None,
            "createdAt": None,
        }
    return {
        "isSubscribed": subscription.state == SubscriptionState.ACTIVE,
        "planId": subscription.plan_id,
        "currentPeriodEnd": subscription.current_period_end,
        "state": subscription.state.value,
        "createdAt": subscription.created_at,
    }
