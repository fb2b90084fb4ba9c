"""
streamvault/features/entitlements/service.py

Entitlement resolution.

Handles:
- Deriving the caller's entitlement from their ACTIVE subscription only
- Lazy expiry: an ACTIVE subscription whose period ended without a renewal
  is moved to EXPIRED (and its licenses revoked) the first time it is read
- Denial metrics for the device and download managers
"""

from datetime import datetime
from typing import Optional, Tuple
import logging

from streamvault.core.database import get_db_session
from streamvault.core.errors import AppError, NoActiveSubscription
from streamvault.core.metrics import entitlement_denials_total
from streamvault.features.entitlements.store import (
    StaleVersion,
    as_utc,
    compare_and_set,
    get_current_subscription,
    get_live_subscription,
    revoke_all_licenses,
    run_optimistic,
    utc_now,
)
from streamvault.models.subscription import Entitlement, Subscription, SubscriptionState


logger = logging.getLogger("streamvault")


def is_lapsed(subscription: Subscription, now: datetime) -> bool:
    return (
        subscription.state == SubscriptionState.ACTIVE
        and subscription.current_period_end is not None
        and subscription.current_period_end <= now
    )


def expire_if_lapsed(session, subscription: Subscription, now: datetime) -> Tuple[Subscription, bool]:
    """
    Move a lapsed ACTIVE subscription to EXPIRED inside the caller's transaction.

    updated_at becomes the period end (when later than the last write), the
    logical time of expiry, so a renewal event stamped after the period end
    still wins last-writer-wins against it.

    Raises StaleVersion if the row changed underneath.
    """
    if not is_lapsed(subscription, now):
        return subscription, False

    logical_time = max(subscription.updated_at, subscription.current_period_end)
    if not compare_and_set(
        session,
        subscription.id,
        subscription.version,
        state=SubscriptionState.EXPIRED,
        updated_at=logical_time,
    ):
        raise StaleVersion(subscription.id, subscription.version)

    revoke_all_licenses(session, subscription.user_id, now)
    logger.info(
        "subscription.expired",
        extra={
            "user_id": subscription.user_id,
            "subscription_id": subscription.id,
            "current_period_end": subscription.current_period_end.isoformat(),
        },
    )
    expired = subscription.model_copy(update={
        "state": SubscriptionState.EXPIRED,
        "version": subscription.version + 1,
        "updated_at": logical_time,
    })
    return expired, True


def load_current_subscription(user_id: str, now: Optional[datetime] = None) -> Optional[Subscription]:
    """The user's most relevant subscription, with lazy expiry applied."""
    now = as_utc(now) or utc_now()

    def _load() -> Optional[Subscription]:
        with get_db_session() as session:
            subscription = get_current_subscription(session, user_id)
            if subscription is None:
                return None
            subscription, _ = expire_if_lapsed(session, subscription, now)
            return subscription

    return run_optimistic(_load, operation="lazy_expiry")


def get_active_entitlement(user_id: str, now: Optional[datetime] = None) -> Entitlement:
    """
    Resolve what the user may do right now.

    Raises:
        NoActiveSubscription: no ACTIVE subscription (none, PENDING,
            PAST_DUE, or lapsed and just expired)
    """
    now = as_utc(now) or utc_now()

    def _load() -> Optional[Entitlement]:
        with get_db_session() as session:
            subscription = get_live_subscription(session, user_id)
            if subscription is None or subscription.state != SubscriptionState.ACTIVE:
                return None
            subscription, expired = expire_if_lapsed(session, subscription, now)
            if expired:
                return None
            return Entitlement(
                user_id=user_id,
                subscription_id=subscription.id,
                plan_id=subscription.plan_id,
                version=subscription.version,
                device_limit=subscription.device_limit,
                offline_allowed=subscription.offline_allowed,
                max_offline_downloads=subscription.max_offline_downloads,
                current_period_end=subscription.current_period_end,
            )

    # Lazy expiry commits before the denial is raised
    entitlement = run_optimistic(_load, operation="entitlement_check")
    if entitlement is None:
        deny(NoActiveSubscription("An active subscription is required"), user_id=user_id)
    return entitlement


def deny(error: AppError, *, user_id: Optional[str] = None) -> None:
    """Count and log an entitlement denial, then raise it."""
    entitlement_denials_total.inc(labels={"reason": error.code})
    logger.info("entitlement.denied", extra={"user_id": user_id, "error_code": error.code})
    raise error
