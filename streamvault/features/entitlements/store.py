"""
streamvault/features/entitlements/store.py

Row access for subscriptions and licenses.

Subscriptions are only ever mutated through compare-and-set on `version`
(or inserted keyed on the unique external subscription id). Callers that
lose a CAS raise StaleVersion inside their transaction and let
`run_optimistic` retry the whole unit of work.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, TypeVar

from sqlalchemy import select, insert, update, and_, case
from tenacity import Retrying, RetryError, retry_if_exception_type, stop_after_attempt

from streamvault.core.database import subscriptions, download_licenses
from streamvault.core.errors import ReconciliationConflict
from streamvault.models.license import LicenseState
from streamvault.models.plan import Plan
from streamvault.models.subscription import Subscription, SubscriptionState, LIVE_STATES

logger = logging.getLogger("streamvault")

T = TypeVar("T")

DEFAULT_OPTIMISTIC_ATTEMPTS = 5


class StaleVersion(Exception):
    """A compare-and-set on subscriptions.version matched no row."""

    def __init__(self, subscription_id: str, expected_version: int):
        super().__init__(f"subscription {subscription_id} is no longer at version {expected_version}")
        self.subscription_id = subscription_id
        self.expected_version = expected_version


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands datetimes back naive; everything is stored as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def terms_from_plan(plan: Plan) -> Dict[str, Any]:
    """Terms snapshot copied onto a subscription at start and on renewal."""
    return {
        "price_cents": plan.price_cents,
        "device_limit": plan.device_limit,
        "offline_allowed": plan.offline_allowed,
        "max_offline_downloads": plan.max_offline_downloads,
    }


def row_to_subscription(row) -> Subscription:
    return Subscription(
        id=row.id,
        user_id=row.user_id,
        plan_id=row.plan_id,
        external_subscription_id=row.external_subscription_id,
        external_customer_id=row.external_customer_id,
        state=row.state,
        current_period_end=as_utc(row.current_period_end),
        price_cents=row.price_cents,
        device_limit=row.device_limit,
        offline_allowed=bool(row.offline_allowed),
        max_offline_downloads=row.max_offline_downloads,
        version=row.version,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def get_subscription_by_external_id(session, external_subscription_id: str) -> Optional[Subscription]:
    row = session.execute(
        select(subscriptions).where(subscriptions.c.external_subscription_id == external_subscription_id)
    ).first()
    return row_to_subscription(row) if row else None


def get_live_subscription(session, user_id: str) -> Optional[Subscription]:
    """The user's PENDING or ACTIVE subscription (at most one exists)."""
    row = session.execute(
        select(subscriptions)
        .where(subscriptions.c.user_id == user_id)
        .where(subscriptions.c.state.in_(LIVE_STATES))
    ).first()
    return row_to_subscription(row) if row else None


def get_current_subscription(session, user_id: str) -> Optional[Subscription]:
    """Live subscription if any, otherwise the most recently touched one."""
    live_first = case((subscriptions.c.state.in_(LIVE_STATES), 0), else_=1)
    row = session.execute(
        select(subscriptions)
        .where(subscriptions.c.user_id == user_id)
        .order_by(live_first, subscriptions.c.updated_at.desc())
        .limit(1)
    ).first()
    return row_to_subscription(row) if row else None


def insert_subscription(
    session,
    *,
    user_id: str,
    plan: Plan,
    external_subscription_id: str,
    external_customer_id: Optional[str],
    state: SubscriptionState,
    current_period_end: Optional[datetime],
    updated_at: datetime,
    now: Optional[datetime] = None,
) -> str:
    """
    Insert a subscription at version 1 with the plan's terms snapshot.

    Raises IntegrityError when the external id already exists or the user
    already holds a live subscription; callers decide how to resolve it.
    """
    subscription_id = str(uuid.uuid4())
    session.execute(
        insert(subscriptions).values(
            id=subscription_id,
            user_id=user_id,
            plan_id=plan.plan_id,
            external_subscription_id=external_subscription_id,
            external_customer_id=external_customer_id,
            state=SubscriptionState(state).value,
            current_period_end=current_period_end,
            version=1,
            created_at=now or utc_now(),
            updated_at=updated_at,
            **terms_from_plan(plan),
        )
    )
    return subscription_id


def compare_and_set(session, subscription_id: str, expected_version: int, **values) -> bool:
    """
    UPDATE ... WHERE id = :id AND version = :v, bumping version.

    Returns False when another writer got there first.
    """
    if "state" in values and isinstance(values["state"], SubscriptionState):
        values["state"] = values["state"].value
    result = session.execute(
        update(subscriptions)
        .where(and_(subscriptions.c.id == subscription_id, subscriptions.c.version == expected_version))
        .values(version=expected_version + 1, **values)
    )
    return result.rowcount == 1


def fence(session, subscription_id: str, expected_version: int) -> None:
    """
    Bump the version without changing anything else.

    Quota-affecting writes for one user (device registration, redemption)
    call this in their transaction so concurrent ones serialize; it also
    proves the subscription has not changed since the entitlement was read.
    """
    if not compare_and_set(session, subscription_id, expected_version):
        raise StaleVersion(subscription_id, expected_version)


def revoke_all_licenses(session, user_id: str, now: Optional[datetime] = None, device_id: Optional[str] = None) -> int:
    """Move ISSUED/REDEEMED licenses of a user (optionally one device) to REVOKED."""
    stmt = (
        update(download_licenses)
        .where(download_licenses.c.user_id == user_id)
        .where(download_licenses.c.state.in_((LicenseState.ISSUED.value, LicenseState.REDEEMED.value)))
    )
    if device_id is not None:
        stmt = stmt.where(download_licenses.c.device_id == device_id)
    result = session.execute(stmt.values(state=LicenseState.REVOKED.value, updated_at=now or utc_now()))
    revoked = result.rowcount or 0
    if revoked:
        logger.info(
            "licenses.revoked",
            extra={"user_id": user_id, "device_id": device_id, "count": revoked},
        )
    return revoked


def _log_stale(operation: str, retry_state) -> None:
    exc = retry_state.outcome.exception()
    logger.info(
        "optimistic.retry",
        extra={
            "operation": operation,
            "attempt": retry_state.attempt_number,
            "subscription_id": getattr(exc, "subscription_id", None),
        },
    )


def run_optimistic(fn: Callable[[], T], *, attempts: Optional[int] = None, operation: str = "update") -> T:
    """
    Run a unit of work that raises StaleVersion on a lost CAS, retrying it.

    `fn` must open its own transaction so each attempt starts from fresh
    reads. After the bound, ReconciliationConflict (409, retryable).
    """
    max_attempts = attempts or DEFAULT_OPTIMISTIC_ATTEMPTS
    retrying = Retrying(
        stop=stop_after_attempt(max_attempts),
        retry=retry_if_exception_type(StaleVersion),
        before_sleep=lambda retry_state: _log_stale(operation, retry_state),
        reraise=False,
    )
    try:
        return retrying(fn)
    except RetryError as e:
        raise ReconciliationConflict(
            f"Gave up on {operation} after {max_attempts} concurrent modifications"
        ) from e.last_attempt.exception()
