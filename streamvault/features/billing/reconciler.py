"""
Webhook reconciler.

Turns verified provider events into local subscription state:

1. Verify signature (nothing is recorded for a bad signature)
2. Record the event durably (duplicate event ids are a no-op)
3. Apply it under optimistic locking, last-writer-wins by event time
4. On failure, mark the event failed and schedule a replay; the HTTP
   caller still gets a 200 because the event is safely recorded

Every mutation of a subscription is a compare-and-set on its version, and
licenses are revoked in the same transaction that moves a subscription to
CANCELLED or EXPIRED.
"""
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, Mapping

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from streamvault.core.config import settings
from streamvault.core.database import get_db_session, webhook_events
from streamvault.core.errors import ReconciliationConflict, ValidationError, WebhookSignatureInvalid
from streamvault.core.metrics import webhook_events_total
from streamvault.features.billing.provider import (
    INVOICE_PAYMENT_FAILED,
    INVOICE_PAYMENT_SUCCEEDED,
    SUBSCRIPTION_DELETED,
    PaymentProvider,
    ProviderEvent,
    WebhookVerificationError,
)
from streamvault.features.billing.service import get_provider
from streamvault.features.entitlements.store import (
    StaleVersion,
    as_utc,
    compare_and_set,
    get_live_subscription,
    get_subscription_by_external_id,
    insert_subscription,
    revoke_all_licenses,
    run_optimistic,
    terms_from_plan,
    utc_now,
)
from streamvault.features.plans.service import get_plan, get_plan_by_price
from streamvault.features.users.service import (
    create_placeholder_user,
    get_user_row,
    get_user_row_by_email,
    normalize_email,
    set_external_customer_id,
)
from streamvault.models.plan import Plan
from streamvault.models.subscription import Subscription, SubscriptionState

logger = logging.getLogger("streamvault")

# webhook_events.status
RECEIVED = "received"
PROCESSED = "processed"
IGNORED = "ignored"
FAILED = "failed"

# A received event not applied within this window is picked up by replay
RECEIVED_REPLAY_GRACE = timedelta(seconds=60)

# Provider subscription status -> local state
_STATUS_MAP = {
    "active": SubscriptionState.ACTIVE,
    "trialing": SubscriptionState.ACTIVE,
    "past_due": SubscriptionState.PAST_DUE,
    "unpaid": SubscriptionState.PAST_DUE,
    "canceled": SubscriptionState.CANCELLED,
    "cancelled": SubscriptionState.CANCELLED,
    "incomplete": SubscriptionState.PENDING,
    "incomplete_expired": SubscriptionState.EXPIRED,
}

_LIVE = (SubscriptionState.PENDING, SubscriptionState.ACTIVE)


def compute_backoff(attempt_count: int) -> timedelta:
    """Exponential backoff with floor 30s and cap 1 hour."""
    base = max(30, 2 ** attempt_count)
    seconds = min(base, 3600)
    return timedelta(seconds=seconds)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.astimezone(timezone.utc).isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return as_utc(datetime.fromisoformat(value)) if value else None


def event_to_payload(event: ProviderEvent) -> Dict[str, Any]:
    """Normalized JSON stored on the webhook_events row; enough to replay."""
    return {
        "event_id": event.event_id,
        "kind": event.kind,
        "event_type": event.event_type,
        "occurred_at": _iso(event.occurred_at),
        "external_subscription_id": event.external_subscription_id,
        "external_customer_id": event.external_customer_id,
        "provider_status": event.provider_status,
        "current_period_end": _iso(event.current_period_end),
        "price_id": event.price_id,
        "email": event.email,
        "plan_id": event.plan_id,
        "user_id": event.user_id,
    }


def payload_to_event(payload: Dict[str, Any]) -> ProviderEvent:
    return ProviderEvent(
        event_id=payload["event_id"],
        kind=payload.get("kind"),
        event_type=payload.get("event_type") or "",
        occurred_at=_parse_iso(payload["occurred_at"]),
        external_subscription_id=payload.get("external_subscription_id"),
        external_customer_id=payload.get("external_customer_id"),
        provider_status=payload.get("provider_status"),
        current_period_end=_parse_iso(payload.get("current_period_end")),
        price_id=payload.get("price_id"),
        email=payload.get("email"),
        plan_id=payload.get("plan_id"),
        user_id=payload.get("user_id"),
    )


def target_state(event: ProviderEvent) -> Optional[SubscriptionState]:
    """Local state an event asks for, None when it does not name one."""
    if event.kind == SUBSCRIPTION_DELETED:
        return SubscriptionState.CANCELLED
    if event.kind == INVOICE_PAYMENT_FAILED:
        return SubscriptionState.PAST_DUE
    if event.kind == INVOICE_PAYMENT_SUCCEEDED:
        return SubscriptionState.ACTIVE
    return _STATUS_MAP.get((event.provider_status or "").lower())


def record_event(event: ProviderEvent, body: bytes, now: Optional[datetime] = None) -> Optional[str]:
    """
    Durably record a verified event.

    Returns None when the event is new, or the recorded status when the
    event id was seen before.
    """
    now = now or utc_now()
    status = RECEIVED if event.kind else IGNORED

    with get_db_session() as session:
        existing = session.execute(
            select(webhook_events.c.status).where(webhook_events.c.event_id == event.event_id)
        ).first()
        if existing:
            return existing.status

    try:
        with get_db_session() as session:
            session.execute(
                insert(webhook_events).values(
                    event_id=event.event_id,
                    event_type=event.event_type,
                    external_subscription_id=event.external_subscription_id,
                    occurred_at=event.occurred_at,
                    payload=event_to_payload(event),
                    payload_hash=hashlib.sha256(body).hexdigest(),
                    status=status,
                    attempt_count=0,
                    next_attempt_at=now + RECEIVED_REPLAY_GRACE if status == RECEIVED else None,
                    received_at=now,
                    processed_at=now if status == IGNORED else None,
                )
            )
    except IntegrityError:
        # Race condition: a concurrent delivery already inserted this event
        with get_db_session() as session:
            existing = session.execute(
                select(webhook_events.c.status).where(webhook_events.c.event_id == event.event_id)
            ).first()
            return existing.status if existing else RECEIVED
    return None


def _resolve_plan(session, event: ProviderEvent) -> Optional[Plan]:
    if event.plan_id:
        plan = get_plan(event.plan_id, session=session)
        if plan:
            return plan
    return get_plan_by_price(event.price_id, session=session) if event.price_id else None


def _materialize(session, event: ProviderEvent, plan: Optional[Plan], target: Optional[SubscriptionState], now: datetime) -> str:
    """First sight of a subscription: upsert it, creating a placeholder owner if needed."""
    if target is None or plan is None:
        logger.info(
            "webhook.insufficient_metadata",
            extra={"event_type": event.kind, "reason": "no plan" if plan is None else "no state"},
        )
        return IGNORED

    owner = get_user_row(session, event.user_id) if event.user_id else None
    email = None
    if event.email:
        try:
            email = normalize_email(event.email)
        except ValidationError:
            email = None
    if owner is None and email:
        owner = get_user_row_by_email(session, email)

    if owner is None:
        if not email:
            logger.info("webhook.insufficient_metadata", extra={"event_type": event.kind, "reason": "no owner"})
            return IGNORED
        user_id = create_placeholder_user(
            session, email=email, external_customer_id=event.external_customer_id, now=now
        )
        has_credentials = False
    else:
        user_id = owner.id
        has_credentials = owner.password_hash is not None
        if event.external_customer_id and not owner.external_customer_id:
            set_external_customer_id(session, user_id, event.external_customer_id)

    state = target
    if state == SubscriptionState.ACTIVE and not has_credentials:
        # Finalize attaches credentials and activates
        state = SubscriptionState.PENDING

    if state in _LIVE and get_live_subscription(session, user_id) is not None:
        logger.warning(
            "webhook.live_subscription_exists",
            extra={"user_id": user_id, "event_type": event.kind},
        )
        return IGNORED

    subscription_id = insert_subscription(
        session,
        user_id=user_id,
        plan=plan,
        external_subscription_id=event.external_subscription_id,
        external_customer_id=event.external_customer_id,
        state=state,
        current_period_end=event.current_period_end,
        updated_at=event.occurred_at,
        now=now,
    )
    logger.info(
        "webhook.subscription_materialized",
        extra={"user_id": user_id, "subscription_id": subscription_id, "state": state.value},
    )
    return PROCESSED


def _transition_allowed(session, subscription: Subscription, target: SubscriptionState, event: ProviderEvent, now: datetime) -> bool:
    current = subscription.state
    if target == SubscriptionState.CANCELLED:
        return current != SubscriptionState.CANCELLED
    if target == SubscriptionState.PAST_DUE:
        return current in _LIVE
    if target == SubscriptionState.EXPIRED:
        # Provider gave up on an incomplete signup
        return current == SubscriptionState.PENDING
    if target == SubscriptionState.ACTIVE:
        if current == SubscriptionState.PAST_DUE:
            return True
        if current == SubscriptionState.PENDING:
            owner = get_user_row(session, subscription.user_id)
            return owner is not None and owner.password_hash is not None
        if current == SubscriptionState.EXPIRED:
            return event.current_period_end is not None and event.current_period_end > now
    return False


def _transition(session, subscription: Subscription, event: ProviderEvent, plan: Optional[Plan], target: Optional[SubscriptionState], now: datetime) -> str:
    """Apply an event to an existing row: LWW by event time, then the transition table."""
    if event.occurred_at < subscription.updated_at:
        logger.info(
            "webhook.stale_ignored",
            extra={
                "subscription_id": subscription.id,
                "occurred_at": _iso(event.occurred_at),
                "updated_at": _iso(subscription.updated_at),
            },
        )
        return IGNORED
    if target is None:
        return IGNORED

    current = subscription.state
    values: Dict[str, Any] = {"updated_at": event.occurred_at}

    if target != current:
        if not _transition_allowed(session, subscription, target, event, now):
            logger.info(
                "webhook.transition_rejected",
                extra={"subscription_id": subscription.id, "from_state": current.value, "to_state": target.value},
            )
            return IGNORED
        if target == SubscriptionState.ACTIVE and current not in _LIVE:
            other = get_live_subscription(session, subscription.user_id)
            if other is not None and other.id != subscription.id:
                logger.warning(
                    "webhook.live_subscription_exists",
                    extra={"user_id": subscription.user_id, "subscription_id": subscription.id},
                )
                return IGNORED
        values["state"] = target

    renewal = event.current_period_end is not None and (
        subscription.current_period_end is None or event.current_period_end > subscription.current_period_end
    )
    plan_changed = plan is not None and plan.plan_id != subscription.plan_id
    if renewal:
        values["current_period_end"] = event.current_period_end
    if plan is not None and (renewal or plan_changed):
        # Terms snapshot follows the plan only from a new period or plan switch on
        values["plan_id"] = plan.plan_id
        values.update(terms_from_plan(plan))
    if event.external_customer_id and not subscription.external_customer_id:
        values["external_customer_id"] = event.external_customer_id

    if not compare_and_set(session, subscription.id, subscription.version, **values):
        raise StaleVersion(subscription.id, subscription.version)

    new_state = values.get("state", current)
    if new_state in (SubscriptionState.CANCELLED, SubscriptionState.EXPIRED) and current != new_state:
        revoke_all_licenses(session, subscription.user_id, now)

    logger.info(
        "webhook.applied",
        extra={
            "subscription_id": subscription.id,
            "from_state": current.value,
            "to_state": new_state.value,
            "renewal": renewal,
        },
    )
    return PROCESSED


def _mark(session, event_id: str, status: str, now: datetime) -> None:
    session.execute(
        update(webhook_events)
        .where(webhook_events.c.event_id == event_id)
        .values(
            status=status,
            attempt_count=webhook_events.c.attempt_count + 1,
            next_attempt_at=None,
            last_error=None,
            processed_at=now,
        )
    )


def _apply_once(event: ProviderEvent, now: datetime) -> str:
    """One attempt: apply and mark the event in a single transaction."""
    try:
        with get_db_session() as session:
            if not event.external_subscription_id:
                outcome = IGNORED
            else:
                subscription = get_subscription_by_external_id(session, event.external_subscription_id)
                plan = _resolve_plan(session, event)
                target = target_state(event)
                if subscription is None:
                    outcome = _materialize(session, event, plan, target, now)
                else:
                    outcome = _transition(session, subscription, event, plan, target, now)
            _mark(session, event.event_id, outcome, now)
            return outcome
    except IntegrityError as e:
        # Finalize (or another delivery) inserted the row first; re-read and apply as an update
        raise StaleVersion(event.external_subscription_id or "", 0) from e


def _record_failure(event_id: str, error: Exception, now: datetime) -> None:
    with get_db_session() as session:
        row = session.execute(
            select(webhook_events.c.attempt_count).where(webhook_events.c.event_id == event_id)
        ).first()
        attempts = int(row.attempt_count or 0) + 1 if row else 1
        exhausted = attempts >= settings.WEBHOOK_REPLAY_MAX_ATTEMPTS
        session.execute(
            update(webhook_events)
            .where(webhook_events.c.event_id == event_id)
            .values(
                status=FAILED,
                attempt_count=attempts,
                last_error=f"{getattr(error, 'code', type(error).__name__)}: {error}"[:1000],
                next_attempt_at=None if exhausted else now + compute_backoff(attempts),
            )
        )


def apply_event(event: ProviderEvent, now: Optional[datetime] = None) -> str:
    """
    Apply a recorded event. Never raises for processing failures: they are
    recorded on the event row (status failed, replay scheduled) and isolated
    to this event.

    Returns:
        processed | ignored | failed
    """
    now = now or utc_now()
    try:
        outcome = run_optimistic(
            lambda: _apply_once(event, now),
            attempts=settings.RECONCILE_MAX_ATTEMPTS,
            operation="webhook_apply",
        )
    except Exception as e:
        _record_failure(event.event_id, e, now)
        log = logger.warning if isinstance(e, ReconciliationConflict) else logger.error
        log(
            "webhook.apply_failed",
            exc_info=not isinstance(e, ReconciliationConflict),
            extra={"event_type": event.kind, "error_code": getattr(e, "code", "internal_error")},
        )
        outcome = FAILED

    webhook_events_total.inc(labels={"kind": event.kind or "other", "status": outcome})
    return outcome


def apply_recorded_event(event_id: str, now: Optional[datetime] = None) -> Optional[str]:
    """Re-run a stored event (replay). None when the event id is unknown."""
    with get_db_session() as session:
        row = session.execute(
            select(webhook_events.c.payload).where(webhook_events.c.event_id == event_id)
        ).first()
    if not row:
        return None
    return apply_event(payload_to_event(row.payload), now=now)


def process_webhook(
    headers: Mapping[str, str],
    body: bytes,
    provider: Optional[PaymentProvider] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Verify, record and apply one webhook delivery.

    Returns:
        {"event_id", "status", "duplicate"}

    Raises:
        WebhookSignatureInvalid: signature or payload rejected; nothing recorded
    """
    provider = provider or get_provider()
    try:
        event = provider.parse_webhook(headers, body)
    except WebhookVerificationError as e:
        webhook_events_total.inc(labels={"kind": "unverified", "status": "rejected"})
        logger.warning("webhook.signature_invalid", extra={"error_message": str(e)})
        raise WebhookSignatureInvalid("Webhook signature verification failed")

    now = now or utc_now()
    recorded = record_event(event, body, now)
    if recorded is not None:
        webhook_events_total.inc(labels={"kind": event.kind or "other", "status": "duplicate"})
        logger.info("webhook.duplicate", extra={"event_type": event.event_type, "status": recorded})
        return {"event_id": event.event_id, "status": recorded, "duplicate": True}

    if not event.kind:
        webhook_events_total.inc(labels={"kind": "other", "status": IGNORED})
        return {"event_id": event.event_id, "status": IGNORED, "duplicate": False}

    status = apply_event(event, now=now)
    return {"event_id": event.event_id, "status": status, "duplicate": False}
