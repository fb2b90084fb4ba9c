"""
streamvault/features/signup/service.py

Two-phase signup + subscription saga.

Phase 1, create_signup_intent: reserve a saga intent for the idempotency
key, then have the provider create a customer and an incomplete
subscription. Nothing local is created besides the intent row.

Phase 2, finalize_signup: once the client has confirmed payment, verify it
with the provider and commit user + ACTIVE subscription in one
transaction. Finalize is idempotent and commutes with the webhook
reconciler: whichever of them materializes the subscription first, the
other converges on the same row.
"""

import hashlib
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, insert, update, delete
from sqlalchemy.exc import IntegrityError
from tenacity import Retrying, RetryError, retry_if_exception_type, stop_after_attempt

from streamvault.core.auth import hash_password, verify_password
from streamvault.core.config import settings
from streamvault.core.database import get_db_session, saga_intents
from streamvault.core.errors import (
    DuplicateSubscription,
    EmailAlreadyRegistered,
    IntentInProgress,
    PaymentNotConfirmed,
    ReconciliationConflict,
    ValidationError,
)
from streamvault.core.logging import log_event
from streamvault.core.metrics import saga_outcomes_total
from streamvault.features.billing.provider import (
    PAID_STATUSES,
    PaymentProvider,
    ProviderRejectedError,
    ProviderSubscription,
)
from streamvault.features.billing.service import call_provider, get_provider
from streamvault.features.entitlements.store import (
    StaleVersion,
    as_utc,
    compare_and_set,
    get_live_subscription,
    get_subscription_by_external_id,
    insert_subscription,
    run_optimistic,
    utc_now,
)
from streamvault.features.plans.service import require_plan
from streamvault.features.users.service import (
    attach_credentials,
    create_user,
    get_user_row,
    get_user_row_by_email,
    issue_tokens,
    normalize_email,
    validate_password,
)
from streamvault.models.plan import Plan
from streamvault.models.signup import SignupIntent
from streamvault.models.subscription import SubscriptionState
from streamvault.models.user import AuthTokens

logger = logging.getLogger("streamvault")

# Re-entries of the idempotent path after a unique-constraint race
MAX_FINALIZE_ATTEMPTS = 3


class _FinalizeRace(Exception):
    """A concurrent writer claimed the user or subscription first."""


def _log_finalize_race(retry_state) -> None:
    logger.info("saga.finalize.race", extra={"attempt": retry_state.attempt_number})


def _digest(*parts: str) -> str:
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def intent_key_for(email: str, plan_id: str, idempotency_key: Optional[str]) -> str:
    """Caller's key when given, otherwise a digest of (email, plan)."""
    if idempotency_key and idempotency_key.strip():
        return idempotency_key.strip()
    return f"auto:{_digest(email, plan_id)}"


def _require_text(value: Optional[str], field: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{field}: must not be blank")
    return cleaned


def _completed_intent(session, key: str, request_hash: str, now: datetime) -> Optional[SignupIntent]:
    """Stored provider result for `key`, when it completed unexpired with the same parameters."""
    row = session.execute(select(saga_intents).where(saga_intents.c.key == key)).first()
    if (
        row is None
        or not row.external_subscription_id
        or row.request_hash != request_hash
        or as_utc(row.expires_at) <= now
    ):
        return None
    return SignupIntent(
        subscription_id=row.external_subscription_id,
        customer_id=row.external_customer_id,
        confirmation_token=row.client_secret,
    )


def _reserve_intent(key: str, email: str, plan_id: str, request_hash: str, now: datetime) -> Optional[SignupIntent]:
    """
    Insert the in-flight reservation for `key`.

    Returns the stored result when the key already completed with the same
    parameters, None when the reservation is now ours.
    """
    try:
        with get_db_session() as session:
            existing = session.execute(
                select(saga_intents).where(saga_intents.c.key == key)
            ).first()
            if existing:
                if as_utc(existing.expires_at) <= now:
                    session.execute(delete(saga_intents).where(saga_intents.c.key == key))
                elif existing.request_hash != request_hash:
                    raise ValidationError("Idempotency key was already used with different parameters")
                elif existing.external_subscription_id:
                    return _completed_intent(session, key, request_hash, now)
                else:
                    raise IntentInProgress("A signup with this idempotency key is already in progress")

            session.execute(
                insert(saga_intents).values(
                    key=key,
                    email=email,
                    plan_id=plan_id,
                    request_hash=request_hash,
                    created_at=now,
                    expires_at=now + timedelta(seconds=settings.SAGA_INTENT_TTL_SECONDS),
                )
            )
    except IntegrityError:
        # Lost the insert race to a concurrent call with the same key
        raise IntentInProgress("A signup with this idempotency key is already in progress")
    return None


def _release_intent(key: str) -> None:
    with get_db_session() as session:
        session.execute(
            delete(saga_intents)
            .where(saga_intents.c.key == key)
            .where(saga_intents.c.external_subscription_id.is_(None))
        )


def create_signup_intent(
    email: str,
    name: str,
    plan_id: str,
    payment_method_id: str,
    idempotency_key: Optional[str] = None,
    provider: Optional[PaymentProvider] = None,
    now: Optional[datetime] = None,
) -> SignupIntent:
    """
    Phase 1: create the provider customer + incomplete subscription.

    Raises:
        ValidationError: malformed input, unknown plan, key reused with other
            parameters, or the provider rejected the request
        DuplicateSubscription: email already owns a PENDING/ACTIVE subscription
        EmailAlreadyRegistered: email belongs to an account with credentials
        IntentInProgress: a concurrent call holds the reservation for this key
        ProviderUnavailable: provider down after retries
    """
    now = as_utc(now) or utc_now()
    email = normalize_email(email)
    name = _require_text(name, "name")
    payment_method_id = _require_text(payment_method_id, "paymentMethodId")
    plan = require_plan(plan_id)
    if not plan.external_price_id:
        raise ValidationError(f"No provider price configured for plan: {plan.plan_id}")

    key = intent_key_for(email, plan.plan_id, idempotency_key)
    request_hash = _digest(email, plan.plan_id)

    with get_db_session() as session:
        user = get_user_row_by_email(session, email)
        if user:
            live = get_live_subscription(session, user.id)
            if live is not None:
                stored = _completed_intent(session, key, request_hash, now)
                if stored is not None and stored.subscription_id == live.external_subscription_id:
                    # A webhook materialized this intent's subscription before the retry
                    saga_outcomes_total.inc(labels={"phase": "intent", "outcome": "replayed"})
                    logger.info("saga.intent.replayed", extra={"subscription_id": stored.subscription_id})
                    return stored
                saga_outcomes_total.inc(labels={"phase": "intent", "outcome": "duplicate"})
                raise DuplicateSubscription("This email already has an active or pending subscription")
            if user.password_hash is not None:
                raise EmailAlreadyRegistered("An account already exists for this email; sign in to subscribe")

    stored = _reserve_intent(key, email, plan.plan_id, request_hash, now)
    if stored is not None:
        saga_outcomes_total.inc(labels={"phase": "intent", "outcome": "replayed"})
        logger.info("saga.intent.replayed", extra={"subscription_id": stored.subscription_id})
        return stored

    provider = provider or get_provider()
    try:
        result = call_provider(
            provider.create_signup_subscription,
            email=email,
            name=name,
            payment_method_id=payment_method_id,
            price_id=plan.external_price_id,
            metadata={"email": email, "plan_id": plan.plan_id, "intent_key": key},
            idempotency_key=key,
        )
    except Exception as e:
        # Let the client retry with the same key
        _release_intent(key)
        saga_outcomes_total.inc(labels={"phase": "intent", "outcome": "failed"})
        log_event(
            "warning",
            "saga.intent.provider_failed",
            error_code=getattr(e, "code", type(e).__name__),
            extra={"error_message": e, "plan_id": plan.plan_id},
        )
        if isinstance(e, ProviderRejectedError):
            raise ValidationError(f"Payment provider rejected the signup: {e}") from e
        raise

    with get_db_session() as session:
        session.execute(
            update(saga_intents)
            .where(saga_intents.c.key == key)
            .values(
                external_customer_id=result.customer_id,
                external_subscription_id=result.subscription_id,
                client_secret=result.client_secret,
            )
        )

    saga_outcomes_total.inc(labels={"phase": "intent", "outcome": "created"})
    logger.info(
        "saga.intent.created",
        extra={"subscription_id": result.subscription_id, "plan_id": plan.plan_id},
    )
    return SignupIntent(
        subscription_id=result.subscription_id,
        customer_id=result.customer_id,
        confirmation_token=result.client_secret,
    )


def _confirm_payment(provider: PaymentProvider, subscription_id: str, customer_id: str, email: str, plan: Plan) -> ProviderSubscription:
    """
    Ask the provider whether the subscription is paid and really ours.

    Raises:
        PaymentNotConfirmed: unknown, foreign, wrong price or not yet paid
        ValidationError: subscription was created for another email
    """
    try:
        remote = call_provider(provider.retrieve_subscription, subscription_id)
    except ProviderRejectedError as e:
        raise PaymentNotConfirmed(f"Subscription could not be confirmed: {e}") from e

    if remote.customer_id != customer_id:
        raise PaymentNotConfirmed("Subscription does not belong to this customer")
    if plan.external_price_id and remote.price_id and remote.price_id != plan.external_price_id:
        raise PaymentNotConfirmed("Subscription price does not match the selected plan")
    metadata_email = (remote.metadata or {}).get("email")
    if metadata_email and metadata_email.strip().lower() != email:
        raise ValidationError("Subscription was created for a different email")
    if remote.status not in PAID_STATUSES:
        raise PaymentNotConfirmed(f"Payment not confirmed yet (status: {remote.status})")
    return remote


def _delete_intents_for(session, subscription_id: str) -> None:
    session.execute(delete(saga_intents).where(saga_intents.c.external_subscription_id == subscription_id))


def _finalize_existing(
    subscription_id: str,
    customer_id: str,
    email: str,
    password: str,
    password_hash: str,
    name: str,
    confirmed: Optional[ProviderSubscription],
    now: datetime,
) -> AuthTokens:
    """Idempotent path: the subscription row already exists."""

    def _work() -> AuthTokens:
        with get_db_session() as session:
            subscription = get_subscription_by_external_id(session, subscription_id)
            if subscription.external_customer_id and subscription.external_customer_id != customer_id:
                raise ValidationError("Subscription does not belong to this customer")

            owner = get_user_row(session, subscription.user_id)
            if owner.email != email:
                raise ValidationError("Subscription does not belong to this email")

            if owner.password_hash is None:
                if not attach_credentials(
                    session,
                    user_id=owner.id,
                    password_hash=password_hash,
                    name=name,
                    external_customer_id=customer_id,
                ):
                    # Another finalize claimed the placeholder; re-read and verify instead
                    raise StaleVersion(subscription.id, subscription.version)
                logger.info("saga.finalize.claimed_placeholder", extra={"user_id": owner.id})
            elif not verify_password(password, owner.password_hash):
                raise EmailAlreadyRegistered("An account already exists for this email")

            if subscription.state == SubscriptionState.PENDING:
                if confirmed is None:
                    # Row turned PENDING after the pre-check; start over to confirm payment
                    raise _FinalizeRace()
                period_end = confirmed.current_period_end or subscription.current_period_end
                if not compare_and_set(
                    session,
                    subscription.id,
                    subscription.version,
                    state=SubscriptionState.ACTIVE,
                    current_period_end=period_end,
                    external_customer_id=subscription.external_customer_id or customer_id,
                    updated_at=max(now, subscription.updated_at),
                ):
                    raise StaleVersion(subscription.id, subscription.version)
                logger.info(
                    "saga.finalize.promoted",
                    extra={"user_id": owner.id, "subscription_id": subscription.id},
                )

            _delete_intents_for(session, subscription_id)
            return issue_tokens(session, owner.id, owner.email, now=now)

    return run_optimistic(_work, operation="finalize")


def _finalize_new(
    plan: Plan,
    subscription_id: str,
    customer_id: str,
    email: str,
    password_hash: str,
    name: str,
    confirmed: ProviderSubscription,
    now: datetime,
) -> AuthTokens:
    """First materialization: user (or claimed placeholder) + ACTIVE subscription, one commit."""
    with get_db_session() as session:
        user = get_user_row_by_email(session, email)
        if user:
            if user.password_hash is not None:
                raise EmailAlreadyRegistered("An account already exists for this email")
            if get_live_subscription(session, user.id) is not None:
                raise DuplicateSubscription("This email already has an active or pending subscription")
            if not attach_credentials(
                session,
                user_id=user.id,
                password_hash=password_hash,
                name=name,
                external_customer_id=customer_id,
            ):
                raise _FinalizeRace()
            user_id = user.id
        else:
            user_id = create_user(
                session,
                email=email,
                name=name,
                password_hash=password_hash,
                external_customer_id=customer_id,
                now=now,
            )

        insert_subscription(
            session,
            user_id=user_id,
            plan=plan,
            external_subscription_id=subscription_id,
            external_customer_id=customer_id,
            state=SubscriptionState.ACTIVE,
            current_period_end=confirmed.current_period_end,
            updated_at=now,
            now=now,
        )
        _delete_intents_for(session, subscription_id)
        tokens = issue_tokens(session, user_id, email, now=now)

    logger.info(
        "saga.finalize.committed",
        extra={"user_id": user_id, "plan_id": plan.plan_id},
    )
    return tokens


def finalize_signup(
    email: str,
    password: str,
    name: str,
    plan_id: str,
    subscription_id: str,
    customer_id: str,
    provider: Optional[PaymentProvider] = None,
    now: Optional[datetime] = None,
) -> AuthTokens:
    """
    Phase 2: commit the account once payment is confirmed.

    Calling it again with the same arguments returns fresh tokens for the
    same user and subscription; nothing is created twice.

    Raises:
        ValidationError: malformed input, or subscription belongs to another
            email/customer
        PaymentNotConfirmed: provider does not report the subscription as paid
        EmailAlreadyRegistered: a different account owns the email, or the
            password does not match the account finalize created earlier
        DuplicateSubscription: the email's account already has another live
            subscription
        ProviderUnavailable: provider down after retries
    """
    now = as_utc(now) or utc_now()
    email = normalize_email(email)
    validate_password(password)
    name = _require_text(name, "name")
    subscription_id = _require_text(subscription_id, "subscriptionId")
    customer_id = _require_text(customer_id, "customerId")
    plan = require_plan(plan_id)
    provider = provider or get_provider()
    password_hash = hash_password(password)

    def _attempt() -> AuthTokens:
        with get_db_session() as session:
            existing = get_subscription_by_external_id(session, subscription_id)

        if existing is not None:
            confirmed = None
            if existing.state == SubscriptionState.PENDING:
                confirmed = _confirm_payment(provider, subscription_id, customer_id, email, plan)
            tokens = _finalize_existing(
                subscription_id, customer_id, email, password, password_hash, name, confirmed, now
            )
            saga_outcomes_total.inc(labels={"phase": "finalize", "outcome": "idempotent"})
            return tokens

        confirmed = _confirm_payment(provider, subscription_id, customer_id, email, plan)
        tokens = _finalize_new(plan, subscription_id, customer_id, email, password_hash, name, confirmed, now)
        saga_outcomes_total.inc(labels={"phase": "finalize", "outcome": "committed"})
        return tokens

    # A concurrent finalize or webhook upsert that wins sends the next attempt down the idempotent path
    retrying = Retrying(
        stop=stop_after_attempt(MAX_FINALIZE_ATTEMPTS),
        retry=retry_if_exception_type((IntegrityError, _FinalizeRace)),
        before_sleep=_log_finalize_race,
        reraise=False,
    )
    try:
        return retrying(_attempt)
    except RetryError as e:
        raise ReconciliationConflict(
            "Signup could not be finalized due to concurrent updates; retry"
        ) from e.last_attempt.exception()
