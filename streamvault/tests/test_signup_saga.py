"""
Signup saga: intent reservation, payment confirmation and idempotent finalize.
"""
import hashlib
from datetime import timedelta

import pytest
from sqlalchemy import select, func, insert

from streamvault.core.database import get_db_session, saga_intents, subscriptions, users
from streamvault.core.errors import (
    DuplicateSubscription,
    EmailAlreadyRegistered,
    IntentInProgress,
    PaymentNotConfirmed,
    ProviderUnavailable,
    ValidationError,
)
from streamvault.core.metrics import saga_outcomes_total
from streamvault.features.billing.provider import SUBSCRIPTION_CREATED, ProviderRejectedError, ProviderTransientError
from streamvault.features.billing.reconciler import process_webhook
from streamvault.features.signup.service import create_signup_intent, finalize_signup, intent_key_for
from streamvault.tests.mocks import event_body


def _intent(email="viewer@example.com", plan_id="standard", key=None, now=None):
    return create_signup_intent(
        email=email,
        name="Viewer",
        plan_id=plan_id,
        payment_method_id="pm_card_visa",
        idempotency_key=key,
        now=now,
    )


def _finalize(intent, email="viewer@example.com", password="correct-horse", plan_id="standard", customer_id=None, now=None):
    return finalize_signup(
        email=email,
        password=password,
        name="Viewer",
        plan_id=plan_id,
        subscription_id=intent.subscription_id,
        customer_id=customer_id or intent.customer_id,
        now=now,
    )


def _count(table):
    with get_db_session() as session:
        return session.execute(select(func.count()).select_from(table)).scalar()


def test_intent_creates_provider_objects_only(fake_provider):
    intent = _intent()

    assert intent.subscription_id == "sub_1"
    assert intent.customer_id == "cus_1"
    assert intent.confirmation_token == "pi_1_secret"
    assert _count(users) == 0
    assert _count(subscriptions) == 0
    assert fake_provider.subscriptions["sub_1"]["metadata"]["email"] == "viewer@example.com"


def test_intent_replays_result_for_same_key(fake_provider):
    first = _intent(key="signup-123")
    second = _intent(key="signup-123")

    assert first == second
    assert fake_provider.calls.count("create_signup_subscription") == 1
    assert saga_outcomes_total.value({"phase": "intent", "outcome": "replayed"}) == 1


def test_intent_without_key_is_keyed_on_email_and_plan(fake_provider):
    first = _intent(email="Viewer@Example.com ")
    second = _intent(email="viewer@example.com")

    assert first.subscription_id == second.subscription_id
    assert intent_key_for("viewer@example.com", "standard", None).startswith("auto:")


def test_intent_key_reused_with_other_parameters_is_rejected(fake_provider):
    _intent(key="signup-123", plan_id="standard")

    with pytest.raises(ValidationError):
        _intent(key="signup-123", plan_id="premium")


def test_intent_in_progress_for_held_reservation(fake_provider, now):
    request_hash = hashlib.sha256("viewer@example.com|standard".encode("utf-8")).hexdigest()
    with get_db_session() as session:
        session.execute(insert(saga_intents).values(
            key="signup-123",
            email="viewer@example.com",
            plan_id="standard",
            request_hash=request_hash,
            created_at=now,
            expires_at=now + timedelta(minutes=30),
        ))

    with pytest.raises(IntentInProgress) as exc_info:
        _intent(key="signup-123", now=now)
    assert exc_info.value.retryable is True
    assert fake_provider.calls == []


def test_intent_provider_outage_releases_reservation(fake_provider):
    fake_provider.fail_next = [ProviderTransientError("timeout")] * 3

    with pytest.raises(ProviderUnavailable):
        _intent(key="signup-123")
    assert _count(saga_intents) == 0

    intent = _intent(key="signup-123")
    assert intent.subscription_id == "sub_1"


def test_intent_transient_failure_is_retried(fake_provider):
    fake_provider.fail_next = [ProviderTransientError("rate limited")]

    intent = _intent()

    assert intent.subscription_id == "sub_1"
    assert fake_provider.calls.count("create_signup_subscription") == 2


def test_intent_rejected_by_provider_is_client_error(fake_provider):
    fake_provider.fail_next = [ProviderRejectedError("card declined")]

    with pytest.raises(ValidationError):
        _intent()
    assert fake_provider.calls.count("create_signup_subscription") == 1


@pytest.mark.parametrize("field,value", [
    ("email", "not-an-email"),
    ("plan_id", "platinum"),
])
def test_intent_validates_input(fake_provider, field, value):
    kwargs = {"email": "viewer@example.com", "plan_id": "standard", field: value}
    with pytest.raises(ValidationError):
        _intent(**kwargs)
    assert fake_provider.calls == []


def test_intent_rejected_when_email_already_subscribed(subscribe):
    subscribe()

    with pytest.raises(DuplicateSubscription):
        _intent(email="viewer@example.com", plan_id="premium")


def test_intent_retry_replays_after_webhook_created_pending_row(fake_provider, now):
    first = _intent(key="signup-123", now=now)
    created = event_body(
        "evt_created", SUBSCRIPTION_CREATED, now + timedelta(seconds=1),
        subscription_id=first.subscription_id, customer_id=first.customer_id, status="incomplete",
        email="viewer@example.com", plan_id="standard",
    )
    assert process_webhook(fake_provider.signed_headers(), created, now=now)["status"] == "processed"
    with get_db_session() as session:
        assert session.execute(select(subscriptions.c.state)).scalar() == "PENDING"

    second = _intent(key="signup-123", now=now + timedelta(seconds=2))

    assert second == first
    assert (second.subscription_id, second.customer_id) == ("sub_1", "cus_1")
    assert fake_provider.calls.count("create_signup_subscription") == 1

    # A different key for the same email still finds the live subscription
    with pytest.raises(DuplicateSubscription):
        _intent(key="signup-456", now=now + timedelta(seconds=3))


def test_finalize_requires_confirmed_payment(fake_provider):
    intent = _intent()

    with pytest.raises(PaymentNotConfirmed) as exc_info:
        _finalize(intent)

    assert exc_info.value.retryable is True
    assert _count(users) == 0
    assert _count(subscriptions) == 0


def test_finalize_commits_user_and_active_subscription(fake_provider, now):
    intent = _intent(now=now)
    fake_provider.confirm_payment(intent.subscription_id)

    tokens = _finalize(intent, now=now)

    with get_db_session() as session:
        sub = session.execute(select(subscriptions)).one()
        user = session.execute(select(users)).one()
    assert sub.state == "ACTIVE"
    assert sub.user_id == tokens.user_id == user.id
    assert sub.device_limit == 4
    assert sub.max_offline_downloads == 2
    assert user.password_hash is not None
    assert user.external_customer_id == intent.customer_id
    # Completed intents are dropped
    assert _count(saga_intents) == 0
    assert saga_outcomes_total.value({"phase": "finalize", "outcome": "committed"}) == 1


def test_finalize_is_idempotent(fake_provider, now):
    intent = _intent(now=now)
    fake_provider.confirm_payment(intent.subscription_id)

    first = _finalize(intent, now=now)
    second = _finalize(intent, now=now + timedelta(seconds=5))

    assert first.user_id == second.user_id
    assert first.refresh_token != second.refresh_token
    assert _count(users) == 1
    assert _count(subscriptions) == 1
    assert saga_outcomes_total.value({"phase": "finalize", "outcome": "idempotent"}) == 1


def test_finalize_repeat_with_wrong_password_is_rejected(fake_provider):
    intent = _intent()
    fake_provider.confirm_payment(intent.subscription_id)
    _finalize(intent)

    with pytest.raises(EmailAlreadyRegistered):
        _finalize(intent, password="another-password")


def test_finalize_rejects_foreign_customer(fake_provider):
    intent = _intent()
    fake_provider.confirm_payment(intent.subscription_id)

    with pytest.raises(PaymentNotConfirmed):
        _finalize(intent, customer_id="cus_someone_else")
    assert _count(subscriptions) == 0


def test_finalize_rejects_email_of_another_signup(fake_provider):
    intent = _intent(email="viewer@example.com")
    fake_provider.confirm_payment(intent.subscription_id)

    with pytest.raises(ValidationError):
        _finalize(intent, email="intruder@example.com")


def test_finalize_rejects_short_password(fake_provider):
    intent = _intent()
    fake_provider.confirm_payment(intent.subscription_id)

    with pytest.raises(ValidationError):
        _finalize(intent, password="short")
