from datetime import timedelta

import pytest
from sqlalchemy import select

from streamvault.core.database import get_db_session, download_licenses, subscriptions
from streamvault.core.errors import NoActiveSubscription, ReconciliationConflict
from streamvault.features.billing.provider import INVOICE_PAYMENT_FAILED, SUBSCRIPTION_UPDATED
from streamvault.features.billing.reconciler import process_webhook
from streamvault.features.billing.service import get_subscription_status
from streamvault.features.downloads.service import issue_download_license
from streamvault.features.entitlements.service import get_active_entitlement
from streamvault.features.entitlements.store import StaleVersion, as_utc, run_optimistic
from streamvault.features.plans.service import update_plan_terms
from streamvault.tests.mocks import event_body


def _row(subscription_id):
    with get_db_session() as session:
        return session.execute(
            select(subscriptions).where(subscriptions.c.external_subscription_id == subscription_id)
        ).first()


def test_entitlement_reflects_terms_snapshot(subscribe, now):
    sub = subscribe(plan_id="premium", now=now)

    entitlement = get_active_entitlement(sub["user_id"], now=now)

    assert entitlement.plan_id == "premium"
    assert entitlement.device_limit == 6
    assert entitlement.offline_allowed is True
    assert entitlement.max_offline_downloads == 25


def test_past_due_has_no_entitlement(fake_provider, subscribe, now):
    sub = subscribe(now=now)
    body = event_body("evt_1", INVOICE_PAYMENT_FAILED, now + timedelta(minutes=1), subscription_id=sub["subscription_id"])
    process_webhook(fake_provider.signed_headers(), body, now=now)

    with pytest.raises(NoActiveSubscription):
        get_active_entitlement(sub["user_id"], now=now)


def test_lapsed_subscription_expires_lazily(fake_provider, subscribe, now):
    sub = subscribe(now=now)
    issue_download_license(sub["user_id"], "ep-1", now=now)
    period_end = fake_provider.period_end

    with pytest.raises(NoActiveSubscription):
        get_active_entitlement(sub["user_id"], now=period_end + timedelta(days=1))

    row = _row(sub["subscription_id"])
    assert row.state == "EXPIRED"
    assert as_utc(row.updated_at) == period_end
    with get_db_session() as session:
        assert session.execute(select(download_licenses.c.state)).scalar() == "REVOKED"


def test_renewal_after_lazy_expiry_reactivates(fake_provider, subscribe, now):
    sub = subscribe(now=now)
    period_end = fake_provider.period_end
    read_at = period_end + timedelta(hours=2)
    get_subscription_status(sub["user_id"], now=read_at)
    assert _row(sub["subscription_id"]).state == "EXPIRED"

    renewal = event_body(
        "evt_renewal", SUBSCRIPTION_UPDATED, period_end + timedelta(hours=1),
        subscription_id=sub["subscription_id"], status="active", plan_id="standard",
        current_period_end=period_end + timedelta(days=30),
    )
    result = process_webhook(fake_provider.signed_headers(), renewal, now=read_at)

    assert result["status"] == "processed"
    assert get_active_entitlement(sub["user_id"], now=read_at).current_period_end == period_end + timedelta(days=30)


def test_plan_change_reaches_subscription_on_renewal(fake_provider, subscribe, now):
    sub = subscribe(plan_id="standard", now=now)
    update_plan_terms("standard", price_cents=1499, device_limit=5)

    # Running period keeps its snapshot
    assert get_active_entitlement(sub["user_id"], now=now).device_limit == 4

    renewal = event_body(
        "evt_renewal", SUBSCRIPTION_UPDATED, now + timedelta(minutes=1),
        subscription_id=sub["subscription_id"], status="active", plan_id="standard",
        current_period_end=fake_provider.period_end + timedelta(days=30),
    )
    process_webhook(fake_provider.signed_headers(), renewal, now=now)

    assert get_active_entitlement(sub["user_id"], now=now).device_limit == 5
    assert _row(sub["subscription_id"]).price_cents == 1499


def test_subscription_status(subscribe, now):
    sub = subscribe(plan_id="basic", now=now)

    status = get_subscription_status(sub["user_id"], now=now)

    assert status["isSubscribed"] is True
    assert status["planId"] == "basic"
    assert status["state"] == "ACTIVE"
    assert get_subscription_status("nobody", now=now)["isSubscribed"] is False


def test_run_optimistic_retries_lost_writes_then_gives_up():
    calls = []

    def always_stale():
        calls.append(1)
        raise StaleVersion("sub-1", len(calls))

    with pytest.raises(ReconciliationConflict) as exc_info:
        run_optimistic(always_stale, operation="test_update")

    assert len(calls) == 5
    assert exc_info.value.retryable is True
    assert isinstance(exc_info.value.__cause__, StaleVersion)


def test_run_optimistic_returns_once_a_write_lands():
    calls = []

    def stale_twice():
        calls.append(1)
        if len(calls) < 3:
            raise StaleVersion("sub-1", len(calls))
        return "applied"

    assert run_optimistic(stale_twice, attempts=3) == "applied"
    assert len(calls) == 3


def test_run_optimistic_does_not_retry_other_errors():
    calls = []

    def broken():
        calls.append(1)
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        run_optimistic(broken)
    assert len(calls) == 1
