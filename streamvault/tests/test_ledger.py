from datetime import timedelta

import pytest

from streamvault.core.errors import ValidationError
from streamvault.features.billing.provider import SUBSCRIPTION_DELETED
from streamvault.features.billing.reconciler import process_webhook
from streamvault.features.ledger.service import active_subscription_count, churn, ledger_summary, revenue_by_plan
from streamvault.tests.mocks import event_body


def test_revenue_by_plan(subscribe, now):
    subscribe(email="a@example.com", plan_id="standard", now=now)
    subscribe(email="b@example.com", plan_id="standard", now=now)
    subscribe(email="c@example.com", plan_id="premium", now=now)

    by_plan = {row["planId"]: row for row in revenue_by_plan(now)}

    assert by_plan["basic"]["activeSubscriptions"] == 0
    assert by_plan["standard"]["activeSubscriptions"] == 2
    assert by_plan["standard"]["monthlyRecurringRevenueCents"] == 2598
    assert by_plan["premium"]["monthlyRecurringRevenueCents"] == 1899
    assert active_subscription_count(now) == 3


def test_churn_counts_cancellations_in_window(fake_provider, subscribe, now):
    first = subscribe(email="a@example.com", now=now)
    subscribe(email="b@example.com", now=now)
    body = event_body("evt_cancel", SUBSCRIPTION_DELETED, now + timedelta(hours=1), subscription_id=first["subscription_id"])
    process_webhook(fake_provider.signed_headers(), body, now=now)

    result = churn(now + timedelta(minutes=30), now + timedelta(hours=2))

    assert result["churned"] == 1
    assert result["base"] == 2
    assert result["rate"] == 0.5


def test_churn_rejects_empty_window(now):
    with pytest.raises(ValidationError):
        churn(now, now)


def test_ledger_summary(subscribe, now):
    subscribe(plan_id="premium", now=now)

    summary = ledger_summary(now + timedelta(minutes=1))

    assert summary["activeSubscriptions"] == 1
    assert summary["monthlyRecurringRevenueCents"] == 1899
    assert summary["churn"]["churned"] == 0
