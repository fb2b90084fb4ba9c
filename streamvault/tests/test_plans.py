import pytest

from streamvault.core.errors import ConflictError, NotFoundError, ValidationError
from streamvault.features.plans.service import get_plan_by_price, list_plans, require_plan, seed_plans, update_plan_terms


def test_seed_is_idempotent():
    seed_plans()
    seed_plans()

    plans = list_plans()
    assert [p.plan_id for p in plans] == ["basic", "standard", "premium"]
    assert plans[0].offline_allowed is False
    assert plans[2].max_offline_downloads == 25


def test_plan_lookup_by_price():
    assert get_plan_by_price("price_premium").plan_id == "premium"
    assert get_plan_by_price("price_unknown") is None

    with pytest.raises(ValidationError):
        require_plan("platinum")


def test_update_plan_terms_validation():
    with pytest.raises(ValidationError):
        update_plan_terms("standard", device_limit=-1)
    with pytest.raises(NotFoundError):
        update_plan_terms("platinum", price_cents=100)


def test_identity_change_blocked_while_plan_in_use(subscribe, now):
    subscribe(plan_id="premium", now=now)

    with pytest.raises(ConflictError):
        update_plan_terms("premium", billing_period="year")

    renamed = update_plan_terms("basic", name="Basic (ads)")
    assert renamed.name == "Basic (ads)"
