# streamvault/conftest.py
import os
from datetime import datetime, timezone

import pytest

os.environ.setdefault("SKIP_ENV_VALIDATION", "1")
os.environ.setdefault("ENV", "test")

from streamvault.core import auth as core_auth
from streamvault.core.config import settings
from streamvault.core.database import init_engine, reset_database
from streamvault.core.metrics import METRICS
from streamvault.features.billing.service import set_provider
from streamvault.features.plans.service import seed_plans
from streamvault.features.signup.service import create_signup_intent, finalize_signup
from streamvault.tests.mocks import FakePaymentProvider

TEST_DATABASE_URL = "sqlite+pysqlite:///:memory:"


@pytest.fixture(scope="session", autouse=True)
def engine():
    """One in-memory database for the session; tables are rebuilt per test."""
    return init_engine(TEST_DATABASE_URL)


@pytest.fixture(autouse=True)
def reset_db(engine, monkeypatch):
    """Fresh schema, seeded plans, clean metrics and fast hashing for every test."""
    monkeypatch.setattr(settings, "STRIPE_PRICE_BASIC", "price_basic")
    monkeypatch.setattr(settings, "STRIPE_PRICE_STANDARD", "price_standard")
    monkeypatch.setattr(settings, "STRIPE_PRICE_PREMIUM", "price_premium")
    monkeypatch.setattr(settings, "PROVIDER_RETRY_MAX_WAIT_SECONDS", 0)
    monkeypatch.setattr(core_auth, "BCRYPT_ROUNDS", 4)

    reset_database()
    seed_plans()
    METRICS.reset()
    yield
    set_provider(None)


@pytest.fixture
def fake_provider():
    provider = FakePaymentProvider()
    set_provider(provider)
    return provider


@pytest.fixture
def now():
    return datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture
def subscribe(fake_provider):
    """Run the full signup saga; returns ids and tokens of the new subscriber."""

    def _subscribe(email="viewer@example.com", plan_id="standard", password="correct-horse", now=None):
        intent = create_signup_intent(
            email=email,
            name="Viewer",
            plan_id=plan_id,
            payment_method_id="pm_card_visa",
            now=now,
        )
        fake_provider.confirm_payment(intent.subscription_id)
        tokens = finalize_signup(
            email=email,
            password=password,
            name="Viewer",
            plan_id=plan_id,
            subscription_id=intent.subscription_id,
            customer_id=intent.customer_id,
            now=now,
        )
        return {
            "user_id": tokens.user_id,
            "subscription_id": intent.subscription_id,
            "customer_id": intent.customer_id,
            "tokens": tokens,
        }

    return _subscribe


@pytest.fixture
def client(fake_provider):
    from fastapi.testclient import TestClient
    from streamvault.main import app

    return TestClient(app)
