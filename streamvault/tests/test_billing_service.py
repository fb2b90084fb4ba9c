import pytest

from streamvault.core.config import settings
from streamvault.core.errors import DuplicateSubscription, NotFoundError, ProviderUnavailable, ValidationError
from streamvault.features.billing.service import billing_enabled, get_provider, set_provider, start_checkout
from streamvault.features.billing.stripe_provider import StripeProvider


def test_provider_unavailable_without_configuration(monkeypatch):
    set_provider(None)
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)

    assert billing_enabled() is False
    with pytest.raises(ProviderUnavailable):
        get_provider()


def test_stripe_provider_used_when_configured(monkeypatch):
    set_provider(None)
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")

    assert isinstance(get_provider(), StripeProvider)


def test_checkout_validation(fake_provider, subscribe):
    with pytest.raises(NotFoundError):
        start_checkout("nobody", "standard", "https://app/ok", "https://app/cancel")

    user_id = subscribe()["user_id"]
    with pytest.raises(ValidationError):
        start_checkout(user_id, "platinum", "https://app/ok", "https://app/cancel")
    with pytest.raises(DuplicateSubscription):
        start_checkout(user_id, "premium", "https://app/ok", "https://app/cancel")
    assert fake_provider.checkout_sessions == []
