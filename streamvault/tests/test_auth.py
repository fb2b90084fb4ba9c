from datetime import datetime, timedelta, timezone

import pytest

from streamvault.core.auth import (
    create_access_token,
    decode_access_token,
    decode_refresh_token,
    hash_password,
    verify_password,
)
from streamvault.core.errors import AuthenticationError
from streamvault.features.billing.provider import SUBSCRIPTION_CREATED
from streamvault.features.billing.reconciler import process_webhook
from streamvault.features.users.service import get_user_by_email, login, rotate_refresh_token
from streamvault.tests.mocks import event_body


def test_password_hashing_roundtrip():
    hashed = hash_password("correct-horse")
    assert verify_password("correct-horse", hashed)
    assert not verify_password("wrong-horse", hashed)
    assert not verify_password("correct-horse", None)


def test_access_token_claims():
    token = create_access_token("user-1", "viewer@example.com")
    claims = decode_access_token(token)
    assert claims["sub"] == "user-1"
    assert claims["type"] == "access"


def test_expired_access_token_rejected():
    token = create_access_token("user-1", "viewer@example.com", now=datetime.now(timezone.utc) - timedelta(days=1))
    with pytest.raises(AuthenticationError):
        decode_access_token(token)


def test_refresh_token_cannot_be_used_as_access_token(subscribe):
    tokens = subscribe()["tokens"]
    with pytest.raises(AuthenticationError):
        decode_access_token(tokens.refresh_token)
    assert decode_refresh_token(tokens.refresh_token)["sub"] == tokens.user_id


def test_login(subscribe):
    user_id = subscribe(email="viewer@example.com", password="correct-horse")["user_id"]

    tokens = login("Viewer@example.com", "correct-horse")
    assert tokens.user_id == user_id

    with pytest.raises(AuthenticationError):
        login("viewer@example.com", "wrong-horse")
    with pytest.raises(AuthenticationError):
        login("stranger@example.com", "correct-horse")


def test_refresh_token_rotation(subscribe):
    tokens = subscribe()["tokens"]

    rotated = rotate_refresh_token(tokens.refresh_token)
    assert rotated.user_id == tokens.user_id
    assert rotated.refresh_token != tokens.refresh_token

    # The presented token is spent
    with pytest.raises(AuthenticationError):
        rotate_refresh_token(tokens.refresh_token)
    rotate_refresh_token(rotated.refresh_token)


def test_placeholder_account_cannot_log_in(fake_provider, now):
    body = event_body(
        "evt_1", SUBSCRIPTION_CREATED, now, subscription_id="sub_x", customer_id="cus_x",
        status="incomplete", email="pending@example.com", plan_id="standard",
    )
    process_webhook(fake_provider.signed_headers(), body, now=now)

    user = get_user_by_email("pending@example.com")
    assert user is not None
    assert user.has_credentials is False
    with pytest.raises(AuthenticationError):
        login("pending@example.com", "anything-at-all")
