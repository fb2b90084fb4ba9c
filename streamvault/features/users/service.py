"""
User domain service.
- normalize_email()
- get_user(user_id) / get_user_by_email(email)
- create_user / create_placeholder_user / attach_credentials (session-scoped)
- issue_tokens / login / rotate_refresh_token
"""

import re
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import select, insert, update
import logging

from streamvault.core.auth import (
    create_access_token,
    create_refresh_token,
    decode_refresh_token,
    hash_token,
    verify_password,
)
from streamvault.core.database import get_db_session, users, refresh_tokens
from streamvault.core.errors import AuthenticationError, ValidationError
from streamvault.models.user import AuthTokens, User

logger = logging.getLogger("streamvault")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

MIN_PASSWORD_LENGTH = 8


def normalize_email(email: Optional[str]) -> str:
    """Lower-case and trim; raise ValidationError when malformed."""
    normalized = (email or "").strip().lower()
    if not normalized or len(normalized) > 320 or not _EMAIL_RE.match(normalized):
        raise ValidationError("email: invalid email address")
    return normalized


def validate_password(password: Optional[str]) -> str:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"password: must be at least {MIN_PASSWORD_LENGTH} characters")
    return password


def _row_to_user(row) -> User:
    created_at = row.created_at
    if created_at is not None and created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        role=row.role,
        has_credentials=row.password_hash is not None,
        external_customer_id=row.external_customer_id,
        created_at=created_at,
    )


def get_user_row(session, user_id: str):
    return session.execute(select(users).where(users.c.id == user_id)).first()


def get_user_row_by_email(session, email: str):
    return session.execute(select(users).where(users.c.email == email)).first()


def get_user(user_id: str) -> Optional[User]:
    with get_db_session() as session:
        row = get_user_row(session, user_id)
        return _row_to_user(row) if row else None


def get_user_by_email(email: str) -> Optional[User]:
    normalized = normalize_email(email)
    with get_db_session() as session:
        row = get_user_row_by_email(session, normalized)
        return _row_to_user(row) if row else None


def create_user(
    session,
    *,
    email: str,
    name: Optional[str],
    password_hash: Optional[str],
    external_customer_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    """Insert a user row. IntegrityError on duplicate email is left to the caller."""
    now = now or datetime.now(timezone.utc)
    user_id = str(uuid.uuid4())
    session.execute(
        insert(users).values(
            id=user_id,
            email=email,
            name=name,
            password_hash=password_hash,
            role="user",
            external_customer_id=external_customer_id,
            created_at=now,
            updated_at=now,
        )
    )
    return user_id


def create_placeholder_user(session, *, email: str, external_customer_id: Optional[str], now: Optional[datetime] = None) -> str:
    """A user without credentials, created from webhook metadata. Finalize claims it later."""
    user_id = create_user(
        session,
        email=email,
        name=None,
        password_hash=None,
        external_customer_id=external_customer_id,
        now=now,
    )
    logger.info("user.placeholder_created", extra={"user_id": user_id})
    return user_id


def attach_credentials(session, *, user_id: str, password_hash: str, name: Optional[str], external_customer_id: Optional[str] = None) -> bool:
    """
    Give a placeholder user its password. Only succeeds while the row has
    no credentials, so two finalizers cannot both claim it.
    """
    values = {"password_hash": password_hash, "updated_at": datetime.now(timezone.utc)}
    if name:
        values["name"] = name
    if external_customer_id:
        values["external_customer_id"] = external_customer_id
    result = session.execute(
        update(users)
        .where(users.c.id == user_id)
        .where(users.c.password_hash.is_(None))
        .values(**values)
    )
    return result.rowcount == 1


def set_external_customer_id(session, user_id: str, external_customer_id: str) -> None:
    session.execute(
        update(users)
        .where(users.c.id == user_id)
        .where(users.c.external_customer_id.is_(None))
        .values(external_customer_id=external_customer_id, updated_at=datetime.now(timezone.utc))
    )


def issue_tokens(session, user_id: str, email: str, now: Optional[datetime] = None) -> AuthTokens:
    """Mint an access token and a stored (hashed) refresh token."""
    now = now or datetime.now(timezone.utc)
    refresh_token, jti, expires_at = create_refresh_token(user_id, now=now)
    session.execute(
        insert(refresh_tokens).values(
            id=jti,
            user_id=user_id,
            token_hash=hash_token(refresh_token),
            expires_at=expires_at,
            created_at=now,
        )
    )
    return AuthTokens(
        user_id=user_id,
        access_token=create_access_token(user_id, email, now=now),
        refresh_token=refresh_token,
    )


def login(email: str, password: str) -> AuthTokens:
    """
    Password login.

    Raises:
        AuthenticationError: unknown email, placeholder account or wrong password
    """
    try:
        normalized = normalize_email(email)
    except ValidationError:
        raise AuthenticationError("Invalid email or password")

    with get_db_session() as session:
        row = get_user_row_by_email(session, normalized)
        if not row or not verify_password(password or "", row.password_hash):
            logger.info("auth.login_failed")
            raise AuthenticationError("Invalid email or password")
        return issue_tokens(session, row.id, row.email)


def rotate_refresh_token(refresh_token: str) -> AuthTokens:
    """
    Exchange a refresh token for a new pair. The presented token is revoked;
    presenting it again fails.

    Raises:
        AuthenticationError: invalid, expired, revoked or unknown token
    """
    payload = decode_refresh_token(refresh_token)
    now = datetime.now(timezone.utc)

    with get_db_session() as session:
        result = session.execute(
            update(refresh_tokens)
            .where(refresh_tokens.c.id == payload.get("jti"))
            .where(refresh_tokens.c.token_hash == hash_token(refresh_token))
            .where(refresh_tokens.c.revoked_at.is_(None))
            .values(revoked_at=now)
        )
        if result.rowcount != 1:
            raise AuthenticationError("Refresh token is no longer valid")

        row = get_user_row(session, payload["sub"])
        if not row:
            raise AuthenticationError("Refresh token is no longer valid")
        return issue_tokens(session, row.id, row.email, now=now)
