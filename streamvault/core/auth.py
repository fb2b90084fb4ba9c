"""
Auth utilities for the StreamVault API.

Issues and verifies HS256 JWTs (access, refresh, media grant), hashes
passwords with bcrypt and resolves the calling user from the
Authorization header. Identity is always explicit: routes receive a
user_id from `get_current_user_id` and pass it on to services.
"""
import hashlib
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import bcrypt
import jwt
from fastapi import Request

from streamvault.core.config import settings
from streamvault.core.errors import AuthenticationError

logger = logging.getLogger("streamvault")

BCRYPT_ROUNDS = 10
JWT_ALGORITHM = "HS256"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


def hash_token(token: str) -> str:
    """sha256 hex digest used to store opaque tokens."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _access_secret() -> str:
    return settings.JWT_ACCESS_SECRET


def _refresh_secret() -> str:
    return settings.JWT_REFRESH_SECRET or f"{settings.JWT_ACCESS_SECRET}:refresh"


def _grant_secret() -> str:
    return settings.DOWNLOAD_GRANT_SECRET or f"{settings.JWT_ACCESS_SECRET}:media"


def create_access_token(user_id: str, email: str, now: Optional[datetime] = None) -> str:
    issued = now or datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "email": email,
        "type": "access",
        "iat": issued,
        "exp": issued + timedelta(seconds=settings.ACCESS_TOKEN_TTL_SECONDS),
    }
    return jwt.encode(payload, _access_secret(), algorithm=JWT_ALGORITHM)


def create_refresh_token(user_id: str, now: Optional[datetime] = None) -> Tuple[str, str, datetime]:
    """Return (token, jti, expires_at). The jti keys the stored refresh_tokens row."""
    issued = now or datetime.now(timezone.utc)
    jti = str(uuid.uuid4())
    expires_at = issued + timedelta(seconds=settings.REFRESH_TOKEN_TTL_SECONDS)
    payload = {
        "sub": user_id,
        "jti": jti,
        "type": "refresh",
        "iat": issued,
        "exp": expires_at,
    }
    return jwt.encode(payload, _refresh_secret(), algorithm=JWT_ALGORITHM), jti, expires_at


def _decode(token: str, secret: str, expected_type: str) -> dict:
    try:
        payload = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise AuthenticationError("Invalid token")

    if payload.get("type") != expected_type or not payload.get("sub"):
        raise AuthenticationError("Invalid token")
    return payload


def decode_access_token(token: str) -> dict:
    return _decode(token, _access_secret(), "access")


def decode_refresh_token(token: str) -> dict:
    return _decode(token, _refresh_secret(), "refresh")


def create_media_grant(
    license_id: str,
    user_id: str,
    episode_id: str,
    device_id: str,
    offline_until: datetime,
    now: Optional[datetime] = None,
) -> str:
    """Short-lived signed grant the playback service exchanges for media keys."""
    issued = now or datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "type": "media_grant",
        "lid": license_id,
        "eid": episode_id,
        "did": device_id,
        "offline_until": int(offline_until.timestamp()),
        "iat": issued,
        "exp": issued + timedelta(seconds=settings.DOWNLOAD_GRANT_TTL_SECONDS),
    }
    return jwt.encode(payload, _grant_secret(), algorithm=JWT_ALGORITHM)


def decode_media_grant(token: str) -> dict:
    return _decode(token, _grant_secret(), "media_grant")


def get_current_user_id(request: Request) -> str:
    """
    Extract current user ID from the Bearer access token.

    Raises:
        AuthenticationError: missing, expired or invalid token
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise AuthenticationError("Missing Authorization (Bearer JWT) header")

    token = auth_header[7:].strip()
    if not token:
        raise AuthenticationError("Missing Authorization (Bearer JWT) header")

    payload = decode_access_token(token)
    return payload["sub"]
