"""
Admin authentication for operator endpoints (ledger, webhook replay).

A shared secret presented in the X-Admin-Key header. Every admin action
is logged with a non-reversible actor id derived from the key.
"""
import hashlib
import hmac
import logging
import os
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from streamvault.core.config import settings
from streamvault.core.errors import AuthenticationError, PermissionError

logger = logging.getLogger("streamvault")


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str  # "key:<hash prefix>"
    auth_mechanism: str = "x_admin_key"


def get_admin_api_key() -> Optional[str]:
    """Prefer ADMIN_KEY from the live environment; fall back to settings."""
    return os.getenv("ADMIN_KEY") or settings.ADMIN_KEY


def get_admin_actor(request: Request) -> Optional[AdminActor]:
    """Return AdminActor for a valid X-Admin-Key header, None otherwise (does not raise)."""
    expected_key = get_admin_api_key()
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"key:{key_hash}")


def require_admin_auth(request: Request) -> AdminActor:
    """
    FastAPI dependency for admin endpoints.

    Raises:
        PermissionError (403): admin access not configured on this deployment
        AuthenticationError (401): header missing or wrong
    """
    if not get_admin_api_key():
        raise PermissionError("Admin access is not configured")

    actor = get_admin_actor(request)
    if actor is None:
        raise AuthenticationError("Missing or invalid X-Admin-Key")

    logger.info(
        "admin.authenticated",
        extra={"actor_id": actor.actor_id, "path": request.url.path},
    )
    return actor
