"""
streamvault/features/downloads/service.py

Offline download licenses.

Handles:
- Issuing a short-lived, single-use license token for an episode
- Redeeming it on a registered device (ISSUED -> REDEEMED exactly once),
  which starts the offline window and returns a signed media grant
- Offline quota: REDEEMED, unexpired licenses per user <= plan limit
- Listing a user's licenses so clients can sync local download state

Only the sha256 of a token is stored; the raw token is returned once.
"""

import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, insert, update, func

from streamvault.core.auth import create_media_grant, hash_token
from streamvault.core.config import settings
from streamvault.core.database import get_db_session, download_licenses
from streamvault.core.errors import (
    DeviceNotRegistered,
    DownloadQuotaExceeded,
    LicenseRevoked,
    NotFoundError,
    OfflineNotAllowed,
    TokenAlreadyRedeemed,
    TokenExpired,
    ValidationError,
)
from streamvault.features.devices.service import get_device
from streamvault.features.entitlements.service import deny, get_active_entitlement
from streamvault.features.entitlements.store import StaleVersion, as_utc, fence, run_optimistic, utc_now
from streamvault.models.license import DownloadLicense, IssuedLicense, LicenseState, RedeemedLicense
from streamvault.models.subscription import Entitlement

logger = logging.getLogger("streamvault")


def count_active_downloads(session, user_id: str, now: datetime) -> int:
    """REDEEMED licenses whose offline window has not ended."""
    return session.execute(
        select(func.count())
        .select_from(download_licenses)
        .where(download_licenses.c.user_id == user_id)
        .where(download_licenses.c.state == LicenseState.REDEEMED.value)
        .where(download_licenses.c.expires_at > now)
    ).scalar() or 0


def _row_to_license(row) -> DownloadLicense:
    return DownloadLicense(
        license_id=row.id,
        episode_id=row.episode_id,
        state=row.state,
        device_id=row.device_id,
        issued_at=as_utc(row.issued_at),
        expires_at=as_utc(row.expires_at),
        redeemed_at=as_utc(row.redeemed_at),
    )


def list_licenses(
    user_id: str,
    device_id: Optional[str] = None,
    active_only: bool = False,
    now: Optional[datetime] = None,
) -> List[DownloadLicense]:
    """
    The user's licenses, newest first, optionally for one device.

    With `active_only`, just ISSUED/REDEEMED licenses that have not expired;
    otherwise every license including revoked and expired ones, so a client
    can drop local copies the server no longer honours.
    """
    now = as_utc(now) or utc_now()
    stmt = select(download_licenses).where(download_licenses.c.user_id == user_id)
    if device_id and device_id.strip():
        stmt = stmt.where(download_licenses.c.device_id == device_id.strip())
    if active_only:
        stmt = (
            stmt.where(download_licenses.c.state.in_((LicenseState.ISSUED.value, LicenseState.REDEEMED.value)))
            .where(download_licenses.c.expires_at > now)
        )
    with get_db_session() as session:
        rows = session.execute(
            stmt.order_by(download_licenses.c.issued_at.desc(), download_licenses.c.id)
        ).fetchall()
        return [_row_to_license(row) for row in rows]


def _check_offline(entitlement: Entitlement, user_id: str) -> None:
    if not entitlement.offline_allowed:
        deny(OfflineNotAllowed("Your plan does not include offline downloads"), user_id=user_id)


def _check_quota(session, entitlement: Entitlement, user_id: str, now: datetime) -> None:
    active = count_active_downloads(session, user_id, now)
    if active >= entitlement.max_offline_downloads:
        deny(
            DownloadQuotaExceeded(
                f"Offline download limit of {entitlement.max_offline_downloads} reached"
            ),
            user_id=user_id,
        )


def issue_download_license(user_id: str, episode_id: str, now: Optional[datetime] = None) -> IssuedLicense:
    """
    Issue a license token for one episode.

    Raises:
        ValidationError: blank episode id
        NoActiveSubscription / OfflineNotAllowed / DownloadQuotaExceeded
    """
    now = as_utc(now) or utc_now()
    episode_id = (episode_id or "").strip()
    if not episode_id:
        raise ValidationError("episodeId: must not be blank")

    entitlement = get_active_entitlement(user_id, now=now)
    _check_offline(entitlement, user_id)

    token = secrets.token_urlsafe(32)
    license_id = str(uuid.uuid4())
    expires_at = now + timedelta(seconds=settings.DOWNLOAD_LICENSE_ISSUE_TTL_SECONDS)

    with get_db_session() as session:
        _check_quota(session, entitlement, user_id, now)
        session.execute(
            insert(download_licenses).values(
                id=license_id,
                user_id=user_id,
                episode_id=episode_id,
                token_hash=hash_token(token),
                state=LicenseState.ISSUED.value,
                issued_at=now,
                expires_at=expires_at,
                updated_at=now,
            )
        )

    logger.info("download.license_issued", extra={"user_id": user_id, "license_id": license_id})
    return IssuedLicense(license_id=license_id, token=token, expires_at=expires_at)


def _load_redeemable(token_hash: str, user_id: str, now: datetime):
    """
    Load the license for a token and reject anything not redeemable.

    An ISSUED license past its redeem window is moved to EXPIRED (committed)
    before TokenExpired is raised.
    """
    lapsed = False
    with get_db_session() as session:
        row = session.execute(
            select(download_licenses).where(download_licenses.c.token_hash == token_hash)
        ).first()
        if row is None or row.user_id != user_id:
            raise NotFoundError("License not found")
        if row.state == LicenseState.REDEEMED.value:
            raise TokenAlreadyRedeemed("License has already been redeemed")
        if row.state == LicenseState.REVOKED.value:
            raise LicenseRevoked("License has been revoked")
        if row.state == LicenseState.EXPIRED.value:
            raise TokenExpired("License token has expired")
        if as_utc(row.expires_at) <= now:
            session.execute(
                update(download_licenses)
                .where(download_licenses.c.id == row.id)
                .where(download_licenses.c.state == LicenseState.ISSUED.value)
                .values(state=LicenseState.EXPIRED.value, updated_at=now)
            )
            lapsed = True
    if lapsed:
        raise TokenExpired("License token has expired")
    return row


def redeem_download_license(user_id: str, token: str, device_id: str, now: Optional[datetime] = None) -> RedeemedLicense:
    """
    Redeem a license token on one of the user's devices.

    Raises:
        NotFoundError: unknown token (or another user's)
        TokenAlreadyRedeemed / LicenseRevoked / TokenExpired
        NoActiveSubscription / OfflineNotAllowed
        DeviceNotRegistered: device is not registered to the license owner
        DownloadQuotaExceeded: quota filled since the license was issued
    """
    now = as_utc(now) or utc_now()
    if not token or not token.strip():
        raise ValidationError("token: must not be blank")
    if not device_id or not device_id.strip():
        raise ValidationError("deviceId: must not be blank")
    token_hash = hash_token(token.strip())

    def _redeem() -> RedeemedLicense:
        license_row = _load_redeemable(token_hash, user_id, now)
        entitlement = get_active_entitlement(user_id, now=now)
        _check_offline(entitlement, user_id)

        with get_db_session() as session:
            fence(session, entitlement.subscription_id, entitlement.version)

            if get_device(session, user_id, device_id) is None:
                deny(DeviceNotRegistered("Device is not registered to this account"), user_id=user_id)
            _check_quota(session, entitlement, user_id, now)

            offline_until = now + timedelta(days=settings.DOWNLOAD_OFFLINE_DAYS)
            result = session.execute(
                update(download_licenses)
                .where(download_licenses.c.id == license_row.id)
                .where(download_licenses.c.state == LicenseState.ISSUED.value)
                .values(
                    state=LicenseState.REDEEMED.value,
                    device_id=device_id,
                    redeemed_at=now,
                    expires_at=offline_until,
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                # License changed state after it was loaded; re-evaluate from scratch
                raise StaleVersion(entitlement.subscription_id, entitlement.version)

        grant = create_media_grant(
            license_id=license_row.id,
            user_id=user_id,
            episode_id=license_row.episode_id,
            device_id=device_id,
            offline_until=offline_until,
            now=now,
        )
        logger.info(
            "download.license_redeemed",
            extra={"user_id": user_id, "license_id": license_row.id, "device_id": device_id},
        )
        return RedeemedLicense(license_id=license_row.id, media_grant=grant, offline_until=offline_until)

    return run_optimistic(_redeem, operation="redeem_license")
