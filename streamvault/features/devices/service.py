"""
streamvault/features/devices/service.py

Device registration against the subscription's device limit.

Registration is idempotent on (user, device_identifier). A new device
beyond the limit is refused; nothing is evicted implicitly. The count and
the insert run under the subscription's version fence, so concurrent
registrations for one user serialize.
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, insert, update, delete, func

from streamvault.core.database import get_db_session, devices, download_licenses
from streamvault.core.errors import DeviceLimitExceeded, NotFoundError, ValidationError
from streamvault.features.entitlements.service import deny, get_active_entitlement
from streamvault.features.entitlements.store import as_utc, fence, revoke_all_licenses, run_optimistic, utc_now
from streamvault.models.device import Device, Platform

logger = logging.getLogger("streamvault")


def _row_to_device(row) -> Device:
    return Device(
        id=row.id,
        user_id=row.user_id,
        platform=row.platform,
        device_identifier=row.device_identifier,
        created_at=as_utc(row.created_at),
        last_active_at=as_utc(row.last_active_at),
    )


def _parse_platform(platform: str) -> Platform:
    try:
        return Platform((platform or "").strip().upper())
    except ValueError:
        allowed = ", ".join(p.value for p in Platform)
        raise ValidationError(f"platform: must be one of {allowed}")


def register_device(user_id: str, platform: str, device_identifier: str, now: Optional[datetime] = None) -> Device:
    """
    Register (or refresh) a device for the user.

    Raises:
        ValidationError: unknown platform or blank identifier
        NoActiveSubscription: no ACTIVE subscription
        DeviceLimitExceeded: new identifier would exceed the device limit
    """
    now = as_utc(now) or utc_now()
    parsed_platform = _parse_platform(platform)
    identifier = (device_identifier or "").strip()
    if not identifier or len(identifier) > 255:
        raise ValidationError("deviceIdentifier: must be 1-255 characters")

    def _register() -> Device:
        entitlement = get_active_entitlement(user_id, now=now)
        with get_db_session() as session:
            fence(session, entitlement.subscription_id, entitlement.version)

            existing = session.execute(
                select(devices)
                .where(devices.c.user_id == user_id)
                .where(devices.c.device_identifier == identifier)
            ).first()
            if existing:
                session.execute(
                    update(devices)
                    .where(devices.c.id == existing.id)
                    .values(platform=parsed_platform.value, last_active_at=now)
                )
                row = session.execute(select(devices).where(devices.c.id == existing.id)).first()
                return _row_to_device(row)

            count = session.execute(
                select(func.count()).select_from(devices).where(devices.c.user_id == user_id)
            ).scalar() or 0
            if count >= entitlement.device_limit:
                deny(
                    DeviceLimitExceeded(
                        f"Device limit of {entitlement.device_limit} reached; remove a device first"
                    ),
                    user_id=user_id,
                )

            device_id = str(uuid.uuid4())
            session.execute(
                insert(devices).values(
                    id=device_id,
                    user_id=user_id,
                    platform=parsed_platform.value,
                    device_identifier=identifier,
                    created_at=now,
                    last_active_at=now,
                )
            )
            logger.info(
                "device.registered",
                extra={"user_id": user_id, "device_id": device_id, "platform": parsed_platform.value},
            )
            row = session.execute(select(devices).where(devices.c.id == device_id)).first()
            return _row_to_device(row)

    return run_optimistic(_register, operation="register_device")


def list_devices(user_id: str) -> List[Device]:
    with get_db_session() as session:
        rows = session.execute(
            select(devices)
            .where(devices.c.user_id == user_id)
            .order_by(devices.c.created_at, devices.c.id)
        ).fetchall()
        return [_row_to_device(row) for row in rows]


def get_device(session, user_id: str, device_id: str):
    return session.execute(
        select(devices)
        .where(devices.c.id == device_id)
        .where(devices.c.user_id == user_id)
    ).first()


def deregister_device(user_id: str, device_id: str, now: Optional[datetime] = None) -> None:
    """
    Remove one of the user's devices, revoking the licenses bound to it.

    Raises:
        NotFoundError: no such device for this user
    """
    now = as_utc(now) or utc_now()
    with get_db_session() as session:
        if not get_device(session, user_id, device_id):
            raise NotFoundError("Device not found")
        revoke_all_licenses(session, user_id, now, device_id=device_id)
        # Keep revoked licenses, drop their device reference
        session.execute(
            update(download_licenses)
            .where(download_licenses.c.device_id == device_id)
            .values(device_id=None, updated_at=now)
        )
        session.execute(delete(devices).where(devices.c.id == device_id))
    logger.info("device.deregistered", extra={"user_id": user_id, "device_id": device_id})
