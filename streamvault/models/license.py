"""
streamvault/models/license.py

Offline download license models.

Lifecycle: ISSUED -> REDEEMED (once, bound to a device), ISSUED -> EXPIRED
(redeem window passed), ISSUED/REDEEMED -> REVOKED (subscription ended or
device removed).
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class LicenseState(str, Enum):
    ISSUED = "ISSUED"
    REDEEMED = "REDEEMED"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


class IssuedLicense(BaseModel):
    """Result of issuing a license. `token` is only ever returned here."""
    model_config = ConfigDict(frozen=True)

    license_id: str
    token: str
    expires_at: datetime


class RedeemedLicense(BaseModel):
    model_config = ConfigDict(frozen=True)

    license_id: str
    media_grant: str
    offline_until: datetime


class DownloadLicense(BaseModel):
    """A license as listed back to its owner; never carries the token."""
    model_config = ConfigDict(frozen=True)

    license_id: str
    episode_id: str
    state: LicenseState
    device_id: Optional[str] = None
    issued_at: datetime
    expires_at: datetime
    redeemed_at: Optional[datetime] = None
