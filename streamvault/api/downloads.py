"""
Download license routes.

- GET /downloads: list the caller's licenses (all, or active only) for client sync
- POST /downloads/licenses: issue a single-use license token for an episode
- POST /downloads/redeem: redeem it on a registered device for a media grant
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from streamvault.api.schemas import (
    IssueLicenseRequest,
    IssueLicenseResponse,
    LicenseListResponse,
    LicenseResponse,
    RedeemRequest,
    RedeemResponse,
)
from streamvault.core.auth import get_current_user_id
from streamvault.features.downloads.service import issue_download_license, list_licenses, redeem_download_license


router = APIRouter(prefix="/downloads", tags=["downloads"])


@router.get("", response_model=LicenseListResponse)
def list_my_licenses(
    device_id: Optional[str] = Query(None, alias="deviceId"),
    active_only: bool = Query(False, alias="activeOnly"),
    user_id: str = Depends(get_current_user_id),
):
    licenses = list_licenses(user_id, device_id=device_id, active_only=active_only)
    return LicenseListResponse(licenses=[
        LicenseResponse(
            license_id=lic.license_id,
            episode_id=lic.episode_id,
            state=lic.state.value,
            device_id=lic.device_id,
            issued_at=lic.issued_at,
            expires_at=lic.expires_at,
            redeemed_at=lic.redeemed_at,
        )
        for lic in licenses
    ])


@router.post("/licenses", response_model=IssueLicenseResponse, status_code=201)
def issue_license(request: IssueLicenseRequest, user_id: str = Depends(get_current_user_id)):
    """
    Errors:
        403: no active subscription, offline not allowed, quota reached
    """
    issued = issue_download_license(user_id, request.episode_id)
    return IssueLicenseResponse(license_id=issued.license_id, token=issued.token, expires_at=issued.expires_at)


@router.post("/redeem", response_model=RedeemResponse)
def redeem(request: RedeemRequest, user_id: str = Depends(get_current_user_id)):
    """
    Errors:
        403: device not registered, quota reached
        404: unknown token
        409: already redeemed
        410: token expired or license revoked
    """
    redeemed = redeem_download_license(user_id, request.token, request.device_id)
    return RedeemResponse(
        license_id=redeemed.license_id,
        media_grant=redeemed.media_grant,
        offline_until=redeemed.offline_until,
    )
