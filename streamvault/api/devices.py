from fastapi import APIRouter, Depends, Response

from streamvault.api.schemas import DeviceListResponse, DeviceResponse, RegisterDeviceRequest
from streamvault.core.auth import get_current_user_id
from streamvault.features.devices.service import deregister_device, list_devices, register_device
from streamvault.models.device import Device


router = APIRouter(prefix="/devices", tags=["devices"])


def _to_response(device: Device) -> DeviceResponse:
    return DeviceResponse(
        id=device.id,
        platform=device.platform.value,
        device_identifier=device.device_identifier,
        created_at=device.created_at,
        last_active_at=device.last_active_at,
    )


@router.post("", response_model=DeviceResponse, status_code=201)
def register(request: RegisterDeviceRequest, user_id: str = Depends(get_current_user_id)):
    """Register a device (idempotent per deviceIdentifier). 403 when the device limit is reached."""
    device = register_device(user_id, request.platform, request.device_identifier)
    return _to_response(device)


@router.get("", response_model=DeviceListResponse)
def list_my_devices(user_id: str = Depends(get_current_user_id)):
    return DeviceListResponse(devices=[_to_response(d) for d in list_devices(user_id)])


@router.delete("/{device_id}", status_code=204)
def remove(device_id: str, user_id: str = Depends(get_current_user_id)):
    deregister_device(user_id, device_id)
    return Response(status_code=204)
