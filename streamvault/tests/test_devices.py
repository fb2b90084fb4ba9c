import pytest
from sqlalchemy import select

from streamvault.core.database import get_db_session, download_licenses
from streamvault.core.errors import DeviceLimitExceeded, NoActiveSubscription, NotFoundError, ValidationError
from streamvault.core.metrics import entitlement_denials_total
from streamvault.features.devices.service import deregister_device, list_devices, register_device
from streamvault.features.downloads.service import issue_download_license, redeem_download_license


def test_device_limit_enforced(subscribe, now):
    user_id = subscribe(plan_id="standard", now=now)["user_id"]

    for i in range(4):
        register_device(user_id, "ANDROID", f"phone-{i}", now=now)

    with pytest.raises(DeviceLimitExceeded):
        register_device(user_id, "TV", "living-room", now=now)

    assert len(list_devices(user_id)) == 4
    assert entitlement_denials_total.value({"reason": "device_limit_exceeded"}) == 1


def test_reregistering_known_device_is_free(subscribe, now):
    user_id = subscribe(plan_id="basic", now=now)["user_id"]
    first = register_device(user_id, "IOS", "iphone-1", now=now)
    register_device(user_id, "WEB", "browser-1", now=now)

    again = register_device(user_id, "ios", "iphone-1", now=now)

    assert again.id == first.id
    assert len(list_devices(user_id)) == 2


def test_deregistering_frees_a_slot(subscribe, now):
    user_id = subscribe(plan_id="basic", now=now)["user_id"]
    first = register_device(user_id, "IOS", "iphone-1", now=now)
    register_device(user_id, "WEB", "browser-1", now=now)

    deregister_device(user_id, first.id, now=now)
    register_device(user_id, "TV", "living-room", now=now)

    assert sorted(d.device_identifier for d in list_devices(user_id)) == ["browser-1", "living-room"]


def test_deregistering_revokes_device_licenses(subscribe, now):
    user_id = subscribe(plan_id="standard", now=now)["user_id"]
    device = register_device(user_id, "IOS", "iphone-1", now=now)
    issued = issue_download_license(user_id, "ep-1", now=now)
    redeem_download_license(user_id, issued.token, device.id, now=now)

    deregister_device(user_id, device.id, now=now)

    with get_db_session() as session:
        row = session.execute(select(download_licenses)).one()
    assert row.state == "REVOKED"
    assert row.device_id is None


def test_deregister_unknown_device(subscribe, now):
    user_id = subscribe(now=now)["user_id"]

    with pytest.raises(NotFoundError):
        deregister_device(user_id, "missing", now=now)


def test_registration_requires_active_subscription(fake_provider, now):
    with pytest.raises(NoActiveSubscription):
        register_device("nobody", "IOS", "iphone-1", now=now)


@pytest.mark.parametrize("platform,identifier", [
    ("TOASTER", "kitchen"),
    ("IOS", "   "),
])
def test_registration_validates_input(subscribe, now, platform, identifier):
    user_id = subscribe(now=now)["user_id"]

    with pytest.raises(ValidationError):
        register_device(user_id, platform, identifier, now=now)
