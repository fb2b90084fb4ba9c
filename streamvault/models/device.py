from datetime import datetime
from enum import Enum
from pydantic import BaseModel, ConfigDict


class Platform(str, Enum):
    ANDROID = "ANDROID"
    IOS = "IOS"
    WEB = "WEB"
    TV = "TV"


class Device(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    platform: Platform
    device_identifier: str
    created_at: datetime
    last_active_at: datetime
