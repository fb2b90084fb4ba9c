from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: Optional[str] = None
    role: str = "user"
    has_credentials: bool = False
    external_customer_id: Optional[str] = None
    created_at: datetime


class AuthTokens(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    access_token: str
    refresh_token: str
