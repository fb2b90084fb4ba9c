"""Request/response bodies shared by the HTTP routes (camelCase on the wire)."""

from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SignupIntentRequest(CamelModel):
    email: str
    name: str
    plan_id: str
    payment_method_id: str
    idempotency_key: Optional[str] = None


class SignupIntentResponse(CamelModel):
    subscription_id: str
    customer_id: str
    confirmation_token: Optional[str] = None


class FinalizeRequest(CamelModel):
    email: str
    password: str
    name: str
    plan_id: str
    subscription_id: str
    customer_id: str


class TokensResponse(CamelModel):
    user_id: str
    access_token: str
    refresh_token: str


class LoginRequest(CamelModel):
    email: str
    password: str


class RefreshRequest(CamelModel):
    refresh_token: str


class CheckoutSessionRequest(CamelModel):
    plan_id: str
    success_url: str
    cancel_url: str


class CheckoutSessionResponse(CamelModel):
    checkout_url: str


class SubscriptionMeResponse(CamelModel):
    is_subscribed: bool
    plan_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    state: Optional[str] = None
    created_at: Optional[datetime] = None


class PlanResponse(CamelModel):
    plan_id: str
    name: str
    price_cents: int
    currency: str
    billing_period: str
    device_limit: int
    offline_allowed: bool
    max_offline_downloads: int


class PlanListResponse(CamelModel):
    plans: List[PlanResponse]


class RegisterDeviceRequest(CamelModel):
    platform: str
    device_identifier: str


class DeviceResponse(CamelModel):
    id: str
    platform: str
    device_identifier: str
    created_at: datetime
    last_active_at: datetime


class DeviceListResponse(CamelModel):
    devices: List[DeviceResponse]


class LicenseResponse(CamelModel):
    license_id: str
    episode_id: str
    state: str
    device_id: Optional[str] = None
    issued_at: datetime
    expires_at: datetime
    redeemed_at: Optional[datetime] = None


class LicenseListResponse(CamelModel):
    licenses: List[LicenseResponse]


class IssueLicenseRequest(CamelModel):
    episode_id: str


class IssueLicenseResponse(CamelModel):
    license_id: str
    token: str
    expires_at: datetime


class RedeemRequest(CamelModel):
    token: str
    device_id: str


class RedeemResponse(CamelModel):
    license_id: str
    media_grant: str
    offline_until: datetime


class WebhookAck(CamelModel):
    received: bool = True
    event_id: str
    status: str
    duplicate: bool = False
