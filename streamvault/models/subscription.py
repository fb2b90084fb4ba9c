"""
streamvault/models/subscription.py

Subscription and entitlement models.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class SubscriptionState(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


LIVE_STATES = (SubscriptionState.PENDING.value, SubscriptionState.ACTIVE.value)


class Subscription(BaseModel):
    """Local mirror of one provider subscription, with its terms snapshot."""
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    plan_id: str
    external_subscription_id: str
    external_customer_id: Optional[str] = None
    state: SubscriptionState
    current_period_end: Optional[datetime] = None
    price_cents: int
    device_limit: int
    offline_allowed: bool
    max_offline_downloads: int
    version: int
    created_at: datetime
    updated_at: datetime


class Entitlement(BaseModel):
    """
    What an ACTIVE subscription allows right now.

    `version` is the subscription version the limits were read at; writes
    that depend on them fence on it.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    subscription_id: str
    plan_id: str
    version: int
    device_limit: int
    offline_allowed: bool
    max_offline_downloads: int
    current_period_end: Optional[datetime] = None
