"""
streamvault/models/plan.py

Plan model for the subscription catalog.

A plan fixes the price and the device/download limits a subscriber gets.
Subscriptions copy these limits (terms snapshot) when they start or renew.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class Plan(BaseModel):
    """
    Plan represents a priced tier.

    Examples:
    - basic: 2 devices, no offline downloads
    - standard: 4 devices, 2 offline downloads
    - premium: 6 devices, 25 offline downloads
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    price_cents: int
    currency: str = "usd"
    billing_period: str = "month"  # month | year
    device_limit: int
    offline_allowed: bool = False
    max_offline_downloads: int = 0
    external_price_id: Optional[str] = None
    created_at: Optional[datetime] = None
