from pydantic import BaseModel, ConfigDict
from typing import Optional


class SignupIntent(BaseModel):
    """Phase-one result handed to the client to confirm payment."""
    model_config = ConfigDict(frozen=True)

    subscription_id: str
    customer_id: str
    confirmation_token: Optional[str] = None
