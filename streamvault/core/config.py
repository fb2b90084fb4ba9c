"""
Service settings, read from the environment and an optional .env file.

`settings` is the process-wide instance; tests monkeypatch its attributes.
"""
import logging
from typing import Dict, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ENV: str = "development"  # development | test | production
    CONFIG_STRICT: bool = False

    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_PRICE_BASIC: Optional[str] = None
    STRIPE_PRICE_STANDARD: Optional[str] = None
    STRIPE_PRICE_PREMIUM: Optional[str] = None

    # Bounded retries around provider calls; attempts include the first call
    PROVIDER_MAX_ATTEMPTS: int = 3
    PROVIDER_RETRY_MAX_WAIT_SECONDS: float = 4.0

    JWT_ACCESS_SECRET: str = "dev-access-secret"
    JWT_REFRESH_SECRET: Optional[str] = None
    ACCESS_TOKEN_TTL_SECONDS: int = 15 * 60
    REFRESH_TOKEN_TTL_SECONDS: int = 7 * 24 * 3600

    SAGA_INTENT_TTL_SECONDS: int = 30 * 60

    # Optimistic-lock attempts per event, then replay attempts per event
    RECONCILE_MAX_ATTEMPTS: int = 5
    WEBHOOK_REPLAY_MAX_ATTEMPTS: int = 10

    DOWNLOAD_LICENSE_ISSUE_TTL_SECONDS: int = 10 * 60
    DOWNLOAD_OFFLINE_DAYS: int = 30
    DOWNLOAD_GRANT_SECRET: Optional[str] = None
    DOWNLOAD_GRANT_TTL_SECONDS: int = 3600
    DOWNLOAD_JOBS_BATCH_SIZE: int = 500

    ADMIN_KEY: Optional[str] = None

    APP_URL: str = "http://localhost:3000"

    def plan_price_ids(self) -> Dict[str, Optional[str]]:
        """Provider price id per seeded plan."""
        return {
            "basic": self.STRIPE_PRICE_BASIC,
            "standard": self.STRIPE_PRICE_STANDARD,
            "premium": self.STRIPE_PRICE_PREMIUM,
        }


settings = Settings()

# Without these the service starts but cannot take payments or grant downloads
REQUIRED_AT_STARTUP = (
    "DATABASE_URL",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "DOWNLOAD_GRANT_SECRET",
)


def validate_config(strict: Optional[bool] = None, settings_obj=None, logger: Optional[logging.Logger] = None) -> bool:
    """
    Report missing configuration keys (names only, never values).

    Strict mode raises RuntimeError; otherwise a warning is logged and
    startup continues.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("streamvault")
    if strict is None:
        strict = bool(getattr(cfg, "CONFIG_STRICT", False))

    missing = [key for key in REQUIRED_AT_STARTUP if not getattr(cfg, key, None)]
    if not missing:
        return True

    message = f"Missing required configuration: {', '.join(missing)}"
    if strict:
        raise RuntimeError(message)
    log.warning(message)
    return True
