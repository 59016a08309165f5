import logging
from functools import lru_cache
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings, resolved once per process and passed to services."""

    database_url: str
    business_timezone: str = "America/Edmonton"
    public_url: str = "http://localhost:8000"
    admin_email: Optional[str] = None
    log_level: str = "INFO"

    max_visitors_per_booking: int = 20

    # Make.com automation webhooks
    make_booking_webhook_url: Optional[str] = None
    make_contact_webhook_url: Optional[str] = None
    webhook_timeout_seconds: float = 10.0
    webhook_max_attempts: int = 3
    webhook_initial_delay_ms: int = 2000

    # Square online checkout
    square_application_id: Optional[str] = None
    square_application_secret: SecretStr = SecretStr("")
    square_access_token: SecretStr = SecretStr("")
    square_location_id: Optional[str] = None
    square_webhook_signature_key: SecretStr = SecretStr("")
    square_environment: Literal["sandbox", "production"] = "sandbox"
    square_currency: str = "CAD"
    square_timeout_seconds: float = 10.0

    model_config = SettingsConfigDict(extra="ignore")


@lru_cache
def get_settings() -> Settings:
    # 1. Load .env into the process environment (no-op if the file is absent)
    load_dotenv()

    # 2. DATABASE_URL has no default, so a missing value fails fast here
    return Settings()


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
