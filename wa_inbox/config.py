from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Environment variables take precedence over the .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database
    DATABASE_URL: str = "sqlite:///./wa_inbox.db"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Webhook subscription handshake secret (hub.verify_token)
    WHATSAPP_VERIFY_TOKEN: str

    # Meta app secret; when set, X-Hub-Signature-256 is required on deliveries
    WHATSAPP_APP_SECRET: Optional[str] = None

    # Outbound Cloud API
    WHATSAPP_API_BASE_URL: str = "https://graph.facebook.com"
    WHATSAPP_API_VERSION: str = "v17.0"
    PROVIDER_TIMEOUT_SECONDS: float = 30.0

    # Calling code prefixed to bare 10-digit numbers
    DEFAULT_COUNTRY_CODE: str = "91"

    # How webhook events are routed back to a profile
    TENANT_RESOLUTION: Literal["phone_number_id", "business_account_id"] = "phone_number_id"

    CORS_ALLOW_ORIGINS: list[str] = ["*"]


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


settings = get_settings()
