from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration - required from .env
    LOG_LEVEL: str

    # Messaging gateway credentials - required from .env
    GATEWAY_ACCOUNT_SID: str
    GATEWAY_AUTH_TOKEN: str
    GATEWAY_FROM_NUMBER: str

    GATEWAY_BASE_URL: str = "https://api.twilio.com"
    GATEWAY_TIMEOUT_SECONDS: float = 15.0
    GATEWAY_CHANNEL_PREFIX: str = "whatsapp:"

    # Where the gateway should post delivery-status callbacks
    STATUS_CALLBACK_URL: Optional[str] = None

    # Country code used for numbers submitted without a leading '+'.
    # When unset such numbers are rejected.
    DEFAULT_COUNTRY_CODE: Optional[str] = None

    # Retry Scheduler
    RETRY_MAX_RETRIES: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 1.0

    # Realtime fanout liveness
    REALTIME_HEARTBEAT_SECONDS: float = 25.0
    REALTIME_INACTIVITY_TIMEOUT_SECONDS: float = 300.0
    REALTIME_SWEEP_INTERVAL_SECONDS: float = 60.0

    # Webhook Security
    WEBHOOK_VALIDATE_SIGNATURE: bool = False
    WEBHOOK_PUBLIC_URL: Optional[str] = None

    # CORS
    ALLOWED_ORIGINS: str = "http://localhost:3000"

    def get_allowed_origins(self) -> List[str]:
        """Split ALLOWED_ORIGINS into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
