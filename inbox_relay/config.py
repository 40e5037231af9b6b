from functools import lru_cache
from typing import Literal, Optional

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

    # Storage
    DATABASE_URL: str = "sqlite:///./data/inbox.sqlite"
    STORE_BACKEND: Literal["sql", "memory"] = "sql"

    LOG_LEVEL: str = "INFO"

    # Webhook subscription handshake token - required
    VERIFY_TOKEN: str

    # Cloud API credentials - required
    WA_TOKEN: str
    WA_PHONE_NUMBER_ID: str
    WA_API_BASE: str = "https://graph.facebook.com/v20.0"
    WA_TIMEOUT_SECONDS: float = 15.0

    # When set, POST /webhook bodies must carry X-Hub-Signature-256
    WA_APP_SECRET: Optional[str] = None


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every call.
    """
    return Settings()
