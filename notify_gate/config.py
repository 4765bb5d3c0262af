from functools import lru_cache
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

    # Inbound webhook security - required from .env
    WEBHOOK_SECRET: str

    # Global messaging feature flags
    MESSAGING_ENABLED: bool = False
    DEBUG_MODE: bool = False

    # Consent session window opened by inbound contact
    SESSION_WINDOW_HOURS: float = 24.0
    # Accept tenant-less legacy sessions when no tenant session matches
    SESSION_LEGACY_FALLBACK: bool = False
    # Acknowledge inbound contact with a welcome or extension message
    SESSION_REPLIES_ENABLED: bool = True

    # Messaging provider (UltraMsg-style API)
    PROVIDER_DEFAULT_BASE_URL: str = "https://api.ultramsg.com"
    PROVIDER_SEND_TIMEOUT_SECONDS: float = 10.0
    PROVIDER_TEST_TIMEOUT_SECONDS: float = 5.0
    PROVIDER_RETRY_NETWORK_ERRORS: bool = True
    PROVIDER_RETRY_DELAY_SECONDS: float = 0.5
    PROVIDER_CONFIG_CACHE_TTL_SECONDS: float = 0.0

    # Width of the time bucket folded into provider reference ids
    REFERENCE_BUCKET_SECONDS: int = 300


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
