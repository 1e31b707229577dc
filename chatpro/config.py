from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Client settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Namespace for every document path written by this client
    APP_ID: str = "chat-pro-t"

    # Document store backing database
    DATABASE_URL: str = "sqlite:///./chatpro.db"

    LOG_LEVEL: str = "INFO"

    # Local challenge provider: HMAC key for stored code digests and code lifetime
    CHALLENGE_SECRET: str = "change-me"
    CHALLENGE_TTL_SECONDS: int = 300

    # Input validation
    MIN_PHONE_DIGITS: int = 7
    CODE_LENGTH: int = 6

    DEFAULT_AVATAR_TAG: str = "emerald"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every lookup.
    """
    return Settings()


# Global settings instance
settings = get_settings()
