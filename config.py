from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """process settings loaded from environment variables / .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # database
    DATABASE_URL: str = "dbname=grocent user=grocent password=secret host=localhost port=5432"

    # app
    APP_NAME: str = "Grocent Promotions Engine"
    APP_VERSION: str = "0.2.0"
    LOG_LEVEL: str = "INFO"

    # referral codes look like REF_8X2KQ9ZA
    REFERRAL_CODE_PREFIX: str = "REF_"
    REFERRAL_CODE_LENGTH: int = 8


@lru_cache()
def get_settings() -> Settings:
    """cached settings instance."""
    return Settings()
