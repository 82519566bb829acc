"""Configuration module using Pydantic Settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite:///data/metering.db"
    database_echo: bool = False

    # Transactions (retry on write conflicts)
    transaction_max_attempts: int = 5
    transaction_retry_backoff_seconds: float = 0.05

    # Logging
    log_level: str = "INFO"

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Security
    admin_api_key: str | None = None  # Bearer key for system-admin endpoints

    # Central limits document
    config_document_id: str = "api_limits"
    config_cache_ttl_seconds: int = 300  # 5 minutes

    # Rate limit janitor
    rate_limit_cleanup_enabled: bool = True
    rate_limit_cleanup_interval: int = 1440  # minutes
    rate_limit_max_age_seconds: int = 86400  # 24 hours

    # Scheduler
    scheduler_timezone: str = "UTC"
    scheduler_max_workers: int = 2


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience function for quick access
settings = get_settings()
