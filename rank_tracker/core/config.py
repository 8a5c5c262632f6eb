"""Core configuration management using Pydantic settings."""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator, field_validator
from typing import List
import pytz


# Valid log levels
VALID_LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Database
    database_url: str = "sqlite+aiosqlite:///./data/rank_tracker.db"

    # Redis (redis_url should contain full connection string including port)
    redis_url: str

    # Logging
    log_level: str = "INFO"

    # JWT Authentication (tokens are issued by the account service)
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 1440  # 24 hours

    # API Configuration
    backend_port: int = 8000

    # CORS Configuration
    cors_origins: str = "http://localhost:3000"  # Comma-separated list of allowed origins

    # Rate Limiting
    rate_limit_check_rank: str = "10/minute"  # Manual rank checks per client per minute

    # Rank lookup provider
    rank_provider_name: str = "firecrawl"
    rank_provider_default_url: str = "https://api.firecrawl.dev"
    provider_timeout_seconds: float = 8.0
    provider_max_attempts: int = 3  # 1 call + 2 retries
    provider_retry_backoff_seconds: float = 1.0
    provider_minute_wait_attempts: int = 2
    provider_result_limit: int = 100

    # Sweep
    scheduler_enabled: bool = True  # Only one process per deployment should schedule sweeps
    sweep_concurrency: int = 5
    # Must stay below the sweep period so a daily sweep does not skip keywords
    # checked late in the previous run
    rank_check_interval_hours: int = 20
    sweep_cron_hour: int = 2
    sweep_cron_minute: int = 0
    sweep_timezone: str = "UTC"

    # Quota
    quota_reset_timezone: str = "UTC"

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a valid Python logging level."""
        upper_v = v.upper()
        if upper_v not in VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {VALID_LOG_LEVELS}")
        return upper_v

    @field_validator('sweep_timezone', 'quota_reset_timezone')
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Validate timezone names against the pytz database."""
        if v not in pytz.all_timezones_set:
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string to list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @model_validator(mode='after')
    def validate_config(self) -> 'Settings':
        """Validate configuration after all fields are set."""
        if self.sweep_concurrency < 1:
            raise ValueError("sweep_concurrency must be at least 1")
        if self.provider_max_attempts < 1:
            raise ValueError("provider_max_attempts must be at least 1")
        if self.provider_timeout_seconds <= 0:
            raise ValueError("provider_timeout_seconds must be positive")
        if not 0 <= self.sweep_cron_hour <= 23 or not 0 <= self.sweep_cron_minute <= 59:
            raise ValueError("sweep_cron_hour/sweep_cron_minute out of range")
        return self


# Global settings instance
settings = Settings()
