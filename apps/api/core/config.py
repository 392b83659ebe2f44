"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the API and the sync workers.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    # DATABASE_URL wins when set (sqlite:// is accepted for local runs and tests).
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="wayfarer")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Redis Configuration (Strava quota counters)
    REDIS_URL: str = Field(default="redis://redis:6379/0")

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")
    # Finished task results are purged after this many seconds.
    CELERY_RESULT_EXPIRES_S: int = Field(default=24 * 3600)

    # Token Encryption
    TOKEN_ENCRYPTION_KEY: Optional[str] = Field(default=None)

    # JWT Authentication - REQUIRED for token signing
    SECRET_KEY: str = Field(
        default=...,  # Required - no default
        description="JWT signing key. Must be cryptographically secure (32+ chars). "
                    "Generate with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
    )

    # Foursquare / Swarm
    FOURSQUARE_API_BASE: str = Field(default="https://api.foursquare.com/v2")
    FOURSQUARE_API_VERSION: str = Field(default="20231201")

    # Strava
    STRAVA_API_BASE: str = Field(default="https://www.strava.com/api/v3")
    STRAVA_OAUTH_URL: str = Field(default="https://www.strava.com/oauth/token")
    STRAVA_CLIENT_ID: Optional[str] = Field(default=None)
    STRAVA_CLIENT_SECRET: Optional[str] = Field(default=None)
    # Concurrent /activities/{id} detail fetches within one sync run.
    STRAVA_DETAIL_CONCURRENCY: int = Field(default=10, ge=1, le=32)
    # App-level read quota (Strava allows 100 / 15 min and 1000 / day; keep headroom).
    STRAVA_RATE_LIMIT_15MIN: int = Field(default=95)
    STRAVA_RATE_LIMIT_DAILY: int = Field(default=950)

    # External API Configuration
    EXTERNAL_API_TIMEOUT: int = Field(default=30)

    # Sync engine tuning
    SYNC_LOOKBACK_DAYS: int = Field(default=7)
    SYNC_FULL_YEARS_BACK: int = Field(default=5)
    SYNC_MAX_RECORDS: int = Field(default=10000)
    SYNC_STAGGER_MINUTES: int = Field(default=2)
    ACTIVE_USER_WINDOW_DAYS: int = Field(default=30)
    SYNC_RETRY_MAX: int = Field(default=3)
    SYNC_RETRY_BACKOFF_S: int = Field(default=60)
    SYNC_RETRY_BACKOFF_MAX_S: int = Field(default=3600)
    PROGRESS_WRITE_INTERVAL_S: float = Field(default=2.0)

    # Recurring triggers (five-field cron, UTC)
    DAILY_SYNC_CRON: str = Field(default="0 3 * * *")
    JOB_RETENTION_DAYS: int = Field(default=30)
    JOB_RETENTION_CRON: str = Field(default="30 4 * * *")

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)

    # Sentry Error Tracking
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.1)


# Global settings instance
settings = Settings()
