"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the application.
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
    # DATABASE_URL wins when set (e.g. "sqlite://" for tests); otherwise the
    # PostgreSQL URL is assembled from the parts below.
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="coach_billing")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")

    # JWT Authentication - REQUIRED for token signing
    # Must be set via environment variable, never use default in production
    SECRET_KEY: str = Field(
        default=...,  # Required - no default
        description="JWT signing key. Must be cryptographically secure (32+ chars). "
                    "Generate with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
    )

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # External API Configuration
    EXTERNAL_API_TIMEOUT: int = Field(default=30)

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # Tap payment gateway
    TAP_SECRET_KEY: Optional[str] = Field(default=None)
    TAP_WEBHOOK_SECRET: Optional[str] = Field(default=None)
    TAP_API_BASE_URL: str = Field(default="https://api.tap.company/v2")

    # Billing policy
    PLATFORM_CURRENCY: str = Field(default="KWD")
    PAYMENT_AMOUNT_TOLERANCE: float = Field(default=0.01)
    BILLING_CYCLE_MONTHS: int = Field(default=1, ge=1, le=12)
    GRACE_PERIOD_DAYS: int = Field(default=7, ge=0)
    # Used as the cancellation end date when a subscription has no next billing date.
    CANCELLATION_FALLBACK_DAYS: int = Field(default=30, ge=0)

    # Per-charge verification limits (best-effort, per process unless backend=redis)
    CHARGE_VERIFY_MAX_PER_WINDOW: int = Field(default=5)
    CHARGE_VERIFY_WINDOW_S: int = Field(default=60)
    CHARGE_VERIFY_MIN_SPACING_S: int = Field(default=5)
    CHARGE_RATE_LIMIT_BACKEND: str = Field(default="memory")  # memory or redis

    # Payout default policy (applied when no payout rule is configured)
    DEFAULT_PAYOUT_PERCENT: float = Field(default=70.0, ge=0, le=100)
    DEFAULT_ADDON_PAYOUT_PERCENT: float = Field(default=100.0, ge=0, le=100)

    # Email Configuration (Resend-compatible HTTP API)
    EMAIL_ENABLED: bool = Field(default=False)
    RESEND_API_KEY: Optional[str] = Field(default=None)
    RESEND_API_URL: str = Field(default="https://api.resend.com/emails")
    EMAIL_FROM: str = Field(default="Coaching Team <noreply@example.com>")
    EMAIL_FROM_BILLING: str = Field(default="Billing <billing@example.com>")
    SUPPORT_EMAIL: str = Field(default="support@example.com")

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)

    # Web app base URL (payment redirects, email links)
    APP_BASE_URL: str = Field(default="http://localhost:3000")


# Global settings instance
settings = Settings()
