"""Application configuration management."""

from datetime import timedelta
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cart_recovery.domain import RecoveryTier, TierWindow


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Application Settings
    # -------------------------------------------------------------------------
    app_name: str = "cart-recovery"
    app_env: Literal["development", "staging", "production", "test"] = "development"
    debug: bool = False
    log_level: str = "INFO"

    # -------------------------------------------------------------------------
    # API Settings
    # -------------------------------------------------------------------------
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_workers: int = 4
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    # -------------------------------------------------------------------------
    # Database (storefront tables and recovery tables share one database)
    # -------------------------------------------------------------------------
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "storefront"
    postgres_password: str = ""
    postgres_db: str = "storefront"

    # Full SQLAlchemy URL; overrides the postgres_* settings when set
    database_dsn: str = ""

    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_recycle: int = 1800

    @property
    def database_url(self) -> str:
        """Construct the async database connection URL."""
        if self.database_dsn:
            return self.database_dsn
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def database_url_sync(self) -> str:
        """Construct synchronous database URL (for Alembic)."""
        if self.database_dsn:
            return self.database_dsn.replace("+asyncpg", "").replace("+aiosqlite", "")
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # -------------------------------------------------------------------------
    # Redis
    # -------------------------------------------------------------------------
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str = ""
    redis_db: int = 0

    @property
    def redis_url(self) -> str:
        """Construct Redis connection URL."""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # -------------------------------------------------------------------------
    # Celery
    # -------------------------------------------------------------------------
    celery_broker_url: str = ""
    celery_result_backend: str = ""

    @property
    def celery_broker(self) -> str:
        """Get Celery broker URL, defaulting to Redis URL."""
        return self.celery_broker_url or self.redis_url

    @property
    def celery_backend(self) -> str:
        """Get Celery result backend URL, defaulting to Redis URL."""
        return self.celery_result_backend or self.redis_url

    # -------------------------------------------------------------------------
    # Email Service
    # -------------------------------------------------------------------------
    email_service: Literal["mock", "sendgrid"] = "mock"
    email_from_address: str = "noreply@example-store.com"
    email_from_name: str = "The Store"
    sendgrid_api_key: str = ""
    sendgrid_api_url: str = "https://api.sendgrid.com/v3/mail/send"
    sendgrid_timeout_seconds: float = 10.0
    sendgrid_template_email_1hr: str = ""
    sendgrid_template_email_24hr: str = ""
    sendgrid_template_email_72hr: str = ""
    mock_email_storage_path: str = "/tmp/cart_recovery_mock_emails"

    # -------------------------------------------------------------------------
    # Links embedded in recovery emails
    # -------------------------------------------------------------------------
    storefront_cart_url: str = "http://localhost:3000/cart"
    tracking_base_url: str = "http://localhost:8000/api/v1/tracking"

    # -------------------------------------------------------------------------
    # Background Jobs
    # -------------------------------------------------------------------------
    scheduler_backend: Literal["inprocess", "celery"] = "inprocess"
    background_jobs_enabled: bool = True
    job_max_concurrency: int = 8

    # Cart detector
    detection_interval_seconds: int = 300
    abandonment_threshold_minutes: int = 30
    detection_lookback_days: int = 30

    # Recovery campaign scheduler
    campaign_interval_seconds: int = 900
    # Claims still pending after this long belong to a dead worker
    pending_attempt_grace_minutes: int = 30
    email_1hr_opens_after_minutes: int = 65
    email_1hr_closes_after_minutes: int = 80
    email_24hr_opens_after_minutes: int = 24 * 60 + 5
    email_24hr_closes_after_minutes: int = 24 * 60 + 30
    email_72hr_opens_after_minutes: int = 72 * 60 + 5
    email_72hr_closes_after_minutes: int = 72 * 60 + 30

    # Retention sweeper
    retention_interval_seconds: int = 86400
    expire_after_days: int = 30
    delete_after_days: int = 90

    # -------------------------------------------------------------------------
    # Promotion Codes
    # -------------------------------------------------------------------------
    promo_code_prefix: str = "CART5"
    promo_discount_percent: int = 5
    promo_code_valid_days: int = 10

    @property
    def abandonment_threshold(self) -> timedelta:
        return timedelta(minutes=self.abandonment_threshold_minutes)

    @property
    def detection_lookback(self) -> timedelta:
        return timedelta(days=self.detection_lookback_days)

    @property
    def pending_attempt_grace(self) -> timedelta:
        return timedelta(minutes=self.pending_attempt_grace_minutes)

    @property
    def expire_after(self) -> timedelta:
        return timedelta(days=self.expire_after_days)

    @property
    def delete_after(self) -> timedelta:
        return timedelta(days=self.delete_after_days)

    def tier_windows(self) -> list[TierWindow]:
        """Build the send window of every recovery tier, earliest tier first."""
        return [
            TierWindow(
                tier=RecoveryTier.EMAIL_1HR,
                opens_after=timedelta(minutes=self.email_1hr_opens_after_minutes),
                closes_after=timedelta(minutes=self.email_1hr_closes_after_minutes),
            ),
            TierWindow(
                tier=RecoveryTier.EMAIL_24HR,
                opens_after=timedelta(minutes=self.email_24hr_opens_after_minutes),
                closes_after=timedelta(minutes=self.email_24hr_closes_after_minutes),
            ),
            TierWindow(
                tier=RecoveryTier.EMAIL_72HR,
                opens_after=timedelta(minutes=self.email_72hr_opens_after_minutes),
                closes_after=timedelta(minutes=self.email_72hr_closes_after_minutes),
            ),
        ]

    def sendgrid_template_for(self, tier: RecoveryTier) -> str:
        return {
            RecoveryTier.EMAIL_1HR: self.sendgrid_template_email_1hr,
            RecoveryTier.EMAIL_24HR: self.sendgrid_template_email_24hr,
            RecoveryTier.EMAIL_72HR: self.sendgrid_template_email_72hr,
        }[tier]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
