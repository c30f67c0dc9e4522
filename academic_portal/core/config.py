"""
Portal settings, read once from the environment (and .env) by pydantic-settings.

Request handlers never read the environment directly; the break-glass
engine receives an explicit BreakGlassConfig built from these settings.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # App
    APP_NAME: str = "Academic Portal"
    APP_VERSION: str = "0.1.0"
    APP_URL: str = "http://localhost:8000"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    # Database
    DATABASE_URL: str

    # Security & Encryption
    SECRET_KEY: str  # Session cookie + CSRF signing
    ENCRYPTION_KEY: str  # Fernet key for stored promotion codes (44-char base64)
    SESSION_SECRET_KEY: Optional[str] = None
    SESSION_MAX_AGE_HOURS: int = 24

    # Email (Postmark)
    POSTMARK_API_KEY: Optional[str] = None
    POSTMARK_FROM_EMAIL: str = "noreply@academic-portal.local"
    ADMIN_EMAIL: Optional[str] = None

    # Redis
    REDIS_URL: str = "redis://localhost:6379/0"

    # Celery
    CELERY_BROKER_URL: Optional[str] = None
    CELERY_RESULT_BACKEND: Optional[str] = None

    # Sentry
    SENTRY_DSN: Optional[str] = None

    # Per-client API limit (slowapi syntax)
    RATE_LIMIT_DEFAULT: str = "200/minute"

    # Break-glass elevation
    BREAK_GLASS_MAX_SESSION_HOURS: float = 8.0  # 0 disables expiry
    BREAK_GLASS_LOCK_TIMEOUT_MS: int = 3000  # Wait ceiling for row locks
    BREAK_GLASS_STATEMENT_TIMEOUT_MS: int = 10000  # Overall execution ceiling
    BREAK_GLASS_NOTIFY_EMAIL: bool = True
    BREAK_GLASS_SWEEP_MINUTES: int = 15  # Expiry sweep cadence

    # Audit log
    AUDIT_MAX_FIELD_BYTES: int = 50 * 1024
    AUDIT_EXPORT_RETENTION_DAYS: int = 7
    AUDIT_EXPORT_DIR: str = "exports"
    AUDIT_EXPORT_HOUR_UTC: int = 2
    AUDIT_QUERY_PAGE_SIZE: int = 100

    @model_validator(mode="after")
    def _fill_shared_defaults(self) -> "Settings":
        # Celery shares the limiter's Redis and sessions share SECRET_KEY unless set apart
        self.CELERY_BROKER_URL = self.CELERY_BROKER_URL or self.REDIS_URL
        self.CELERY_RESULT_BACKEND = self.CELERY_RESULT_BACKEND or self.REDIS_URL
        self.SESSION_SECRET_KEY = self.SESSION_SECRET_KEY or self.SECRET_KEY
        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_postgres(self) -> bool:
        return self.DATABASE_URL.startswith("postgresql")


@dataclass(frozen=True)
class BreakGlassConfig:
    """
    Immutable break-glass policy values handed to the engine.

    max_session_lifetime of None means sessions never expire on their own.
    """

    max_session_lifetime: Optional[timedelta] = timedelta(hours=8)
    lock_timeout_ms: int = 3000
    statement_timeout_ms: int = 10000
    notify_email: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "BreakGlassConfig":
        hours = settings.BREAK_GLASS_MAX_SESSION_HOURS
        return cls(
            max_session_lifetime=timedelta(hours=hours) if hours > 0 else None,
            lock_timeout_ms=settings.BREAK_GLASS_LOCK_TIMEOUT_MS,
            statement_timeout_ms=settings.BREAK_GLASS_STATEMENT_TIMEOUT_MS,
            notify_email=settings.BREAK_GLASS_NOTIFY_EMAIL,
        )

    @property
    def statement_timeout_seconds(self) -> float:
        return self.statement_timeout_ms / 1000


# Global settings instance
settings = Settings()
