"""
Centralized configuration management for the newsletter service.
Loads and validates all environment variables.
"""
import os
from typing import List


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class Settings:
    """Application settings loaded from environment variables."""

    def __init__(self):
        # Database
        # Database URL with fallback for development
        self.DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./newsletter_dev.db")

        # Environment
        self.ENVIRONMENT = os.getenv("ENVIRONMENT", "development")

        # Idempotency Configuration
        self.IDEMPOTENCY_TTL_SECONDS = int(os.getenv("IDEMPOTENCY_TTL_SECONDS", "86400"))
        self.IDEMPOTENCY_SWEEP_INTERVAL_SECONDS = float(os.getenv("IDEMPOTENCY_SWEEP_INTERVAL_SECONDS", "10"))
        self.IDEMPOTENCY_KEY_MAX_LENGTH = int(os.getenv("IDEMPOTENCY_KEY_MAX_LENGTH", "200"))

        # Delivery worker
        self.DELIVERY_POLL_INTERVAL_SECONDS = float(os.getenv("DELIVERY_POLL_INTERVAL_SECONDS", "10"))
        self.DELIVERY_MAX_ATTEMPTS = int(os.getenv("DELIVERY_MAX_ATTEMPTS", "3"))
        self.DELIVERY_RETRY_BASE_DELAY_SECONDS = float(os.getenv("DELIVERY_RETRY_BASE_DELAY_SECONDS", "60"))

        # Email transport (Postmark-compatible API)
        self.EMAIL_BASE_URL = os.getenv("EMAIL_BASE_URL", "https://api.postmarkapp.com")
        self.EMAIL_SENDER = os.getenv("EMAIL_SENDER", "newsletter@example.com")
        self.EMAIL_AUTHORIZATION_TOKEN = os.getenv("EMAIL_AUTHORIZATION_TOKEN", "")
        self.EMAIL_TIMEOUT_MS = int(os.getenv("EMAIL_TIMEOUT_MS", "10000"))

        # Public URL used to build subscription confirmation links
        self.APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:8000").rstrip("/")

        # Background execution
        self.ENABLE_BACKGROUND_WORKERS = _env_flag("ENABLE_BACKGROUND_WORKERS", "true")

        # Redis / Celery Configuration
        self.REDIS_URL = os.getenv("REDIS_URL") or os.getenv("UPSTASH_REDIS_URL")
        self.ENABLE_CELERY = _env_flag("ENABLE_CELERY")

        # CORS Configuration
        allowed_origins_str = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000")
        self.ALLOWED_ORIGINS: List[str] = [origin.strip() for origin in allowed_origins_str.split(",") if origin.strip()]

        # Sentry Error Tracking
        self.SENTRY_DSN = os.getenv("SENTRY_DSN", "")
        self.SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

        # Observability Configuration
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
        self.OBS_REDACT_PII = _env_flag("OBS_REDACT_PII", "true")
        self.OTEL_EXPORTER_OTLP_ENDPOINT = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")
        self.OTEL_SERVICE_NAME = os.getenv("OTEL_SERVICE_NAME", "newsletter-api")

        # Validate required settings
        self._validate_settings()

    def _validate_settings(self):
        """Validate required settings with environment-aware relaxations."""
        if self.IDEMPOTENCY_TTL_SECONDS < 0:
            raise ValueError("IDEMPOTENCY_TTL_SECONDS must not be negative")
        if self.IDEMPOTENCY_SWEEP_INTERVAL_SECONDS <= 0:
            raise ValueError("IDEMPOTENCY_SWEEP_INTERVAL_SECONDS must be positive")
        if self.IDEMPOTENCY_KEY_MAX_LENGTH < 1:
            raise ValueError("IDEMPOTENCY_KEY_MAX_LENGTH must be at least 1")
        if self.DELIVERY_MAX_ATTEMPTS < 1:
            raise ValueError("DELIVERY_MAX_ATTEMPTS must be at least 1")

        if self.is_production:
            if self.DATABASE_URL.startswith("sqlite"):
                raise ValueError("DATABASE_URL must point at PostgreSQL in production")
            if self.EMAIL_AUTHORIZATION_TOKEN in ("", "CHANGE_ME"):
                raise ValueError("EMAIL_AUTHORIZATION_TOKEN must be set to a real value, not a placeholder")

        # Redis requirement handling
        if self.ENABLE_CELERY and not self.REDIS_URL:
            if self.is_production:
                raise ValueError("REDIS_URL or UPSTASH_REDIS_URL must be set when Celery is enabled")
            # In non-production, fall back to the in-process workers
            self.ENABLE_CELERY = False

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def email_timeout_seconds(self) -> float:
        return self.EMAIL_TIMEOUT_MS / 1000


# Global settings instance
settings = Settings()
