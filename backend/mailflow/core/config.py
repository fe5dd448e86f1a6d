"""
Runtime configuration for Mailflow.

Values come from environment variables, optionally seeded from a
``.env`` file. ``get_settings()`` caches one instance per process;
tests call ``get_settings.cache_clear()`` after changing the environment.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Tuple

from dotenv import load_dotenv

from .exceptions import ConfigurationError

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"Environment variable {name} must be an integer",
            context={"variable": name, "value": raw},
            cause=e,
        )


@dataclass(frozen=True)
class Settings:
    """Application settings loaded from environment variables."""

    # Storage
    database_url: str = "sqlite:///./mailflow.db"

    # Celery / Redis
    redis_url: str = "redis://localhost:6379/0"
    celery_result_backend: Optional[str] = None

    # Outbound provider
    email_provider: str = "resend"
    resend_api_key: str = ""
    resend_from_email: str = "hello@example.com"
    resend_base_url: str = "https://api.resend.com"
    resend_webhook_secret: str = ""

    # Unsubscribe links
    app_url: str = "http://localhost:3000"
    unsubscribe_secret: str = ""
    unsubscribe_token_ttl_days: int = 365

    # Dispatch worker
    dispatch_interval_seconds: int = 15
    dispatch_batch_size: int = 100
    max_retries: int = 3
    retry_base_delay_seconds: int = 60
    retry_max_delay_seconds: int = 3600
    claim_timeout_minutes: int = 15
    provider_scheduling_enabled: bool = False
    provider_scheduling_horizon_hours: int = 24

    # Listing
    default_page_size: int = 50
    max_page_size: int = 500

    cors_origins: Tuple[str, ...] = ("http://localhost:3000",)
    debug: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        redis_url = os.getenv("REDIS_URL", cls.redis_url)
        max_page_size = max(1, _env_int("MAX_PAGE_SIZE", cls.max_page_size))
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            redis_url=redis_url,
            celery_result_backend=os.getenv("CELERY_RESULT_BACKEND", redis_url),
            email_provider=os.getenv("EMAIL_PROVIDER", cls.email_provider).lower(),
            resend_api_key=os.getenv("RESEND_API_KEY", ""),
            resend_from_email=os.getenv("RESEND_FROM_EMAIL", cls.resend_from_email),
            resend_base_url=os.getenv("RESEND_BASE_URL", cls.resend_base_url).rstrip("/"),
            resend_webhook_secret=os.getenv("RESEND_WEBHOOK_SECRET", ""),
            app_url=os.getenv("APP_URL", cls.app_url).rstrip("/"),
            unsubscribe_secret=os.getenv("UNSUBSCRIBE_SECRET", ""),
            unsubscribe_token_ttl_days=_env_int("UNSUBSCRIBE_TOKEN_TTL_DAYS", cls.unsubscribe_token_ttl_days),
            dispatch_interval_seconds=_env_int("DISPATCH_INTERVAL_SECONDS", cls.dispatch_interval_seconds),
            dispatch_batch_size=_env_int("DISPATCH_BATCH_SIZE", cls.dispatch_batch_size),
            max_retries=max(0, _env_int("MAX_RETRIES", cls.max_retries)),
            retry_base_delay_seconds=_env_int("RETRY_BASE_DELAY_SECONDS", cls.retry_base_delay_seconds),
            retry_max_delay_seconds=_env_int("RETRY_MAX_DELAY_SECONDS", cls.retry_max_delay_seconds),
            claim_timeout_minutes=_env_int("CLAIM_TIMEOUT_MINUTES", cls.claim_timeout_minutes),
            provider_scheduling_enabled=_env_bool("PROVIDER_SCHEDULING_ENABLED", False),
            provider_scheduling_horizon_hours=_env_int(
                "PROVIDER_SCHEDULING_HORIZON_HOURS", cls.provider_scheduling_horizon_hours
            ),
            default_page_size=min(_env_int("DEFAULT_PAGE_SIZE", cls.default_page_size), max_page_size),
            max_page_size=max_page_size,
            cors_origins=tuple(
                o.strip() for o in os.getenv("CORS_ORIGINS", ",".join(cls.cors_origins)).split(",") if o.strip()
            ),
            debug=_env_bool("DEBUG", False),
        )


@lru_cache()
def get_settings() -> Settings:
    """Get the process-wide settings instance."""
    return Settings.from_env()
