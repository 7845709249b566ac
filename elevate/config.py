"""
Elevate Engine - Configuration

SINGLE SOURCE OF TRUTH for runtime configuration. The API, the scheduler and
the backfill CLI all load settings through get_settings().

Environment variables:
----------------------
Core:
  DATABASE_URL                  - Postgres connection string (pooler recommended)
  ENVIRONMENT                   - dev | staging | prod (default: dev)
  LOG_LEVEL                     - DEBUG | INFO | WARNING | ERROR (default: INFO)
  LOG_JSON                      - true for JSON log lines, false for console colors

Kajabi webhook:
  KAJABI_WEBHOOK_SECRET         - Shared HMAC-SHA256 secret (missing -> all webhooks 401)
  KAJABI_SIGNATURE_HEADER       - Header carrying the hex signature
  KAJABI_LEARN_TAGS             - Comma-separated recognized completion tags
  KAJABI_TAG_POINTS             - Per-tag point overrides: "tag=points,tag=points"
  LEARN_DEFAULT_POINTS          - Points for a recognized tag without an override
  INELIGIBLE_USER_TYPES         - Comma-separated user categories rejected with 403
  WEBHOOK_MAX_EVENT_AGE_SECONDS - Optional freshness window on created_at
  WEBHOOK_TIMEOUT_SECONDS       - Processing budget before a retryable 503

Reconciliation / admin:
  ADMIN_API_KEY                 - X-API-Key for the admin reconcile endpoint
  RECONCILE_INTERVAL_MINUTES    - Scheduler sweep interval (0 disables)
  RECONCILE_BATCH_SIZE          - Max queued events handled per sweep

Usage:
    from elevate.config import get_settings

    settings = get_settings()
    print(settings.learn_tags)
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Any, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .ingest.contract import normalize_tag

logger = logging.getLogger(__name__)

DEFAULT_LEARN_TAGS = "elevate-ai-1-completed,elevate-ai-2-completed"


def _split_csv(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


class Settings(BaseSettings):
    """
    Application settings for the API, scheduler and CLI.

    Loads from environment variables with fallback to the env file named by
    ENV_FILE (default: .env).
    """

    model_config = SettingsConfigDict(
        env_file=os.environ.get("ENV_FILE", ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================================================================
    # ENVIRONMENT CONTROL
    # =========================================================================

    ENVIRONMENT: Literal["dev", "staging", "prod"] = Field(
        default="dev",
        description="Deployment environment",
    )
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )
    LOG_JSON: bool = Field(default=True, description="Emit JSON log lines")

    # =========================================================================
    # DATABASE
    # =========================================================================

    DATABASE_URL: str | None = Field(
        default=None,
        description="Postgres connection string",
    )
    DB_POOL_MIN_SIZE: int = Field(default=1, ge=0)
    DB_POOL_MAX_SIZE: int = Field(default=10, ge=1)

    # =========================================================================
    # KAJABI WEBHOOK
    # =========================================================================

    KAJABI_WEBHOOK_SECRET: str | None = Field(
        default=None,
        description="Shared secret for X-Kajabi-Signature HMAC-SHA256",
    )
    KAJABI_SIGNATURE_HEADER: str = Field(default="X-Kajabi-Signature")
    KAJABI_LEARN_TAGS: str = Field(
        default=DEFAULT_LEARN_TAGS,
        description="Comma-separated recognized completion tags",
    )
    KAJABI_TAG_POINTS: str = Field(
        default="",
        description="Per-tag point overrides, e.g. 'elevate-ai-1-completed=20'",
    )
    LEARN_DEFAULT_POINTS: int = Field(default=20, ge=0)
    INELIGIBLE_USER_TYPES: str = Field(default="STUDENT")
    WEBHOOK_MAX_EVENT_AGE_SECONDS: int | None = Field(default=None, gt=0)
    WEBHOOK_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    WEBHOOK_RATE_LIMIT_RPM: int = Field(
        default=120,
        ge=0,
        description="Webhook requests per minute per client IP (0 disables)",
    )
    BADGE_TIMEOUT_SECONDS: float = Field(default=2.0, gt=0)

    # =========================================================================
    # ADMIN / RECONCILIATION
    # =========================================================================

    ADMIN_API_KEY: str | None = Field(default=None)
    RECONCILE_INTERVAL_MINUTES: int = Field(default=0, ge=0)
    RECONCILE_BATCH_SIZE: int = Field(default=200, ge=1)

    # =========================================================================
    # SERVER
    # =========================================================================

    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8000)

    # =========================================================================
    # VALIDATION & NORMALIZATION
    # =========================================================================

    @model_validator(mode="before")
    @classmethod
    def _normalize_values(cls, values: dict[str, Any]) -> dict[str, Any]:
        """Strip stray whitespace/quotes and accept long environment names."""
        for key, value in list(values.items()):
            if isinstance(value, str):
                values[key] = value.strip().strip('"').strip("'").strip()

        for key in ("ENVIRONMENT", "environment"):
            if key in values and isinstance(values[key], str):
                raw = values[key].lower()
                if raw == "production":
                    values[key] = "prod"
                elif raw == "development":
                    values[key] = "dev"
                else:
                    values[key] = raw

        for key in ("LOG_LEVEL", "log_level"):
            if key in values and isinstance(values[key], str):
                values[key] = values[key].upper()

        return values

    @field_validator("KAJABI_TAG_POINTS")
    @classmethod
    def _validate_tag_points(cls, v: str) -> str:
        for pair in _split_csv(v):
            tag, sep, points = pair.partition("=")
            if not sep or not tag.strip():
                raise ValueError(f"KAJABI_TAG_POINTS entry {pair!r} must look like 'tag=points'")
            try:
                if int(points.strip()) < 0:
                    raise ValueError
            except ValueError:
                raise ValueError(
                    f"KAJABI_TAG_POINTS entry {pair!r} has a non-integer or negative point value"
                ) from None
        return v

    @model_validator(mode="after")
    def _check_pool_bounds(self) -> "Settings":
        if self.DB_POOL_MIN_SIZE > self.DB_POOL_MAX_SIZE:
            raise ValueError("DB_POOL_MIN_SIZE cannot exceed DB_POOL_MAX_SIZE")
        return self

    # =========================================================================
    # DERIVED VALUES
    # =========================================================================

    @property
    def environment(self) -> Literal["dev", "staging", "prod"]:
        return self.ENVIRONMENT

    @property
    def log_level(self) -> str:
        return self.LOG_LEVEL

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "prod"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "dev"

    @property
    def database_url(self) -> str | None:
        return self.DATABASE_URL

    @property
    def learn_tags(self) -> frozenset[str]:
        """Recognized tags, passed through the same normalizer as inbound tags."""
        tags = {normalize_tag(t) for t in _split_csv(self.KAJABI_LEARN_TAGS)}
        tags.discard("")
        return frozenset(tags)

    @property
    def tag_points(self) -> dict[str, int]:
        """Per-tag point overrides keyed by normalized tag."""
        overrides: dict[str, int] = {}
        for pair in _split_csv(self.KAJABI_TAG_POINTS):
            tag, _, points = pair.partition("=")
            overrides[normalize_tag(tag)] = int(points.strip())
        return overrides

    @property
    def ineligible_user_types(self) -> frozenset[str]:
        return frozenset(t.upper() for t in _split_csv(self.INELIGIBLE_USER_TYPES))


# =========================================================================
# SINGLETON & FACTORY
# =========================================================================


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()


def reset_settings() -> None:
    """Clear the cached settings (for testing)."""
    get_settings.cache_clear()


# =========================================================================
# LOGGING CONFIGURATION
# =========================================================================


def configure_logging(settings: Settings | None = None) -> None:
    """
    Configure application logging based on settings.

    JSON lines when LOG_JSON is set (production default), colored console
    output otherwise.
    """
    if settings is None:
        settings = get_settings()

    from .core.logging import configure_structured_logging

    configure_structured_logging(
        level=settings.LOG_LEVEL,
        json_output=settings.LOG_JSON,
        service_name="elevate",
    )

    logging.getLogger("psycopg.pool").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.INFO)


# =========================================================================
# DIAGNOSTIC HELPERS
# =========================================================================

_SECRET_FIELDS = {"DATABASE_URL", "KAJABI_WEBHOOK_SECRET", "ADMIN_API_KEY"}


def print_effective_config(redact_secrets: bool = True) -> dict[str, Any]:
    """
    Return the effective configuration (for diagnostics).

    Secret values are replaced with a length marker unless redact_secrets is False.
    """
    settings = get_settings()

    config: dict[str, Any] = {}
    for field_name in Settings.model_fields:
        value = getattr(settings, field_name, None)
        if redact_secrets and field_name in _SECRET_FIELDS:
            config[field_name] = f"***SET*** (len={len(str(value))})" if value else None
        else:
            config[field_name] = value

    config["_computed"] = {
        "learn_tags": sorted(settings.learn_tags),
        "tag_points": settings.tag_points,
        "ineligible_user_types": sorted(settings.ineligible_user_types),
        "is_production": settings.is_production,
    }
    return config


def validate_required_env(settings: Settings | None = None) -> list[str]:
    """
    Log a startup report and return configuration warnings.

    Missing DATABASE_URL or KAJABI_WEBHOOK_SECRET never crashes the process:
    readiness reports the missing database and every webhook answers 401.
    """
    if settings is None:
        settings = get_settings()

    warnings: list[str] = []
    if not settings.DATABASE_URL:
        warnings.append("DATABASE_URL not set - webhook processing will return 503")
    if not settings.KAJABI_WEBHOOK_SECRET:
        warnings.append("KAJABI_WEBHOOK_SECRET not set - every webhook will be rejected with 401")
    if settings.is_production and not settings.ADMIN_API_KEY:
        warnings.append("ADMIN_API_KEY not set - admin reconcile endpoint is disabled")

    logger.info("=" * 60)
    logger.info("ELEVATE STARTUP CONFIGURATION REPORT")
    logger.info("=" * 60)
    logger.info(f"Environment: {settings.ENVIRONMENT.upper()}")
    logger.info(f"Learn tags: {', '.join(sorted(settings.learn_tags)) or '(none)'}")
    for warning in warnings:
        logger.warning(f"⚠ {warning}")
    logger.info("=" * 60)

    return warnings
