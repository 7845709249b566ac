"""
Elevate Engine - Error Taxonomy

Structured error classification for the webhook pipeline.
Every failure that reaches a log line gets a stable error_code that can be:
- Aggregated in logs
- Used for alerting rules (5xx codes mean the source will retry)

Error Code Format: ELV-{CATEGORY}-{NUMBER}
- CATEGORY = CONFIG, DB, AUTH, VALIDATION, ELIGIBILITY, INTERNAL
- NUMBER = 3-digit error number

Categories:
- CONFIG (001-099): Configuration and environment errors
- DB (100-199): Database connectivity and query errors
- AUTH (400-499): Signature / API key failures
- VALIDATION (400, 500-599): Malformed webhook payloads
- ELIGIBILITY (403): Business-rule rejections
- INTERNAL (900-999): Unexpected internal errors
"""

from __future__ import annotations

import asyncio
import logging
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import psycopg
from psycopg import errors as pg_errors
from psycopg_pool import PoolTimeout
from pydantic import ValidationError

logger = logging.getLogger(__name__)


# =============================================================================
# ERROR CODES
# =============================================================================


class ErrorCategory(str, Enum):
    """Error category for classification."""

    CONFIG = "CONFIG"
    DB = "DB"
    AUTH = "AUTH"
    VALIDATION = "VALIDATION"
    ELIGIBILITY = "ELIGIBILITY"
    INTERNAL = "INTERNAL"


@dataclass(frozen=True)
class ErrorCode:
    """Immutable error code definition."""

    code: str
    category: ErrorCategory
    message: str
    http_status: int = 500
    retryable: bool = False

    def __str__(self) -> str:
        return self.code


# -----------------------------------------------------------------------------
# CONFIG Errors (001-099)
# -----------------------------------------------------------------------------
ERR_CONFIG_MISSING_ENV = ErrorCode(
    code="ELV-CONFIG-001",
    category=ErrorCategory.CONFIG,
    message="Required environment variable is missing",
    http_status=503,
    retryable=True,
)

# -----------------------------------------------------------------------------
# DB Errors (100-199)
# -----------------------------------------------------------------------------
ERR_DB_CONNECTION = ErrorCode(
    code="ELV-DB-100",
    category=ErrorCategory.DB,
    message="Database connection failed",
    http_status=503,
    retryable=True,
)
ERR_DB_POOL_EXHAUSTED = ErrorCode(
    code="ELV-DB-101",
    category=ErrorCategory.DB,
    message="Database connection pool exhausted",
    http_status=503,
    retryable=True,
)
ERR_DB_TIMEOUT = ErrorCode(
    code="ELV-DB-102",
    category=ErrorCategory.DB,
    message="Database operation timed out",
    http_status=503,
    retryable=True,
)
ERR_DB_SERIALIZATION = ErrorCode(
    code="ELV-DB-103",
    category=ErrorCategory.DB,
    message="Transaction conflict (serialization failure or deadlock)",
    http_status=503,
    retryable=True,
)
ERR_DB_QUERY_ERROR = ErrorCode(
    code="ELV-DB-110",
    category=ErrorCategory.DB,
    message="Database query failed",
    http_status=500,
    retryable=False,
)
ERR_DB_CONSTRAINT = ErrorCode(
    code="ELV-DB-111",
    category=ErrorCategory.DB,
    message="Database constraint violation",
    http_status=409,
    retryable=False,
)

# -----------------------------------------------------------------------------
# AUTH Errors (400-499)
# -----------------------------------------------------------------------------
ERR_AUTH_INVALID_SIGNATURE = ErrorCode(
    code="ELV-AUTH-401",
    category=ErrorCategory.AUTH,
    message="Webhook signature missing or invalid",
    http_status=401,
    retryable=False,
)
ERR_AUTH_INVALID_API_KEY = ErrorCode(
    code="ELV-AUTH-402",
    category=ErrorCategory.AUTH,
    message="Admin API key missing or invalid",
    http_status=401,
    retryable=False,
)

# -----------------------------------------------------------------------------
# VALIDATION Errors
# -----------------------------------------------------------------------------
ERR_VALIDATION_PAYLOAD = ErrorCode(
    code="ELV-VALIDATION-400",
    category=ErrorCategory.VALIDATION,
    message="Webhook payload validation failed",
    http_status=400,
    retryable=False,
)
ERR_VALIDATION_STALE_EVENT = ErrorCode(
    code="ELV-VALIDATION-501",
    category=ErrorCategory.VALIDATION,
    message="Event is older than the configured freshness window",
    http_status=400,
    retryable=False,
)

# -----------------------------------------------------------------------------
# ELIGIBILITY Errors
# -----------------------------------------------------------------------------
ERR_ELIGIBILITY_USER_TYPE = ErrorCode(
    code="ELV-ELIGIBILITY-403",
    category=ErrorCategory.ELIGIBILITY,
    message="User type is not eligible for webhook credit",
    http_status=403,
    retryable=False,
)

# -----------------------------------------------------------------------------
# INTERNAL Errors (900-999)
# -----------------------------------------------------------------------------
ERR_INTERNAL_UNKNOWN = ErrorCode(
    code="ELV-INTERNAL-900",
    category=ErrorCategory.INTERNAL,
    message="Unknown internal error",
    http_status=500,
    retryable=True,
)


# =============================================================================
# STRUCTURED ERROR
# =============================================================================


@dataclass
class StructuredError:
    """
    Structured error for logging and reporting.

    Captures all relevant context for incident response.
    """

    error_code: ErrorCode
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    context: dict[str, Any] = field(default_factory=dict)
    original_exception: BaseException | None = None
    traceback_str: str | None = None

    def __post_init__(self):
        if self.original_exception and not self.traceback_str:
            self.traceback_str = "".join(
                traceback.format_exception(
                    type(self.original_exception),
                    self.original_exception,
                    self.original_exception.__traceback__,
                )
            )

    @property
    def retryable(self) -> bool:
        return self.error_code.retryable

    def to_log_dict(self) -> dict[str, Any]:
        """Convert to dict suitable for structured logging."""
        return {
            "error_code": str(self.error_code),
            "error_category": self.error_code.category.value,
            "error_message": self.message,
            "http_status": self.error_code.http_status,
            "retryable": self.error_code.retryable,
            "timestamp": self.timestamp.isoformat(),
            **self.context,
        }

    def log(self, level: int = logging.ERROR) -> None:
        """Log this error with structured context."""
        logger.log(
            level,
            f"[{self.error_code}] {self.message}",
            extra=self.to_log_dict(),
            exc_info=self.original_exception,
        )


# =============================================================================
# ERROR CLASSIFIER
# =============================================================================


def classify_exception(
    exc: BaseException, context: dict[str, Any] | None = None
) -> StructuredError:
    """
    Classify an exception into a structured error.

    psycopg and pool errors map to DB codes; everything retryable maps to a
    503 so the webhook source redelivers.

    Args:
        exc: The exception to classify
        context: Additional context for logging

    Returns:
        StructuredError with appropriate classification
    """
    context = context or {}
    exc_type = type(exc).__name__
    exc_msg = str(exc) or exc_type

    if isinstance(exc, PoolTimeout):
        error_code = ERR_DB_POOL_EXHAUSTED
    elif isinstance(exc, (asyncio.TimeoutError, pg_errors.QueryCanceled)):
        error_code = ERR_DB_TIMEOUT
    elif isinstance(exc, (pg_errors.SerializationFailure, pg_errors.DeadlockDetected)):
        error_code = ERR_DB_SERIALIZATION
    elif isinstance(exc, psycopg.IntegrityError):
        error_code = ERR_DB_CONSTRAINT
    elif isinstance(exc, (psycopg.OperationalError, psycopg.InterfaceError)):
        error_code = ERR_DB_CONNECTION
    elif isinstance(exc, psycopg.Error):
        error_code = ERR_DB_QUERY_ERROR
    elif isinstance(exc, (ConnectionError, OSError)):
        error_code = ERR_DB_CONNECTION
    elif isinstance(exc, ValidationError):
        error_code = ERR_VALIDATION_PAYLOAD
    elif isinstance(exc, KeyError) and "env" in exc_msg.lower():
        error_code = ERR_CONFIG_MISSING_ENV
    else:
        error_code = ERR_INTERNAL_UNKNOWN

    return StructuredError(
        error_code=error_code,
        message=exc_msg,
        context={
            "exception_type": exc_type,
            **context,
        },
        original_exception=exc,
    )


def log_classified_error(
    exc: BaseException,
    context: dict[str, Any] | None = None,
    level: int = logging.ERROR,
) -> StructuredError:
    """Classify and log an exception in one call."""
    structured = classify_exception(exc, context)
    structured.log(level)
    return structured
