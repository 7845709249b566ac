"""
Elevate Engine - Error Handling

Structured error responses for the webhook source and admin callers.
Every failure renders as {"success": false, "error": ...}. The status code
alone tells the source whether a retry can help: 4xx are terminal, 5xx are
safe to redeliver because the dedup gate absorbs replays.
"""

import asyncio
import logging
from typing import Any

import psycopg
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from psycopg_pool import PoolTimeout
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from .error_taxonomy import classify_exception
from .middleware import get_request_id

logger = logging.getLogger(__name__)


# =============================================================================
# Error Response Models
# =============================================================================


class ErrorDetail(BaseModel):
    """Field-level error information."""

    field: str | None = None
    message: str
    code: str | None = None


# =============================================================================
# Error Codes
# =============================================================================

ERROR_INVALID_SIGNATURE = "invalid_signature"
ERROR_VALIDATION = "VALIDATION_ERROR"
ERROR_INELIGIBLE_USER_TYPE = "INELIGIBLE_USER_TYPE"
ERROR_TRANSIENT = "TRANSIENT_FAILURE"
ERROR_UNAUTHORIZED = "UNAUTHORIZED"
ERROR_NOT_FOUND = "NOT_FOUND"
ERROR_BAD_REQUEST = "BAD_REQUEST"
ERROR_INTERNAL = "INTERNAL_ERROR"


# =============================================================================
# Pipeline Exceptions
# =============================================================================


class WebhookError(Exception):
    """Base exception for terminal or retryable pipeline failures."""

    def __init__(
        self,
        message: str,
        error_code: str = ERROR_INTERNAL,
        status_code: int = 500,
        retryable: bool = False,
        details: list[ErrorDetail] | None = None,
        extra: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.retryable = retryable
        self.details = details
        self.extra = extra or {}

    def error_body(self) -> Any:
        error: dict[str, Any] = {"code": self.error_code, "message": self.message}
        if self.retryable:
            error["retryable"] = True
        if self.details:
            error["details"] = [d.model_dump(exclude_none=True) for d in self.details]
        error.update(self.extra)
        return error


class AuthenticationFailure(WebhookError):
    """Missing or mismatched webhook signature."""

    def __init__(self, message: str = "Webhook signature missing or invalid"):
        super().__init__(
            message=message,
            error_code=ERROR_INVALID_SIGNATURE,
            status_code=401,
        )

    def error_body(self) -> Any:
        # The source only ever sees the bare code for signature failures
        return ERROR_INVALID_SIGNATURE


class ValidationFailure(WebhookError):
    """Malformed webhook payload."""

    def __init__(self, message: str, details: list[ErrorDetail] | None = None):
        super().__init__(
            message=message,
            error_code=ERROR_VALIDATION,
            status_code=400,
            details=details,
        )


class IneligibleUser(WebhookError):
    """Matched user belongs to a category that cannot receive credit."""

    def __init__(self, user_type: str):
        super().__init__(
            message=f"User type {user_type} is not eligible for course credit",
            error_code=ERROR_INELIGIBLE_USER_TYPE,
            status_code=403,
            extra={"user_type": user_type},
        )
        self.user_type = user_type


class TransientFailure(WebhookError):
    """Database unavailable, conflict or timeout. Safe to retry."""

    def __init__(self, message: str = "Temporary failure, please retry"):
        super().__init__(
            message=message,
            error_code=ERROR_TRANSIENT,
            status_code=503,
            retryable=True,
        )


# =============================================================================
# Exception Handlers
# =============================================================================


def create_error_response(status_code: int, error: Any) -> JSONResponse:
    """Create a standardized {"success": false} error response."""
    request_id = get_request_id()
    if isinstance(error, dict) and request_id:
        error = {**error, "request_id": request_id}
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error},
    )


async def webhook_error_handler(request: Request, exc: WebhookError) -> JSONResponse:
    """Render pipeline exceptions; 4xx at WARNING, 5xx at ERROR."""
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        level,
        f"{exc.error_code}: {exc.message}",
        extra={
            "request_id": get_request_id(),
            "path": request.url.path,
            "status_code": exc.status_code,
            "error_code": exc.error_code,
        },
    )
    return create_error_response(exc.status_code, exc.error_body())


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Map FastAPI/Starlette HTTP exceptions onto the error envelope."""
    error_map = {
        400: ERROR_BAD_REQUEST,
        401: ERROR_UNAUTHORIZED,
        404: ERROR_NOT_FOUND,
        503: ERROR_TRANSIENT,
    }
    error_code = error_map.get(exc.status_code, ERROR_INTERNAL)

    if exc.status_code >= 500:
        logger.error(
            f"HTTP {exc.status_code}: {exc.detail}",
            extra={
                "request_id": get_request_id(),
                "path": request.url.path,
                "status_code": exc.status_code,
            },
        )

    if isinstance(exc.detail, dict):
        message = exc.detail.get("message", str(exc.detail))
    else:
        message = str(exc.detail)

    response = create_error_response(
        exc.status_code, {"code": error_code, "message": message}
    )
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Convert request-model validation errors into a 400 with field details."""
    details = []
    for error in exc.errors():
        loc = error.get("loc", [])
        field = ".".join(str(x) for x in loc) if loc else None
        details.append(
            ErrorDetail(
                field=field,
                message=error.get("msg", "Validation error"),
                code=error.get("type", "validation"),
            )
        )

    logger.warning(
        f"Validation error on {request.url.path}: {len(details)} errors",
        extra={"request_id": get_request_id(), "path": request.url.path},
    )

    return create_error_response(
        status.HTTP_400_BAD_REQUEST,
        {
            "code": ERROR_VALIDATION,
            "message": "Request validation failed",
            "details": [d.model_dump(exclude_none=True) for d in details],
        },
    )


async def database_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Database and timeout failures are retryable 503s."""
    structured = classify_exception(
        exc, {"request_id": get_request_id(), "path": request.url.path}
    )
    structured.log()
    return create_error_response(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        {
            "code": ERROR_TRANSIENT,
            "message": "Temporary failure, please retry",
            "retryable": True,
            "error_code": str(structured.error_code),
        },
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Catch-all handler for unhandled exceptions.

    Logs the full traceback but returns a generic error to the caller.
    """
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {exc}",
        extra={
            "request_id": get_request_id(),
            "path": request.url.path,
            "method": request.method,
        },
        exc_info=True,
    )

    return create_error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        {
            "code": ERROR_INTERNAL,
            "message": "An unexpected error occurred. Please try again later.",
            "retryable": True,
        },
    )


# =============================================================================
# Setup Function
# =============================================================================


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register all error handlers with the FastAPI app.

    Call this in create_app() after creating the FastAPI instance.
    """
    app.add_exception_handler(WebhookError, webhook_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    for exc_type in (psycopg.OperationalError, PoolTimeout, asyncio.TimeoutError):
        app.add_exception_handler(exc_type, database_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    logger.info("Error handlers registered")
