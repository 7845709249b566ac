"""
Elevate Engine - Middleware

Production middleware for:
- Request logging with correlation IDs. Every request gets an X-Request-ID
  (taken from the caller when present) that flows through logs, error bodies
  and the response headers.
- Per-IP rate limiting of the webhook endpoints.
"""

import logging
import time
import uuid
from collections import defaultdict
from contextvars import ContextVar
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

logger = logging.getLogger(__name__)

# Context variable for request ID (thread/async safe)
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def get_request_id() -> str:
    """Get the current request ID from context."""
    return request_id_var.get()


def _client_ip(request: Request) -> str:
    client_ip = request.headers.get(
        "X-Forwarded-For", request.client.host if request.client else "unknown"
    )
    if "," in client_ip:
        client_ip = client_ip.split(",")[0].strip()
    return client_ip


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs every request with:
    - Unique request ID (X-Request-ID header)
    - Method, path, status code
    - Response time in milliseconds
    - Client IP

    4xx responses log at WARNING, 5xx at ERROR. The webhook source retries
    on 5xx, so those lines are the ones to alert on.
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]
        request_id_var.set(request_id)
        client_ip = _client_ip(request)
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"[{request_id}] Unhandled exception: {type(e).__name__}: {e}",
                extra={
                    "request_id": request_id,
                    "path": request.url.path,
                    "method": request.method,
                    "client_ip": client_ip,
                },
            )
            raise

        duration_ms = (time.perf_counter() - start_time) * 1000

        log_level = logging.INFO if response.status_code < 400 else logging.WARNING
        if response.status_code >= 500:
            log_level = logging.ERROR

        logger.log(
            log_level,
            f"[{request_id}] {request.method} {request.url.path} -> "
            f"{response.status_code} ({duration_ms:.1f}ms)",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
                "client_ip": client_ip,
            },
        )

        response.headers["X-Request-ID"] = request_id
        return response


# =============================================================================
# Rate Limiting Middleware
# =============================================================================

WEBHOOK_PATHS = ("/webhook", "/api/kajabi/webhook")


class RateLimitConfig:
    """Configuration for rate limiting a specific path."""

    def __init__(self, path: str, requests_per_minute: int = 120):
        self.path = path
        self.requests_per_minute = requests_per_minute
        self.window_seconds = 60


def webhook_rate_limits(requests_per_minute: int) -> list[RateLimitConfig]:
    return [RateLimitConfig(path, requests_per_minute) for path in WEBHOOK_PATHS]


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    In-memory sliding-window limiter, keyed by (path, client IP).

    Suitable for a single instance. Kajabi retries a 429 like any other
    non-2xx response, so a rejected delivery is not lost.
    """

    def __init__(self, app: ASGIApp, configs: list[RateLimitConfig]):
        super().__init__(app)
        self.configs = {config.path: config for config in configs}
        self._request_times: dict[tuple[str, str], list[float]] = defaultdict(list)

    def _recent(self, key: tuple[str, str], window_seconds: int) -> list[float]:
        cutoff = time.monotonic() - window_seconds
        recent = [ts for ts in self._request_times[key] if ts > cutoff]
        self._request_times[key] = recent
        return recent

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        config = self.configs.get(request.url.path.rstrip("/") or "/")
        if config is None:
            return await call_next(request)

        client_ip = _client_ip(request)
        key = (config.path, client_ip)
        recent = self._recent(key, config.window_seconds)

        if len(recent) >= config.requests_per_minute:
            retry_after = max(1, int(config.window_seconds - (time.monotonic() - recent[0])) + 1)
            logger.warning(
                f"Rate limit exceeded for {client_ip} on {config.path}",
                extra={
                    "client_ip": client_ip,
                    "path": config.path,
                    "count": len(recent),
                },
            )
            return JSONResponse(
                status_code=429,
                content={
                    "success": False,
                    "error": {
                        "code": "RATE_LIMITED",
                        "message": "Too many requests. Please slow down.",
                        "retryable": True,
                    },
                },
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(config.requests_per_minute),
                    "X-RateLimit-Remaining": "0",
                },
            )

        recent.append(time.monotonic())
        response = await call_next(request)

        remaining = config.requests_per_minute - len(recent)
        response.headers["X-RateLimit-Limit"] = str(config.requests_per_minute)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
        return response
