# elevate/db.py
"""
Elevate Engine - Database Layer

Provides the process-wide async PostgreSQL connection pool via psycopg3 +
psycopg_pool. The pool is created once (FastAPI lifespan, CLI entry point or
first get_pool() call), reused by every request and closed on shutdown.

Implements:
- Exponential backoff retry on initialization
- SSL enforcement in production (sslmode=require)
- Structured logging (DSN host/port/dbname/user, no password)
- Pool health state tracking for readiness probes
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from loguru import logger
from psycopg_pool import AsyncConnectionPool

from . import __version__
from .config import get_settings

# ---------------------------------------------------------------------------
# Pool Health State
# ---------------------------------------------------------------------------


@dataclass
class PoolHealthState:
    """Tracks database pool initialization state for readiness probes."""

    initialized: bool = False
    healthy: bool = False
    init_attempted: bool = False
    last_error: str | None = None
    last_check_at: float | None = None
    init_attempts: int = 0
    init_duration_ms: float | None = None


_pool_health = PoolHealthState()

_db_pool: Optional[AsyncConnectionPool] = None


def get_pool_health() -> PoolHealthState:
    """Return the current pool health state for readiness probes."""
    return _pool_health


# ---------------------------------------------------------------------------
# Low-level DB connection management (psycopg async)
# ---------------------------------------------------------------------------

MAX_RETRY_ATTEMPTS = 5
MAX_TOTAL_WAIT_SECONDS = 30.0
BASE_DELAY_SECONDS = 1.0
READINESS_CHECK_TIMEOUT = 2.0


def _parse_dsn_for_logging(dsn: str) -> dict[str, str | None]:
    """Extract loggable DSN components (no password)."""
    try:
        parsed = urlparse(dsn)
        query_params = parse_qs(parsed.query)
        sslmode = query_params.get("sslmode", ["not_set"])[0]

        return {
            "host": parsed.hostname,
            "port": str(parsed.port) if parsed.port else "5432",
            "dbname": parsed.path.lstrip("/") if parsed.path else None,
            "user": parsed.username,
            "sslmode": sslmode,
        }
    except ValueError as e:
        return {"error": str(e)}


def _ensure_sslmode(dsn: str) -> str:
    """
    Ensure sslmode=require is present in the DSN.

    If sslmode is not set, append it. If set to a weaker mode, upgrade.
    """
    try:
        parsed = urlparse(dsn)
    except ValueError as e:
        logger.error(f"Failed to parse DSN for sslmode: {e}")
        return dsn

    query_params = parse_qs(parsed.query)
    current_sslmode = query_params.get("sslmode", [None])[0]
    weak_modes = {"disable", "allow", "prefer"}

    if current_sslmode is None or current_sslmode in weak_modes:
        query_params["sslmode"] = ["require"]
        new_dsn = urlunparse(parsed._replace(query=urlencode(query_params, doseq=True)))

        if current_sslmode in weak_modes:
            logger.warning(f"Upgraded sslmode from '{current_sslmode}' to 'require'")
        else:
            logger.info("Added sslmode=require to DSN (was not set)")
        return new_dsn

    return dsn


async def init_db_pool(app: Any | None = None) -> None:
    """
    Initialize the async PostgreSQL connection pool.

    One initialization per process: up to MAX_RETRY_ATTEMPTS connection
    attempts with exponential backoff and jitter, capped at
    MAX_TOTAL_WAIT_SECONDS. get_pool() does not call this again after it
    has failed.

    Never raises: on failure the health state records the error, readiness
    reports 503 and webhook requests answer with a retryable 503.

    Args:
        app: FastAPI app instance (accepted for lifespan symmetry, unused)
    """
    global _db_pool

    if _db_pool is not None:
        return

    settings = get_settings()
    _pool_health.init_attempted = True

    if not settings.DATABASE_URL:
        logger.warning("DATABASE_URL is not set; skipping DB init")
        _pool_health.last_error = "DATABASE_URL not configured"
        return

    dsn = settings.DATABASE_URL
    if settings.is_production:
        dsn = _ensure_sslmode(dsn)

    dsn_info = _parse_dsn_for_logging(dsn)
    logger.info(
        "Database connection parameters",
        host=dsn_info.get("host"),
        port=dsn_info.get("port"),
        dbname=dsn_info.get("dbname"),
        user=dsn_info.get("user"),
        sslmode=dsn_info.get("sslmode"),
    )

    start_time = time.monotonic()
    last_error: Exception | None = None

    for attempt in range(1, MAX_RETRY_ATTEMPTS + 1):
        _pool_health.init_attempts = attempt
        elapsed = time.monotonic() - start_time

        if elapsed >= MAX_TOTAL_WAIT_SECONDS:
            logger.error(
                f"DB pool init: time budget exhausted ({elapsed:.1f}s >= {MAX_TOTAL_WAIT_SECONDS}s)"
            )
            break

        pool: AsyncConnectionPool | None = None
        try:
            logger.info(f"DB pool init: attempt {attempt}/{MAX_RETRY_ATTEMPTS}")

            # application_name must not contain spaces or dots
            safe_version = __version__.replace(".", "_").replace("-", "_")
            pool = AsyncConnectionPool(
                dsn,
                min_size=settings.DB_POOL_MIN_SIZE,
                max_size=settings.DB_POOL_MAX_SIZE,
                kwargs={"application_name": f"elevate_v{safe_version}"},
                open=False,
            )
            await pool.open()

            async with pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute("SELECT 1;")
                    result = await cur.fetchone()
                    if result is None or result[0] != 1:
                        raise RuntimeError("SELECT 1 did not return expected result")

            init_duration = (time.monotonic() - start_time) * 1000
            _db_pool = pool
            _pool_health.initialized = True
            _pool_health.healthy = True
            _pool_health.last_error = None
            _pool_health.init_duration_ms = init_duration
            _pool_health.last_check_at = time.monotonic()

            logger.info(
                f"Database pool initialized OK (attempt {attempt}, {init_duration:.0f}ms total)"
            )
            return

        except Exception as e:
            last_error = e
            _pool_health.last_error = f"{type(e).__name__}: {str(e)[:200]}"
            _pool_health.healthy = False
            if pool is not None:
                await pool.close()

            logger.warning(f"DB pool init attempt {attempt} failed: {type(e).__name__}: {e}")

            if attempt < MAX_RETRY_ATTEMPTS:
                delay = BASE_DELAY_SECONDS * (2 ** (attempt - 1))
                jitter = random.uniform(0, delay * 0.3)
                actual_delay = min(delay + jitter, MAX_TOTAL_WAIT_SECONDS - elapsed)

                if actual_delay > 0:
                    logger.info(f"DB pool init: waiting {actual_delay:.1f}s before retry")
                    await asyncio.sleep(actual_delay)

    total_elapsed = time.monotonic() - start_time
    _pool_health.initialized = False
    _pool_health.healthy = False
    _pool_health.init_duration_ms = total_elapsed * 1000

    logger.error(
        f"Failed to initialize database pool after {_pool_health.init_attempts} attempts "
        f"({total_elapsed:.1f}s): {last_error} - /api/ready will return 503"
    )


async def check_db_ready(timeout: float = READINESS_CHECK_TIMEOUT) -> tuple[bool, str]:
    """
    Perform a readiness check on the database connection.

    Executes SELECT 1 with a timeout to verify the pool is healthy.

    Returns:
        Tuple of (is_ready, status_message)
    """
    pool = _db_pool
    if pool is None:
        return False, _pool_health.last_error or "Pool not initialized"

    try:
        start = time.monotonic()

        async def _ping() -> int:
            async with pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute("SELECT 1;")
                    row = await cur.fetchone()
                    return row[0] if row else 0

        result = await asyncio.wait_for(_ping(), timeout=timeout)
        latency_ms = (time.monotonic() - start) * 1000

        if result == 1:
            _pool_health.healthy = True
            _pool_health.last_error = None
            _pool_health.last_check_at = time.monotonic()
            return True, f"ok ({latency_ms:.0f}ms)"

        _pool_health.healthy = False
        _pool_health.last_error = f"SELECT 1 returned {result}"
        return False, f"unexpected_result: {result}"

    except asyncio.TimeoutError:
        _pool_health.healthy = False
        _pool_health.last_error = f"Query timeout ({timeout}s)"
        return False, f"timeout ({timeout}s)"
    except Exception as e:
        _pool_health.healthy = False
        _pool_health.last_error = f"{type(e).__name__}: {str(e)[:100]}"
        return False, f"error: {type(e).__name__}"


async def close_db_pool() -> None:
    """
    Called from FastAPI shutdown and at CLI exit.

    Closes the connection pool and resets health state.
    """
    global _db_pool
    if _db_pool is not None:
        logger.info("Closing PostgreSQL connection pool")
        await _db_pool.close()
        _db_pool = None
    _pool_health.initialized = False
    _pool_health.healthy = False
    _pool_health.init_attempted = False


async def get_pool() -> Optional[AsyncConnectionPool]:
    """
    Returns the async connection pool, initializing it on first use only.

    A failed initialization is not retried per call; None is returned until
    the process restarts or close_db_pool() resets the state.
    """
    if _db_pool is None and not _pool_health.init_attempted:
        await init_db_pool()

    return _db_pool
