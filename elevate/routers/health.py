"""
Elevate Engine - Health Check Router

Key endpoints:
- GET /health     - Liveness probe: returns 200 if the process is up (no DB)
- GET /api/ready  - Readiness probe: returns 200 only if SELECT 1 succeeds
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .. import __version__
from ..config import get_settings
from ..db import check_db_ready, get_pool_health

READINESS_DB_TIMEOUT = 2.0

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


class LivenessResponse(BaseModel):
    """Liveness probe response - indicates process is alive."""

    status: str
    timestamp: str
    environment: str
    version: str


class ReadinessResponse(BaseModel):
    """Readiness probe response."""

    ready: bool
    status: str
    timestamp: str
    database: str
    error: str | None = None
    pool_initialized: bool
    pool_init_attempts: int


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@router.get(
    "/health",
    response_model=LivenessResponse,
    summary="Liveness probe",
    description="Returns 200 if the process is running. Never touches the database.",
)
async def health_check() -> LivenessResponse:
    return LivenessResponse(
        status="ok",
        timestamp=_now(),
        environment=get_settings().environment,
        version=__version__,
    )


@router.get(
    "/api/ready",
    response_model=ReadinessResponse,
    responses={
        200: {"description": "Service is ready to accept traffic"},
        503: {"description": "Service is not ready - DB unreachable or unhealthy"},
    },
    summary="Readiness probe (DB-focused)",
)
async def readiness_check() -> JSONResponse:
    """
    Readiness probe focused on database connectivity.

    Returns 503 when the pool failed to initialize, the database is
    unreachable, or SELECT 1 exceeds the timeout.
    """
    is_ready, db_status = await check_db_ready(timeout=READINESS_DB_TIMEOUT)
    pool_health = get_pool_health()

    response_data = ReadinessResponse(
        ready=is_ready,
        status="ready" if is_ready else "not_ready",
        timestamp=_now(),
        database=db_status,
        error=pool_health.last_error if not is_ready else None,
        pool_initialized=pool_health.initialized,
        pool_init_attempts=pool_health.init_attempts,
    )

    if not is_ready:
        logger.warning(f"Readiness check failed: {db_status}")
    return JSONResponse(
        status_code=200 if is_ready else 503,
        content=response_data.model_dump(),
    )
