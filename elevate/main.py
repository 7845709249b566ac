"""
Elevate Engine - FastAPI Application

Main application entry point. Creates the FastAPI app, wires up routers,
initializes the database pool and the reconciliation scheduler on startup.

Run with: uvicorn elevate.main:app --reload
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from . import __version__
from .config import configure_logging, get_settings, validate_required_env
from .core.errors import register_exception_handlers
from .core.middleware import (
    RateLimitMiddleware,
    RequestLoggingMiddleware,
    webhook_rate_limits,
)
from .db import close_db_pool, init_db_pool

# Router imports - explicit for clarity
from .routers.admin import router as admin_router
from .routers.health import router as health_router
from .routers.webhooks import router as webhooks_router
from .scheduler import init_scheduler, shutdown_scheduler, start_scheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    - Startup: logging, config report, database pool, scheduler
    - Shutdown: scheduler, database pool

    A database that is down at startup never prevents the app from serving
    /health; readiness and the webhook report it instead.
    """
    settings = get_settings()
    configure_logging(settings)

    logger.info(f"Starting Elevate Engine v{__version__} ({settings.ENVIRONMENT})")
    validate_required_env(settings)

    await init_db_pool(app)

    if init_scheduler(settings) is not None:
        start_scheduler()

    yield

    logger.info("Shutting down Elevate Engine...")
    shutdown_scheduler()
    await close_db_pool()
    logger.info("Shutdown complete")


def create_app() -> FastAPI:
    """
    Application factory.

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="Elevate Engine",
        description=(
            "Kajabi webhook ingestion for the educator tracker. "
            "Turns tag completions into learning credit exactly once."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    settings = get_settings()

    # Rate limiting for the webhook endpoints (0 disables)
    if settings.WEBHOOK_RATE_LIMIT_RPM > 0:
        app.add_middleware(
            RateLimitMiddleware, configs=webhook_rate_limits(settings.WEBHOOK_RATE_LIMIT_RPM)
        )

    # Request logging (outermost, so 429s are logged too)
    app.add_middleware(RequestLoggingMiddleware)
    register_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(webhooks_router)  # /webhook and /api/kajabi/webhook
    app.include_router(admin_router, prefix="/api")  # /api/v1/admin/kajabi/*

    logger.info(f"FastAPI app created: {app.title}")

    return app


# Create the application instance
app = create_app()


# =============================================================================
# CLI Entry Point
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "elevate.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.is_development,
        log_level=settings.log_level.lower(),
    )
