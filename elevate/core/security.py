"""
Elevate Engine - Security Layer

API key authentication for the admin reconciliation endpoint.
Webhook authenticity is handled separately by elevate.ingest.signature.
"""

import secrets
from dataclasses import dataclass
from typing import Literal

from fastapi import Header, HTTPException, status
from loguru import logger

from ..config import get_settings
from .error_taxonomy import ERR_AUTH_INVALID_API_KEY


@dataclass
class AuthContext:
    """Authentication context for the current admin request."""

    subject: str | None
    via: Literal["api_key"]


async def require_admin_api_key(
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> AuthContext:
    """
    FastAPI dependency requiring X-API-Key == ADMIN_API_KEY.

    An unset ADMIN_API_KEY disables the admin surface entirely.

    Raises:
        HTTPException 401: missing, unconfigured or mismatched key
    """
    configured_key = get_settings().ADMIN_API_KEY
    if not configured_key:
        logger.warning(
            f"[{ERR_AUTH_INVALID_API_KEY}] ADMIN_API_KEY not configured - admin request rejected"
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin API is not configured",
            headers={"WWW-Authenticate": "API-Key"},
        )

    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "API-Key"},
        )

    if not secrets.compare_digest(x_api_key.encode(), configured_key.encode()):
        logger.warning(f"[{ERR_AUTH_INVALID_API_KEY}] Invalid admin API key attempted")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "API-Key"},
        )

    logger.debug("Authenticated via admin API key")
    return AuthContext(subject=None, via="api_key")
