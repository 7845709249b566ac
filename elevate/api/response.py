"""
Elevate Engine - Response Envelope

Every endpoint answers with a JSON object carrying a top-level `success`
boolean so the webhook source (and admin tooling) can branch on it.

Usage:
    from elevate.api import success_response

    # Webhook outcome (flat summary fields)
    return success_response(duplicate=True)

    # Accepted but deferred
    return success_response(status_code=202, queued=True, reason="unmatched_contact")

    # Admin payloads (wrapped in data + meta)
    return data_response(report.model_dump())
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..core.middleware import get_request_id


class ResponseMeta(BaseModel):
    """Metadata included in admin responses."""

    request_id: str | None = Field(None, description="Request correlation ID")
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
        description="ISO 8601 response timestamp",
    )


def success_response(status_code: int = 200, **payload: Any) -> JSONResponse:
    """Flat {"success": true, ...payload} response."""
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"success": True, **payload}),
    )


def data_response(data: Any, status_code: int = 200) -> JSONResponse:
    """{"success": true, "data": ..., "meta": {...}} response."""
    meta = ResponseMeta(request_id=get_request_id() or None)
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(
            {"success": True, "data": data, "meta": meta.model_dump(exclude_none=True)}
        ),
    )
