"""
Elevate Engine - Admin Router

POST /api/v1/admin/kajabi/reconcile

Re-drives queued_unmatched Kajabi events for one contact (by contact id
and/or email), for one Kajabi event id, or, with none given, sweeps every
pending contact.
Requires X-API-Key == ADMIN_API_KEY.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ..api import data_response
from ..config import get_settings
from ..core.logging import get_logger
from ..core.security import AuthContext, require_admin_api_key
from ..services.reconciliation import ReconciliationService
from ..services.webhook_processor import WebhookProcessor
from .webhooks import get_processor

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/admin/kajabi", tags=["Admin"])


class ReconcileRequest(BaseModel):
    """Body of the reconcile endpoint."""

    model_config = ConfigDict(extra="forbid")

    contact_id: str | None = Field(None, description="Kajabi contact id to reconcile")
    email: str | None = Field(None, description="Email to match queued events against")
    event_id: str | None = Field(None, description="Kajabi event id to reprocess")
    limit: int | None = Field(None, ge=1, le=5000, description="Max events to process")
    dry_run: bool = Field(False, description="List pending events without writing")


def get_reconciliation_service(
    processor: WebhookProcessor = Depends(get_processor),
) -> ReconciliationService:
    return ReconciliationService(processor, batch_size=get_settings().RECONCILE_BATCH_SIZE)


@router.post("/reconcile")
async def reconcile(
    body: ReconcileRequest | None = None,
    auth: AuthContext = Depends(require_admin_api_key),
    service: ReconciliationService = Depends(get_reconciliation_service),
) -> JSONResponse:
    """Reconcile queued_unmatched events and return the report."""
    body = body or ReconcileRequest()
    contact_id = (body.contact_id or "").strip() or None
    email = (body.email or "").strip() or None
    event_id = (body.event_id or "").strip() or None

    if contact_id or email or event_id:
        report = await service.reconcile_contact(
            contact_id=contact_id,
            email=email,
            limit=body.limit,
            dry_run=body.dry_run,
            event_id=event_id,
        )
    else:
        report = await service.reconcile_pending(limit=body.limit, dry_run=body.dry_run)

    logger.info(
        f"Admin reconcile: {report.processed} processed of {report.records_seen}",
        extra={"contact_id": contact_id, "event_id": event_id, "count": report.records_seen},
    )
    return data_response(report.model_dump(mode="json"))
