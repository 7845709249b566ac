"""
Elevate Engine - Webhooks Router

Kajabi tag-completion webhook.

    POST /webhook
    POST /api/kajabi/webhook   (URL configured in Kajabi)

Pipeline: signature check on the raw bytes -> payload parse and tag
normalization -> optional freshness window -> WebhookProcessor.process under
the WEBHOOK_TIMEOUT_SECONDS budget -> post-commit badge pass (own budget)
-> response by outcome. Rate limiting per client IP is applied by
RateLimitMiddleware before this router runs.
"""

import asyncio
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from ..api import success_response
from ..config import Settings, get_settings
from ..core.errors import (
    AuthenticationFailure,
    ErrorDetail,
    IneligibleUser,
    TransientFailure,
    ValidationFailure,
)
from ..core.error_taxonomy import (
    ERR_AUTH_INVALID_SIGNATURE,
    ERR_DB_TIMEOUT,
    ERR_ELIGIBILITY_USER_TYPE,
    ERR_VALIDATION_STALE_EVENT,
)
from ..core.logging import LogContext, Timer, get_logger
from ..ingest.contract import InboundEvent, StatusReason, parse_event
from ..ingest.signature import verify_signature
from ..services.webhook_processor import (
    IngestResult,
    IngestStatus,
    WebhookProcessor,
    build_processor,
)

logger = get_logger(__name__)

router = APIRouter(tags=["Webhooks"])


def get_processor(request: Request) -> WebhookProcessor:
    """The app-wide processor, built on first use."""
    processor = getattr(request.app.state, "processor", None)
    if processor is None:
        processor = build_processor()
        request.app.state.processor = processor
    return processor


def _check_freshness(event: InboundEvent, settings: Settings, replay: bool) -> None:
    max_age = settings.WEBHOOK_MAX_EVENT_AGE_SECONDS
    if not max_age or replay:
        return
    age = abs((datetime.now(timezone.utc) - event.created_at).total_seconds())
    if age > max_age:
        logger.warning(
            f"Rejected event outside freshness window ({age:.0f}s > {max_age}s)",
            extra={"event_id": event.event_id, "error_code": str(ERR_VALIDATION_STALE_EVENT)},
        )
        raise ValidationFailure(
            "Event timestamp outside allowed window",
            details=[
                ErrorDetail(
                    field="created_at",
                    message=f"event is {age:.0f}s from now; window is {max_age}s",
                    code="stale_event",
                )
            ],
        )


def _to_response(result: IngestResult) -> JSONResponse:
    status = result.status

    if status is IngestStatus.DUPLICATE:
        return success_response(duplicate=True)

    if status is IngestStatus.AWARDED:
        return success_response(
            duplicate=False,
            awarded=True,
            user_id=result.user_id,
            tag=result.tag,
            points_awarded=result.points_awarded,
            ledger_entry_id=result.ledger_entry_id,
            badges_granted=result.badges_granted,
        )

    if status is IngestStatus.ALREADY_GRANTED:
        return success_response(
            duplicate=False,
            awarded=False,
            already_granted=True,
            user_id=result.user_id,
            tag=result.tag,
            points_awarded=0,
        )

    if status is IngestStatus.UNMATCHED:
        return success_response(
            status_code=202, queued=True, reason=StatusReason.UNMATCHED_CONTACT.value
        )

    if status is IngestStatus.UNRECOGNIZED_TAG:
        return success_response(
            status_code=202, queued=True, reason=StatusReason.UNRECOGNIZED_TAG.value
        )

    # INELIGIBLE: the ignored dedup row is committed, the caller gets a 403
    logger.warning(
        f"Ineligible user type {result.user_type}",
        extra={"user_id": result.user_id, "error_code": str(ERR_ELIGIBILITY_USER_TYPE)},
    )
    raise IneligibleUser(result.user_type or "UNKNOWN")


async def kajabi_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_processor),
    x_admin_replay: str | None = Header(None, alias="X-Admin-Replay"),
) -> JSONResponse:
    """
    Handle a Kajabi tag event.

    Responses:
    - 200 awarded / already granted / duplicate redelivery
    - 202 unmatched contact / unrecognized tag (queued or ignored)
    - 400 malformed payload, 401 bad signature, 403 ineligible user
    - 503 transient failure (safe to retry)
    """
    settings = get_settings()

    # Signature is computed over the exact bytes received
    body = await request.body()
    signature = request.headers.get(settings.KAJABI_SIGNATURE_HEADER)
    if not verify_signature(body, signature, settings.KAJABI_WEBHOOK_SECRET):
        logger.warning(
            "Rejected webhook with missing or invalid signature",
            extra={"error_code": str(ERR_AUTH_INVALID_SIGNATURE)},
        )
        raise AuthenticationFailure()

    event = parse_event(body)
    _check_freshness(event, settings, replay=(x_admin_replay or "").lower() == "true")

    with LogContext(event_id=event.event_id, tag=event.tag_norm, contact_id=event.contact_id):
        with Timer() as timer:
            try:
                result = await asyncio.wait_for(
                    processor.process(event), timeout=settings.WEBHOOK_TIMEOUT_SECONDS
                )
            except asyncio.TimeoutError:
                logger.error(
                    "Webhook processing exceeded time budget",
                    extra={"error_code": str(ERR_DB_TIMEOUT)},
                )
                raise TransientFailure("Webhook processing timed out") from None

            if result.status is IngestStatus.AWARDED and result.user_id:
                result.badges_granted = await processor.evaluate_badges(result.user_id)

        logger.debug(
            "Webhook pipeline finished",
            extra={"duration_ms": round(timer.elapsed_ms, 2), "outcome": result.status.value},
        )
        return _to_response(result)


router.add_api_route("/webhook", kajabi_webhook, methods=["POST"])
router.add_api_route("/api/kajabi/webhook", kajabi_webhook, methods=["POST"])
