"""
Elevate Engine - Reconciliation

Re-drives queued_unmatched Kajabi events once the contact is known locally.
Uses the same WebhookProcessor.resolve_user / award steps as the live
webhook, so the dedup row, TagGrant and ledger guarantees are identical.

Each contact is reconciled in one transaction. Its queued records are
claimed FOR UPDATE SKIP LOCKED, so two backfills running at once never
process the same record.

Entry points:
    - Admin endpoint: POST /api/v1/admin/kajabi/reconcile
    - Scheduler sweep: RECONCILE_INTERVAL_MINUTES > 0
    - CLI: python -m elevate.backfill
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from ..core.error_taxonomy import log_classified_error
from ..core.logging import LogContext, Timer, get_logger
from ..ingest.contract import EventStatus, StatusReason
from .repository import EventRecord, IngestRepository
from .webhook_processor import IngestStatus, WebhookProcessor

logger = get_logger(__name__)


class RecordOutcome(str, Enum):
    PROCESSED = "processed"
    ALREADY_GRANTED = "already_granted"
    STILL_UNMATCHED = "still_unmatched"
    INELIGIBLE = "ineligible"
    UNRECOGNIZED_TAG = "unrecognized_tag"
    PENDING = "pending"  # dry run only


_OUTCOME_BY_STATUS = {
    IngestStatus.AWARDED: RecordOutcome.PROCESSED,
    IngestStatus.ALREADY_GRANTED: RecordOutcome.ALREADY_GRANTED,
    IngestStatus.INELIGIBLE: RecordOutcome.INELIGIBLE,
}


class RecordResult(BaseModel):
    event_id: str
    tag: str
    contact_id: str
    outcome: RecordOutcome
    user_id: Optional[str] = None
    points_awarded: int = 0


class ReconciliationReport(BaseModel):
    """Summary of one reconciliation run."""

    dry_run: bool = False
    contacts_scanned: int = 0
    contacts_failed: int = 0
    records_seen: int = 0
    processed: int = 0
    already_granted: int = 0
    still_unmatched: int = 0
    ineligible: int = 0
    unrecognized_tag: int = 0
    points_awarded: int = 0
    badges_granted: list[str] = Field(default_factory=list)
    results: list[RecordResult] = Field(default_factory=list)

    def add(self, result: RecordResult) -> None:
        self.records_seen += 1
        self.results.append(result)
        self.points_awarded += result.points_awarded
        if result.outcome is not RecordOutcome.PENDING:
            setattr(self, result.outcome.value, getattr(self, result.outcome.value) + 1)

    def merge(self, other: "ReconciliationReport") -> None:
        self.contacts_scanned += other.contacts_scanned
        self.contacts_failed += other.contacts_failed
        self.badges_granted.extend(other.badges_granted)
        for result in other.results:
            self.add(result)


class ReconciliationService:
    """Backfill of queued_unmatched events through the shared award path."""

    def __init__(self, processor: WebhookProcessor, batch_size: int = 200):
        self.processor = processor
        self.batch_size = batch_size

    async def reconcile_contact(
        self,
        contact_id: Optional[str] = None,
        email: Optional[str] = None,
        limit: Optional[int] = None,
        dry_run: bool = False,
        event_id: Optional[str] = None,
    ) -> ReconciliationReport:
        """
        Re-drive every queued record for a contact id and/or email.

        event_id restricts the run to that Kajabi event's records; on its own
        it reprocesses the event whatever its contact.

        Raises:
            ValueError: none of contact_id, email or event_id given.
        """
        if not contact_id and not email and not event_id:
            raise ValueError("contact_id, email or event_id is required")

        email = email.strip().lower() if email else None
        limit = limit or self.batch_size
        report = ReconciliationReport(dry_run=dry_run, contacts_scanned=1)
        awarded_users: list[str] = []

        with LogContext(contact_id=contact_id, event_id=event_id), Timer() as timer:
            async with self.processor.transaction() as repo:
                if dry_run:
                    records = await repo.list_unmatched(
                        contact_id, email, limit, event_id=event_id
                    )
                    for record in records:
                        report.add(_result(record, RecordOutcome.PENDING))
                else:
                    records = await repo.claim_unmatched(
                        contact_id, email, limit, event_id=event_id
                    )
                    for record in records:
                        result = await self._reconcile_record(repo, record)
                        report.add(result)
                        if result.outcome is RecordOutcome.PROCESSED and result.user_id:
                            awarded_users.append(result.user_id)

            for user_id in dict.fromkeys(awarded_users):
                report.badges_granted.extend(await self.processor.evaluate_badges(user_id))

        logger.info(
            f"Reconciled contact: {report.processed} processed, "
            f"{report.still_unmatched} still unmatched",
            extra={
                "contact_id": contact_id,
                "count": report.records_seen,
                "duration_ms": round(timer.elapsed_ms, 2),
                "status": "dry_run" if dry_run else "applied",
            },
        )
        return report

    async def reconcile_pending(
        self,
        limit: Optional[int] = None,
        dry_run: bool = False,
    ) -> ReconciliationReport:
        """
        Sweep every contact that still has queued events.

        A failing contact is logged and counted; the sweep continues.
        """
        limit = limit or self.batch_size
        async with self.processor.transaction() as repo:
            contacts = await repo.list_pending_contacts(limit)

        report = ReconciliationReport(dry_run=dry_run)
        for contact_id, email in contacts:
            if report.records_seen >= limit:
                break
            try:
                contact_report = await self.reconcile_contact(
                    contact_id=contact_id,
                    email=email,
                    limit=limit - report.records_seen,
                    dry_run=dry_run,
                )
            except Exception as e:
                log_classified_error(e, {"contact_id": contact_id, "stage": "reconcile"})
                report.contacts_scanned += 1
                report.contacts_failed += 1
                continue
            report.merge(contact_report)

        logger.info(
            f"Reconciliation sweep complete: {report.contacts_scanned} contacts, "
            f"{report.processed} processed, {report.contacts_failed} failed",
            extra={"count": report.records_seen},
        )
        return report

    async def _reconcile_record(
        self, repo: IngestRepository, record: EventRecord
    ) -> RecordResult:
        tag = record.tag_name_norm

        if not self.processor.catalog.is_recognized(tag):
            await repo.set_event_status(
                record.id, EventStatus.IGNORED, StatusReason.UNRECOGNIZED_TAG
            )
            return _result(record, RecordOutcome.UNRECOGNIZED_TAG)

        user = await self.processor.resolve_user(repo, record.contact_id, record.email)
        if user is None:
            return _result(record, RecordOutcome.STILL_UNMATCHED)

        ingest = await self.processor.award(repo, record.id, user, record.event_id, tag)
        return _result(
            record,
            _OUTCOME_BY_STATUS[ingest.status],
            user_id=ingest.user_id,
            points_awarded=ingest.points_awarded,
        )


def _result(
    record: EventRecord,
    outcome: RecordOutcome,
    user_id: Optional[str] = None,
    points_awarded: int = 0,
) -> RecordResult:
    return RecordResult(
        event_id=record.event_id,
        tag=record.tag_name_norm,
        contact_id=record.contact_id,
        outcome=outcome,
        user_id=user_id,
        points_awarded=points_awarded,
    )
