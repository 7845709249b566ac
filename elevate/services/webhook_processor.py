"""
Elevate Engine - Webhook Processor

Turns a verified, parsed Kajabi event into side effects, exactly once per
(event_id, normalized tag).

Flow inside one transaction:
    1. insert kajabi_events row (dedup gate)      -> AlreadyExists: DUPLICATE
    2. tag not in the learn catalog                -> ignored / UNRECOGNIZED_TAG
    3. resolve user by contact id, then by email   -> none: queued_unmatched / UNMATCHED
    4. user type ineligible                        -> ignored / INELIGIBLE
    5. insert learn_tag_grants row                 -> AlreadyExists: ALREADY_GRANTED
    6. append points_ledger entry, mark processed  -> AWARDED
       (ledger row already present                 -> ALREADY_GRANTED)

Badge evaluation runs after commit in its own transaction, bounded by its own
timeout. Its failures are logged and never undo the committed points. The
webhook times process() only; the badge pass runs outside that budget.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncContextManager, Callable, Iterable, Optional

from ..config import Settings, get_settings
from ..core.error_taxonomy import log_classified_error
from ..core.logging import get_logger
from ..core.transactions import AlreadyExists, Inserted
from ..ingest.contract import (
    EventStatus,
    InboundEvent,
    StatusReason,
    make_external_event_id,
)
from .badges import BadgeEvaluator
from .points import PointsCatalog
from .repository import IngestRepository, UserRecord, repository_transaction

logger = get_logger(__name__)

TransactionFactory = Callable[[], AsyncContextManager[IngestRepository]]


class IngestStatus(str, Enum):
    """Outcome of one (event, tag) pass through the pipeline."""

    AWARDED = "awarded"
    ALREADY_GRANTED = "already_granted"
    DUPLICATE = "duplicate"
    UNMATCHED = "unmatched"
    UNRECOGNIZED_TAG = "unrecognized_tag"
    INELIGIBLE = "ineligible"


@dataclass
class IngestResult:
    status: IngestStatus
    tag: Optional[str] = None
    user_id: Optional[str] = None
    user_type: Optional[str] = None
    points_awarded: int = 0
    ledger_entry_id: Optional[object] = None
    badges_granted: list[str] = field(default_factory=list)


class WebhookProcessor:
    """
    Dedup gate, eligibility resolver and award transaction.

    Args:
        transaction: factory returning an async context manager that yields an
            IngestRepository bound to one database transaction
        catalog: recognized tags and point values
        badges: badge evaluator run after a successful award (None disables)
        ineligible_user_types: user categories that never receive credit
        badge_timeout: seconds allowed for one badge pass (None: unbounded)
    """

    def __init__(
        self,
        transaction: TransactionFactory,
        catalog: PointsCatalog,
        badges: Optional[BadgeEvaluator] = None,
        ineligible_user_types: Iterable[str] = (),
        badge_timeout: Optional[float] = None,
    ):
        self.transaction = transaction
        self.catalog = catalog
        self.badges = badges
        self.ineligible_user_types = frozenset(t.upper() for t in ineligible_user_types)
        self.badge_timeout = badge_timeout

    # -------------------------------------------------------------------------
    # Webhook entry points
    # -------------------------------------------------------------------------

    async def ingest(self, event: InboundEvent) -> IngestResult:
        """process() followed by the post-commit badge pass."""
        result = await self.process(event)
        if result.status is IngestStatus.AWARDED and result.user_id:
            result.badges_granted = await self.evaluate_badges(result.user_id)
        return result

    async def process(self, event: InboundEvent) -> IngestResult:
        """The award transaction alone; returns once it has committed."""
        async with self.transaction() as repo:
            outcome = await repo.insert_event(event)
            if isinstance(outcome, AlreadyExists):
                result = IngestResult(IngestStatus.DUPLICATE, tag=event.tag_norm)
            else:
                result = await self._process_new(repo, outcome.row_id, event)

        self._log_outcome(result, event.event_id)
        return result

    async def _process_new(
        self, repo: IngestRepository, record_id: object, event: InboundEvent
    ) -> IngestResult:
        tag = event.tag_norm

        if not self.catalog.is_recognized(tag):
            await repo.set_event_status(
                record_id, EventStatus.IGNORED, StatusReason.UNRECOGNIZED_TAG
            )
            return IngestResult(IngestStatus.UNRECOGNIZED_TAG, tag=tag)

        user = await self.resolve_user(repo, event.contact_id, event.contact_email)
        if user is None:
            await repo.set_event_status(
                record_id, EventStatus.QUEUED_UNMATCHED, StatusReason.UNMATCHED_CONTACT
            )
            return IngestResult(IngestStatus.UNMATCHED, tag=tag)

        return await self.award(repo, record_id, user, event.event_id, tag)

    # -------------------------------------------------------------------------
    # Shared with reconciliation
    # -------------------------------------------------------------------------

    async def resolve_user(
        self,
        repo: IngestRepository,
        contact_id: str,
        email: Optional[str],
    ) -> Optional[UserRecord]:
        """Find the local user by Kajabi contact id, falling back to email."""
        user = await repo.find_user_by_contact(contact_id)
        if user is not None or not email:
            return user

        user = await repo.find_user_by_email(email)
        if user is None:
            return None

        if user.kajabi_contact_id is None:
            if await repo.link_contact(user.id, contact_id):
                logger.info(
                    "Linked Kajabi contact to user by email",
                    extra={"user_id": user.id, "contact_id": contact_id},
                )
        elif user.kajabi_contact_id != contact_id:
            logger.warning(
                f"User matched by email already mapped to contact {user.kajabi_contact_id}",
                extra={"user_id": user.id, "contact_id": contact_id},
            )
        return user

    async def award(
        self,
        repo: IngestRepository,
        record_id: object,
        user: UserRecord,
        event_id: str,
        tag: str,
    ) -> IngestResult:
        """Eligibility check, tag grant and ledger entry for one event record."""
        user_type = (user.user_type or "").upper()
        if user_type in self.ineligible_user_types:
            await repo.set_event_status(
                record_id,
                EventStatus.IGNORED,
                StatusReason.INELIGIBLE_USER_TYPE,
                user_id=user.id,
            )
            return IngestResult(
                IngestStatus.INELIGIBLE, tag=tag, user_id=user.id, user_type=user_type
            )

        grant = await repo.insert_tag_grant(user.id, tag)
        if isinstance(grant, AlreadyExists):
            return await self._already_granted(repo, record_id, user, tag)

        points = self.catalog.points_for(tag)
        ledger = await repo.append_ledger(
            user.id, points, make_external_event_id(event_id, tag)
        )
        if not isinstance(ledger, Inserted):
            # Grant was missing but the ledger already credits this event/tag
            logger.warning(
                "Ledger entry already present for event; grant recorded without new points",
                extra={"user_id": user.id, "event_id": event_id, "tag": tag},
            )
            return await self._already_granted(repo, record_id, user, tag)

        await repo.set_event_status(record_id, EventStatus.PROCESSED, user_id=user.id)
        return IngestResult(
            IngestStatus.AWARDED,
            tag=tag,
            user_id=user.id,
            points_awarded=points,
            ledger_entry_id=ledger.row_id,
        )

    @staticmethod
    async def _already_granted(
        repo: IngestRepository, record_id: object, user: UserRecord, tag: str
    ) -> IngestResult:
        await repo.set_event_status(
            record_id,
            EventStatus.PROCESSED,
            StatusReason.ALREADY_GRANTED,
            user_id=user.id,
        )
        return IngestResult(IngestStatus.ALREADY_GRANTED, tag=tag, user_id=user.id)

    async def evaluate_badges(self, user_id: str) -> list[str]:
        """Best-effort badge pass in its own transaction."""
        if self.badges is None:
            return []
        try:
            return await asyncio.wait_for(
                self._evaluate_badges(user_id), timeout=self.badge_timeout
            )
        except Exception as e:
            log_classified_error(e, {"user_id": user_id, "stage": "badges"})
            return []

    async def _evaluate_badges(self, user_id: str) -> list[str]:
        async with self.transaction() as repo:
            return await self.badges.evaluate(repo, user_id)

    @staticmethod
    def _log_outcome(result: IngestResult, event_id: str) -> None:
        logger.info(
            f"Kajabi event {result.status.value}",
            extra={
                "event_id": event_id,
                "tag": result.tag,
                "user_id": result.user_id,
                "outcome": result.status.value,
                "points": result.points_awarded,
            },
        )


def build_processor(settings: Optional[Settings] = None) -> WebhookProcessor:
    """Processor wired to Postgres and the configured catalog."""
    settings = settings or get_settings()
    return WebhookProcessor(
        transaction=repository_transaction,
        catalog=PointsCatalog.from_settings(settings),
        badges=BadgeEvaluator.from_settings(settings),
        ineligible_user_types=settings.ineligible_user_types,
        badge_timeout=settings.BADGE_TIMEOUT_SECONDS,
    )
