"""
Elevate Engine - Ingest Repository

SQL for the webhook pipeline. Every method runs on the connection of the
surrounding TransactionContext, so a whole award (dedup row, grant, ledger
entry, status update) commits or rolls back together.

Unique keys (see migrations/001_webhook_ingest.sql):
- kajabi_events (event_id, tag_name_norm)          -> dedup gate
- learn_tag_grants (user_id, tag_name)             -> one credit per tag
- points_ledger (external_source, external_event_id) -> one entry per event/tag
- earned_badges (user_id, badge_code)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncGenerator, Optional

import psycopg
from psycopg.rows import dict_row

from ..core.logging import get_logger
from ..core.transactions import InsertOutcome, TransactionContext, insert_if_absent
from ..ingest.contract import (
    ACTIVITY_CODE,
    EXTERNAL_SOURCE,
    LEDGER_SOURCE,
    EventStatus,
    InboundEvent,
    StatusReason,
)

logger = get_logger(__name__)


# =============================================================================
# Row Types
# =============================================================================


@dataclass(frozen=True)
class UserRecord:
    """The slice of a local user the pipeline reads."""

    id: str
    user_type: str
    email: Optional[str] = None
    kajabi_contact_id: Optional[str] = None


@dataclass(frozen=True)
class EventRecord:
    """A persisted kajabi_events row."""

    id: Any
    event_id: str
    tag_name_raw: str
    tag_name_norm: str
    contact_id: str
    email: Optional[str]
    created_at_utc: datetime
    status: EventStatus
    status_reason: Optional[str] = None
    user_id: Optional[str] = None


def _user_from_row(row: dict[str, Any]) -> UserRecord:
    return UserRecord(
        id=str(row["id"]),
        user_type=row["user_type"],
        email=row.get("email"),
        kajabi_contact_id=row.get("kajabi_contact_id"),
    )


def _event_from_row(row: dict[str, Any]) -> EventRecord:
    return EventRecord(
        id=row["id"],
        event_id=row["event_id"],
        tag_name_raw=row["tag_name_raw"],
        tag_name_norm=row["tag_name_norm"],
        contact_id=row["contact_id"],
        email=row.get("email"),
        created_at_utc=row["created_at_utc"],
        status=EventStatus(row["status"]),
        status_reason=row.get("status_reason"),
        user_id=row.get("user_id"),
    )


_EVENT_COLUMNS = """
    id, event_id, tag_name_raw, tag_name_norm, contact_id, email,
    created_at_utc, status, status_reason, user_id
"""


# =============================================================================
# Repository
# =============================================================================


class IngestRepository:
    """Pipeline queries bound to one transactional connection."""

    def __init__(self, conn: psycopg.AsyncConnection):
        self._conn = conn

    # -------------------------------------------------------------------------
    # kajabi_events
    # -------------------------------------------------------------------------

    async def insert_event(
        self,
        event: InboundEvent,
        status: EventStatus = EventStatus.QUEUED_UNMATCHED,
    ) -> InsertOutcome:
        """Dedup gate: first durable write of every webhook transaction."""
        async with self._conn.cursor(row_factory=dict_row) as cur:
            return await insert_if_absent(
                cur,
                """
                INSERT INTO kajabi_events
                    (event_id, tag_name_raw, tag_name_norm, contact_id, email,
                     created_at_utc, status)
                VALUES
                    (%(event_id)s, %(tag_raw)s, %(tag_norm)s, %(contact_id)s, %(email)s,
                     %(created_at)s, %(status)s)
                ON CONFLICT (event_id, tag_name_norm) DO NOTHING
                RETURNING id
                """,
                {
                    "event_id": event.event_id,
                    "tag_raw": event.raw_tag_name,
                    "tag_norm": event.tag_norm,
                    "contact_id": event.contact_id,
                    "email": event.contact_email,
                    "created_at": event.created_at,
                    "status": status.value,
                },
            )

    async def set_event_status(
        self,
        record_id: Any,
        status: EventStatus,
        reason: Optional[StatusReason] = None,
        user_id: Optional[str] = None,
    ) -> None:
        async with self._conn.cursor() as cur:
            await cur.execute(
                """
                UPDATE kajabi_events
                SET status = %(status)s,
                    status_reason = %(reason)s,
                    user_id = COALESCE(%(user_id)s, user_id),
                    processed_at = CASE
                        WHEN %(status)s = 'processed' THEN NOW()
                        ELSE processed_at
                    END
                WHERE id = %(id)s
                """,
                {
                    "id": record_id,
                    "status": status.value,
                    "reason": reason.value if reason else None,
                    "user_id": user_id,
                },
            )

    async def list_unmatched(
        self,
        contact_id: Optional[str] = None,
        email: Optional[str] = None,
        limit: int = 200,
        lock: bool = False,
        event_id: Optional[str] = None,
    ) -> list[EventRecord]:
        """
        queued_unmatched rows for a contact id and/or email, oldest first.

        event_id narrows to one Kajabi event; given alone, it selects that
        event's rows whatever the contact.

        With lock=True the rows are claimed FOR UPDATE SKIP LOCKED so a
        concurrent backfill of the same contact skips them.
        """
        query = f"""
            SELECT {_EVENT_COLUMNS}
            FROM kajabi_events
            WHERE status = 'queued_unmatched'
              AND (%(event_id)s::text IS NULL OR event_id = %(event_id)s::text)
              AND ((%(contact_id)s::text IS NULL AND %(email)s::text IS NULL
                    AND %(event_id)s::text IS NOT NULL)
                   OR contact_id = %(contact_id)s::text
                   OR (%(email)s::text IS NOT NULL AND email = %(email)s::text))
            ORDER BY received_at, id
            LIMIT %(limit)s
        """
        if lock:
            query += " FOR UPDATE SKIP LOCKED"

        async with self._conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                query,
                {
                    "contact_id": contact_id,
                    "email": email,
                    "event_id": event_id,
                    "limit": limit,
                },
            )
            rows = await cur.fetchall()
        return [_event_from_row(r) for r in rows]

    async def claim_unmatched(
        self,
        contact_id: Optional[str] = None,
        email: Optional[str] = None,
        limit: int = 200,
        event_id: Optional[str] = None,
    ) -> list[EventRecord]:
        return await self.list_unmatched(
            contact_id, email, limit, lock=True, event_id=event_id
        )

    async def list_pending_contacts(self, limit: int = 200) -> list[tuple[str, Optional[str]]]:
        """Distinct (contact_id, email) pairs that still have queued events."""
        async with self._conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                SELECT contact_id, MAX(email) AS email
                FROM kajabi_events
                WHERE status = 'queued_unmatched'
                GROUP BY contact_id
                ORDER BY MIN(received_at)
                LIMIT %(limit)s
                """,
                {"limit": limit},
            )
            rows = await cur.fetchall()
        return [(r["contact_id"], r["email"]) for r in rows]

    # -------------------------------------------------------------------------
    # users
    # -------------------------------------------------------------------------

    async def find_user_by_contact(self, contact_id: str) -> Optional[UserRecord]:
        async with self._conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                SELECT id, user_type, email, kajabi_contact_id
                FROM users
                WHERE kajabi_contact_id = %(contact_id)s
                """,
                {"contact_id": contact_id},
            )
            row = await cur.fetchone()
        return _user_from_row(row) if row else None

    async def find_user_by_email(self, email: str) -> Optional[UserRecord]:
        async with self._conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                SELECT id, user_type, email, kajabi_contact_id
                FROM users
                WHERE LOWER(email) = %(email)s
                """,
                {"email": email},
            )
            row = await cur.fetchone()
        return _user_from_row(row) if row else None

    async def link_contact(self, user_id: str, contact_id: str) -> bool:
        """
        Attach a Kajabi contact id to a user found by email.

        Only links when the user has no contact id yet and no other user
        already owns this one.
        """
        async with self._conn.cursor() as cur:
            await cur.execute(
                """
                UPDATE users
                SET kajabi_contact_id = %(contact_id)s
                WHERE id = %(user_id)s
                  AND kajabi_contact_id IS NULL
                  AND NOT EXISTS (
                      SELECT 1 FROM users WHERE kajabi_contact_id = %(contact_id)s
                  )
                RETURNING id
                """,
                {"user_id": user_id, "contact_id": contact_id},
            )
            row = await cur.fetchone()
        return row is not None

    # -------------------------------------------------------------------------
    # grants / ledger / badges
    # -------------------------------------------------------------------------

    async def insert_tag_grant(self, user_id: str, tag_norm: str) -> InsertOutcome:
        async with self._conn.cursor(row_factory=dict_row) as cur:
            return await insert_if_absent(
                cur,
                """
                INSERT INTO learn_tag_grants (user_id, tag_name, source)
                VALUES (%(user_id)s, %(tag)s, %(source)s)
                ON CONFLICT (user_id, tag_name) DO NOTHING
                RETURNING id
                """,
                {"user_id": user_id, "tag": tag_norm, "source": EXTERNAL_SOURCE},
            )

    async def append_ledger(
        self,
        user_id: str,
        delta_points: int,
        external_event_id: str,
    ) -> InsertOutcome:
        async with self._conn.cursor(row_factory=dict_row) as cur:
            return await insert_if_absent(
                cur,
                """
                INSERT INTO points_ledger
                    (user_id, activity_code, source, delta_points,
                     external_source, external_event_id)
                VALUES
                    (%(user_id)s, %(activity)s, %(source)s, %(points)s,
                     %(external_source)s, %(external_event_id)s)
                ON CONFLICT (external_source, external_event_id)
                    WHERE external_event_id IS NOT NULL
                DO NOTHING
                RETURNING id
                """,
                {
                    "user_id": user_id,
                    "activity": ACTIVITY_CODE,
                    "source": LEDGER_SOURCE,
                    "points": delta_points,
                    "external_source": EXTERNAL_SOURCE,
                    "external_event_id": external_event_id,
                },
            )

    async def user_tag_grants(self, user_id: str) -> set[str]:
        async with self._conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                "SELECT tag_name FROM learn_tag_grants WHERE user_id = %(user_id)s",
                {"user_id": user_id},
            )
            rows = await cur.fetchall()
        return {r["tag_name"] for r in rows}

    async def insert_badge(self, user_id: str, badge_code: str) -> InsertOutcome:
        async with self._conn.cursor(row_factory=dict_row) as cur:
            return await insert_if_absent(
                cur,
                """
                INSERT INTO earned_badges (user_id, badge_code)
                VALUES (%(user_id)s, %(badge_code)s)
                ON CONFLICT (user_id, badge_code) DO NOTHING
                RETURNING id
                """,
                {"user_id": user_id, "badge_code": badge_code},
            )


@asynccontextmanager
async def repository_transaction() -> AsyncGenerator[IngestRepository, None]:
    """One TransactionContext wrapped in an IngestRepository."""
    async with TransactionContext() as conn:
        yield IngestRepository(conn)
