"""
tests/helpers.py

In-memory stand-ins for the Postgres-backed IngestRepository.

FakeStore keeps the same unique keys as migrations/001_webhook_ingest.sql and
gives each transaction() snapshot/rollback semantics, so the processor and
reconciliation tests exercise commit-or-nothing behavior without a database.
"""

from __future__ import annotations

import copy
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Optional

from elevate.core.transactions import AlreadyExists, Inserted, InsertOutcome
from elevate.ingest.contract import (
    EventStatus,
    InboundEvent,
    StatusReason,
    normalize_email,
    normalize_tag,
)
from elevate.ingest.signature import compute_signature
from elevate.services.repository import EventRecord, UserRecord

TEST_SECRET = "test-webhook-secret"
TEST_ADMIN_KEY = "test-admin-key"
TAG_1 = "elevate-ai-1-completed"
TAG_2 = "elevate-ai-2-completed"


# =============================================================================
# Builders
# =============================================================================


def make_event(
    event_id: str = "evt1",
    tag: str = TAG_1,
    contact_id: str = "c1",
    email: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> InboundEvent:
    return InboundEvent(
        event_id=event_id,
        created_at=created_at or datetime.now(timezone.utc),
        contact_id=contact_id,
        contact_email=normalize_email(email),
        raw_tag_name=tag,
        tag_norm=normalize_tag(tag),
    )


def make_payload(
    event_id: str = "evt1",
    tag: str = "Elevate-AI-1-Completed",
    contact_id: Any = "c1",
    email: Optional[str] = None,
    created_at: Optional[str] = None,
) -> dict[str, Any]:
    contact: dict[str, Any] = {"id": contact_id}
    if email is not None:
        contact["email"] = email
    return {
        "event_id": event_id,
        "created_at": created_at or datetime.now(timezone.utc).isoformat(),
        "contact": contact,
        "tag": {"name": tag},
    }


def signed_request(payload: Any, secret: str = TEST_SECRET) -> tuple[bytes, dict[str, str]]:
    """Raw body plus headers carrying a valid X-Kajabi-Signature."""
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    headers = {
        "Content-Type": "application/json",
        "X-Kajabi-Signature": compute_signature(body, secret),
    }
    return body, headers


# =============================================================================
# FakeStore
# =============================================================================


class FakeStore:
    """Tables, unique keys and transaction snapshots in memory."""

    def __init__(self) -> None:
        self.tables: dict[str, Any] = {
            "users": {},
            "events": [],
            "grants": {},
            "ledger": [],
            "badges": {},
        }
        self._next_id = 1
        self.failures: dict[str, BaseException] = {}
        self.commits = 0
        self.rollbacks = 0
        self.locked_claims = 0

    # -- setup ---------------------------------------------------------------

    def add_user(
        self,
        user_id: str,
        user_type: str = "EDUCATOR",
        email: Optional[str] = None,
        contact_id: Optional[str] = None,
    ) -> None:
        self.tables["users"][user_id] = {
            "id": user_id,
            "user_type": user_type,
            "email": email,
            "kajabi_contact_id": contact_id,
        }

    def fail_on(self, method: str, exc: BaseException) -> None:
        """Raise exc the next time the repository method runs."""
        self.failures[method] = exc

    # -- inspection ----------------------------------------------------------

    @property
    def events(self) -> list[dict[str, Any]]:
        return self.tables["events"]

    @property
    def ledger(self) -> list[dict[str, Any]]:
        return self.tables["ledger"]

    @property
    def grants(self) -> set[tuple[str, str]]:
        return set(self.tables["grants"])

    @property
    def badges(self) -> set[tuple[str, str]]:
        return set(self.tables["badges"])

    def user(self, user_id: str) -> dict[str, Any]:
        return self.tables["users"][user_id]

    def event(self, event_id: str, tag_norm: str = TAG_1) -> dict[str, Any]:
        for row in self.events:
            if row["event_id"] == event_id and row["tag_name_norm"] == tag_norm:
                return row
        raise KeyError((event_id, tag_norm))

    def points_for(self, user_id: str) -> int:
        return sum(e["delta_points"] for e in self.ledger if e["user_id"] == user_id)

    # -- transactions --------------------------------------------------------

    def next_id(self) -> int:
        value = self._next_id
        self._next_id += 1
        return value

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator["FakeRepository", None]:
        snapshot = copy.deepcopy(self.tables)
        try:
            yield FakeRepository(self)
        except BaseException:
            self.tables = snapshot
            self.rollbacks += 1
            raise
        else:
            self.commits += 1


# =============================================================================
# FakeRepository
# =============================================================================


def _record(row: dict[str, Any]) -> EventRecord:
    return EventRecord(
        id=row["id"],
        event_id=row["event_id"],
        tag_name_raw=row["tag_name_raw"],
        tag_name_norm=row["tag_name_norm"],
        contact_id=row["contact_id"],
        email=row["email"],
        created_at_utc=row["created_at_utc"],
        status=EventStatus(row["status"]),
        status_reason=row["status_reason"],
        user_id=row["user_id"],
    )


def _user(row: dict[str, Any]) -> UserRecord:
    return UserRecord(
        id=row["id"],
        user_type=row["user_type"],
        email=row["email"],
        kajabi_contact_id=row["kajabi_contact_id"],
    )


class FakeRepository:
    """Same interface as IngestRepository, backed by a FakeStore."""

    def __init__(self, store: FakeStore):
        self.store = store

    @property
    def _t(self) -> dict[str, Any]:
        return self.store.tables

    def _maybe_fail(self, method: str) -> None:
        exc = self.store.failures.pop(method, None)
        if exc is not None:
            raise exc

    async def insert_event(
        self,
        event: InboundEvent,
        status: EventStatus = EventStatus.QUEUED_UNMATCHED,
    ) -> InsertOutcome:
        self._maybe_fail("insert_event")
        for row in self._t["events"]:
            if row["event_id"] == event.event_id and row["tag_name_norm"] == event.tag_norm:
                return AlreadyExists()
        row_id = self.store.next_id()
        self._t["events"].append(
            {
                "id": row_id,
                "event_id": event.event_id,
                "tag_name_raw": event.raw_tag_name,
                "tag_name_norm": event.tag_norm,
                "contact_id": event.contact_id,
                "email": event.contact_email,
                "created_at_utc": event.created_at,
                "status": status.value,
                "status_reason": None,
                "user_id": None,
                "processed_at": None,
            }
        )
        return Inserted(row_id)

    async def set_event_status(
        self,
        record_id: Any,
        status: EventStatus,
        reason: Optional[StatusReason] = None,
        user_id: Optional[str] = None,
    ) -> None:
        self._maybe_fail("set_event_status")
        for row in self._t["events"]:
            if row["id"] == record_id:
                row["status"] = status.value
                row["status_reason"] = reason.value if reason else None
                if user_id is not None:
                    row["user_id"] = user_id
                if status is EventStatus.PROCESSED:
                    row["processed_at"] = datetime.now(timezone.utc)

    async def list_unmatched(
        self,
        contact_id: Optional[str] = None,
        email: Optional[str] = None,
        limit: int = 200,
        lock: bool = False,
        event_id: Optional[str] = None,
    ) -> list[EventRecord]:
        self._maybe_fail("list_unmatched")
        if lock:
            self.store.locked_claims += 1
        by_event_only = contact_id is None and email is None and event_id is not None
        rows = [
            r
            for r in self._t["events"]
            if r["status"] == EventStatus.QUEUED_UNMATCHED.value
            and (event_id is None or r["event_id"] == event_id)
            and (
                by_event_only
                or r["contact_id"] == contact_id
                or (email is not None and r["email"] == email)
            )
        ]
        return [_record(r) for r in sorted(rows, key=lambda r: r["id"])[:limit]]

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
        self._maybe_fail("list_pending_contacts")
        contacts: dict[str, Optional[str]] = {}
        for row in sorted(self._t["events"], key=lambda r: r["id"]):
            if row["status"] != EventStatus.QUEUED_UNMATCHED.value:
                continue
            current = contacts.get(row["contact_id"])
            candidates = [e for e in (current, row["email"]) if e]
            contacts[row["contact_id"]] = max(candidates) if candidates else None
        return list(contacts.items())[:limit]

    async def find_user_by_contact(self, contact_id: str) -> Optional[UserRecord]:
        self._maybe_fail("find_user_by_contact")
        for row in self._t["users"].values():
            if row["kajabi_contact_id"] == contact_id:
                return _user(row)
        return None

    async def find_user_by_email(self, email: str) -> Optional[UserRecord]:
        self._maybe_fail("find_user_by_email")
        for row in self._t["users"].values():
            if row["email"] and row["email"].lower() == email:
                return _user(row)
        return None

    async def link_contact(self, user_id: str, contact_id: str) -> bool:
        self._maybe_fail("link_contact")
        users = self._t["users"]
        if any(u["kajabi_contact_id"] == contact_id for u in users.values()):
            return False
        row = users.get(user_id)
        if row is None or row["kajabi_contact_id"] is not None:
            return False
        row["kajabi_contact_id"] = contact_id
        return True

    async def insert_tag_grant(self, user_id: str, tag_norm: str) -> InsertOutcome:
        self._maybe_fail("insert_tag_grant")
        key = (user_id, tag_norm)
        if key in self._t["grants"]:
            return AlreadyExists()
        row_id = self.store.next_id()
        self._t["grants"][key] = row_id
        return Inserted(row_id)

    async def append_ledger(
        self,
        user_id: str,
        delta_points: int,
        external_event_id: str,
    ) -> InsertOutcome:
        self._maybe_fail("append_ledger")
        if any(e["external_event_id"] == external_event_id for e in self._t["ledger"]):
            return AlreadyExists()
        row_id = self.store.next_id()
        self._t["ledger"].append(
            {
                "id": row_id,
                "user_id": user_id,
                "delta_points": delta_points,
                "external_event_id": external_event_id,
            }
        )
        return Inserted(row_id)

    async def user_tag_grants(self, user_id: str) -> set[str]:
        self._maybe_fail("user_tag_grants")
        return {tag for (uid, tag) in self._t["grants"] if uid == user_id}

    async def insert_badge(self, user_id: str, badge_code: str) -> InsertOutcome:
        self._maybe_fail("insert_badge")
        key = (user_id, badge_code)
        if key in self._t["badges"]:
            return AlreadyExists()
        row_id = self.store.next_id()
        self._t["badges"][key] = row_id
        return Inserted(row_id)
