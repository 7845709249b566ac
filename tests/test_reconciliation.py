"""
Tests for ReconciliationService: re-driving queued_unmatched events.
"""

import psycopg
import pytest

from elevate.services.badges import STARTER_BADGE
from elevate.services.reconciliation import (
    ReconciliationService,
    RecordOutcome,
)
from elevate.services.webhook_processor import IngestStatus
from tests.helpers import TAG_1, TAG_2, make_event


@pytest.fixture
def service(processor):
    return ReconciliationService(processor, batch_size=50)


async def _queue(processor, *events):
    for event in events:
        result = await processor.ingest(event)
        assert result.status is IngestStatus.UNMATCHED


class TestReconcileContact:
    @pytest.mark.asyncio
    async def test_requires_contact_email_or_event(self, service):
        with pytest.raises(ValueError):
            await service.reconcile_contact()

    @pytest.mark.asyncio
    async def test_awards_once_user_exists(self, processor, service, store):
        await _queue(
            processor,
            make_event(event_id="e1", tag=TAG_1, contact_id="c9"),
            make_event(event_id="e2", tag=TAG_2, contact_id="c9"),
        )
        store.add_user("u9", "EDUCATOR", contact_id="c9")

        report = await service.reconcile_contact(contact_id="c9")

        assert report.records_seen == 2
        assert report.processed == 2
        assert report.points_awarded == 40
        assert report.badges_granted == [STARTER_BADGE]
        assert store.event("e1", TAG_1)["status"] == "processed"
        assert store.event("e1", TAG_1)["user_id"] == "u9"
        assert store.points_for("u9") == 40
        assert store.locked_claims == 1

    @pytest.mark.asyncio
    async def test_single_event_id(self, processor, service, store):
        await _queue(
            processor,
            make_event(event_id="e1", tag=TAG_1, contact_id="c9"),
            make_event(event_id="e2", tag=TAG_2, contact_id="c9"),
        )
        store.add_user("u9", "EDUCATOR", contact_id="c9")

        report = await service.reconcile_contact(event_id="e2")

        assert report.records_seen == 1
        assert report.results[0].event_id == "e2"
        assert report.processed == 1
        assert store.event("e2", TAG_2)["status"] == "processed"
        assert store.event("e1", TAG_1)["status"] == "queued_unmatched"

    @pytest.mark.asyncio
    async def test_event_id_narrows_contact(self, processor, service, store):
        await _queue(
            processor,
            make_event(event_id="e1", contact_id="c9"),
            make_event(event_id="e1", contact_id="c8", tag=TAG_2),
        )

        report = await service.reconcile_contact(contact_id="c9", event_id="e1", dry_run=True)

        assert [(r.contact_id, r.outcome) for r in report.results] == [
            ("c9", RecordOutcome.PENDING)
        ]

    @pytest.mark.asyncio
    async def test_rerun_is_noop(self, processor, service, store):
        await _queue(processor, make_event(event_id="e1", contact_id="c9"))
        store.add_user("u9", "EDUCATOR", contact_id="c9")

        await service.reconcile_contact(contact_id="c9")
        second = await service.reconcile_contact(contact_id="c9")

        assert second.records_seen == 0
        assert len(store.ledger) == 1

    @pytest.mark.asyncio
    async def test_matches_by_email_and_links(self, processor, service, store):
        await _queue(
            processor, make_event(event_id="e1", contact_id="c9", email="late@example.org")
        )
        store.add_user("u9", "EDUCATOR", email="late@example.org")

        report = await service.reconcile_contact(email="LATE@example.org")

        assert report.processed == 1
        assert store.user("u9")["kajabi_contact_id"] == "c9"

    @pytest.mark.asyncio
    async def test_still_unmatched_stays_queued(self, processor, service, store):
        await _queue(processor, make_event(event_id="e1", contact_id="c9"))

        report = await service.reconcile_contact(contact_id="c9")

        assert report.still_unmatched == 1
        assert store.event("e1")["status"] == "queued_unmatched"

    @pytest.mark.asyncio
    async def test_ineligible_user(self, processor, service, store):
        await _queue(processor, make_event(event_id="e1", contact_id="c-student"))
        store.add_user("s9", "STUDENT", contact_id="c-student")

        report = await service.reconcile_contact(contact_id="c-student")

        assert report.ineligible == 1
        row = store.event("e1")
        assert row["status"] == "ignored"
        assert row["status_reason"] == "ineligible_user_type"
        assert store.ledger == []

    @pytest.mark.asyncio
    async def test_already_granted(self, processor, service, store):
        await _queue(processor, make_event(event_id="e1", contact_id="c9"))
        store.add_user("u9", "EDUCATOR", contact_id="c9")
        live = await processor.ingest(make_event(event_id="e2", contact_id="c9"))
        assert live.status is IngestStatus.AWARDED

        report = await service.reconcile_contact(contact_id="c9")

        assert report.already_granted == 1
        assert store.event("e1")["status_reason"] == "already_granted"
        assert store.points_for("u9") == 20

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, processor, service, store):
        await _queue(processor, make_event(event_id="e1", contact_id="c9"))
        store.add_user("u9", "EDUCATOR", contact_id="c9")

        report = await service.reconcile_contact(contact_id="c9", dry_run=True)

        assert report.dry_run is True
        assert report.results[0].outcome is RecordOutcome.PENDING
        assert report.processed == 0
        assert store.event("e1")["status"] == "queued_unmatched"
        assert store.ledger == []

    @pytest.mark.asyncio
    async def test_failure_rolls_back_contact(self, processor, service, store):
        await _queue(
            processor,
            make_event(event_id="e1", tag=TAG_1, contact_id="c9"),
            make_event(event_id="e2", tag=TAG_2, contact_id="c9"),
        )
        store.add_user("u9", "EDUCATOR", contact_id="c9")
        ledger_before = list(store.ledger)
        store.fail_on("append_ledger", psycopg.OperationalError("lost"))

        with pytest.raises(psycopg.OperationalError):
            await service.reconcile_contact(contact_id="c9")

        assert store.ledger == ledger_before
        assert store.event("e1", TAG_1)["status"] == "queued_unmatched"


class TestReconcilePending:
    @pytest.mark.asyncio
    async def test_sweeps_every_contact(self, processor, service, store):
        await _queue(
            processor,
            make_event(event_id="e1", contact_id="c8"),
            make_event(event_id="e2", contact_id="c9"),
            make_event(event_id="e3", contact_id="c7"),
        )
        store.add_user("u8", "EDUCATOR", contact_id="c8")
        store.add_user("u9", "EDUCATOR", contact_id="c9")

        report = await service.reconcile_pending()

        assert report.contacts_scanned == 3
        assert report.processed == 2
        assert report.still_unmatched == 1

    @pytest.mark.asyncio
    async def test_failing_contact_does_not_stop_sweep(self, processor, service, store):
        await _queue(
            processor,
            make_event(event_id="e1", contact_id="c8"),
            make_event(event_id="e2", contact_id="c9"),
        )
        store.add_user("u8", "EDUCATOR", contact_id="c8")
        store.add_user("u9", "EDUCATOR", contact_id="c9")
        store.fail_on("append_ledger", psycopg.OperationalError("lost"))

        report = await service.reconcile_pending()

        assert report.contacts_failed == 1
        assert report.processed == 1
        assert len(store.ledger) == 1

    @pytest.mark.asyncio
    async def test_limit_caps_records(self, processor, service, store):
        await _queue(
            processor,
            make_event(event_id="e1", contact_id="c8"),
            make_event(event_id="e2", contact_id="c9"),
        )
        report = await service.reconcile_pending(limit=1, dry_run=True)
        assert report.records_seen == 1
