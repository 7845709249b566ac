"""
Kajabi Backfill - Re-drive queued_unmatched events

Runs the same reconciliation as POST /api/v1/admin/kajabi/reconcile from a
shell. Dry run by default: pending events are listed, nothing is written.

Usage:
    # List what would be reconciled for every pending contact
    python -m elevate.backfill

    # Apply for one contact
    python -m elevate.backfill --contact-id 12345 --apply

    # Apply for a user's email, at most 50 events
    python -m elevate.backfill --email educator@example.org --limit 50 --apply

    # Reprocess a single Kajabi event
    python -m elevate.backfill --event-id evt_123 --apply

Exit codes:
    0  run completed (even if some events stay unmatched)
    1  one or more contacts failed
    2  database unavailable
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional, Sequence

from .config import configure_logging, get_settings
from .db import close_db_pool, get_pool_health, init_db_pool
from .services.reconciliation import ReconciliationReport, ReconciliationService
from .services.webhook_processor import build_processor

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_DB_UNAVAILABLE = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m elevate.backfill",
        description="Reconcile queued_unmatched Kajabi events",
    )
    parser.add_argument("--contact-id", help="Kajabi contact id to reconcile")
    parser.add_argument("--email", help="Email to match queued events against")
    parser.add_argument("--event-id", help="Kajabi event id to reprocess")
    parser.add_argument("--limit", type=int, default=None, help="Max events to process")
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Write changes (default is a dry run that only lists pending events)",
    )
    return parser


async def run_backfill(
    contact_id: Optional[str] = None,
    email: Optional[str] = None,
    limit: Optional[int] = None,
    apply: bool = False,
    event_id: Optional[str] = None,
) -> ReconciliationReport:
    settings = get_settings()
    service = ReconciliationService(build_processor(settings), settings.RECONCILE_BATCH_SIZE)

    if contact_id or email or event_id:
        return await service.reconcile_contact(
            contact_id=contact_id,
            email=email,
            limit=limit,
            dry_run=not apply,
            event_id=event_id,
        )
    return await service.reconcile_pending(limit=limit, dry_run=not apply)


async def _main(args: argparse.Namespace) -> int:
    await init_db_pool()
    try:
        if not get_pool_health().initialized:
            logger.error(f"Database unavailable: {get_pool_health().last_error}")
            return EXIT_DB_UNAVAILABLE

        report = await run_backfill(
            contact_id=args.contact_id,
            email=args.email,
            limit=args.limit,
            apply=args.apply,
            event_id=args.event_id,
        )
    finally:
        await close_db_pool()

    print(json.dumps(report.model_dump(mode="json"), indent=2))
    if report.dry_run:
        print(f"Dry run: {report.records_seen} pending events. Re-run with --apply to write.")
    return EXIT_FAILURES if report.contacts_failed else EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.limit is not None and args.limit < 1:
        parser.error("--limit must be a positive integer")

    configure_logging()
    return asyncio.run(_main(args))


if __name__ == "__main__":
    sys.exit(main())
