"""
Elevate Engine - Job Scheduler

APScheduler AsyncIOScheduler for the periodic reconciliation sweep.
Only created when RECONCILE_INTERVAL_MINUTES > 0; started and stopped by the
FastAPI lifespan handler.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .config import Settings, get_settings

logger = logging.getLogger(__name__)

RECONCILE_JOB_ID = "kajabi_reconcile_sweep"

# Global scheduler instance
_scheduler: AsyncIOScheduler | None = None


def get_scheduler() -> AsyncIOScheduler:
    """
    Get the scheduler instance.

    Raises:
        RuntimeError: If scheduler not initialized
    """
    if _scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")
    return _scheduler


# =============================================================================
# Jobs
# =============================================================================


async def reconcile_sweep_job() -> None:
    """
    Re-drive queued_unmatched events for every pending contact.

    Failures are logged; the scheduler keeps running.
    """
    from .services.reconciliation import ReconciliationService
    from .services.webhook_processor import build_processor

    settings = get_settings()
    logger.info("Running reconciliation sweep...")

    try:
        service = ReconciliationService(build_processor(settings), settings.RECONCILE_BATCH_SIZE)
        report = await service.reconcile_pending()
        logger.info(
            f"Reconciliation sweep: {report.processed} processed, "
            f"{report.still_unmatched} still unmatched, {report.contacts_failed} contacts failed",
            extra={"count": report.records_seen, "points": report.points_awarded},
        )
    except Exception as e:
        logger.exception(f"Reconciliation sweep job failed: {e}")


# =============================================================================
# Lifecycle
# =============================================================================


def init_scheduler(settings: Settings | None = None) -> AsyncIOScheduler | None:
    """
    Create the scheduler and register jobs.

    Returns:
        The configured (not yet started) scheduler, or None when the
        reconciliation interval is disabled.
    """
    global _scheduler

    settings = settings or get_settings()
    interval = settings.RECONCILE_INTERVAL_MINUTES
    if interval <= 0:
        logger.info("Reconciliation sweep disabled (RECONCILE_INTERVAL_MINUTES=0)")
        return None

    _scheduler = AsyncIOScheduler(
        timezone="UTC",
        job_defaults={
            "coalesce": True,  # Combine missed runs into one
            "max_instances": 1,  # Only one sweep at a time
            "misfire_grace_time": 300,
        },
    )
    _scheduler.add_job(
        reconcile_sweep_job,
        trigger=IntervalTrigger(minutes=interval),
        id=RECONCILE_JOB_ID,
        name="Kajabi reconciliation sweep",
        replace_existing=True,
    )
    return _scheduler


def start_scheduler() -> None:
    if _scheduler is None:
        return
    logger.info("Starting job scheduler...")
    _scheduler.start()
    for job in _scheduler.get_jobs():
        logger.info(f"  - {job.id}: {job.trigger}")


def shutdown_scheduler() -> None:
    global _scheduler
    if _scheduler is None:
        return
    logger.info("Stopping job scheduler...")
    if _scheduler.running:
        _scheduler.shutdown(wait=False)
    _scheduler = None
    logger.info("Job scheduler stopped")
