"""APScheduler setup for background jobs."""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from app.config import get_settings

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None


def setup_scheduler() -> AsyncIOScheduler:
    """Set up and start the background scheduler."""
    global _scheduler

    settings = get_settings()

    _scheduler = AsyncIOScheduler()

    # Pull auto-sync connections
    _scheduler.add_job(
        "app.jobs.sync_job:run_periodic_sync",
        trigger=IntervalTrigger(minutes=settings.sync_interval_minutes),
        id="periodic_sync",
        name="Periodic Calendar Pull",
        replace_existing=True,
    )

    # Refresh tokens before they lapse
    _scheduler.add_job(
        "app.jobs.sync_job:refresh_expiring_tokens",
        trigger=IntervalTrigger(minutes=settings.token_refresh_minutes),
        id="token_refresh",
        name="Token Refresh",
        replace_existing=True,
    )

    # Retention cleanup - daily at 3 AM
    _scheduler.add_job(
        "app.jobs.cleanup:run_retention_cleanup",
        trigger=CronTrigger(hour=3, minute=0),
        id="retention_cleanup",
        name="Retention Cleanup",
        replace_existing=True,
    )

    _scheduler.start()
    logger.info("Background scheduler started")

    return _scheduler


def shutdown_scheduler() -> None:
    """Shutdown the scheduler."""
    global _scheduler

    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Background scheduler stopped")


def get_scheduler() -> AsyncIOScheduler | None:
    """Get the current scheduler instance."""
    return _scheduler
