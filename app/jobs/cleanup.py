"""Retention cleanup job."""

import logging
from datetime import timedelta

from app.calendar.types import utc_iso, utcnow
from app.config import get_settings
from app.database import get_database

logger = logging.getLogger(__name__)


async def run_retention_cleanup() -> dict:
    """
    Run retention cleanup according to policy.

    Retention policy:
    - Pulled events that ended more than event_retention_days ago
      (links to them cascade)
    - Sync logs and connection events: audit_log_retention_days
    """
    settings = get_settings()
    db = await get_database()
    now = utcnow()

    summary = {
        "old_events": 0,
        "old_sync_logs": 0,
        "old_connection_events": 0,
    }

    event_cutoff = utc_iso(now - timedelta(days=settings.event_retention_days))
    cursor = await db.execute(
        "DELETE FROM calendar_events WHERE end_time < ? RETURNING id",
        (event_cutoff,)
    )
    summary["old_events"] = len(await cursor.fetchall())

    log_cutoff = utc_iso(now - timedelta(days=settings.audit_log_retention_days))
    cursor = await db.execute(
        """DELETE FROM calendar_sync_logs
           WHERE started_at < ? AND status != 'in_progress'
           RETURNING id""",
        (log_cutoff,)
    )
    summary["old_sync_logs"] = len(await cursor.fetchall())

    cursor = await db.execute(
        "DELETE FROM calendar_connection_events WHERE created_at < ? RETURNING id",
        (log_cutoff,)
    )
    summary["old_connection_events"] = len(await cursor.fetchall())

    await db.commit()

    logger.info(f"Retention cleanup completed: {summary}")
    return summary
