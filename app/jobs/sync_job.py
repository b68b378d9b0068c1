"""Periodic pull and token refresh jobs."""

import logging
from datetime import timedelta

from app.calendar import repository
from app.calendar.connection_events import log_connection_event
from app.calendar.factory import get_provider
from app.calendar.types import utc_iso, utcnow
from app.database import get_database
from app.errors import CalendarSyncError, OAuthRefreshError

logger = logging.getLogger(__name__)


async def run_periodic_sync() -> None:
    """Pull every connection that has auto sync enabled."""
    if not await acquire_job_lock("periodic_sync"):
        logger.debug("Periodic sync already running, skipping")
        return

    try:
        connections = await repository.list_auto_sync_connections()
        logger.info(f"Running periodic sync for {len(connections)} connections")

        from app.sync.engine import pull_connection

        for connection in connections:
            if not connection["selected_calendar_ids"]:
                continue
            try:
                await pull_connection(connection["id"])
            except Exception as e:
                logger.error(f"Error syncing {connection['provider']} connection {connection['id']}: {e}")

        logger.info("Periodic sync completed")

    finally:
        await release_job_lock("periodic_sync")


async def refresh_expiring_tokens() -> None:
    """Proactively refresh tokens that will expire soon."""
    if not await acquire_job_lock("token_refresh"):
        logger.debug("Token refresh already running, skipping")
        return

    try:
        # Find tokens expiring within 1 hour
        expiring = await repository.list_connections_expiring_before(utcnow() + timedelta(hours=1))
        if not expiring:
            return

        logger.info(f"Refreshing {len(expiring)} expiring tokens")

        for connection in expiring:
            try:
                provider = get_provider(connection["provider"])
                await provider.refresh_access_token(connection["id"], force=False)
                logger.debug(f"Refreshed token for connection {connection['id']}")
            except OAuthRefreshError as e:
                # Permanent: the user has to reconnect
                logger.error(f"Token for connection {connection['id']} was revoked: {e}")
                await log_connection_event(
                    connection["user_id"],
                    "token_expired",
                    connection["id"],
                    {"provider": connection["provider"], "status_code": e.status_code},
                )
            except CalendarSyncError as e:
                logger.error(f"Failed to refresh token for connection {connection['id']}: {e}")
    finally:
        await release_job_lock("token_refresh")


async def acquire_job_lock(job_name: str, timeout_minutes: int = 30) -> bool:
    """
    Acquire a lock for a job.

    Returns True if lock acquired, False if job is already running.
    """
    db = await get_database()
    now = utcnow()
    cutoff = utc_iso(now - timedelta(minutes=timeout_minutes))

    # First, try to clean up stale locks
    await db.execute(
        """DELETE FROM job_locks WHERE job_name = ? AND locked_at < ?""",
        (job_name, cutoff)
    )
    await db.commit()

    cursor = await db.execute(
        """INSERT INTO job_locks (job_name, locked_at, locked_by)
           VALUES (?, ?, ?)
           ON CONFLICT(job_name) DO NOTHING""",
        (job_name, utc_iso(now), "worker")
    )
    await db.commit()
    # Lock already held by another process when nothing was inserted
    return cursor.rowcount == 1


async def release_job_lock(job_name: str) -> None:
    """Release a job lock."""
    db = await get_database()
    await db.execute("DELETE FROM job_locks WHERE job_name = ?", (job_name,))
    await db.commit()
