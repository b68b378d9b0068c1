"""Persistence calls for calendar connections, events, links and sync logs."""

import json
import logging
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional

from app.calendar.types import utc_iso, utcnow
from app.database import get_database
from app.errors import NotFoundError

logger = logging.getLogger(__name__)

_CONNECTION_BOOL_FIELDS = ("auto_sync_enabled", "auto_push_enabled")


def _new_id() -> str:
    return str(uuid.uuid4())


def _row_to_connection(row) -> dict:
    connection = dict(row)
    try:
        connection["selected_calendar_ids"] = json.loads(connection.get("selected_calendar_ids") or "[]")
    except json.JSONDecodeError:
        connection["selected_calendar_ids"] = []
    for field in _CONNECTION_BOOL_FIELDS:
        connection[field] = bool(connection.get(field))
    return connection


def _row_to_event(row) -> dict:
    event = dict(row)
    event["is_busy"] = bool(event.get("is_busy"))
    event["is_doer_created"] = bool(event.get("is_doer_created"))
    try:
        event["metadata"] = json.loads(event.get("metadata") or "{}")
    except json.JSONDecodeError:
        event["metadata"] = {}
    return event


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


async def get_connection(connection_id: str) -> dict:
    """Get a connection by id, raising NotFoundError when it is missing."""
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM calendar_connections WHERE id = ?", (connection_id,)
    )
    row = await cursor.fetchone()
    if not row:
        raise NotFoundError(f"Calendar connection {connection_id} not found")
    return _row_to_connection(row)


async def get_connection_for_user(user_id: str, provider: str) -> Optional[dict]:
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM calendar_connections WHERE user_id = ? AND provider = ?",
        (user_id, provider)
    )
    row = await cursor.fetchone()
    return _row_to_connection(row) if row else None


async def list_connections_for_user(user_id: str) -> list[dict]:
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM calendar_connections WHERE user_id = ? ORDER BY created_at",
        (user_id,)
    )
    return [_row_to_connection(row) for row in await cursor.fetchall()]


async def list_auto_sync_connections() -> list[dict]:
    """Connections that opted into scheduled pulls."""
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM calendar_connections WHERE auto_sync_enabled = TRUE ORDER BY last_sync_at"
    )
    return [_row_to_connection(row) for row in await cursor.fetchall()]


async def list_connections_expiring_before(threshold: datetime) -> list[dict]:
    db = await get_database()
    cursor = await db.execute(
        """SELECT * FROM calendar_connections
           WHERE token_expires_at IS NOT NULL AND token_expires_at < ?""",
        (utc_iso(threshold),)
    )
    return [_row_to_connection(row) for row in await cursor.fetchall()]


async def upsert_connection(
    user_id: str,
    provider: str,
    access_token_encrypted: str,
    refresh_token_encrypted: str,
    token_expires_at: Optional[str],
) -> tuple[dict, bool]:
    """
    Create or update the single connection for (user, provider).

    Returns:
        (connection, created) where created is False on reconnect
    """
    db = await get_database()
    existing = await get_connection_for_user(user_id, provider)
    now = utc_iso(utcnow())

    await db.execute(
        """INSERT INTO calendar_connections
           (id, user_id, provider, access_token_encrypted, refresh_token_encrypted,
            token_expires_at, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(user_id, provider) DO UPDATE SET
           access_token_encrypted = excluded.access_token_encrypted,
           refresh_token_encrypted = excluded.refresh_token_encrypted,
           token_expires_at = excluded.token_expires_at,
           consecutive_failures = 0,
           last_error = NULL,
           updated_at = excluded.updated_at""",
        (_new_id(), user_id, provider, access_token_encrypted, refresh_token_encrypted,
         token_expires_at, now, now)
    )
    await db.commit()

    connection = await get_connection_for_user(user_id, provider)
    return connection, existing is None


async def update_connection_tokens(
    connection_id: str,
    access_token_encrypted: str,
    refresh_token_encrypted: str,
    token_expires_at: Optional[str],
    expected_expires_at: Optional[str],
) -> bool:
    """
    Persist refreshed tokens with a compare-and-swap on the old expiry.

    Returns False when another refresh already replaced the tokens.
    """
    db = await get_database()
    cursor = await db.execute(
        """UPDATE calendar_connections
           SET access_token_encrypted = ?, refresh_token_encrypted = ?,
               token_expires_at = ?, updated_at = ?
           WHERE id = ? AND token_expires_at IS ?""",
        (access_token_encrypted, refresh_token_encrypted, token_expires_at,
         utc_iso(utcnow()), connection_id, expected_expires_at)
    )
    await db.commit()
    return cursor.rowcount == 1


async def update_connection_settings(
    connection_id: str,
    selected_calendar_ids: Optional[list[str]] = None,
    auto_sync_enabled: Optional[bool] = None,
    auto_push_enabled: Optional[bool] = None,
) -> dict:
    db = await get_database()
    updates: list[str] = []
    params: list[Any] = []

    if selected_calendar_ids is not None:
        updates.append("selected_calendar_ids = ?")
        params.append(json.dumps(list(dict.fromkeys(selected_calendar_ids))))
    if auto_sync_enabled is not None:
        updates.append("auto_sync_enabled = ?")
        params.append(auto_sync_enabled)
    if auto_push_enabled is not None:
        updates.append("auto_push_enabled = ?")
        params.append(auto_push_enabled)

    if updates:
        updates.append("updated_at = ?")
        params.append(utc_iso(utcnow()))
        params.append(connection_id)
        await db.execute(
            f"UPDATE calendar_connections SET {', '.join(updates)} WHERE id = ?",
            params
        )
        await db.commit()

    return await get_connection(connection_id)


async def update_sync_cursor(connection_id: str, sync_token: Optional[str]) -> None:
    """Advance the cursor after a successful pull. A None token keeps the old one."""
    db = await get_database()
    now = utc_iso(utcnow())
    await db.execute(
        """UPDATE calendar_connections
           SET sync_token = COALESCE(?, sync_token), last_sync_at = ?,
               consecutive_failures = 0, last_error = NULL, updated_at = ?
           WHERE id = ?""",
        (sync_token, now, now, connection_id)
    )
    await db.commit()


async def record_sync_failure(connection_id: str, error: str) -> None:
    db = await get_database()
    await db.execute(
        """UPDATE calendar_connections
           SET consecutive_failures = consecutive_failures + 1, last_error = ?, updated_at = ?
           WHERE id = ?""",
        (error[:1000], utc_iso(utcnow()), connection_id)
    )
    await db.commit()


async def delete_connection(connection_id: str) -> None:
    """Delete a connection; events, links, logs and audit rows cascade."""
    db = await get_database()
    await db.execute("DELETE FROM calendar_connections WHERE id = ?", (connection_id,))
    await db.commit()


# ---------------------------------------------------------------------------
# Events and links
# ---------------------------------------------------------------------------


async def upsert_event(
    connection_id: str,
    user_id: str,
    external_event_id: str,
    calendar_id: str,
    start_time: str,
    end_time: str,
    summary: Optional[str] = None,
    description: Optional[str] = None,
    timezone_label: Optional[str] = None,
    is_busy: bool = True,
    is_doer_created: bool = False,
    etag: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> str:
    """Upsert an event keyed by (connection, external id, calendar id). Returns the row id."""
    db = await get_database()
    now = utc_iso(utcnow())
    cursor = await db.execute(
        """INSERT INTO calendar_events
           (id, user_id, calendar_connection_id, external_event_id, calendar_id,
            summary, description, start_time, end_time, timezone, is_busy,
            is_doer_created, external_etag, metadata, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(calendar_connection_id, external_event_id, calendar_id) DO UPDATE SET
           summary = excluded.summary,
           description = excluded.description,
           start_time = excluded.start_time,
           end_time = excluded.end_time,
           timezone = excluded.timezone,
           is_busy = excluded.is_busy,
           is_doer_created = excluded.is_doer_created,
           external_etag = excluded.external_etag,
           metadata = excluded.metadata,
           updated_at = excluded.updated_at
           RETURNING id""",
        (_new_id(), user_id, connection_id, external_event_id, calendar_id,
         summary, description, start_time, end_time, timezone_label, is_busy,
         is_doer_created, etag, json.dumps(metadata or {}), now, now)
    )
    row = await cursor.fetchone()
    await db.commit()
    return row["id"]


async def get_event(connection_id: str, external_event_id: str, calendar_id: str) -> Optional[dict]:
    db = await get_database()
    cursor = await db.execute(
        """SELECT * FROM calendar_events
           WHERE calendar_connection_id = ? AND external_event_id = ? AND calendar_id = ?""",
        (connection_id, external_event_id, calendar_id)
    )
    row = await cursor.fetchone()
    return _row_to_event(row) if row else None


async def delete_event(connection_id: str, external_event_id: str, calendar_id: str) -> bool:
    db = await get_database()
    cursor = await db.execute(
        """DELETE FROM calendar_events
           WHERE calendar_connection_id = ? AND external_event_id = ? AND calendar_id = ?""",
        (connection_id, external_event_id, calendar_id)
    )
    await db.commit()
    return cursor.rowcount > 0


async def delete_event_occurrences(connection_id: str, series_id: str, calendar_id: str) -> int:
    """Delete the expanded occurrences stored for a recurring series. Returns how many went."""
    db = await get_database()
    cursor = await db.execute(
        """DELETE FROM calendar_events
           WHERE calendar_connection_id = ? AND calendar_id = ?
           AND json_extract(metadata, '$.series_id') = ?""",
        (connection_id, calendar_id, series_id)
    )
    await db.commit()
    return cursor.rowcount


async def upsert_event_link(
    user_id: str,
    calendar_event_id: str,
    task_id: str,
    task_schedule_id: str,
    external_event_id: str,
    plan_id: Optional[str] = None,
    ai_confidence: Optional[float] = None,
    plan_name: Optional[str] = None,
    task_name: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> str:
    """Upsert the link keyed by (calendar event, task schedule). Returns the row id."""
    db = await get_database()
    now = utc_iso(utcnow())
    cursor = await db.execute(
        """INSERT INTO calendar_event_links
           (id, user_id, calendar_event_id, task_id, task_schedule_id, plan_id,
            external_event_id, ai_confidence, plan_name, task_name, metadata,
            created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(calendar_event_id, task_schedule_id) DO UPDATE SET
           task_id = excluded.task_id,
           plan_id = excluded.plan_id,
           external_event_id = excluded.external_event_id,
           ai_confidence = excluded.ai_confidence,
           plan_name = excluded.plan_name,
           task_name = excluded.task_name,
           metadata = excluded.metadata,
           updated_at = excluded.updated_at
           RETURNING id""",
        (_new_id(), user_id, calendar_event_id, task_id, task_schedule_id, plan_id,
         external_event_id, ai_confidence, plan_name, task_name,
         json.dumps(metadata or {}), now, now)
    )
    row = await cursor.fetchone()
    await db.commit()
    return row["id"]


async def get_link_for_schedule(connection_id: str, task_schedule_id: str) -> Optional[dict]:
    """Find the event already mirroring a schedule on this connection."""
    db = await get_database()
    cursor = await db.execute(
        """SELECT l.*, e.calendar_id, e.calendar_connection_id, e.external_etag
           FROM calendar_event_links l
           JOIN calendar_events e ON l.calendar_event_id = e.id
           WHERE e.calendar_connection_id = ? AND l.task_schedule_id = ?
           ORDER BY l.updated_at DESC
           LIMIT 1""",
        (connection_id, task_schedule_id)
    )
    row = await cursor.fetchone()
    return dict(row) if row else None


async def list_links_for_schedule(user_id: str, task_schedule_id: str) -> list[dict]:
    db = await get_database()
    cursor = await db.execute(
        """SELECT l.*, e.calendar_id, e.calendar_connection_id, c.provider
           FROM calendar_event_links l
           JOIN calendar_events e ON l.calendar_event_id = e.id
           JOIN calendar_connections c ON e.calendar_connection_id = c.id
           WHERE l.user_id = ? AND l.task_schedule_id = ?""",
        (user_id, task_schedule_id)
    )
    return [dict(row) for row in await cursor.fetchall()]


async def has_link_for_external_event(connection_id: str, external_event_id: str) -> bool:
    db = await get_database()
    cursor = await db.execute(
        """SELECT 1 FROM calendar_event_links l
           JOIN calendar_events e ON l.calendar_event_id = e.id
           WHERE e.calendar_connection_id = ? AND l.external_event_id = ?
           LIMIT 1""",
        (connection_id, external_event_id)
    )
    return await cursor.fetchone() is not None


async def get_busy_slots_for_user(user_id: str, start: datetime, end: datetime) -> list[dict]:
    """Busy events across all of a user's connections intersecting [start, end)."""
    db = await get_database()
    cursor = await db.execute(
        """SELECT e.*, c.provider
           FROM calendar_events e
           JOIN calendar_connections c ON e.calendar_connection_id = c.id
           WHERE e.user_id = ? AND e.is_busy = TRUE
             AND e.start_time < ? AND e.end_time > ?
           ORDER BY e.start_time, e.end_time""",
        (user_id, utc_iso(end), utc_iso(start))
    )
    return [_row_to_event(row) for row in await cursor.fetchall()]


# ---------------------------------------------------------------------------
# Task schedule (read-only collaborator)
# ---------------------------------------------------------------------------


async def get_task_schedule(task_schedule_id: str) -> dict:
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM task_schedule WHERE id = ?", (task_schedule_id,)
    )
    row = await cursor.fetchone()
    if not row:
        raise NotFoundError(f"Task schedule {task_schedule_id} not found")
    return dict(row)


def schedule_bounds(schedule: dict) -> Optional[tuple[datetime, datetime]]:
    """UTC start/end of a schedule row, or None if it has no times."""
    if not schedule.get("start_time") or not schedule.get("end_time"):
        return None

    day = date.fromisoformat(schedule["date"])
    start = datetime.combine(day, time.fromisoformat(schedule["start_time"]), tzinfo=timezone.utc)
    end = datetime.combine(day, time.fromisoformat(schedule["end_time"]), tzinfo=timezone.utc)
    if end <= start:
        end += timedelta(days=1)
    return start, end


async def find_conflicting_plans(
    user_id: str,
    start: datetime,
    end: datetime,
    plan_id: Optional[str] = None,
) -> list[str]:
    """Plan ids with a scheduled occurrence overlapping [start, end)."""
    db = await get_database()
    query = """SELECT * FROM task_schedule
               WHERE user_id = ? AND date >= ? AND date <= ?
                 AND start_time IS NOT NULL AND end_time IS NOT NULL"""
    params: list[Any] = [
        user_id,
        (start - timedelta(days=1)).date().isoformat(),
        end.date().isoformat(),
    ]
    if plan_id:
        query += " AND plan_id = ?"
        params.append(plan_id)

    cursor = await db.execute(query, params)
    rows = await cursor.fetchall()

    plan_ids: list[str] = []
    for row in rows:
        bounds = schedule_bounds(dict(row))
        if not bounds or not row["plan_id"]:
            continue
        sched_start, sched_end = bounds
        if sched_start < end and sched_end > start and row["plan_id"] not in plan_ids:
            plan_ids.append(row["plan_id"])

    return plan_ids


# ---------------------------------------------------------------------------
# Sync logs
# ---------------------------------------------------------------------------


async def create_sync_log(user_id: str, connection_id: str, sync_type: str) -> str:
    db = await get_database()
    log_id = _new_id()
    await db.execute(
        """INSERT INTO calendar_sync_logs
           (id, user_id, calendar_connection_id, sync_type, status, started_at)
           VALUES (?, ?, ?, ?, 'in_progress', ?)""",
        (log_id, user_id, connection_id, sync_type, utc_iso(utcnow()))
    )
    await db.commit()
    return log_id


async def complete_sync_log(
    log_id: str,
    status: str,
    events_pulled: int = 0,
    events_pushed: int = 0,
    conflicts_detected: int = 0,
    plans_affected: Optional[list[str]] = None,
    changes_summary: Optional[dict] = None,
    error_message: Optional[str] = None,
) -> None:
    db = await get_database()
    await db.execute(
        """UPDATE calendar_sync_logs
           SET status = ?, events_pulled = ?, events_pushed = ?, conflicts_detected = ?,
               plans_affected = ?, changes_summary = ?, error_message = ?, completed_at = ?
           WHERE id = ?""",
        (status, events_pulled, events_pushed, conflicts_detected,
         json.dumps(plans_affected or []), json.dumps(changes_summary or {}),
         error_message, utc_iso(utcnow()), log_id)
    )
    await db.commit()


async def get_latest_sync_log(connection_id: str) -> Optional[dict]:
    db = await get_database()
    cursor = await db.execute(
        """SELECT * FROM calendar_sync_logs
           WHERE calendar_connection_id = ?
           ORDER BY started_at DESC, rowid DESC LIMIT 1""",
        (connection_id,)
    )
    row = await cursor.fetchone()
    return dict(row) if row else None
