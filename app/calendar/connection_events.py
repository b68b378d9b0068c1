"""Audit trail for calendar connection lifecycle events."""

import json
import logging
import uuid
from typing import Optional

from app.calendar.types import utc_iso, utcnow
from app.database import get_database

logger = logging.getLogger(__name__)

CONNECTION_EVENT_TYPES = frozenset({
    "connected",
    "disconnected",
    "token_refreshed",
    "token_refresh_failed",
    "token_expired",
    "settings_changed",
    "oauth_failed",
    "reconnected",
    "calendar_selected",
    "calendar_deselected",
})


async def log_connection_event(
    user_id: str,
    event_type: str,
    connection_id: Optional[str] = None,
    details: Optional[dict] = None,
) -> None:
    """Record a connection event. Failures are logged, never raised."""
    if event_type not in CONNECTION_EVENT_TYPES:
        logger.warning(f"Ignoring unknown connection event type: {event_type}")
        return

    try:
        db = await get_database()
        await db.execute(
            """INSERT INTO calendar_connection_events
               (id, user_id, calendar_connection_id, event_type, details, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (str(uuid.uuid4()), user_id, connection_id, event_type,
             json.dumps(details or {}), utc_iso(utcnow()))
        )
        await db.commit()
    except Exception as e:
        logger.error(f"Failed to log connection event {event_type} for user {user_id}: {e}")


async def list_connection_events(connection_id: str, limit: int = 50) -> list[dict]:
    db = await get_database()
    cursor = await db.execute(
        """SELECT * FROM calendar_connection_events
           WHERE calendar_connection_id = ?
           ORDER BY created_at DESC, rowid DESC
           LIMIT ?""",
        (connection_id, limit)
    )
    rows = await cursor.fetchall()
    events = []
    for row in rows:
        event = dict(row)
        event["details"] = json.loads(event.get("details") or "{}")
        events.append(event)
    return events
