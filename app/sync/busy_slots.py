"""Read-side union of busy time across a user's calendars."""

import logging
from datetime import datetime

from app.calendar import repository
from app.calendar.types import BusySlot

logger = logging.getLogger(__name__)


async def get_busy_slots_for_user(user_id: str, start: datetime, end: datetime) -> list[BusySlot]:
    """
    Busy intervals from every connected provider intersecting [start, end).

    Slots are ordered by start time. Overlapping slots from different
    calendars are returned as-is; the scheduler decides how to merge them.
    """
    if end <= start:
        return []

    rows = await repository.get_busy_slots_for_user(user_id, start, end)
    slots = [
        BusySlot(
            start=row["start_time"],
            end=row["end_time"],
            metadata={
                "event_id": row["external_event_id"],
                "calendar_id": row["calendar_id"],
                "connection_id": row["calendar_connection_id"],
                "provider": row["provider"],
                "summary": row.get("summary"),
                "is_doer_created": row["is_doer_created"],
            },
        )
        for row in rows
    ]
    logger.debug(f"Found {len(slots)} busy slots for user {user_id}")
    return slots
