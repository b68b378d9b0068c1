"""Sync orchestration and busy-slot aggregation."""

from app.sync.busy_slots import get_busy_slots_for_user
from app.sync.engine import (
    SyncResult,
    delete_schedule_events,
    pull_connection,
    push_schedule,
    sync_user,
)

__all__ = [
    "SyncResult",
    "delete_schedule_events",
    "get_busy_slots_for_user",
    "pull_connection",
    "push_schedule",
    "sync_user",
]
