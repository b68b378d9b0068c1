"""Sync orchestration: pull external events, push scheduled tasks."""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from app.calendar import repository
from app.calendar.base import REAUTH_ERRORS, CalendarProvider
from app.calendar.factory import get_provider
from app.calendar.types import BusySlot, PushResult, TaskInput, event_time_to_datetime, utc_iso
from app.config import Settings
from app.errors import NotFoundError

logger = logging.getLogger(__name__)

# Per-connection locks so a manual sync and the periodic job never overlap.
_connection_locks: dict[str, asyncio.Lock] = {}
_connection_locks_guard = asyncio.Lock()


async def _get_connection_lock(connection_id: str) -> asyncio.Lock:
    """Get or create an asyncio lock for a connection."""
    async with _connection_locks_guard:
        if connection_id not in _connection_locks:
            _connection_locks[connection_id] = asyncio.Lock()
        return _connection_locks[connection_id]


class SyncResult(BaseModel):
    """Outcome of one pull."""
    connection_id: str
    events_pulled: int = 0
    events_deleted: int = 0
    busy_slots: list[BusySlot] = Field(default_factory=list)
    conflicts_detected: int = 0
    plans_affected: list[str] = Field(default_factory=list)
    is_full_sync: bool = False


async def pull_connection(
    connection_id: str,
    time_min: Optional[datetime] = None,
    time_max: Optional[datetime] = None,
    settings: Optional[Settings] = None,
    provider: Optional[CalendarProvider] = None,
) -> Optional[SyncResult]:
    """
    Pull a connection's selected calendars into calendar_events.

    Returns None when a pull for the same connection is already running.
    """
    lock = await _get_connection_lock(connection_id)
    if lock.locked():
        logger.info(f"Sync already in progress for connection {connection_id}, skipping")
        return None

    async with lock:
        return await _pull_connection(connection_id, time_min, time_max, settings, provider)


async def _pull_connection(
    connection_id: str,
    time_min: Optional[datetime],
    time_max: Optional[datetime],
    settings: Optional[Settings],
    provider: Optional[CalendarProvider],
) -> SyncResult:
    """Internal: perform the pull (must be called under lock)."""
    connection = await repository.get_connection(connection_id)
    user_id = connection["user_id"]
    calendar_ids = connection["selected_calendar_ids"]
    result = SyncResult(connection_id=connection_id)

    if not calendar_ids:
        logger.info(f"No calendars selected for connection {connection_id}, nothing to pull")
        return result

    provider = provider or get_provider(connection["provider"], settings)
    sync_token = connection.get("sync_token")
    log_id = await repository.create_sync_log(
        user_id, connection_id, "pull" if sync_token else "full_sync"
    )

    try:
        fetched = await provider.fetch_events(
            connection_id, calendar_ids, sync_token, time_min, time_max
        )
        result.is_full_sync = fetched.is_full_sync

        for event in fetched.events:
            if event.cancelled:
                if await repository.delete_event(connection_id, event.id, event.calendar_id):
                    result.events_deleted += 1
                result.events_deleted += await repository.delete_event_occurrences(
                    connection_id, event.id, event.calendar_id
                )
                continue

            start = event_time_to_datetime(event.start)
            end = event_time_to_datetime(event.end)
            if start is None or end is None:
                logger.debug(f"Skipping event {event.id} without usable start/end")
                continue

            is_doer_created = event.has_doer_markers or await repository.has_link_for_external_event(
                connection_id, event.id
            )

            await repository.upsert_event(
                connection_id=connection_id,
                user_id=user_id,
                external_event_id=event.id,
                calendar_id=event.calendar_id,
                start_time=utc_iso(start),
                end_time=utc_iso(end),
                summary=event.summary,
                description=event.description,
                timezone_label=event.start.time_zone if event.start else None,
                is_busy=event.is_busy,
                is_doer_created=is_doer_created,
                etag=event.etag,
                metadata={
                    "extended_properties": event.extended_properties.model_dump(),
                    **event.raw,
                },
            )
            result.events_pulled += 1

            if not event.is_busy:
                continue

            slot = provider.convert_to_busy_slot(event, event.calendar_id)
            if slot:
                slot.metadata["is_doer_created"] = is_doer_created
                result.busy_slots.append(slot)

            # DOER's own events are the plan, not a conflict with it
            if is_doer_created:
                continue

            plan_ids = await repository.find_conflicting_plans(user_id, start, end)
            if plan_ids:
                result.conflicts_detected += 1
                for plan_id in plan_ids:
                    if plan_id not in result.plans_affected:
                        result.plans_affected.append(plan_id)

        # Cursor moves only after every event is stored
        await repository.update_sync_cursor(connection_id, fetched.next_sync_token)

    except Exception as e:
        logger.exception(f"Pull failed for connection {connection_id}")
        await repository.record_sync_failure(connection_id, str(e))
        await repository.complete_sync_log(
            log_id,
            "failed",
            events_pulled=result.events_pulled,
            error_message=str(e),
        )
        raise

    await repository.complete_sync_log(
        log_id,
        "completed",
        events_pulled=result.events_pulled,
        conflicts_detected=result.conflicts_detected,
        plans_affected=result.plans_affected,
        changes_summary={
            "events_deleted": result.events_deleted,
            "busy_slots": len(result.busy_slots),
            "is_full_sync": result.is_full_sync,
        },
    )
    logger.info(
        f"Pulled {result.events_pulled} events ({result.events_deleted} deleted, "
        f"{result.conflicts_detected} conflicts) for connection {connection_id}"
    )
    return result


def _task_input(schedule: dict) -> TaskInput:
    bounds = repository.schedule_bounds(schedule)
    if bounds is None:
        raise ValueError(f"Task schedule {schedule['id']} has no start/end time")
    start, end = bounds
    return TaskInput(
        task_id=schedule["task_id"],
        task_schedule_id=schedule["id"],
        plan_id=schedule.get("plan_id"),
        task_name=schedule.get("task_name") or "DOER task",
        plan_name=schedule.get("plan_name"),
        start=start,
        end=end,
        ai_confidence=schedule.get("ai_confidence"),
    )


async def _target_calendar(
    provider: CalendarProvider,
    connection: dict,
    calendar_id: Optional[str] = None,
) -> str:
    """Calendar to push into: the requested one if selected, else the first selected, else the default."""
    selected = connection["selected_calendar_ids"]
    if calendar_id:
        if calendar_id in selected:
            return calendar_id
        logger.warning(
            f"Calendar {calendar_id} is not selected on connection {connection['id']}, using default"
        )
    if selected:
        return selected[0]
    if provider.default_calendar_id:
        return provider.default_calendar_id

    for calendar in await provider.fetch_calendars(connection["id"]):
        if calendar.primary:
            return calendar.id
    raise NotFoundError(f"No calendar available on connection {connection['id']}")


async def push_schedule(
    user_id: str,
    task_schedule_id: str,
    providers: Optional[list[str]] = None,
    calendar_id: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> list[PushResult]:
    """
    Mirror one scheduled task onto the user's calendars.

    Without an explicit providers list, every connection with auto push
    enabled is used. Per-connection failures are returned, never raised.

    Raises:
        NotFoundError: if the schedule does not exist for this user
    """
    schedule = await repository.get_task_schedule(task_schedule_id)
    if schedule["user_id"] != user_id:
        raise NotFoundError(f"Task schedule {task_schedule_id} not found")
    task = _task_input(schedule)

    connections = await repository.list_connections_for_user(user_id)
    if providers is not None:
        connections = [c for c in connections if c["provider"] in providers]
    else:
        connections = [c for c in connections if c["auto_push_enabled"]]

    results = []
    for connection in connections:
        log_id = await repository.create_sync_log(user_id, connection["id"], "push")
        target = None
        try:
            provider = get_provider(connection["provider"], settings)
            target = await _target_calendar(provider, connection, calendar_id)
            result = await provider.push_task_to_calendar(connection["id"], target, task)
        except REAUTH_ERRORS as e:
            logger.warning(
                f"Push of schedule {task_schedule_id} to connection {connection['id']} "
                f"needs re-authorization: {e}"
            )
            result = PushResult(success=False, error=str(e))
        except Exception as e:
            logger.exception(f"Push of schedule {task_schedule_id} to connection {connection['id']} failed")
            result = PushResult(success=False, error=str(e))

        result = result.model_copy(update={"provider": connection["provider"], "calendar_id": target})
        await repository.complete_sync_log(
            log_id,
            "completed" if result.success else "failed",
            events_pushed=1 if result.success else 0,
            changes_summary={
                "task_schedule_id": task_schedule_id,
                "calendar_id": target,
                "created": result.created,
            },
            error_message=result.error,
        )
        results.append(result)

    return results


async def delete_schedule_events(
    user_id: str,
    task_schedule_id: str,
    settings: Optional[Settings] = None,
) -> int:
    """Best-effort removal of every external event mirroring a schedule. Returns how many went."""
    deleted = 0
    for link in await repository.list_links_for_schedule(user_id, task_schedule_id):
        try:
            provider = get_provider(link["provider"], settings)
            if await provider.delete_task_from_calendar(
                link["calendar_connection_id"], link["calendar_id"], link["external_event_id"]
            ):
                deleted += 1
        except REAUTH_ERRORS as e:
            logger.warning(
                f"Could not delete event {link['external_event_id']} for schedule "
                f"{task_schedule_id}: {e}"
            )
    return deleted


async def sync_user(user_id: str, settings: Optional[Settings] = None) -> list[SyncResult]:
    """Pull every connection of a user; one failing connection does not stop the rest."""
    results = []
    for connection in await repository.list_connections_for_user(user_id):
        try:
            result = await pull_connection(connection["id"], settings=settings)
        except Exception as e:
            logger.error(f"Sync failed for {connection['provider']} connection {connection['id']}: {e}")
            continue
        if result is not None:
            results.append(result)
    return results
