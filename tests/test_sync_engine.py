"""Tests for pull/push orchestration."""

import json
from typing import Optional

import pytest

from conftest import insert_connection, insert_schedule

import app.sync.engine as engine
from app.calendar import repository
from app.calendar.google import GoogleCalendarProvider
from app.calendar.types import (
    EventTime,
    ExtendedProperties,
    ExternalEvent,
    FetchResult,
    PushResult,
)
from app.database import get_database
from app.errors import NotFoundError, OAuthRefreshError, TransportError


def _event(event_id: str, start: str = "2030-01-15T14:00:00Z", end: str = "2030-01-15T15:00:00Z", **extra) -> ExternalEvent:
    return ExternalEvent(
        id=event_id,
        calendar_id="primary",
        summary=event_id,
        start=EventTime(date_time=start, time_zone="UTC"),
        end=EventTime(date_time=end, time_zone="UTC"),
        **extra,
    )


def _pull_provider(settings, monkeypatch, *results: FetchResult) -> GoogleCalendarProvider:
    """Real provider whose fetch_events replays canned results."""
    provider = GoogleCalendarProvider(settings=settings)
    queue = list(results)
    calls = []

    async def fake_fetch_events(connection_id, calendar_ids, sync_token=None, time_min=None, time_max=None):
        calls.append(sync_token)
        return queue.pop(0)

    monkeypatch.setattr(provider, "fetch_events", fake_fetch_events)
    provider.fetch_calls = calls
    return provider


async def _count(table: str) -> int:
    db = await get_database()
    cursor = await db.execute(f"SELECT COUNT(*) AS n FROM {table}")
    return (await cursor.fetchone())["n"]


@pytest.mark.asyncio
async def test_pull_twice_stores_one_row_per_event(test_db, settings, monkeypatch):
    connection = await insert_connection(selected_calendar_ids=["primary"])
    provider = _pull_provider(
        settings, monkeypatch,
        FetchResult(events=[_event("evt-1")], next_sync_token='{"primary":"s1"}', is_full_sync=True),
        FetchResult(events=[_event("evt-1", end="2030-01-15T16:00:00Z")], next_sync_token='{"primary":"s2"}'),
    )

    first = await engine.pull_connection(connection["id"], provider=provider)
    second = await engine.pull_connection(connection["id"], provider=provider)

    assert first.events_pulled == 1 and first.is_full_sync
    assert second.events_pulled == 1 and not second.is_full_sync
    assert await _count("calendar_events") == 1

    stored = await repository.get_event(connection["id"], "evt-1", "primary")
    assert stored["end_time"] == "2030-01-15T16:00:00Z"
    assert stored["timezone"] == "UTC"

    updated = await repository.get_connection(connection["id"])
    assert updated["sync_token"] == '{"primary":"s2"}'
    assert updated["last_sync_at"] is not None
    assert provider.fetch_calls == [None, '{"primary":"s1"}']


@pytest.mark.asyncio
async def test_pull_writes_sync_logs(test_db, settings, monkeypatch):
    connection = await insert_connection(selected_calendar_ids=["primary"])
    provider = _pull_provider(
        settings, monkeypatch,
        FetchResult(events=[_event("evt-1")], next_sync_token="t1", is_full_sync=True),
    )

    await engine.pull_connection(connection["id"], provider=provider)

    log = await repository.get_latest_sync_log(connection["id"])
    assert log["sync_type"] == "full_sync"
    assert log["status"] == "completed"
    assert log["events_pulled"] == 1
    assert log["completed_at"] is not None


@pytest.mark.asyncio
async def test_cancelled_events_are_deleted(test_db, settings, monkeypatch):
    connection = await insert_connection(selected_calendar_ids=["primary"])
    provider = _pull_provider(
        settings, monkeypatch,
        FetchResult(events=[_event("evt-1"), _event("evt-2")], next_sync_token="t1"),
        FetchResult(events=[ExternalEvent(id="evt-1", calendar_id="primary", cancelled=True)], next_sync_token="t2"),
    )

    await engine.pull_connection(connection["id"], provider=provider)
    result = await engine.pull_connection(connection["id"], provider=provider)

    assert result.events_deleted == 1
    assert await repository.get_event(connection["id"], "evt-1", "primary") is None
    assert await repository.get_event(connection["id"], "evt-2", "primary") is not None


@pytest.mark.asyncio
async def test_series_tombstone_replaces_stored_occurrences(test_db, settings, monkeypatch):
    connection = await insert_connection(selected_calendar_ids=["primary"])
    series = {"series_id": "standup"}
    provider = _pull_provider(
        settings, monkeypatch,
        FetchResult(events=[
            _event("standup_20300115T090000Z", "2030-01-15T09:00:00Z", "2030-01-15T09:15:00Z", raw=series),
            _event("standup_20300116T090000Z", "2030-01-16T09:00:00Z", "2030-01-16T09:15:00Z", raw=series),
            _event("lunch"),
        ], next_sync_token="t1"),
        FetchResult(events=[
            ExternalEvent(id="standup", calendar_id="primary", cancelled=True),
            _event("standup_20300116T100000Z", "2030-01-16T10:00:00Z", "2030-01-16T10:15:00Z", raw=series),
        ], next_sync_token="t2"),
    )

    await engine.pull_connection(connection["id"], provider=provider)
    result = await engine.pull_connection(connection["id"], provider=provider)

    assert result.events_deleted == 2
    assert result.events_pulled == 1
    assert await repository.get_event(connection["id"], "standup_20300115T090000Z", "primary") is None
    assert await repository.get_event(connection["id"], "standup_20300116T100000Z", "primary") is not None
    assert await repository.get_event(connection["id"], "lunch", "primary") is not None


@pytest.mark.asyncio
async def test_failed_pull_keeps_old_cursor(test_db, settings, monkeypatch):
    """The cursor never moves past events that were not stored."""
    connection = await insert_connection(selected_calendar_ids=["primary"], sync_token="old-cursor")
    provider = _pull_provider(
        settings, monkeypatch,
        FetchResult(events=[_event("evt-1")], next_sync_token="new-cursor"),
    )

    async def failing_upsert(**kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(repository, "upsert_event", failing_upsert)

    with pytest.raises(RuntimeError):
        await engine.pull_connection(connection["id"], provider=provider)

    stored = await repository.get_connection(connection["id"])
    assert stored["sync_token"] == "old-cursor"
    assert stored["consecutive_failures"] == 1
    assert stored["last_error"] == "disk full"

    log = await repository.get_latest_sync_log(connection["id"])
    assert log["sync_type"] == "pull"
    assert log["status"] == "failed"
    assert log["error_message"] == "disk full"


@pytest.mark.asyncio
async def test_pull_without_selected_calendars_does_nothing(test_db, settings, monkeypatch):
    connection = await insert_connection(selected_calendar_ids=[])
    provider = _pull_provider(settings, monkeypatch)

    result = await engine.pull_connection(connection["id"], provider=provider)

    assert result.events_pulled == 0
    assert provider.fetch_calls == []
    assert await repository.get_latest_sync_log(connection["id"]) is None


@pytest.mark.asyncio
async def test_concurrent_pull_is_skipped(test_db, settings, monkeypatch):
    connection = await insert_connection(selected_calendar_ids=["primary"])
    provider = _pull_provider(settings, monkeypatch)

    lock = await engine._get_connection_lock(connection["id"])
    async with lock:
        assert await engine.pull_connection(connection["id"], provider=provider) is None
    assert provider.fetch_calls == []


@pytest.mark.asyncio
async def test_pull_missing_connection_raises(test_db):
    with pytest.raises(NotFoundError):
        await engine.pull_connection("no-such-connection")


@pytest.mark.asyncio
async def test_doer_events_are_not_conflicts_with_their_own_plan(test_db, settings, monkeypatch):
    """An event carrying the task marker does not conflict with the plan it came from."""
    connection = await insert_connection(selected_calendar_ids=["primary"])
    await insert_schedule(plan_id="plan-1", date="2030-01-15", start_time="14:00", end_time="15:00")

    doer_event = _event(
        "doer-evt",
        extended_properties=ExtendedProperties(private={"doer.task_id": "task-1", "doer.plan_id": "plan-1"}),
    )
    provider = _pull_provider(
        settings, monkeypatch,
        FetchResult(events=[doer_event], next_sync_token="t1"),
    )

    result = await engine.pull_connection(connection["id"], provider=provider)

    assert result.conflicts_detected == 0
    assert result.plans_affected == []
    assert result.busy_slots[0].metadata["is_doer_created"] is True
    stored = await repository.get_event(connection["id"], "doer-evt", "primary")
    assert stored["is_doer_created"] is True


@pytest.mark.asyncio
async def test_foreign_busy_event_conflicts_with_plan(test_db, settings, monkeypatch):
    connection = await insert_connection(selected_calendar_ids=["primary"])
    await insert_schedule(plan_id="plan-1", date="2030-01-15", start_time="14:00", end_time="15:00")

    provider = _pull_provider(
        settings, monkeypatch,
        FetchResult(events=[
            _event("meeting", start="2030-01-15T14:30:00Z", end="2030-01-15T15:30:00Z"),
            _event("free-time", transparency="transparent"),
            _event("later", start="2030-01-15T16:00:00Z", end="2030-01-15T17:00:00Z"),
        ], next_sync_token="t1"),
    )

    result = await engine.pull_connection(connection["id"], provider=provider)

    assert result.events_pulled == 3
    assert result.conflicts_detected == 1
    assert result.plans_affected == ["plan-1"]
    assert [slot.metadata["event_id"] for slot in result.busy_slots] == ["meeting", "later"]

    log = await repository.get_latest_sync_log(connection["id"])
    assert log["conflicts_detected"] == 1
    assert json.loads(log["plans_affected"]) == ["plan-1"]


@pytest.mark.asyncio
async def test_linked_event_without_markers_counts_as_doer(test_db, settings, monkeypatch):
    connection = await insert_connection(selected_calendar_ids=["primary"])
    await insert_schedule(plan_id="plan-1", date="2030-01-15", start_time="14:00", end_time="15:00")
    event_id = await repository.upsert_event(
        connection_id=connection["id"],
        user_id="user-1",
        external_event_id="pushed-evt",
        calendar_id="primary",
        start_time="2030-01-15T14:00:00Z",
        end_time="2030-01-15T15:00:00Z",
        is_doer_created=True,
    )
    await repository.upsert_event_link(
        user_id="user-1",
        calendar_event_id=event_id,
        task_id="task-1",
        task_schedule_id="sched-1",
        external_event_id="pushed-evt",
        plan_id="plan-1",
    )

    provider = _pull_provider(
        settings, monkeypatch,
        FetchResult(events=[_event("pushed-evt")], next_sync_token="t1"),
    )
    result = await engine.pull_connection(connection["id"], provider=provider)

    assert result.conflicts_detected == 0


class StubPushProvider:
    """Provider stand-in recording pushes and deletes."""

    default_calendar_id = "primary"

    def __init__(self, error: Optional[Exception] = None):
        self.pushes = []
        self.deletes = []
        self._error = error

    async def push_task_to_calendar(self, connection_id, calendar_id, task):
        if self._error:
            raise self._error
        self.pushes.append((connection_id, calendar_id, task))
        return PushResult(success=True, external_event_id="evt-1", created=True)

    async def delete_task_from_calendar(self, connection_id, calendar_id, external_event_id):
        if self._error:
            raise self._error
        self.deletes.append((connection_id, calendar_id, external_event_id))
        return True


@pytest.mark.asyncio
async def test_push_schedule_targets_auto_push_connections(test_db, monkeypatch):
    google = await insert_connection(provider="google", selected_calendar_ids=["work", "home"], auto_push_enabled=True)
    await insert_connection(provider="outlook", auto_push_enabled=False)
    await insert_schedule()
    stub = StubPushProvider()
    monkeypatch.setattr(engine, "get_provider", lambda provider, settings=None: stub)

    results = await engine.push_schedule("user-1", "sched-1")

    assert [(r.success, r.provider, r.calendar_id) for r in results] == [(True, "google", "work")]
    connection_id, calendar_id, task = stub.pushes[0]
    assert connection_id == google["id"]
    assert task.task_schedule_id == "sched-1"
    assert task.plan_id == "plan-1"
    assert task.start.isoformat() == "2030-01-15T14:00:00+00:00"
    assert task.end.isoformat() == "2030-01-15T15:00:00+00:00"

    log = await repository.get_latest_sync_log(google["id"])
    assert log["sync_type"] == "push"
    assert log["status"] == "completed"
    assert log["events_pushed"] == 1


@pytest.mark.asyncio
async def test_push_schedule_explicit_provider_and_calendar(test_db, monkeypatch):
    await insert_connection(provider="google", selected_calendar_ids=["work", "home"])
    await insert_schedule()
    stub = StubPushProvider()
    monkeypatch.setattr(engine, "get_provider", lambda provider, settings=None: stub)

    results = await engine.push_schedule("user-1", "sched-1", providers=["google"], calendar_id="home")
    assert results[0].calendar_id == "home"

    # Calendars the user did not select are ignored
    results = await engine.push_schedule("user-1", "sched-1", providers=["google"], calendar_id="someone-else")
    assert results[0].calendar_id == "work"


@pytest.mark.asyncio
async def test_push_schedule_falls_back_to_default_calendar(test_db, monkeypatch):
    await insert_connection(provider="google", selected_calendar_ids=[], auto_push_enabled=True)
    await insert_schedule()
    monkeypatch.setattr(engine, "get_provider", lambda provider, settings=None: StubPushProvider())

    results = await engine.push_schedule("user-1", "sched-1")
    assert results[0].calendar_id == "primary"


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [OAuthRefreshError("revoked", status_code=400), TransportError("down")])
async def test_push_schedule_reports_failures(test_db, monkeypatch, error):
    connection = await insert_connection(selected_calendar_ids=["primary"], auto_push_enabled=True)
    await insert_schedule()
    monkeypatch.setattr(engine, "get_provider", lambda provider, settings=None: StubPushProvider(error))

    results = await engine.push_schedule("user-1", "sched-1")

    assert results[0].success is False
    assert results[0].error == str(error)
    log = await repository.get_latest_sync_log(connection["id"])
    assert log["status"] == "failed"


@pytest.mark.asyncio
async def test_push_schedule_of_another_user_is_not_found(test_db):
    await insert_schedule(user_id="user-2")
    with pytest.raises(NotFoundError):
        await engine.push_schedule("user-1", "sched-1")


@pytest.mark.asyncio
async def test_delete_schedule_events_uses_links(test_db, monkeypatch):
    connection = await insert_connection(selected_calendar_ids=["primary"])
    event_id = await repository.upsert_event(
        connection_id=connection["id"],
        user_id="user-1",
        external_event_id="evt-1",
        calendar_id="primary",
        start_time="2030-01-15T14:00:00Z",
        end_time="2030-01-15T15:00:00Z",
        is_doer_created=True,
    )
    await repository.upsert_event_link(
        user_id="user-1",
        calendar_event_id=event_id,
        task_id="task-1",
        task_schedule_id="sched-1",
        external_event_id="evt-1",
    )
    stub = StubPushProvider()
    monkeypatch.setattr(engine, "get_provider", lambda provider, settings=None: stub)

    assert await engine.delete_schedule_events("user-1", "sched-1") == 1
    assert stub.deletes == [(connection["id"], "primary", "evt-1")]


@pytest.mark.asyncio
async def test_delete_schedule_events_swallows_reauth_errors(test_db, monkeypatch):
    connection = await insert_connection(selected_calendar_ids=["primary"])
    event_id = await repository.upsert_event(
        connection_id=connection["id"],
        user_id="user-1",
        external_event_id="evt-1",
        calendar_id="primary",
        start_time="2030-01-15T14:00:00Z",
        end_time="2030-01-15T15:00:00Z",
    )
    await repository.upsert_event_link(
        user_id="user-1",
        calendar_event_id=event_id,
        task_id="task-1",
        task_schedule_id="sched-1",
        external_event_id="evt-1",
    )
    monkeypatch.setattr(
        engine, "get_provider",
        lambda provider, settings=None: StubPushProvider(OAuthRefreshError("revoked")),
    )

    assert await engine.delete_schedule_events("user-1", "sched-1") == 0


@pytest.mark.asyncio
async def test_sync_user_continues_after_a_failing_connection(test_db, monkeypatch):
    google = await insert_connection(provider="google", selected_calendar_ids=["primary"])
    outlook = await insert_connection(provider="outlook", selected_calendar_ids=["cal"])
    pulled = []

    async def fake_pull(connection_id, settings=None):
        if connection_id == google["id"]:
            raise TransportError("google down")
        pulled.append(connection_id)
        return engine.SyncResult(connection_id=connection_id)

    monkeypatch.setattr(engine, "pull_connection", fake_pull)

    results = await engine.sync_user("user-1")

    assert [r.connection_id for r in results] == [outlook["id"]]
    assert pulled == [outlook["id"]]
