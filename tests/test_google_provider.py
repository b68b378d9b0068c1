"""Tests for the Google Calendar provider."""

import json
from datetime import datetime, timezone
from types import SimpleNamespace
from urllib.parse import parse_qs, urlparse

import pytest

from conftest import insert_connection

import app.calendar.google as google_module
from app.calendar import repository
from app.calendar.google import GoogleCalendarProvider, to_external_event
from app.calendar.types import TaskInput
from app.errors import TransportError


class FakeHttpError(Exception):
    def __init__(self, status: int, message: str = "error"):
        super().__init__(message)
        self.resp = SimpleNamespace(status=status)


class FakeRequest:
    def __init__(self, result=None, error=None):
        self._result = result
        self._error = error

    def execute(self):
        if self._error:
            raise self._error
        return self._result


class FakeEvents:
    """events() resource: list pages are served by a callback on the params."""

    def __init__(self, list_handler):
        self.list_calls = []
        self.inserted = []
        self.updated = []
        self.deleted = []
        self._list_handler = list_handler

    def list(self, **params):
        self.list_calls.append(dict(params))
        return self._list_handler(params)

    def insert(self, calendarId, body):
        self.inserted.append((calendarId, body))
        return FakeRequest({"id": f"evt-{len(self.inserted)}", "etag": '"e1"', **body})

    def update(self, calendarId, eventId, body):
        self.updated.append((calendarId, eventId, body))
        return FakeRequest({"id": eventId, "etag": '"e2"', **body})

    def delete(self, calendarId, eventId):
        self.deleted.append((calendarId, eventId))
        return FakeRequest({})


class FakeService:
    def __init__(self, events: FakeEvents):
        self._events = events

    def events(self):
        return self._events


def _provider(monkeypatch, settings, events: FakeEvents) -> GoogleCalendarProvider:
    monkeypatch.setattr(google_module, "HttpError", FakeHttpError)
    provider = GoogleCalendarProvider(settings=settings)
    monkeypatch.setattr(provider, "_service", lambda access_token: FakeService(events))
    return provider


def _item(event_id: str, **extra) -> dict:
    return {
        "id": event_id,
        "summary": event_id,
        "start": {"dateTime": "2030-01-15T09:00:00Z"},
        "end": {"dateTime": "2030-01-15T10:00:00Z"},
        **extra,
    }


def test_auth_url_requests_offline_consent(settings):
    url = GoogleCalendarProvider(settings=settings).generate_auth_url(state="abc")
    params = parse_qs(urlparse(url).query)

    assert params["access_type"] == ["offline"]
    assert params["prompt"] == ["consent"]
    assert params["state"] == ["abc"]
    assert params["redirect_uri"] == ["http://localhost:3000/api/integrations/google/connect"]
    assert "https://www.googleapis.com/auth/calendar.events" in params["scope"][0]


def test_to_external_event_maps_status_and_properties():
    event = to_external_event(
        _item(
            "evt-1",
            status="cancelled",
            transparency="transparent",
            extendedProperties={"private": {"doer.task_id": "task-1"}},
        ),
        "primary",
    )

    assert event.cancelled is True
    assert event.is_busy is False
    assert event.has_doer_markers is True


@pytest.mark.asyncio
async def test_fetch_events_drains_pages(test_db, settings, monkeypatch):
    connection = await insert_connection(selected_calendar_ids=["primary"])

    def list_handler(params):
        if params.get("pageToken") == "p2":
            return FakeRequest({"items": [_item("evt-2")], "nextSyncToken": "sync-1"})
        return FakeRequest({"items": [_item("evt-1")], "nextPageToken": "p2"})

    events = FakeEvents(list_handler)
    provider = _provider(monkeypatch, settings, events)
    result = await provider.fetch_events(connection["id"], ["primary"])

    assert [event.id for event in result.events] == ["evt-1", "evt-2"]
    assert json.loads(result.next_sync_token) == {"primary": "sync-1"}
    assert result.is_full_sync is True
    assert events.list_calls[0]["singleEvents"] is True
    assert events.list_calls[0]["showDeleted"] is True
    assert "timeMin" in events.list_calls[0]


@pytest.mark.asyncio
async def test_gone_sync_token_falls_back_to_full_sync(test_db, settings, monkeypatch):
    """A 410 on the cursor yields a full sync with is_full_sync set."""
    connection = await insert_connection(selected_calendar_ids=["primary"], sync_token="old-token")

    def list_handler(params):
        if params.get("syncToken"):
            return FakeRequest(error=FakeHttpError(410, "Sync token is no longer valid"))
        return FakeRequest({"items": [_item("evt-1")], "nextSyncToken": "new-token"})

    events = FakeEvents(list_handler)
    provider = _provider(monkeypatch, settings, events)
    result = await provider.fetch_events(connection["id"], ["primary"], "old-token")

    assert result.is_full_sync is True
    assert [event.id for event in result.events] == ["evt-1"]
    assert json.loads(result.next_sync_token) == {"primary": "new-token"}
    assert events.list_calls[0]["syncToken"] == "old-token"
    assert "syncToken" not in events.list_calls[1]


@pytest.mark.asyncio
async def test_other_fetch_errors_abort(test_db, settings, monkeypatch):
    connection = await insert_connection(selected_calendar_ids=["primary"], sync_token="old-token")
    events = FakeEvents(lambda params: FakeRequest(error=FakeHttpError(500, "backend")))
    provider = _provider(monkeypatch, settings, events)

    with pytest.raises(TransportError) as exc_info:
        await provider.fetch_events(connection["id"], ["primary"], "old-token")
    assert exc_info.value.status_code == 500


@pytest.mark.asyncio
async def test_push_twice_updates_the_same_event(test_db, settings, monkeypatch):
    connection = await insert_connection(selected_calendar_ids=["primary"])
    events = FakeEvents(lambda params: FakeRequest({"items": []}))
    provider = _provider(monkeypatch, settings, events)
    task = TaskInput(
        task_id="task-1",
        task_schedule_id="sched-1",
        plan_id="plan-1",
        task_name="Write report",
        start=datetime(2030, 1, 15, 14, tzinfo=timezone.utc),
        end=datetime(2030, 1, 15, 15, tzinfo=timezone.utc),
    )

    first = await provider.push_task_to_calendar(connection["id"], "primary", task)
    second = await provider.push_task_to_calendar(connection["id"], "primary", task)

    assert first.success and first.created
    assert second.success and not second.created
    assert second.external_event_id == first.external_event_id
    assert second.calendar_event_id == first.calendar_event_id
    assert len(events.inserted) == 1
    assert len(events.updated) == 1

    body = events.inserted[0][1]
    assert body["extendedProperties"]["private"] == {
        "doer.task_id": "task-1",
        "doer.task_schedule_id": "sched-1",
        "doer.plan_id": "plan-1",
    }
    assert body["transparency"] == "opaque"


@pytest.mark.asyncio
async def test_push_to_another_calendar_moves_the_event(test_db, settings, monkeypatch):
    """Re-pushing after the target calendar changed leaves exactly one live event."""
    connection = await insert_connection(selected_calendar_ids=["primary", "work"])
    events = FakeEvents(lambda params: FakeRequest({"items": []}))
    provider = _provider(monkeypatch, settings, events)
    task = TaskInput(
        task_id="task-1",
        task_schedule_id="sched-1",
        task_name="Write report",
        start=datetime(2030, 1, 15, 14, tzinfo=timezone.utc),
        end=datetime(2030, 1, 15, 15, tzinfo=timezone.utc),
    )

    first = await provider.push_task_to_calendar(connection["id"], "primary", task)
    second = await provider.push_task_to_calendar(connection["id"], "work", task)

    assert first.success and second.success
    assert events.deleted == [("primary", first.external_event_id)]
    assert [calendar_id for calendar_id, _ in events.inserted] == ["primary", "work"]
    assert events.updated == []

    assert await repository.get_event(connection["id"], first.external_event_id, "primary") is None
    links = await repository.list_links_for_schedule(connection["user_id"], "sched-1")
    assert len(links) == 1
    assert links[0]["calendar_id"] == "work"
    assert links[0]["external_event_id"] == second.external_event_id

    third = await provider.push_task_to_calendar(connection["id"], "work", task)
    assert not third.created
    assert len(events.inserted) == 2


@pytest.mark.asyncio
async def test_incremental_fetch_after_full_sync(test_db, settings, monkeypatch):
    """Full sync yields a cursor; an unchanged incremental fetch returns nothing and keeps a cursor."""
    connection = await insert_connection(selected_calendar_ids=["primary"])

    def list_handler(params):
        if params.get("syncToken") == "sync-1":
            return FakeRequest({"items": [], "nextSyncToken": "sync-2"})
        return FakeRequest({"items": [_item("evt-1"), _item("evt-2")], "nextSyncToken": "sync-1"})

    provider = _provider(monkeypatch, settings, FakeEvents(list_handler))

    full = await provider.fetch_events(connection["id"], ["primary"])
    assert full.is_full_sync is True
    assert len(full.events) == 2
    assert full.next_sync_token is not None

    incremental = await provider.fetch_events(connection["id"], ["primary"], full.next_sync_token)
    assert incremental.is_full_sync is False
    assert incremental.events == []
    assert json.loads(incremental.next_sync_token) == {"primary": "sync-2"}


@pytest.mark.asyncio
async def test_fetch_calendars(test_db, settings, mock_google_api):
    connection = await insert_connection()
    provider = GoogleCalendarProvider(settings=settings)

    calendars = await provider.fetch_calendars(connection["id"])

    assert [(c.id, c.name, c.primary) for c in calendars] == [
        ("primary", "Primary Calendar", True),
        ("work@example.com", "Work", False),
    ]
    assert calendars[0].time_zone == "Europe/Berlin"
    assert calendars[1].access_role == "writer"
