"""Tests for the background sync jobs."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from conftest import insert_connection

import app.jobs.sync_job as sync_job
from app.calendar.connection_events import list_connection_events
from app.calendar.types import utc_iso, utcnow
from app.errors import OAuthRefreshError, TransportError


@pytest.mark.asyncio
async def test_job_lock_is_exclusive(test_db):
    assert await sync_job.acquire_job_lock("periodic_sync") is True
    assert await sync_job.acquire_job_lock("periodic_sync") is False
    # Other jobs are independent
    assert await sync_job.acquire_job_lock("token_refresh") is True

    await sync_job.release_job_lock("periodic_sync")
    assert await sync_job.acquire_job_lock("periodic_sync") is True


@pytest.mark.asyncio
async def test_stale_job_lock_is_taken_over(test_db):
    stale = utc_iso(utcnow() - timedelta(hours=2))
    await test_db.execute(
        "INSERT INTO job_locks (job_name, locked_at, locked_by) VALUES (?, ?, ?)",
        ("periodic_sync", stale, "crashed-worker")
    )
    await test_db.commit()

    assert await sync_job.acquire_job_lock("periodic_sync") is True


@pytest.mark.asyncio
async def test_periodic_sync_pulls_connections_with_calendars(test_db):
    selected = await insert_connection(provider="google", selected_calendar_ids=["primary"])
    await insert_connection(provider="outlook", selected_calendar_ids=[])
    await insert_connection(provider="apple", selected_calendar_ids=["cal"], auto_sync_enabled=False)
    with patch("app.sync.engine.pull_connection", new_callable=AsyncMock) as mock_pull:
        await sync_job.run_periodic_sync()

    mock_pull.assert_awaited_once_with(selected["id"])
    # Lock is released afterwards
    assert await sync_job.acquire_job_lock("periodic_sync") is True


@pytest.mark.asyncio
async def test_periodic_sync_continues_after_errors(test_db):
    first = await insert_connection(provider="google", selected_calendar_ids=["primary"])
    second = await insert_connection(provider="outlook", selected_calendar_ids=["cal"])
    with patch(
        "app.sync.engine.pull_connection",
        new_callable=AsyncMock,
        side_effect=TransportError("provider down"),
    ) as mock_pull:
        await sync_job.run_periodic_sync()

    pulled = sorted(call.args[0] for call in mock_pull.await_args_list)
    assert pulled == sorted([first["id"], second["id"]])


@pytest.mark.asyncio
async def test_periodic_sync_skips_when_locked(test_db):
    await insert_connection(selected_calendar_ids=["primary"])
    await sync_job.acquire_job_lock("periodic_sync")

    with patch("app.sync.engine.pull_connection", new_callable=AsyncMock) as mock_pull:
        await sync_job.run_periodic_sync()

    mock_pull.assert_not_awaited()


class FakeRefreshProvider:
    def __init__(self, error=None):
        self.refreshed = []
        self._error = error

    async def refresh_access_token(self, connection_id, force=False):
        self.refreshed.append((connection_id, force))
        if self._error:
            raise self._error


@pytest.mark.asyncio
async def test_refresh_expiring_tokens_only_touches_expiring(test_db, monkeypatch):
    soon = utc_iso(utcnow() + timedelta(minutes=20))
    expiring = await insert_connection(provider="google", token_expires_at=soon)
    await insert_connection(provider="outlook", token_expires_at="2099-01-01T00:00:00Z")
    fake = FakeRefreshProvider()
    monkeypatch.setattr(sync_job, "get_provider", lambda provider: fake)

    await sync_job.refresh_expiring_tokens()

    assert fake.refreshed == [(expiring["id"], False)]


@pytest.mark.asyncio
async def test_revoked_refresh_token_is_recorded(test_db, monkeypatch):
    soon = utc_iso(utcnow() + timedelta(minutes=5))
    connection = await insert_connection(token_expires_at=soon)
    fake = FakeRefreshProvider(OAuthRefreshError("invalid_grant", connection_id=connection["id"], status_code=400))
    monkeypatch.setattr(sync_job, "get_provider", lambda provider: fake)

    await sync_job.refresh_expiring_tokens()

    events = await list_connection_events(connection["id"])
    assert [e["event_type"] for e in events] == ["token_expired"]
    assert events[0]["details"] == {"provider": "google", "status_code": 400}


@pytest.mark.asyncio
async def test_transient_refresh_failure_is_not_recorded(test_db, monkeypatch):
    soon = utc_iso(utcnow() + timedelta(minutes=5))
    connection = await insert_connection(token_expires_at=soon)
    monkeypatch.setattr(sync_job, "get_provider", lambda provider: FakeRefreshProvider(TransportError("timeout")))

    await sync_job.refresh_expiring_tokens()

    assert await list_connection_events(connection["id"]) == []
    assert await sync_job.acquire_job_lock("token_refresh") is True
