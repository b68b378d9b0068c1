"""Pytest configuration and fixtures."""

import os

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

# Set test environment variables before imports
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["CALENDAR_TOKEN_ENCRYPTION_KEY"] = "test-encryption-secret-0123456789"
os.environ["APP_URL"] = "http://localhost:3000"
os.environ["APP_ENV"] = "development"
os.environ["SESSION_SECRET_KEY"] = "test-session-secret"
for _provider in ("GOOGLE", "OUTLOOK", "APPLE"):
    os.environ[f"{_provider}_CLIENT_ID"] = f"{_provider.lower()}-client-id"
    os.environ[f"{_provider}_CLIENT_SECRET"] = f"{_provider.lower()}-client-secret"

from app.config import Settings  # noqa: E402

TEST_SECRET = os.environ["CALENDAR_TOKEN_ENCRYPTION_KEY"]


@pytest.fixture
def settings() -> Settings:
    """Settings built from explicit values, independent of the environment."""
    return Settings(
        _env_file=None,
        database_path=":memory:",
        calendar_token_encryption_key=TEST_SECRET,
        app_url="http://localhost:3000",
        app_env="development",
        google_client_id="google-client-id",
        google_client_secret="google-client-secret",
        outlook_client_id="outlook-client-id",
        outlook_client_secret="outlook-client-secret",
        apple_client_id="apple-client-id",
        apple_client_secret="apple-client-secret",
    )


@pytest_asyncio.fixture
async def test_db():
    """Create a test database."""
    from app.database import get_database, close_database, init_schema
    import app.database as db_module

    # Reset the global connection
    db_module._db_connection = None

    # Create in-memory database
    db = await get_database()
    await init_schema(db)

    yield db

    await close_database()
    db_module._db_connection = None


@pytest.fixture
def client(monkeypatch):
    """Create a test client for the FastAPI app."""
    import app.database as db_module
    from app.main import app

    # Background jobs are exercised directly in their own tests
    monkeypatch.setattr("app.jobs.scheduler.setup_scheduler", lambda: None)
    db_module._db_connection = None

    with TestClient(app) as c:
        yield c

    db_module._db_connection = None


@pytest.fixture
def auth_cookies():
    """Session cookie for user-1."""
    from app.auth.session import create_session_token

    return {"session": create_session_token("user-1")}


@pytest.fixture
def mock_google_api(mocker):
    """Mock the Google Calendar API client."""
    mock_service = mocker.MagicMock()

    mock_service.calendarList().list().execute.return_value = {
        "items": [
            {
                "id": "primary",
                "summary": "Primary Calendar",
                "primary": True,
                "accessRole": "owner",
                "timeZone": "Europe/Berlin",
            },
            {
                "id": "work@example.com",
                "summary": "Work Calendar",
                "summaryOverride": "Work",
                "accessRole": "writer",
            },
        ]
    }

    mocker.patch(
        "app.calendar.google.build",
        return_value=mock_service,
    )

    return mock_service

async def insert_connection(
    user_id: str = "user-1",
    provider: str = "google",
    access_token: str = "access-token",
    refresh_token: str = "refresh-token",
    token_expires_at: str | None = "2099-01-01T00:00:00Z",
    selected_calendar_ids: list[str] | None = None,
    sync_token: str | None = None,
    auto_sync_enabled: bool = True,
    auto_push_enabled: bool = False,
) -> dict:
    """Store a connection with encrypted tokens and return the row."""
    from app.calendar import repository
    from app.database import get_database
    from app.encryption import TokenVault

    vault = TokenVault(TEST_SECRET)
    connection, _ = await repository.upsert_connection(
        user_id=user_id,
        provider=provider,
        access_token_encrypted=vault.encrypt(access_token),
        refresh_token_encrypted=vault.encrypt(refresh_token),
        token_expires_at=token_expires_at,
    )
    await repository.update_connection_settings(
        connection["id"],
        selected_calendar_ids=selected_calendar_ids or [],
        auto_sync_enabled=auto_sync_enabled,
        auto_push_enabled=auto_push_enabled,
    )
    if sync_token is not None:
        db = await get_database()
        await db.execute(
            "UPDATE calendar_connections SET sync_token = ? WHERE id = ?",
            (sync_token, connection["id"])
        )
        await db.commit()
    return await repository.get_connection(connection["id"])


async def insert_schedule(
    schedule_id: str = "sched-1",
    user_id: str = "user-1",
    task_id: str = "task-1",
    plan_id: str | None = "plan-1",
    date: str = "2030-01-15",
    start_time: str | None = "14:00",
    end_time: str | None = "15:00",
    task_name: str = "Write report",
    plan_name: str | None = "Quarterly goals",
) -> str:
    from app.database import get_database

    db = await get_database()
    cursor = await db.execute(
        """INSERT INTO task_schedule
           (id, user_id, task_id, plan_id, task_name, plan_name, ai_confidence, date, start_time, end_time)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
           RETURNING id""",
        (schedule_id, user_id, task_id, plan_id, task_name, plan_name, 0.8, date, start_time, end_time),
    )
    row = await cursor.fetchone()
    await db.commit()
    return row["id"]
