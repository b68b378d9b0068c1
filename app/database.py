"""Database connection and schema management."""

import asyncio
import logging
from typing import Optional

import aiosqlite

from app.config import get_settings

logger = logging.getLogger(__name__)

# Global database connection
_db_connection: Optional[aiosqlite.Connection] = None
_db_lock = asyncio.Lock()


SCHEMA = """
-- One connection per (user, provider); tokens are stored encrypted
CREATE TABLE IF NOT EXISTS calendar_connections (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    provider TEXT NOT NULL CHECK (provider IN ('google', 'outlook', 'apple')),
    access_token_encrypted TEXT NOT NULL,
    refresh_token_encrypted TEXT NOT NULL,
    token_expires_at TEXT,
    sync_token TEXT,
    selected_calendar_ids TEXT NOT NULL DEFAULT '[]',
    auto_sync_enabled BOOLEAN DEFAULT FALSE,
    auto_push_enabled BOOLEAN DEFAULT FALSE,
    last_sync_at TEXT,
    consecutive_failures INTEGER DEFAULT 0,
    last_error TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(user_id, provider)
);

-- Materialized external events
CREATE TABLE IF NOT EXISTS calendar_events (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    calendar_connection_id TEXT NOT NULL REFERENCES calendar_connections(id) ON DELETE CASCADE,
    external_event_id TEXT NOT NULL,
    calendar_id TEXT NOT NULL,
    summary TEXT,
    description TEXT,
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    timezone TEXT,
    is_busy BOOLEAN DEFAULT TRUE,
    is_doer_created BOOLEAN DEFAULT FALSE,
    external_etag TEXT,
    metadata TEXT DEFAULT '{}',
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(calendar_connection_id, external_event_id, calendar_id)
);

-- Links between scheduled task occurrences and the events mirroring them
CREATE TABLE IF NOT EXISTS calendar_event_links (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    calendar_event_id TEXT NOT NULL REFERENCES calendar_events(id) ON DELETE CASCADE,
    task_id TEXT NOT NULL,
    task_schedule_id TEXT NOT NULL,
    plan_id TEXT,
    external_event_id TEXT NOT NULL,
    ai_confidence REAL,
    plan_name TEXT,
    task_name TEXT,
    metadata TEXT DEFAULT '{}',
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(calendar_event_id, task_schedule_id)
);

-- One row per pull/push/full_sync run
CREATE TABLE IF NOT EXISTS calendar_sync_logs (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    calendar_connection_id TEXT NOT NULL REFERENCES calendar_connections(id) ON DELETE CASCADE,
    sync_type TEXT NOT NULL CHECK (sync_type IN ('pull', 'push', 'full_sync')),
    status TEXT NOT NULL CHECK (status IN ('pending', 'in_progress', 'completed', 'failed')),
    changes_summary TEXT DEFAULT '{}',
    events_pulled INTEGER DEFAULT 0,
    events_pushed INTEGER DEFAULT 0,
    conflicts_detected INTEGER DEFAULT 0,
    plans_affected TEXT DEFAULT '[]',
    error_message TEXT,
    started_at TEXT,
    completed_at TEXT
);

-- Connection lifecycle audit trail
CREATE TABLE IF NOT EXISTS calendar_connection_events (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    calendar_connection_id TEXT REFERENCES calendar_connections(id) ON DELETE CASCADE,
    event_type TEXT NOT NULL,
    details TEXT DEFAULT '{}',
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Scheduled task occurrences (owned by the task subsystem)
CREATE TABLE IF NOT EXISTS task_schedule (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    task_id TEXT NOT NULL,
    plan_id TEXT,
    task_name TEXT,
    plan_name TEXT,
    ai_confidence REAL,
    date TEXT NOT NULL,
    start_time TEXT,
    end_time TEXT
);

-- Job locks for coordinating background jobs
CREATE TABLE IF NOT EXISTS job_locks (
    job_name TEXT PRIMARY KEY,
    locked_at TIMESTAMP NOT NULL,
    locked_by TEXT
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_calendar_connections_user ON calendar_connections(user_id);
CREATE INDEX IF NOT EXISTS idx_calendar_events_user_time ON calendar_events(user_id, start_time, end_time);
CREATE INDEX IF NOT EXISTS idx_calendar_events_external ON calendar_events(calendar_connection_id, external_event_id);
CREATE INDEX IF NOT EXISTS idx_calendar_event_links_schedule ON calendar_event_links(task_schedule_id);
CREATE INDEX IF NOT EXISTS idx_calendar_sync_logs_connection ON calendar_sync_logs(calendar_connection_id);
CREATE INDEX IF NOT EXISTS idx_task_schedule_user_date ON task_schedule(user_id, date);
"""


async def get_database() -> aiosqlite.Connection:
    """Get the database connection, creating it if necessary."""
    global _db_connection

    async with _db_lock:
        if _db_connection is None:
            settings = get_settings()
            _db_connection = await aiosqlite.connect(settings.database_path)
            _db_connection.row_factory = aiosqlite.Row
            await _db_connection.execute("PRAGMA foreign_keys = ON")
            await _db_connection.execute("PRAGMA journal_mode = WAL")
            await init_schema(_db_connection)
        return _db_connection


async def init_schema(db: aiosqlite.Connection) -> None:
    """Initialize database schema."""
    await db.executescript(SCHEMA)
    await db.commit()
    logger.info("Database schema initialized")


async def close_database() -> None:
    """Close the database connection."""
    global _db_connection

    async with _db_lock:
        if _db_connection is not None:
            await _db_connection.close()
            _db_connection = None
            logger.info("Database connection closed")
