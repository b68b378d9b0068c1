"""Application configuration management."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_path: str = "/data/calendar-sync.db"

    # Token encryption secret (PBKDF2 input, required for any token I/O)
    calendar_token_encryption_key: Optional[str] = None

    # Server
    app_url: Optional[str] = None
    app_env: Optional[str] = None  # unset is treated as production
    deployment_url: Optional[str] = None
    production_url: str = "https://usedoer.com"
    log_level: str = "info"

    # Session (issued by the application's own auth layer)
    session_secret_key: str = "change-me"
    session_expire_days: int = 7

    # Google
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    google_redirect_uri: Optional[str] = None

    # Outlook / Microsoft Graph
    outlook_client_id: Optional[str] = None
    outlook_client_secret: Optional[str] = None
    outlook_redirect_uri: Optional[str] = None

    # Apple / CalDAV
    apple_client_id: Optional[str] = None
    apple_client_secret: Optional[str] = None
    apple_redirect_uri: Optional[str] = None
    apple_caldav_url: str = "https://caldav.icloud.com"

    # Rate limiting
    rate_limit_per_minute: int = 60

    # Sync settings
    sync_interval_minutes: int = 15
    token_refresh_minutes: int = 30
    token_refresh_margin_minutes: int = 5
    sync_window_days: int = 30
    provider_timeout_seconds: float = 30.0

    # Retention
    event_retention_days: int = 30
    audit_log_retention_days: int = 90

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
