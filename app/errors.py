"""Error taxonomy for the calendar sync core."""

from typing import Optional


class CalendarSyncError(Exception):
    """Base class for calendar sync errors."""


class ConfigurationError(CalendarSyncError):
    """A required secret or provider credential is missing."""


class OAuthExchangeError(CalendarSyncError):
    """The provider rejected an authorization code."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class OAuthRefreshError(CalendarSyncError):
    """The provider rejected a refresh token; the connection needs re-authorization."""

    def __init__(
        self,
        message: str,
        connection_id: Optional[str] = None,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message)
        self.connection_id = connection_id
        self.status_code = status_code
        self.body = body


class SyncTokenInvalidError(CalendarSyncError):
    """The provider no longer accepts a stored sync cursor."""

    def __init__(self, calendar_id: str, message: str = "Sync token is no longer valid"):
        super().__init__(f"{message} (calendar {calendar_id})")
        self.calendar_id = calendar_id


class TransportError(CalendarSyncError):
    """A provider call timed out or returned an unclassified non-2xx response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedTokenError(CalendarSyncError):
    """A stored token blob could not be decrypted."""


class NotFoundError(CalendarSyncError):
    """A connection, schedule or event row is missing."""


class UnsupportedProviderError(CalendarSyncError, ValueError):
    """A provider name outside the supported set."""
