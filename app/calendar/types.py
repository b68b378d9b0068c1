"""Shared calendar data shapes used by every provider adapter."""

from datetime import date, datetime, time, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

ProviderType = Literal["google", "outlook", "apple"]
SUPPORTED_PROVIDERS: tuple[str, ...] = ("google", "outlook", "apple")

# Markers embedded on events pushed by DOER
DOER_TASK_ID = "doer.task_id"
DOER_TASK_SCHEDULE_ID = "doer.task_schedule_id"
DOER_PLAN_ID = "doer.plan_id"
DOER_AI_CONFIDENCE = "doer.ai_confidence"
DOER_PLAN_NAME = "doer.plan_name"

PRIVATE_PROPERTY_KEYS = (DOER_TASK_ID, DOER_TASK_SCHEDULE_ID, DOER_PLAN_ID)
SHARED_PROPERTY_KEYS = (DOER_AI_CONFIDENCE, DOER_PLAN_NAME)


class Tokens(BaseModel):
    """OAuth tokens as returned by a provider. Never persisted as-is."""
    access_token: str
    refresh_token: Optional[str] = None
    expiry_date: Optional[int] = None  # epoch millis


class Calendar(BaseModel):
    """A calendar the connected account can read."""
    id: str
    name: str
    description: Optional[str] = None
    primary: bool = False
    access_role: Optional[str] = None
    color: Optional[str] = None
    time_zone: Optional[str] = None


class EventTime(BaseModel):
    """Either a precise instant (date_time) or an all-day marker (date)."""
    date_time: Optional[str] = None
    date: Optional[str] = None
    time_zone: Optional[str] = None


class ExtendedProperties(BaseModel):
    private: dict[str, str] = Field(default_factory=dict)
    shared: dict[str, str] = Field(default_factory=dict)


class ExternalEvent(BaseModel):
    """Provider-neutral event representation."""
    id: str
    calendar_id: str
    summary: Optional[str] = None
    description: Optional[str] = None
    start: Optional[EventTime] = None
    end: Optional[EventTime] = None
    transparency: Literal["opaque", "transparent"] = "opaque"
    extended_properties: ExtendedProperties = Field(default_factory=ExtendedProperties)
    etag: Optional[str] = None
    cancelled: bool = False
    raw: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_busy(self) -> bool:
        return self.transparency != "transparent"

    @property
    def has_doer_markers(self) -> bool:
        private = self.extended_properties.private
        return bool(private.get(DOER_TASK_ID) or private.get(DOER_PLAN_ID))


class FetchResult(BaseModel):
    events: list[ExternalEvent] = Field(default_factory=list)
    next_sync_token: Optional[str] = None
    is_full_sync: bool = False


class TaskInput(BaseModel):
    """One scheduled task occurrence to mirror onto a calendar."""
    task_id: str
    task_schedule_id: str
    plan_id: Optional[str] = None
    task_name: str
    plan_name: Optional[str] = None
    start: datetime
    end: datetime
    time_zone: str = "UTC"
    ai_confidence: Optional[float] = None


class PushResult(BaseModel):
    success: bool
    provider: Optional[str] = None
    calendar_id: Optional[str] = None
    external_event_id: Optional[str] = None
    calendar_event_id: Optional[str] = None
    etag: Optional[str] = None
    created: bool = False
    error: Optional[str] = None


class BusySlot(BaseModel):
    start: str
    end: str
    source: Literal["calendar_event"] = "calendar_event"
    metadata: dict[str, Any] = Field(default_factory=dict)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_iso(value: datetime) -> str:
    """Canonical storage format: second precision, Z suffix."""
    return to_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_datetime(value: str) -> datetime:
    """Parse an ISO 8601 instant (Z suffix and 7-digit fractions allowed)."""
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"

    # Graph returns 7 fractional digits; fromisoformat accepts at most 6 before 3.11
    if "." in text:
        head, _, tail = text.partition(".")
        digits = ""
        rest = tail
        while rest and rest[0].isdigit():
            digits, rest = digits + rest[0], rest[1:]
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}"

    return to_utc(datetime.fromisoformat(text))


def event_time_to_datetime(value: Optional[EventTime]) -> Optional[datetime]:
    """Resolve an EventTime to a UTC instant; date-only values become midnight UTC."""
    if value is None:
        return None
    if value.date_time:
        return parse_datetime(value.date_time)
    if value.date:
        return datetime.combine(date.fromisoformat(value.date), time.min, tzinfo=timezone.utc)
    return None
