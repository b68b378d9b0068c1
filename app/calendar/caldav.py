"""CalDAV access on top of the caldav client library, plus iCalendar helpers."""

import asyncio
import logging
import re
from datetime import date, datetime, timedelta
from typing import Any, Callable, Optional
from urllib.parse import quote, unquote, urljoin

from caldav import DAVClient
from caldav.elements import cdav, dav, ical
from caldav.lib.error import AuthorizationError, DAVError
from caldav.lib.error import NotFoundError as DAVNotFoundError
from icalendar import Calendar as ICalendar
from icalendar import Event as IEvent

from app.calendar.types import (
    PRIVATE_PROPERTY_KEYS,
    SHARED_PROPERTY_KEYS,
    EventTime,
    ExtendedProperties,
    ExternalEvent,
    to_utc,
    utc_iso,
    utcnow,
)
from app.errors import NotFoundError, TransportError

logger = logging.getLogger(__name__)

PRODID = "-//DOER//DOER Calendar Integration//EN"
X_PROPERTY_PREFIX = "X-DOER-"

RECURRENCE_PROPERTIES = ("RRULE", "RDATE", "EXRULE")


def resource_name(href: str) -> str:
    """Event id for a resource: its basename without the .ics suffix."""
    name = unquote(href.rstrip("/").rsplit("/", 1)[-1])
    return name[:-4] if name.lower().endswith(".ics") else name


def resource_url(calendar_url: str, name: str) -> str:
    base = calendar_url if calendar_url.endswith("/") else f"{calendar_url}/"
    return urljoin(base, f"{quote(name, safe='')}.ics")


def dav_status(error: DAVError) -> Optional[int]:
    """HTTP status carried by a caldav error, when it has one."""
    if isinstance(error, AuthorizationError):
        return 401
    # caldav stores "<status> <reason>" in whichever field the raise site filled
    for text in (getattr(error, "reason", None), getattr(error, "url", None)):
        match = re.match(r"\s*([1-5]\d\d)\b", str(text or ""))
        if match:
            return int(match.group(1))
    return None


# ---------------------------------------------------------------------------
# iCalendar helpers
# ---------------------------------------------------------------------------


def _x_property_name(key: str) -> str:
    """doer.task_id -> X-DOER-TASK-ID"""
    short = key.split(".", 1)[-1]
    return X_PROPERTY_PREFIX + short.upper().replace("_", "-")


_X_PROPERTY_KEYS = {_x_property_name(key): key for key in PRIVATE_PROPERTY_KEYS + SHARED_PROPERTY_KEYS}


def build_ics(
    uid: str,
    summary: str,
    start: datetime,
    end: datetime,
    description: Optional[str] = None,
    properties: Optional[ExtendedProperties] = None,
) -> bytes:
    """Serialize a single VEVENT calendar object."""
    cal = ICalendar()
    cal.add("prodid", PRODID)
    cal.add("version", "2.0")
    cal.add("calscale", "GREGORIAN")

    event = IEvent()
    event.add("uid", uid)
    event.add("dtstamp", utcnow().replace(microsecond=0))
    event.add("dtstart", to_utc(start).replace(microsecond=0))
    event.add("dtend", to_utc(end).replace(microsecond=0))
    event.add("summary", summary)
    if description:
        event.add("description", description)
    event.add("status", "CONFIRMED")
    event.add("sequence", 0)
    event.add("transp", "OPAQUE")

    if properties:
        for key, value in {**properties.private, **properties.shared}.items():
            event.add(_x_property_name(key), value)

    cal.add_component(event)
    return cal.to_ical()


def _event_time(value, tzid: Optional[str] = None) -> Optional[EventTime]:
    if isinstance(value, datetime):
        label = tzid or ("UTC" if value.tzinfo is not None else None)
        return EventTime(date_time=utc_iso(value), time_zone=label)
    if isinstance(value, date):
        return EventTime(date=value.isoformat())
    return None


def _first(prop):
    # Duplicated properties come back from icalendar as a list
    return prop[0] if isinstance(prop, list) else prop


def _ical_event_time(prop) -> Optional[EventTime]:
    prop = _first(prop)
    if prop is None:
        return None
    return _event_time(prop.dt, prop.params.get("TZID"))


def _recurrence_suffix(vevent) -> Optional[str]:
    prop = _first(vevent.get("RECURRENCE-ID"))
    if prop is None:
        return None
    value = prop.dt
    if isinstance(value, datetime):
        return to_utc(value).strftime("%Y%m%dT%H%M%SZ")
    return value.strftime("%Y%m%d")


def _load_calendar(ics: str, event_id: str) -> Optional[ICalendar]:
    try:
        return ICalendar.from_ical(ics)
    except ValueError as e:
        logger.warning(f"Skipping unparseable calendar object {event_id}: {e}")
        return None


def is_recurring(ics: str) -> bool:
    try:
        cal = ICalendar.from_ical(ics)
    except ValueError:
        return False
    return any(
        vevent.get(name) is not None
        for vevent in cal.walk("VEVENT")
        for name in RECURRENCE_PROPERTIES
    )


def _vevent_to_event(vevent, event_id: str, calendar_id: str, etag: Optional[str], raw: dict) -> ExternalEvent:
    start = _ical_event_time(vevent.get("DTSTART"))
    end = _ical_event_time(vevent.get("DTEND"))
    if end is None and start is not None:
        start_value = _first(vevent.get("DTSTART")).dt
        duration = vevent.get("DURATION")
        if duration is not None:
            end_value = start_value + _first(duration).dt
        elif isinstance(start_value, datetime):
            end_value = start_value
        else:
            end_value = start_value + timedelta(days=1)
        end = _event_time(end_value, start.time_zone)

    private: dict[str, str] = {}
    shared: dict[str, str] = {}
    for name, value in vevent.items():
        key = _X_PROPERTY_KEYS.get(name.upper())
        if key in PRIVATE_PROPERTY_KEYS:
            private[key] = str(value)
        elif key in SHARED_PROPERTY_KEYS:
            shared[key] = str(value)

    transp = str(vevent.get("TRANSP") or "OPAQUE").upper()
    status = str(vevent.get("STATUS") or "").upper()
    summary = vevent.get("SUMMARY")
    description = vevent.get("DESCRIPTION")

    return ExternalEvent(
        id=event_id,
        calendar_id=calendar_id,
        summary=str(summary) if summary is not None else None,
        description=str(description) if description is not None else None,
        start=start,
        end=end,
        transparency="transparent" if transp == "TRANSPARENT" else "opaque",
        extended_properties=ExtendedProperties(private=private, shared=shared),
        etag=etag,
        cancelled=status == "CANCELLED",
        raw={"uid": str(vevent.get("UID") or ""), **raw},
    )


def parse_ics(ics: str, event_id: str, calendar_id: str, etag: Optional[str] = None) -> Optional[ExternalEvent]:
    """Parse a calendar object into an ExternalEvent. Returns None when it has no VEVENT."""
    cal = _load_calendar(ics, event_id)
    if cal is None:
        return None

    vevents = cal.walk("VEVENT")
    if not vevents:
        return None

    # Prefer the master over recurrence overrides
    vevent = next((v for v in vevents if v.get("RECURRENCE-ID") is None), vevents[0])
    return _vevent_to_event(vevent, event_id, calendar_id, etag, {})


def parse_occurrences(ics: str, series_id: str, calendar_id: str, etag: Optional[str] = None) -> list[ExternalEvent]:
    """
    One ExternalEvent per VEVENT of an expanded recurring object.

    Occurrence ids are the series id plus the UTC recurrence id, and each
    occurrence records its series so the whole set can be dropped together.
    """
    cal = _load_calendar(ics, series_id)
    if cal is None:
        return []

    events = []
    for vevent in cal.walk("VEVENT"):
        suffix = _recurrence_suffix(vevent)
        event_id = f"{series_id}_{suffix}" if suffix else series_id
        events.append(_vevent_to_event(vevent, event_id, calendar_id, etag, {"series_id": series_id}))
    return events


def events_from_object(obj: dict, calendar_id: str) -> list[ExternalEvent]:
    """ExternalEvents for a query/sync result entry; deletions become tombstones."""
    event_id = resource_name(obj["href"])
    if obj.get("deleted"):
        return [ExternalEvent(id=event_id, calendar_id=calendar_id, cancelled=True)]
    if not obj.get("calendar_data"):
        return []
    if obj.get("recurring"):
        return parse_occurrences(obj["calendar_data"], event_id, calendar_id, etag=obj.get("etag"))
    event = parse_ics(obj["calendar_data"], event_id, calendar_id, etag=obj.get("etag"))
    return [event] if event else []


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class CalDAVClient:
    """
    Async facade over caldav.DAVClient with bearer authentication.

    The library is blocking, so every call runs in a worker thread bounded
    by the provider timeout.
    """

    def __init__(self, base_url: str, access_token: str, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/") + "/"
        self._timeout = timeout
        self._client = DAVClient(
            url=self.base_url,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=timeout,
        )

    async def _run(self, action: str, func: Callable[..., Any], *args) -> Any:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"CalDAV {action} timed out") from e
        except DAVError as e:
            raise TransportError(f"CalDAV {action} failed: {e}", status_code=dav_status(e)) from e
        except OSError as e:
            # requests' errors derive from IOError
            raise TransportError(f"CalDAV {action} failed: {e}") from e

    # Blocking halves; only ever called through _run

    def _list_calendars(self) -> list[dict]:
        calendars = []
        for calendar in self._client.principal().calendars():
            url = str(calendar.url)
            props = calendar.get_properties([
                dav.DisplayName(),
                cdav.CalendarDescription(),
                ical.CalendarColor(),
            ])
            calendars.append({
                "url": url,
                "name": props.get(dav.DisplayName.tag) or resource_name(url),
                "description": props.get(cdav.CalendarDescription.tag),
                "color": props.get(ical.CalendarColor.tag),
            })
        return calendars

    def _as_entry(self, obj, start: datetime, end: datetime) -> dict:
        data = obj.data
        entry = {
            "href": str(obj.url),
            "etag": (obj.props or {}).get(dav.GetEtag.tag),
            "calendar_data": data,
            "deleted": data is None,
            "recurring": False,
        }
        if data and is_recurring(data):
            obj.expand_rrule(start, end)
            entry["calendar_data"] = obj.data
            entry["recurring"] = True
        return entry

    def _calendar_query(self, calendar_url: str, start: datetime, end: datetime) -> list[dict]:
        calendar = self._client.calendar(url=calendar_url)
        objects = calendar.search(start=start, end=end, event=True, props=[dav.GetEtag()])
        entries = [self._as_entry(obj, start, end) for obj in objects]
        return [entry for entry in entries if not entry["deleted"]]

    def _get_sync_token(self, calendar_url: str) -> Optional[str]:
        token = self._client.calendar(url=calendar_url).get_property(dav.SyncToken())
        return str(token).strip() if token else None

    def _sync_collection(
        self, calendar_url: str, sync_token: str, start: datetime, end: datetime
    ) -> tuple[list[dict], Optional[str]]:
        calendar = self._client.calendar(url=calendar_url)
        # One REPORT per pull; a truncated result resumes from the returned token next time
        collection = calendar.objects_by_sync_token(sync_token=sync_token, load_objects=True)
        changes = [self._as_entry(obj, start, end) for obj in collection.objects]
        return changes, collection.sync_token or sync_token

    def _get_etag(self, url: str) -> Optional[str]:
        response = self._client.request(url, "HEAD")
        if response.status in (404, 410):
            return None
        return response.headers.get("ETag")

    def _put_event(self, url: str, ics: bytes, etag: Optional[str]) -> Optional[str]:
        headers = {"Content-Type": "text/calendar; charset=utf-8"}
        if etag:
            headers["If-Match"] = etag
        else:
            headers["If-None-Match"] = "*"

        response = self._client.put(url, ics, headers)

        # Precondition failed: the resource exists on create, or the ETag is stale on update
        if response.status == 412:
            current = response.headers.get("ETag") or self._get_etag(url)
            if current is None and etag:
                raise NotFoundError(f"CalDAV resource {url} not found")
            if current:
                logger.info(f"CalDAV precondition failed for {url}, retrying with If-Match")
                headers.pop("If-None-Match", None)
                headers["If-Match"] = current
                response = self._client.put(url, ics, headers)

        if response.status == 404 and etag:
            raise NotFoundError(f"CalDAV resource {url} not found")

        if response.status not in (200, 201, 204):
            raise TransportError(f"CalDAV PUT {url} returned {response.status}", status_code=response.status)
        return response.headers.get("ETag")

    def _delete_event(self, url: str) -> None:
        try:
            response = self._client.delete(url)
        except DAVNotFoundError:
            response = None
        if response is None or response.status in (404, 410):
            logger.debug(f"CalDAV resource {url} already deleted")
            return
        if response.status not in (200, 204):
            raise TransportError(f"CalDAV DELETE {url} returned {response.status}", status_code=response.status)

    # Async API

    async def list_calendars(self) -> list[dict]:
        """Calendar collections of the current user principal."""
        return await self._run("calendar discovery", self._list_calendars)

    async def calendar_query(self, calendar_url: str, start: datetime, end: datetime) -> list[dict]:
        """Objects with a VEVENT overlapping [start, end); recurring ones expanded over the window."""
        return await self._run(f"query of {calendar_url}", self._calendar_query, calendar_url, start, end)

    async def get_sync_token(self, calendar_url: str) -> Optional[str]:
        return await self._run(f"sync-token lookup for {calendar_url}", self._get_sync_token, calendar_url)

    async def sync_collection(
        self, calendar_url: str, sync_token: str, start: datetime, end: datetime
    ) -> tuple[list[dict], Optional[str]]:
        """Changes since a sync token. Deleted members come back with deleted=True."""
        return await self._run(
            f"sync of {calendar_url}", self._sync_collection, calendar_url, sync_token, start, end
        )

    async def put_event(self, url: str, ics: bytes, etag: Optional[str] = None) -> Optional[str]:
        """
        Create (If-None-Match) or update (If-Match) a calendar object.

        A 412 is retried once against the current ETag. Returns the new ETag
        when the server sends one.
        """
        return await self._run(f"PUT {url}", self._put_event, url, ics, etag)

    async def delete_event(self, url: str) -> None:
        await self._run(f"DELETE {url}", self._delete_event, url)
