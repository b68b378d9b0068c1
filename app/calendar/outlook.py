"""Outlook / Microsoft Graph calendar provider."""

import logging
from datetime import datetime
from typing import Optional
from urllib.parse import quote, urlencode

import httpx

from app.calendar.base import CalendarProvider, build_task_description, build_task_properties
from app.calendar.types import (
    PRIVATE_PROPERTY_KEYS,
    SHARED_PROPERTY_KEYS,
    Calendar,
    EventTime,
    ExtendedProperties,
    ExternalEvent,
    TaskInput,
    to_utc,
    utc_iso,
)
from app.errors import NotFoundError, SyncTokenInvalidError, TransportError

logger = logging.getLogger(__name__)

# Microsoft identity platform endpoints (multi-tenant)
OUTLOOK_AUTH_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
OUTLOOK_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
GRAPH_URL = "https://graph.microsoft.com/v1.0"

SCOPES = [
    "https://graph.microsoft.com/Calendars.ReadWrite",
    "offline_access",
]

PROPERTY_NAMESPACE = "6ba7b810-9dad-11d1-80b4-00c04fd430c8"

# Error codes Graph returns when a delta token can no longer be used
INVALID_DELTA_CODES = {"syncStateNotFound", "resyncRequired", "syncStateInvalid"}

PREFER_HEADER = 'outlook.timezone="UTC", odata.maxpagesize=100'


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def _string_hash(text: str, seed: int = 0) -> int:
    """31-multiplier string hash over UTF-16 code units, wrapped to int32."""
    result = seed
    encoded = text.encode("utf-16-le")
    for i in range(0, len(encoded), 2):
        code_unit = encoded[i] | (encoded[i + 1] << 8)
        result = _to_int32((result << 5) - result + code_unit)
    return result


def _hex(value: int, width: int) -> str:
    return format(value, "x").zfill(width)[:width]


def graph_property_guid(property_name: str) -> str:
    """
    Deterministic GUID for a named extended property.

    The same name must always map to the same GUID, otherwise properties
    written earlier can no longer be matched.
    """
    name_hash = _string_hash(property_name)
    combined = _string_hash(PROPERTY_NAMESPACE, seed=name_hash)

    h1 = _hex(abs(combined), 8)
    h2 = _hex(abs(name_hash), 4)
    h3 = "4" + _hex(abs(combined ^ name_hash), 3)
    h4 = format((abs(combined) & 0x3) | 0x8, "x") + _hex(abs(name_hash), 3)
    h5 = _hex(abs(combined ^ name_hash ^ _to_int32(combined << 16)), 12)
    return f"{h1}-{h2}-{h3}-{h4}-{h5}"


def graph_property_id(property_name: str) -> str:
    return f"String {{{graph_property_guid(property_name)}}} Name {property_name}"


def _property_name_from_id(property_id: str) -> Optional[str]:
    for key in PRIVATE_PROPERTY_KEYS + SHARED_PROPERTY_KEYS:
        # Graph echoes "String {guid} Name key"; older writes used "String key {guid}"
        if property_id.endswith(f" Name {key}") or property_id.startswith(f"String {key} "):
            return key
    return None


def _graph_event_time(value: Optional[dict], all_day: bool) -> Optional[EventTime]:
    if not value or not value.get("dateTime"):
        return None

    raw = value["dateTime"]
    time_zone = value.get("timeZone")
    if all_day:
        return EventTime(date=raw[:10], time_zone=time_zone)

    has_offset = raw.endswith("Z") or "+" in raw[10:] or "-" in raw[10:]
    if not has_offset and (time_zone or "UTC").upper() in ("UTC", "ETC/UTC"):
        raw = f"{raw}Z"
    return EventTime(date_time=raw, time_zone=time_zone)


def to_external_event(item: dict, calendar_id: str) -> ExternalEvent:
    """Normalize a Graph event (or a delta tombstone)."""
    if "@removed" in item:
        return ExternalEvent(id=item["id"], calendar_id=calendar_id, cancelled=True)

    private: dict[str, str] = {}
    shared: dict[str, str] = {}
    for prop in item.get("singleValueExtendedProperties") or []:
        name = _property_name_from_id(prop.get("id", ""))
        if name in PRIVATE_PROPERTY_KEYS:
            private[name] = prop.get("value")
        elif name in SHARED_PROPERTY_KEYS:
            shared[name] = prop.get("value")

    all_day = bool(item.get("isAllDay"))
    body = item.get("body") or {}
    return ExternalEvent(
        id=item["id"],
        calendar_id=calendar_id,
        summary=item.get("subject"),
        description=item.get("bodyPreview") or body.get("content"),
        start=_graph_event_time(item.get("start"), all_day),
        end=_graph_event_time(item.get("end"), all_day),
        transparency="transparent" if item.get("showAs") == "free" else "opaque",
        extended_properties=ExtendedProperties(private=private, shared=shared),
        etag=item.get("@odata.etag") or item.get("changeKey"),
        cancelled=bool(item.get("isCancelled")),
        raw={
            key: item[key]
            for key in ("showAs", "isAllDay", "webLink", "seriesMasterId")
            if key in item
        },
    )


def _error_code(response: httpx.Response) -> Optional[str]:
    try:
        return (response.json().get("error") or {}).get("code")
    except ValueError:
        return None


class OutlookCalendarProvider(CalendarProvider):
    """Outlook calendars through Microsoft Graph."""

    provider = "outlook"
    token_url = OUTLOOK_TOKEN_URL

    def generate_auth_url(self, state: Optional[str] = None, redirect_uri: Optional[str] = None) -> str:
        params = {
            "client_id": self.config.client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri or self.get_redirect_uri(),
            "response_mode": "query",
            "scope": " ".join(SCOPES),
        }
        if state:
            params["state"] = state
        return f"{OUTLOOK_AUTH_URL}?{urlencode(params)}"

    def _token_params(self) -> dict:
        return {"scope": " ".join(SCOPES)}

    def _calendar_url(self, calendar_id: str, suffix: str = "") -> str:
        # Graph addresses the default calendar without an id
        if calendar_id == "primary":
            return f"{GRAPH_URL}/me/calendar{suffix}"
        return f"{GRAPH_URL}/me/calendars/{quote(calendar_id, safe='')}{suffix}"

    async def _graph(
        self,
        method: str,
        url: str,
        access_token: str,
        **kwargs,
    ) -> httpx.Response:
        return await self._send(
            method,
            url,
            access_token=access_token,
            headers={"Prefer": PREFER_HEADER, "Accept": "application/json"},
            **kwargs,
        )

    async def _list_calendars(self, access_token: str) -> list[Calendar]:
        calendars = []
        url: Optional[str] = f"{GRAPH_URL}/me/calendars"

        while url:
            response = await self._graph("GET", url, access_token)
            if response.status_code != 200:
                raise TransportError(
                    f"Failed to list Outlook calendars: {response.status_code}",
                    status_code=response.status_code,
                )
            data = response.json()
            for item in data.get("value", []):
                calendars.append(Calendar(
                    id=item["id"],
                    name=item.get("name") or item["id"],
                    primary=bool(item.get("isDefaultCalendar")),
                    access_role="owner" if item.get("canEdit") else "reader",
                    color=item.get("hexColor") or item.get("color"),
                ))
            url = data.get("@odata.nextLink")

        return calendars

    async def _fetch_calendar_events(
        self,
        access_token: str,
        calendar_id: str,
        sync_token: Optional[str],
        time_min: datetime,
        time_max: datetime,
    ) -> tuple[list[ExternalEvent], Optional[str]]:
        if sync_token:
            # A delta link is a complete URL
            url = sync_token
            params = None
        else:
            # Delta does not support $expand, so pulled items carry no doer.* properties.
            # DOER's own events are recognised through their links instead.
            url = self._calendar_url(calendar_id, "/calendarView/delta")
            params = {"startDateTime": utc_iso(time_min), "endDateTime": utc_iso(time_max)}

        events: list[ExternalEvent] = []
        delta_link: Optional[str] = None

        while url:
            response = await self._graph("GET", url, access_token, params=params)
            params = None

            if response.status_code != 200:
                code = _error_code(response)
                if sync_token and (response.status_code in (404, 410) or code in INVALID_DELTA_CODES):
                    raise SyncTokenInvalidError(calendar_id)
                raise TransportError(
                    f"Failed to fetch Outlook events for calendar {calendar_id}: "
                    f"{response.status_code} {code or ''}".strip(),
                    status_code=response.status_code,
                )

            data = response.json()
            events.extend(to_external_event(item, calendar_id) for item in data.get("value", []))

            url = data.get("@odata.nextLink")
            if not url:
                delta_link = data.get("@odata.deltaLink")

        return events, delta_link

    def _event_body(self, task: TaskInput) -> dict:
        properties = build_task_properties(task)
        values = {**properties.private, **properties.shared}
        return {
            "subject": task.task_name,
            "body": {"contentType": "text", "content": build_task_description(task)},
            "start": {"dateTime": to_utc(task.start).strftime("%Y-%m-%dT%H:%M:%S"), "timeZone": "UTC"},
            "end": {"dateTime": to_utc(task.end).strftime("%Y-%m-%dT%H:%M:%S"), "timeZone": "UTC"},
            "showAs": "busy",
            "singleValueExtendedProperties": [
                {"id": graph_property_id(name), "value": value}
                for name, value in values.items()
            ],
        }

    async def _create_remote_event(self, access_token: str, calendar_id: str, task: TaskInput) -> ExternalEvent:
        response = await self._graph(
            "POST", self._calendar_url(calendar_id, "/events"), access_token, json=self._event_body(task)
        )
        if response.status_code not in (200, 201):
            raise TransportError(
                f"Failed to create Outlook event: {response.status_code}",
                status_code=response.status_code,
            )
        return to_external_event(response.json(), calendar_id)

    async def _update_remote_event(
        self,
        access_token: str,
        calendar_id: str,
        external_event_id: str,
        task: TaskInput,
        etag: Optional[str] = None,
    ) -> ExternalEvent:
        url = self._calendar_url(calendar_id, f"/events/{quote(external_event_id, safe='')}")
        response = await self._graph("PATCH", url, access_token, json=self._event_body(task))
        if response.status_code in (404, 410):
            raise NotFoundError(f"Outlook event {external_event_id} not found")
        if response.status_code != 200:
            raise TransportError(
                f"Failed to update Outlook event: {response.status_code}",
                status_code=response.status_code,
            )
        return to_external_event(response.json(), calendar_id)

    async def _delete_remote_event(self, access_token: str, calendar_id: str, external_event_id: str) -> None:
        url = self._calendar_url(calendar_id, f"/events/{quote(external_event_id, safe='')}")
        response = await self._graph("DELETE", url, access_token)
        if response.status_code in (404, 410):
            logger.debug(f"Outlook event {external_event_id} already deleted")
            return
        if response.status_code not in (200, 204):
            raise TransportError(
                f"Failed to delete Outlook event: {response.status_code}",
                status_code=response.status_code,
            )
