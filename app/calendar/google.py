"""Google Calendar provider."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlencode

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from app.calendar.base import CalendarProvider, build_task_description, build_task_properties
from app.calendar.types import (
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

# Google OAuth endpoints
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

SCOPES = [
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/calendar.events",
]

MAX_RESULTS = 2500


def _http_status(error: Exception) -> Optional[int]:
    resp = getattr(error, "resp", None)
    status = getattr(resp, "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def _is_invalid_sync_token(error: Exception) -> bool:
    return _http_status(error) == 410 or "invalid sync token" in str(error).lower()


def _to_event_time(value: Optional[dict]) -> Optional[EventTime]:
    if not value:
        return None
    return EventTime(
        date_time=value.get("dateTime"),
        date=value.get("date"),
        time_zone=value.get("timeZone"),
    )


def to_external_event(item: dict, calendar_id: str) -> ExternalEvent:
    """Normalize a Google event resource."""
    properties = item.get("extendedProperties") or {}
    return ExternalEvent(
        id=item["id"],
        calendar_id=calendar_id,
        summary=item.get("summary"),
        description=item.get("description"),
        start=_to_event_time(item.get("start")),
        end=_to_event_time(item.get("end")),
        transparency="transparent" if item.get("transparency") == "transparent" else "opaque",
        extended_properties=ExtendedProperties(
            private=properties.get("private") or {},
            shared=properties.get("shared") or {},
        ),
        etag=item.get("etag"),
        cancelled=item.get("status") == "cancelled",
        raw={
            key: item[key]
            for key in ("status", "htmlLink", "recurringEventId", "updated")
            if key in item
        },
    )


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar via the Calendar v3 API client."""

    provider = "google"
    token_url = GOOGLE_TOKEN_URL

    def generate_auth_url(self, state: Optional[str] = None, redirect_uri: Optional[str] = None) -> str:
        """Consent URL; offline access and forced consent so a refresh token is always issued."""
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": redirect_uri or self.get_redirect_uri(),
            "response_type": "code",
            "scope": " ".join(SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
        }
        if state:
            params["state"] = state
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    def _service(self, access_token: str):
        """Build Google Calendar API service."""
        credentials = Credentials(token=access_token)
        return build("calendar", "v3", credentials=credentials, cache_discovery=False)

    async def _execute(self, request) -> Any:
        """Run a blocking API request in a worker thread with the provider timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(request.execute),
                timeout=self.settings.provider_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise TransportError("Google Calendar request timed out") from e

    async def _list_calendars(self, access_token: str) -> list[Calendar]:
        service = self._service(access_token)
        calendars = []
        page_token = None

        try:
            while True:
                result = await self._execute(
                    service.calendarList().list(minAccessRole="reader", pageToken=page_token)
                )
                for item in result.get("items", []):
                    calendars.append(Calendar(
                        id=item["id"],
                        name=item.get("summaryOverride") or item.get("summary") or item["id"],
                        description=item.get("description"),
                        primary=bool(item.get("primary")),
                        access_role=item.get("accessRole"),
                        color=item.get("backgroundColor"),
                        time_zone=item.get("timeZone"),
                    ))

                page_token = result.get("nextPageToken")
                if not page_token:
                    break
        except HttpError as e:
            raise TransportError(f"Failed to list Google calendars: {e}", status_code=_http_status(e)) from e

        return calendars

    async def _fetch_calendar_events(
        self,
        access_token: str,
        calendar_id: str,
        sync_token: Optional[str],
        time_min: datetime,
        time_max: datetime,
    ) -> tuple[list[ExternalEvent], Optional[str]]:
        service = self._service(access_token)
        request_params: dict[str, Any] = {
            "calendarId": calendar_id,
            "maxResults": MAX_RESULTS,
            "singleEvents": True,
        }

        if sync_token:
            request_params["syncToken"] = sync_token
        else:
            request_params["timeMin"] = utc_iso(time_min)
            request_params["timeMax"] = utc_iso(time_max)
            request_params["showDeleted"] = True

        events: list[ExternalEvent] = []
        result: dict = {}

        try:
            while True:
                result = await self._execute(service.events().list(**request_params))
                events.extend(to_external_event(item, calendar_id) for item in result.get("items", []))

                page_token = result.get("nextPageToken")
                if not page_token:
                    break
                request_params["pageToken"] = page_token
        except HttpError as e:
            if sync_token and _is_invalid_sync_token(e):
                raise SyncTokenInvalidError(calendar_id) from e
            raise TransportError(
                f"Failed to fetch Google events for calendar {calendar_id}: {e}",
                status_code=_http_status(e),
            ) from e

        return events, result.get("nextSyncToken")

    def _event_body(self, task: TaskInput) -> dict:
        properties = build_task_properties(task)
        return {
            "summary": task.task_name,
            "description": build_task_description(task),
            "start": {"dateTime": to_utc(task.start).isoformat(), "timeZone": task.time_zone},
            "end": {"dateTime": to_utc(task.end).isoformat(), "timeZone": task.time_zone},
            "transparency": "opaque",
            "extendedProperties": {
                "private": properties.private,
                "shared": properties.shared,
            },
        }

    async def _create_remote_event(self, access_token: str, calendar_id: str, task: TaskInput) -> ExternalEvent:
        service = self._service(access_token)
        try:
            item = await self._execute(
                service.events().insert(calendarId=calendar_id, body=self._event_body(task))
            )
        except HttpError as e:
            raise TransportError(f"Failed to create Google event: {e}", status_code=_http_status(e)) from e
        return to_external_event(item, calendar_id)

    async def _update_remote_event(
        self,
        access_token: str,
        calendar_id: str,
        external_event_id: str,
        task: TaskInput,
        etag: Optional[str] = None,
    ) -> ExternalEvent:
        service = self._service(access_token)
        try:
            item = await self._execute(
                service.events().update(
                    calendarId=calendar_id,
                    eventId=external_event_id,
                    body=self._event_body(task),
                )
            )
        except HttpError as e:
            if _http_status(e) in (404, 410):
                raise NotFoundError(f"Google event {external_event_id} not found") from e
            raise TransportError(f"Failed to update Google event: {e}", status_code=_http_status(e)) from e
        return to_external_event(item, calendar_id)

    async def _delete_remote_event(self, access_token: str, calendar_id: str, external_event_id: str) -> None:
        service = self._service(access_token)
        try:
            await self._execute(
                service.events().delete(calendarId=calendar_id, eventId=external_event_id)
            )
        except HttpError as e:
            if _http_status(e) in (404, 410):
                logger.debug(f"Google event {external_event_id} already deleted")
                return
            raise TransportError(f"Failed to delete Google event: {e}", status_code=_http_status(e)) from e
