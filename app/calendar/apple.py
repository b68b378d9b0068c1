"""Apple (iCloud) calendar provider over CalDAV."""

import logging
from datetime import datetime
from typing import Optional
from urllib.parse import urlencode

from app.calendar.base import CalendarProvider, build_task_description, build_task_properties
from app.calendar.caldav import (
    CalDAVClient,
    build_ics,
    events_from_object,
    resource_name,
    resource_url,
)
from app.calendar.types import Calendar, EventTime, ExternalEvent, TaskInput, utc_iso
from app.errors import SyncTokenInvalidError, TransportError

logger = logging.getLogger(__name__)

APPLE_AUTH_URL = "https://appleid.apple.com/auth/authorize"
APPLE_TOKEN_URL = "https://appleid.apple.com/auth/token"

SCOPES = ["name", "email", "calendars.read", "calendars.write"]

# Statuses a server uses to reject a stale sync-collection token
INVALID_SYNC_STATUSES = (403, 404, 409, 410)


def pushed_resource_name(task: TaskInput) -> str:
    """Resource name (and UID) for a pushed task; stable per schedule."""
    return f"doer-{task.task_schedule_id}"


class AppleCalendarProvider(CalendarProvider):
    """iCloud calendars via Sign in with Apple tokens and CalDAV."""

    provider = "apple"
    token_url = APPLE_TOKEN_URL
    # Collections are addressed by URL; there is no alias for the default one
    default_calendar_id = None

    def generate_auth_url(self, state: Optional[str] = None, redirect_uri: Optional[str] = None) -> str:
        # Apple requires form_post when name/email scopes are requested
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": redirect_uri or self.get_redirect_uri(),
            "response_type": "code",
            "response_mode": "form_post",
            "scope": " ".join(SCOPES),
        }
        if state:
            params["state"] = state
        return f"{APPLE_AUTH_URL}?{urlencode(params)}"

    def _client(self, access_token: str) -> CalDAVClient:
        return CalDAVClient(
            self.settings.apple_caldav_url,
            access_token,
            timeout=self.settings.provider_timeout_seconds,
        )

    async def _list_calendars(self, access_token: str) -> list[Calendar]:
        collections = await self._client(access_token).list_calendars()
        return [
            Calendar(
                id=collection["url"],
                name=collection["name"],
                description=collection.get("description"),
                # CalDAV has no default-calendar flag; the first collection stands in
                primary=index == 0,
                access_role="owner",
                color=collection.get("color"),
            )
            for index, collection in enumerate(collections)
        ]

    async def _fetch_calendar_events(
        self,
        access_token: str,
        calendar_id: str,
        sync_token: Optional[str],
        time_min: datetime,
        time_max: datetime,
    ) -> tuple[list[ExternalEvent], Optional[str]]:
        client = self._client(access_token)

        if sync_token:
            try:
                objects, next_token = await client.sync_collection(calendar_id, sync_token, time_min, time_max)
            except TransportError as e:
                if e.status_code in INVALID_SYNC_STATUSES:
                    raise SyncTokenInvalidError(calendar_id) from e
                raise
        else:
            objects = await client.calendar_query(calendar_id, time_min, time_max)
            next_token = await client.get_sync_token(calendar_id)

        events = []
        for obj in objects:
            if sync_token and obj["recurring"]:
                # A changed series replaces every stored occurrence
                events.append(ExternalEvent(
                    id=resource_name(obj["href"]), calendar_id=calendar_id, cancelled=True
                ))
            events.extend(events_from_object(obj, calendar_id))
        return events, next_token

    def _ics_for(self, task: TaskInput) -> bytes:
        return build_ics(
            uid=pushed_resource_name(task),
            summary=task.task_name,
            start=task.start,
            end=task.end,
            description=build_task_description(task),
            properties=build_task_properties(task),
        )

    def _pushed_event(self, name: str, calendar_id: str, task: TaskInput, etag: Optional[str]) -> ExternalEvent:
        return ExternalEvent(
            id=name,
            calendar_id=calendar_id,
            summary=task.task_name,
            description=build_task_description(task),
            start=EventTime(date_time=utc_iso(task.start), time_zone=task.time_zone),
            end=EventTime(date_time=utc_iso(task.end), time_zone=task.time_zone),
            extended_properties=build_task_properties(task),
            etag=etag,
        )

    async def _create_remote_event(self, access_token: str, calendar_id: str, task: TaskInput) -> ExternalEvent:
        name = pushed_resource_name(task)
        etag = await self._client(access_token).put_event(
            resource_url(calendar_id, name), self._ics_for(task)
        )
        return self._pushed_event(name, calendar_id, task, etag)

    async def _update_remote_event(
        self,
        access_token: str,
        calendar_id: str,
        external_event_id: str,
        task: TaskInput,
        etag: Optional[str] = None,
    ) -> ExternalEvent:
        client = self._client(access_token)
        url = resource_url(calendar_id, external_event_id)
        # A stale or missing etag goes through the If-None-Match / 412 path
        new_etag = await client.put_event(url, self._ics_for(task), etag=etag)
        return self._pushed_event(external_event_id, calendar_id, task, new_etag)

    async def _delete_remote_event(self, access_token: str, calendar_id: str, external_event_id: str) -> None:
        await self._client(access_token).delete_event(resource_url(calendar_id, external_event_id))
