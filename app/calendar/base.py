"""Calendar provider interface and the behavior shared by every adapter."""

import asyncio
import json
import logging
import time as time_module
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from app.calendar import repository
from app.calendar.config import get_provider_config, get_redirect_uri
from app.calendar.connection_events import log_connection_event
from app.calendar.types import (
    DOER_AI_CONFIDENCE,
    DOER_PLAN_ID,
    DOER_PLAN_NAME,
    DOER_TASK_ID,
    DOER_TASK_SCHEDULE_ID,
    BusySlot,
    Calendar,
    ExtendedProperties,
    ExternalEvent,
    FetchResult,
    PushResult,
    TaskInput,
    Tokens,
    event_time_to_datetime,
    parse_datetime,
    utc_iso,
    utcnow,
)
from app.config import Settings, get_settings
from app.encryption import TokenVault
from app.errors import (
    ConfigurationError,
    MalformedTokenError,
    NotFoundError,
    OAuthExchangeError,
    OAuthRefreshError,
    SyncTokenInvalidError,
    TransportError,
)

logger = logging.getLogger(__name__)

MAX_REFRESH_ATTEMPTS = 3

# Token endpoint statuses that reject the grant itself; anything else may succeed later
REJECTED_GRANT_STATUSES = (400, 401)

# Errors that mean the connection needs attention and must reach the caller
REAUTH_ERRORS = (ConfigurationError, OAuthRefreshError, MalformedTokenError)

# Per-connection locks so only one refresh runs at a time
_refresh_locks: dict[str, asyncio.Lock] = {}
_refresh_locks_guard = asyncio.Lock()


async def _get_refresh_lock(connection_id: str) -> asyncio.Lock:
    """Get or create the refresh lock for a connection."""
    async with _refresh_locks_guard:
        if connection_id not in _refresh_locks:
            _refresh_locks[connection_id] = asyncio.Lock()
        return _refresh_locks[connection_id]


def encode_sync_cursor(cursors: dict[str, str]) -> Optional[str]:
    """Pack per-calendar cursors into the single opaque connection cursor."""
    if not cursors:
        return None
    return json.dumps(cursors, sort_keys=True, separators=(",", ":"))


def decode_sync_cursor(sync_token: Optional[str], calendar_ids: list[str]) -> dict[str, str]:
    """
    Unpack a connection cursor into per-calendar cursors.

    A value that is not a JSON object is a single provider token and applies
    to every calendar.
    """
    if not sync_token:
        return {}
    try:
        decoded = json.loads(sync_token)
    except (TypeError, ValueError):
        decoded = None
    if isinstance(decoded, dict):
        return {str(k): str(v) for k, v in decoded.items() if v}
    return {calendar_id: sync_token for calendar_id in calendar_ids}


def build_task_properties(task: TaskInput) -> ExtendedProperties:
    """DOER markers to embed on a pushed event."""
    private = {
        DOER_TASK_ID: task.task_id,
        DOER_TASK_SCHEDULE_ID: task.task_schedule_id,
    }
    if task.plan_id:
        private[DOER_PLAN_ID] = task.plan_id

    shared = {}
    if task.ai_confidence is not None:
        shared[DOER_AI_CONFIDENCE] = str(task.ai_confidence)
    if task.plan_name:
        shared[DOER_PLAN_NAME] = task.plan_name

    return ExtendedProperties(private=private, shared=shared)


def build_task_description(task: TaskInput) -> str:
    if task.plan_name:
        return f"DOER: {task.plan_name}\nTask: {task.task_name}"
    return f"DOER Task: {task.task_name}"


def expiry_to_iso(expiry_date: Optional[int]) -> Optional[str]:
    """Epoch millis to the stored expiry format."""
    if expiry_date is None:
        return None
    return utc_iso(datetime.fromtimestamp(expiry_date / 1000, tz=timezone.utc))


class CalendarProvider(ABC):
    """
    Base class for calendar provider adapters.

    Subclasses implement the provider transport (auth URL, token endpoint,
    calendar listing, per-calendar fetch, event create/update/delete).
    Token lifecycle, cursor handling, full-sync fallback, push idempotency
    and busy-slot conversion live here.
    """

    provider: str = ""
    token_url: str = ""
    # Providers that never issue refresh tokens would override this
    requires_refresh_token: bool = True
    # Calendar id used for pushes when the user has not selected one
    default_calendar_id: Optional[str] = "primary"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.config = get_provider_config(self.provider, self.settings)
        self._transport = transport
        self._vault: Optional[TokenVault] = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def validate_config(self) -> None:
        """Raise ConfigurationError if credentials are missing."""
        self.config = get_provider_config(self.provider, self.settings)

    def get_redirect_uri(self, request_origin: Optional[str] = None) -> str:
        return get_redirect_uri(self.provider, request_origin, self.settings)

    @property
    def vault(self) -> TokenVault:
        if self._vault is None:
            self._vault = TokenVault(self.settings.calendar_token_encryption_key or "")
        return self._vault

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.provider_timeout_seconds,
            transport=self._transport,
        )

    async def _send(
        self,
        method: str,
        url: str,
        access_token: Optional[str] = None,
        headers: Optional[dict] = None,
        **kwargs,
    ) -> httpx.Response:
        """Send one provider request, mapping timeouts and network failures to TransportError."""
        request_headers = dict(headers or {})
        if access_token:
            request_headers["Authorization"] = f"Bearer {access_token}"

        try:
            async with self._http_client() as client:
                return await client.request(method, url, headers=request_headers, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(f"{self.provider} request timed out: {method} {url}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"{self.provider} request failed: {method} {url}: {e}") from e

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    @abstractmethod
    def generate_auth_url(self, state: Optional[str] = None, redirect_uri: Optional[str] = None) -> str:
        """Build the provider consent URL."""

    def _token_params(self) -> dict:
        """Extra form fields for code exchange and refresh requests."""
        return {}

    async def _token_request(self, data: dict, refresh: bool) -> Tokens:
        error_cls = OAuthRefreshError if refresh else OAuthExchangeError
        form = {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            **data,
        }

        response = await self._send(
            "POST",
            self.token_url,
            headers={"Accept": "application/json"},
            data=form,
        )

        if response.status_code != 200 and response.status_code not in REJECTED_GRANT_STATUSES:
            raise TransportError(
                f"{self.provider} token endpoint returned {response.status_code}",
                status_code=response.status_code,
            )

        if response.status_code != 200:
            logger.error(f"{self.provider} token request failed ({response.status_code}): {response.text}")
            raise error_cls(
                f"{self.provider} token request failed",
                status_code=response.status_code,
                body=response.text,
            )

        payload = response.json()
        access_token = payload.get("access_token")
        if not access_token:
            raise error_cls(
                f"{self.provider} token response is missing access_token",
                status_code=response.status_code,
            )

        expires_in = int(payload.get("expires_in") or 3600)
        return Tokens(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expiry_date=int((time_module.time() + expires_in) * 1000),
        )

    async def exchange_code_for_tokens(self, code: str, redirect_uri: str) -> Tokens:
        """
        Exchange an authorization code for tokens.

        Raises:
            OAuthExchangeError: if the provider rejects the code or omits the
                refresh token
        """
        tokens = await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                **self._token_params(),
            },
            refresh=False,
        )
        if self.requires_refresh_token and not tokens.refresh_token:
            raise OAuthExchangeError(
                f"{self.provider} did not return a refresh token",
                status_code=200,
            )
        return tokens

    async def _request_token_refresh(self, refresh_token: str) -> Tokens:
        return await self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                **self._token_params(),
            },
            refresh=True,
        )

    def _needs_refresh(self, connection: dict) -> bool:
        expires_at = connection.get("token_expires_at")
        if not expires_at:
            return False
        margin = timedelta(minutes=self.settings.token_refresh_margin_minutes)
        return utcnow() >= parse_datetime(expires_at) - margin

    def _tokens_from_connection(self, connection: dict) -> Tokens:
        expiry = None
        if connection.get("token_expires_at"):
            expiry = int(parse_datetime(connection["token_expires_at"]).timestamp() * 1000)
        return Tokens(
            access_token=self.vault.decrypt(connection["access_token_encrypted"]),
            refresh_token=self.vault.decrypt(connection["refresh_token_encrypted"]),
            expiry_date=expiry,
        )

    async def refresh_access_token(self, connection_id: str, force: bool = True) -> Tokens:
        """
        Refresh and persist a connection's access token.

        With force=False the refresh is skipped when another task already
        refreshed the token while this one waited for the lock.
        """
        lock = await _get_refresh_lock(connection_id)
        async with lock:
            connection = await repository.get_connection(connection_id)
            if not force and not self._needs_refresh(connection):
                return self._tokens_from_connection(connection)
            return await self._perform_refresh(connection)

    async def _perform_refresh(self, connection: dict) -> Tokens:
        connection_id = connection["id"]
        refresh_token = self.vault.decrypt(connection["refresh_token_encrypted"])
        logger.info(f"Refreshing {self.provider} token for connection {connection_id}")

        tokens = None
        for attempt in range(MAX_REFRESH_ATTEMPTS):
            try:
                tokens = await self._request_token_refresh(refresh_token)
                break
            except OAuthRefreshError as e:
                logger.error(f"Token refresh rejected for connection {connection_id}: {e}")
                await log_connection_event(
                    connection["user_id"],
                    "token_refresh_failed",
                    connection_id,
                    {"provider": self.provider, "status_code": e.status_code, "permanent": True},
                )
                e.connection_id = connection_id
                raise
            except TransportError as e:
                if attempt < MAX_REFRESH_ATTEMPTS - 1:
                    wait_time = 2 ** attempt
                    logger.warning(
                        f"Token refresh attempt {attempt + 1} failed for connection {connection_id}, "
                        f"retrying in {wait_time}s: {e}"
                    )
                    await asyncio.sleep(wait_time)
                else:
                    logger.error(f"Failed to refresh token after {MAX_REFRESH_ATTEMPTS} attempts: {e}")
                    await log_connection_event(
                        connection["user_id"],
                        "token_refresh_failed",
                        connection_id,
                        {"provider": self.provider, "error": str(e), "permanent": False},
                    )
                    raise

        # Keep the old refresh token when the provider does not rotate it
        new_refresh = tokens.refresh_token or refresh_token
        expires_at = expiry_to_iso(tokens.expiry_date)

        swapped = await repository.update_connection_tokens(
            connection_id,
            self.vault.encrypt(tokens.access_token),
            self.vault.encrypt(new_refresh),
            expires_at,
            expected_expires_at=connection.get("token_expires_at"),
        )
        if not swapped:
            # Another process refreshed first; its tokens win
            logger.info(f"Token for connection {connection_id} was refreshed concurrently")
            return self._tokens_from_connection(await repository.get_connection(connection_id))

        await log_connection_event(
            connection["user_id"],
            "token_refreshed",
            connection_id,
            {"provider": self.provider, "expires_at": expires_at},
        )
        return Tokens(
            access_token=tokens.access_token,
            refresh_token=new_refresh,
            expiry_date=tokens.expiry_date,
        )

    async def get_valid_access_token(self, connection_id: str) -> str:
        """Decrypted access token, refreshed first if it expires within the margin."""
        connection = await repository.get_connection(connection_id)
        if self._needs_refresh(connection):
            tokens = await self.refresh_access_token(connection_id, force=False)
            return tokens.access_token
        return self.vault.decrypt(connection["access_token_encrypted"])

    # ------------------------------------------------------------------
    # Calendars and events
    # ------------------------------------------------------------------

    @abstractmethod
    async def _list_calendars(self, access_token: str) -> list[Calendar]:
        """List readable calendars."""

    @abstractmethod
    async def _fetch_calendar_events(
        self,
        access_token: str,
        calendar_id: str,
        sync_token: Optional[str],
        time_min: datetime,
        time_max: datetime,
    ) -> tuple[list[ExternalEvent], Optional[str]]:
        """
        Fetch one calendar, draining every page.

        Full sync when sync_token is None. Raises SyncTokenInvalidError when
        the provider rejects the cursor.
        """

    @abstractmethod
    async def _create_remote_event(self, access_token: str, calendar_id: str, task: TaskInput) -> ExternalEvent:
        """Create the event for a task."""

    @abstractmethod
    async def _update_remote_event(
        self,
        access_token: str,
        calendar_id: str,
        external_event_id: str,
        task: TaskInput,
        etag: Optional[str] = None,
    ) -> ExternalEvent:
        """Update an existing event. Raises NotFoundError if it is gone."""

    @abstractmethod
    async def _delete_remote_event(self, access_token: str, calendar_id: str, external_event_id: str) -> None:
        """Delete an event. Already-gone is success."""

    async def fetch_calendars(self, connection_id: str) -> list[Calendar]:
        access_token = await self.get_valid_access_token(connection_id)
        return await self._list_calendars(access_token)

    async def fetch_events(
        self,
        connection_id: str,
        calendar_ids: list[str],
        sync_token: Optional[str] = None,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
    ) -> FetchResult:
        """
        Fetch events for the selected calendars.

        Incremental per calendar when a cursor exists; a rejected cursor falls
        back to a full sync over [time_min, time_max]. Any other failure
        aborts the whole fetch.
        """
        access_token = await self.get_valid_access_token(connection_id)

        now = utcnow()
        time_min = time_min or now
        time_max = time_max or now + timedelta(days=self.settings.sync_window_days)

        cursors = decode_sync_cursor(sync_token, calendar_ids)
        next_cursors: dict[str, str] = {}
        events: list[ExternalEvent] = []
        is_full_sync = False

        for calendar_id in calendar_ids:
            cursor = cursors.get(calendar_id)
            batch: list[ExternalEvent] = []
            next_token: Optional[str] = None

            if cursor:
                try:
                    batch, next_token = await self._fetch_calendar_events(
                        access_token, calendar_id, cursor, time_min, time_max
                    )
                except SyncTokenInvalidError:
                    logger.warning(
                        f"{self.provider} sync token invalid for calendar {calendar_id} "
                        f"(connection {connection_id}), falling back to full sync"
                    )
                    cursor = None

            if not cursor:
                is_full_sync = True
                batch, next_token = await self._fetch_calendar_events(
                    access_token, calendar_id, None, time_min, time_max
                )

            events.extend(batch)
            if next_token or cursor:
                next_cursors[calendar_id] = next_token or cursor

        logger.info(
            f"Fetched {len(events)} {self.provider} events from {len(calendar_ids)} calendars "
            f"(connection {connection_id}, full_sync={is_full_sync})"
        )
        return FetchResult(
            events=events,
            next_sync_token=encode_sync_cursor(next_cursors),
            is_full_sync=is_full_sync,
        )

    async def push_task_to_calendar(self, connection_id: str, calendar_id: str, task: TaskInput) -> PushResult:
        """
        Create or update the external event mirroring a task occurrence.

        Re-pushing the same schedule updates the linked event. Provider
        failures are logged and returned; re-authorization errors propagate.
        """
        connection = await repository.get_connection(connection_id)

        try:
            access_token = await self.get_valid_access_token(connection_id)
            link = await repository.get_link_for_schedule(connection_id, task.task_schedule_id)

            existing_id = None
            etag = None
            if link and link["calendar_id"] == calendar_id:
                existing_id = link["external_event_id"]
                etag = link.get("external_etag")
            elif link:
                await self._move_out_of_calendar(access_token, connection_id, link)

            event = None
            if existing_id:
                try:
                    event = await self._update_remote_event(access_token, calendar_id, existing_id, task, etag)
                except NotFoundError:
                    logger.info(f"Linked event {existing_id} no longer exists on {self.provider}, recreating")
                    existing_id = None

            if event is None:
                event = await self._create_remote_event(access_token, calendar_id, task)

            calendar_event_id = await repository.upsert_event(
                connection_id=connection_id,
                user_id=connection["user_id"],
                external_event_id=event.id,
                calendar_id=calendar_id,
                start_time=utc_iso(task.start),
                end_time=utc_iso(task.end),
                summary=task.task_name,
                description=build_task_description(task),
                timezone_label=task.time_zone,
                is_busy=True,
                is_doer_created=True,
                etag=event.etag,
                metadata={"extended_properties": build_task_properties(task).model_dump()},
            )
            await repository.upsert_event_link(
                user_id=connection["user_id"],
                calendar_event_id=calendar_event_id,
                task_id=task.task_id,
                task_schedule_id=task.task_schedule_id,
                external_event_id=event.id,
                plan_id=task.plan_id,
                ai_confidence=task.ai_confidence,
                plan_name=task.plan_name,
                task_name=task.task_name,
                metadata={"provider": self.provider},
            )
        except REAUTH_ERRORS:
            raise
        except Exception as e:
            logger.error(
                f"Failed to push task schedule {task.task_schedule_id} to {self.provider} "
                f"calendar {calendar_id}: {e}"
            )
            return PushResult(success=False, error=str(e))

        return PushResult(
            success=True,
            external_event_id=event.id,
            calendar_event_id=calendar_event_id,
            etag=event.etag,
            created=existing_id is None,
        )

    async def _move_out_of_calendar(self, access_token: str, connection_id: str, link: dict) -> None:
        """Drop a linked event left on a calendar the schedule no longer targets."""
        old_calendar_id = link["calendar_id"]
        old_event_id = link["external_event_id"]
        logger.info(
            f"Schedule {link['task_schedule_id']} moved off {self.provider} calendar "
            f"{old_calendar_id}, removing event {old_event_id}"
        )
        try:
            await self._delete_remote_event(access_token, old_calendar_id, old_event_id)
        except (NotFoundError, TransportError) as e:
            logger.warning(f"Could not delete {self.provider} event {old_event_id}: {e}")

        # The link row goes with the event
        await repository.delete_event(connection_id, old_event_id, old_calendar_id)

    async def delete_task_from_calendar(self, connection_id: str, calendar_id: str, external_event_id: str) -> bool:
        """Best-effort delete of a DOER event. Returns False on provider failure."""
        try:
            access_token = await self.get_valid_access_token(connection_id)
            await self._delete_remote_event(access_token, calendar_id, external_event_id)
        except REAUTH_ERRORS:
            raise
        except Exception as e:
            logger.error(f"Failed to delete {self.provider} event {external_event_id}: {e}")
            return False

        await repository.delete_event(connection_id, external_event_id, calendar_id)
        return True

    # ------------------------------------------------------------------
    # Busy slots
    # ------------------------------------------------------------------

    def convert_to_busy_slot(self, event: ExternalEvent, calendar_id: str) -> Optional[BusySlot]:
        """Map an event to a busy slot, or None when it has no usable start or end."""
        start = event_time_to_datetime(event.start)
        end = event_time_to_datetime(event.end)
        if start is None or end is None:
            return None

        return BusySlot(
            start=utc_iso(start),
            end=utc_iso(end),
            source="calendar_event",
            metadata={
                "event_id": event.id,
                "calendar_id": calendar_id,
                "summary": event.summary,
                "is_doer_created": event.has_doer_markers,
                "is_busy": event.is_busy,
                "transparency": event.transparency,
                "provider": self.provider,
            },
        )
