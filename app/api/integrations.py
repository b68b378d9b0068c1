"""Calendar provider integration endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Form, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field

from app.auth.session import User, get_current_user
from app.calendar import repository
from app.calendar.base import expiry_to_iso
from app.calendar.connection_events import list_connection_events, log_connection_event
from app.calendar.factory import get_provider, validate_provider
from app.calendar.oauth_state import generate_oauth_state, verify_oauth_state
from app.calendar.types import Calendar, PushResult
from app.errors import NotFoundError, OAuthExchangeError, TransportError
from app.limiter import limiter, sync_rate_limit
from app.sync.engine import SyncResult, pull_connection, push_schedule
from app.utils.tasks import create_background_task

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/integrations", tags=["integrations"])


class ConnectionResponse(BaseModel):
    """Connection details safe to return to the client (no token material)."""
    id: str
    provider: str
    selected_calendar_ids: list[str] = Field(default_factory=list)
    auto_sync_enabled: bool = False
    auto_push_enabled: bool = False
    last_sync_at: Optional[str] = None
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    created_at: Optional[str] = None


class StatusResponse(BaseModel):
    connected: bool
    connection: Optional[ConnectionResponse] = None
    last_sync: Optional[dict] = None
    recent_connection_events: list[dict] = Field(default_factory=list)


class CalendarsResponse(BaseModel):
    calendars: list[Calendar]
    selected_calendar_ids: list[str]


class SettingsUpdate(BaseModel):
    selected_calendar_ids: Optional[list[str]] = None
    auto_sync_enabled: Optional[bool] = None
    auto_push_enabled: Optional[bool] = None


class PushRequest(BaseModel):
    task_schedule_ids: list[str] = Field(min_length=1)
    calendar_id: Optional[str] = None


class SchedulePushResult(BaseModel):
    task_schedule_id: str
    results: list[PushResult] = Field(default_factory=list)
    error: Optional[str] = None


class PushResponse(BaseModel):
    pushed: int
    failed: int
    results: list[SchedulePushResult]


def _connection_response(connection: dict) -> ConnectionResponse:
    return ConnectionResponse(
        id=connection["id"],
        provider=connection["provider"],
        selected_calendar_ids=connection["selected_calendar_ids"],
        auto_sync_enabled=connection["auto_sync_enabled"],
        auto_push_enabled=connection["auto_push_enabled"],
        last_sync_at=connection.get("last_sync_at"),
        consecutive_failures=connection.get("consecutive_failures") or 0,
        last_error=connection.get("last_error"),
        created_at=connection.get("created_at"),
    )


async def _require_connection(user: User, provider: str) -> dict:
    connection = await repository.get_connection_for_user(user.id, provider)
    if not connection:
        raise NotFoundError(f"No {provider} calendar connection found")
    return connection


def _request_origin(request: Request) -> str:
    return str(request.base_url).rstrip("/")


def _integrations_redirect(provider: str, **params: str) -> RedirectResponse:
    query = "&".join(f"{key}={value}" for key, value in params.items())
    return RedirectResponse(
        url=f"/integrations/{provider}?{query}",
        status_code=status.HTTP_302_FOUND,
    )


@router.get("/{provider}/authorize")
async def authorize(provider: str, request: Request, user: User = Depends(get_current_user)):
    """Build the provider consent URL for the current user."""
    provider = validate_provider(provider)
    calendar_provider = get_provider(provider)
    auth_url = calendar_provider.generate_auth_url(
        state=generate_oauth_state(user.id),
        redirect_uri=calendar_provider.get_redirect_uri(_request_origin(request)),
    )
    return {"auth_url": auth_url}


async def _complete_connect(
    provider: str,
    request: Request,
    user: User,
    code: Optional[str],
    state: Optional[str],
    error: Optional[str],
) -> RedirectResponse:
    provider = validate_provider(provider)

    if error:
        logger.warning(f"{provider} authorization denied for user {user.id}: {error}")
        await log_connection_event(user.id, "oauth_failed", details={"provider": provider, "error": error})
        return _integrations_redirect(provider, error=error)

    if not code:
        return _integrations_redirect(provider, error="missing_code")

    if not verify_oauth_state(state or "", user.id):
        logger.warning(f"OAuth state mismatch on {provider} callback for user {user.id}")
        await log_connection_event(user.id, "oauth_failed", details={"provider": provider, "error": "invalid_state"})
        return _integrations_redirect(provider, error="invalid_state")

    calendar_provider = get_provider(provider)
    redirect_uri = calendar_provider.get_redirect_uri(_request_origin(request))

    try:
        tokens = await calendar_provider.exchange_code_for_tokens(code, redirect_uri)
    except (OAuthExchangeError, TransportError) as e:
        logger.error(f"{provider} code exchange failed for user {user.id}: {e}")
        await log_connection_event(
            user.id,
            "oauth_failed",
            details={"provider": provider, "status_code": getattr(e, "status_code", None)},
        )
        return _integrations_redirect(provider, error="token_exchange_failed")

    vault = calendar_provider.vault
    connection, created = await repository.upsert_connection(
        user_id=user.id,
        provider=provider,
        access_token_encrypted=vault.encrypt(tokens.access_token),
        refresh_token_encrypted=vault.encrypt(tokens.refresh_token or ""),
        token_expires_at=expiry_to_iso(tokens.expiry_date),
    )

    await log_connection_event(
        user.id,
        "connected" if created else "reconnected",
        connection["id"],
        {"provider": provider},
    )
    logger.info(f"{provider} calendar {'connected' if created else 'reconnected'} for user {user.id}")

    return _integrations_redirect(provider, connected=provider)


@router.get("/{provider}/connect")
async def connect_callback(
    provider: str,
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    user: User = Depends(get_current_user),
):
    """OAuth redirect target."""
    return await _complete_connect(provider, request, user, code, state, error)


@router.post("/{provider}/connect")
async def connect_callback_form(
    provider: str,
    request: Request,
    code: Optional[str] = Form(None),
    state: Optional[str] = Form(None),
    error: Optional[str] = Form(None),
    user: User = Depends(get_current_user),
):
    """OAuth redirect target for providers that use response_mode=form_post (Apple)."""
    return await _complete_connect(provider, request, user, code, state, error)


@router.get("/{provider}/calendars", response_model=CalendarsResponse)
async def list_calendars(provider: str, user: User = Depends(get_current_user)):
    """List calendars available on the connected account."""
    provider = validate_provider(provider)
    connection = await _require_connection(user, provider)
    calendars = await get_provider(provider).fetch_calendars(connection["id"])
    return CalendarsResponse(
        calendars=calendars,
        selected_calendar_ids=connection["selected_calendar_ids"],
    )


@router.put("/{provider}/settings", response_model=ConnectionResponse)
async def update_settings(
    provider: str,
    update: SettingsUpdate,
    user: User = Depends(get_current_user),
):
    """Update calendar selection and auto sync/push flags."""
    provider = validate_provider(provider)
    connection = await _require_connection(user, provider)

    old_ids = connection["selected_calendar_ids"]
    updated = await repository.update_connection_settings(
        connection["id"],
        selected_calendar_ids=update.selected_calendar_ids,
        auto_sync_enabled=update.auto_sync_enabled,
        auto_push_enabled=update.auto_push_enabled,
    )

    added: list[str] = []
    if update.selected_calendar_ids is not None:
        new_ids = updated["selected_calendar_ids"]
        added = [calendar_id for calendar_id in new_ids if calendar_id not in old_ids]
        removed = [calendar_id for calendar_id in old_ids if calendar_id not in new_ids]
        for calendar_id in added:
            await log_connection_event(
                user.id, "calendar_selected", connection["id"],
                {"provider": provider, "calendar_id": calendar_id},
            )
        for calendar_id in removed:
            await log_connection_event(
                user.id, "calendar_deselected", connection["id"],
                {"provider": provider, "calendar_id": calendar_id},
            )

    changed = {
        field: getattr(update, field)
        for field in ("auto_sync_enabled", "auto_push_enabled")
        if getattr(update, field) is not None and getattr(update, field) != connection[field]
    }
    if changed:
        await log_connection_event(
            user.id, "settings_changed", connection["id"],
            {"provider": provider, **changed},
        )

    # Newly selected calendars get an initial pull
    if added and updated["auto_sync_enabled"]:
        create_background_task(
            pull_connection(connection["id"]),
            f"initial_pull_{connection['id']}"
        )

    return _connection_response(updated)


@router.post("/{provider}/sync", response_model=SyncResult)
@limiter.limit(sync_rate_limit)
async def trigger_sync(provider: str, request: Request, user: User = Depends(get_current_user)):
    """Pull the selected calendars now."""
    provider = validate_provider(provider)
    connection = await _require_connection(user, provider)

    if not connection["selected_calendar_ids"]:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No calendars selected for sync"
        )

    result = await pull_connection(connection["id"])
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Sync already in progress"
        )
    return result


@router.post("/{provider}/push", response_model=PushResponse)
async def push_tasks(
    provider: str,
    push: PushRequest,
    user: User = Depends(get_current_user),
):
    """Push scheduled tasks to this provider."""
    provider = validate_provider(provider)
    await _require_connection(user, provider)

    results = []
    pushed = failed = 0
    for task_schedule_id in dict.fromkeys(push.task_schedule_ids):
        try:
            push_results = await push_schedule(
                user.id, task_schedule_id, providers=[provider], calendar_id=push.calendar_id
            )
        except (NotFoundError, ValueError) as e:
            failed += 1
            results.append(SchedulePushResult(task_schedule_id=task_schedule_id, error=str(e)))
            continue

        if all(result.success for result in push_results):
            pushed += 1
        else:
            failed += 1
        results.append(SchedulePushResult(task_schedule_id=task_schedule_id, results=push_results))

    return PushResponse(pushed=pushed, failed=failed, results=results)


@router.delete("/{provider}/disconnect")
async def disconnect(provider: str, user: User = Depends(get_current_user)):
    """Remove the connection; its events, links and logs go with it."""
    provider = validate_provider(provider)
    connection = await _require_connection(user, provider)

    # Logged without the FK so the audit row survives the cascade
    await log_connection_event(
        user.id,
        "disconnected",
        details={"provider": provider, "connection_id": connection["id"]},
    )
    await repository.delete_connection(connection["id"])
    logger.info(f"{provider} calendar disconnected for user {user.id}")

    return {"success": True, "message": f"{provider} calendar disconnected"}


@router.get("/{provider}/status", response_model=StatusResponse)
async def connection_status(provider: str, user: User = Depends(get_current_user)):
    """Connection state, last sync and recent lifecycle events."""
    provider = validate_provider(provider)
    connection = await repository.get_connection_for_user(user.id, provider)
    if not connection:
        return StatusResponse(connected=False)

    return StatusResponse(
        connected=True,
        connection=_connection_response(connection),
        last_sync=await repository.get_latest_sync_log(connection["id"]),
        recent_connection_events=await list_connection_events(connection["id"], limit=10),
    )
