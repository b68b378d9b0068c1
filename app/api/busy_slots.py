"""Busy time across all connected calendars."""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.auth.session import User, get_current_user
from app.calendar.types import BusySlot, to_utc
from app.sync.busy_slots import get_busy_slots_for_user

router = APIRouter(prefix="/busy-slots", tags=["busy-slots"])


@router.get("", response_model=list[BusySlot])
async def list_busy_slots(
    start: datetime = Query(...),
    end: datetime = Query(...),
    user: User = Depends(get_current_user),
):
    """Busy intervals for the current user intersecting [start, end)."""
    start, end = to_utc(start), to_utc(end)
    if end <= start:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="end must be after start"
        )
    return await get_busy_slots_for_user(user.id, start, end)
