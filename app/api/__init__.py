"""API endpoints module."""

from fastapi import APIRouter

from app.api.integrations import router as integrations_router
from app.api.busy_slots import router as busy_slots_router

api_router = APIRouter(prefix="/api")

api_router.include_router(integrations_router)
api_router.include_router(busy_slots_router)

__all__ = ["api_router"]
