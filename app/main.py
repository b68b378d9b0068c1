"""Main FastAPI application entry point."""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.calendar.factory import PROVIDERS, is_provider_configured
from app.config import get_settings
from app.database import close_database, get_database
from app.errors import (
    CalendarSyncError,
    ConfigurationError,
    MalformedTokenError,
    NotFoundError,
    OAuthExchangeError,
    OAuthRefreshError,
    TransportError,
    UnsupportedProviderError,
)
from app.limiter import limiter

# Configure logging
logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings = get_settings()
    logger.info("Starting DOER calendar sync...")
    logger.info(f"Database: {settings.database_path}")

    if not settings.calendar_token_encryption_key:
        logger.warning("CALENDAR_TOKEN_ENCRYPTION_KEY is not set; provider connections will fail")

    await get_database()
    logger.info("Database initialized")

    # Start background scheduler
    try:
        from app.jobs.scheduler import setup_scheduler
        setup_scheduler()
    except Exception as e:
        logger.error(f"Failed to start scheduler: {e}")

    yield

    # Shutdown
    logger.info("Shutting down...")

    try:
        from app.jobs.scheduler import shutdown_scheduler
        shutdown_scheduler()
    except Exception as e:
        logger.error(f"Error stopping scheduler: {e}")

    await close_database()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="DOER Calendar Sync",
    description="Calendar integrations for Google, Outlook and Apple",
    version="1.0.0",
    lifespan=lifespan,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware
settings = get_settings()
allowed_origins = [settings.app_url or settings.production_url]
if (settings.app_env or "").lower() == "development":
    allowed_origins.extend([
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ])

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH"],
    allow_headers=["*"],
)


# Health check endpoint
@app.get("/health")
async def health_check():
    """Database reachability plus which providers have credentials."""
    providers = {name: is_provider_configured(name) for name in PROVIDERS}
    try:
        db = await get_database()
        await db.execute("SELECT 1")
    except Exception as e:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "error": str(e), "providers": providers},
        )
    return {"status": "healthy", "database": "connected", "providers": providers}


# Include routers
from app.api import api_router

app.include_router(api_router)


@app.exception_handler(CalendarSyncError)
async def calendar_sync_exception_handler(request: Request, exc: CalendarSyncError):
    """Map calendar sync errors to HTTP responses."""
    content: dict = {"detail": str(exc)}

    if isinstance(exc, UnsupportedProviderError):
        status_code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, NotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ConfigurationError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(exc, (OAuthRefreshError, MalformedTokenError)):
        status_code = status.HTTP_409_CONFLICT
        content["reconnect_required"] = True
    elif isinstance(exc, (TransportError, OAuthExchangeError)):
        status_code = status.HTTP_502_BAD_GATEWAY
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content=content)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions."""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    log_level = settings.log_level.lower()

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=3000,
        log_level=log_level,
        reload=False,
    )
