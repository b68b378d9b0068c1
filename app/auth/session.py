"""Session verification using JWT tokens issued by the DOER auth layer."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import HTTPException, Request, status
from jose import JWTError, jwt
from pydantic import BaseModel

from app.calendar.types import utcnow
from app.config import get_settings

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
SESSION_COOKIE_NAME = "session"


class SessionData(BaseModel):
    """Session data stored in JWT."""
    user_id: str
    exp: datetime


class User(BaseModel):
    """User model for authenticated requests."""
    id: str


def create_session_token(user_id: str, expires_in: Optional[timedelta] = None) -> str:
    """Create a JWT session token."""
    settings = get_settings()
    expire = utcnow() + (expires_in or timedelta(days=settings.session_expire_days))
    data = {
        "user_id": user_id,
        "exp": expire,
    }
    return jwt.encode(data, settings.session_secret_key, algorithm=ALGORITHM)


def verify_session_token(token: str) -> Optional[SessionData]:
    """Verify and decode a session token."""
    try:
        payload = jwt.decode(token, get_settings().session_secret_key, algorithms=[ALGORITHM])
        return SessionData(**payload)
    except (JWTError, ValueError) as e:
        logger.warning(f"Invalid session token: {e}")
        return None


def _token_from_request(request: Request) -> Optional[str]:
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if token:
        return token
    authorization = request.headers.get("Authorization", "")
    if authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None


async def get_current_user_optional(request: Request) -> Optional[User]:
    """Get current user from session, returns None if not authenticated."""
    token = _token_from_request(request)
    if not token:
        return None

    session = verify_session_token(token)
    if not session:
        return None

    return User(id=session.user_id)


async def get_current_user(request: Request) -> User:
    """Get current user from session, raises 401 if not authenticated."""
    user = await get_current_user_optional(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
