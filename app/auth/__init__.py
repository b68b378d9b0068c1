"""Authentication module."""

from app.auth.session import (
    User,
    create_session_token,
    verify_session_token,
    get_current_user,
    get_current_user_optional,
)

__all__ = [
    "User",
    "create_session_token",
    "verify_session_token",
    "get_current_user",
    "get_current_user_optional",
]
