"""OAuth state parameter helpers.

The state is base64-encoded JSON carrying the user id. It is compared for
equality on the callback and is not signed; session binding on the callback
route is what ties it to the caller.
"""

import base64
import binascii
import json
import logging
import time

logger = logging.getLogger(__name__)


def generate_oauth_state(user_id: str) -> str:
    payload = {"userId": user_id, "timestamp": int(time.time() * 1000)}
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def decode_oauth_state(state: str) -> dict:
    """Decode a state string. Raises ValueError when it is not valid."""
    try:
        decoded = json.loads(base64.b64decode(state, validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Invalid OAuth state: {e}") from e
    if not isinstance(decoded, dict):
        raise ValueError("Invalid OAuth state: not an object")
    return decoded


def verify_oauth_state(state: str, expected_user_id: str) -> bool:
    if not state:
        return False
    try:
        decoded = decode_oauth_state(state)
    except ValueError as e:
        logger.warning(f"OAuth state verification failed: {e}")
        return False
    return decoded.get("userId") == expected_user_id
