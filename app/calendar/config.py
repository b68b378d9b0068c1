"""Provider OAuth credential and redirect URI resolution."""

import logging
from typing import Optional

from pydantic import BaseModel

from app.config import Settings, get_settings
from app.errors import ConfigurationError

logger = logging.getLogger(__name__)

LOCALHOST_URL = "http://localhost:3000"


class ProviderConfig(BaseModel):
    client_id: str
    client_secret: str
    redirect_uri: Optional[str] = None


def callback_path(provider: str) -> str:
    return f"/api/integrations/{provider}/connect"


def _setting(settings: Settings, provider: str, suffix: str) -> Optional[str]:
    value = getattr(settings, f"{provider}_{suffix}", None)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _base_url(url: str) -> str:
    url = url.strip().rstrip("/")
    if not url.startswith(("http://", "https://")):
        url = f"https://{url}"
    return url


def get_provider_config(provider: str, settings: Optional[Settings] = None) -> ProviderConfig:
    """Resolve client credentials for a provider.

    Raises:
        ConfigurationError: naming both required variables when either is missing
    """
    settings = settings or get_settings()
    client_id = _setting(settings, provider, "client_id")
    client_secret = _setting(settings, provider, "client_secret")

    if not client_id or not client_secret:
        prefix = provider.upper()
        raise ConfigurationError(
            f"{provider} calendar integration is not configured: "
            f"{prefix}_CLIENT_ID and {prefix}_CLIENT_SECRET must be set"
        )

    return ProviderConfig(
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=_setting(settings, provider, "redirect_uri"),
    )


def get_redirect_uri(
    provider: str,
    request_origin: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> str:
    """
    Resolve the OAuth redirect URI for a provider.

    Priority:
        1. {PROVIDER}_REDIRECT_URI
        2. APP_URL + callback path
        3. production domain (APP_ENV production or unset)
        4. DEPLOYMENT_URL
        5. request origin (APP_ENV development only)
        6. localhost, with a warning
    """
    settings = settings or get_settings()
    path = callback_path(provider)

    override = _setting(settings, provider, "redirect_uri")
    if override:
        return override.rstrip("/")

    if settings.app_url and settings.app_url.strip():
        return f"{_base_url(settings.app_url)}{path}"

    env = (settings.app_env or "").strip().lower()
    if env in ("", "production"):
        return f"{_base_url(settings.production_url)}{path}"

    if settings.deployment_url and settings.deployment_url.strip():
        return f"{_base_url(settings.deployment_url)}{path}"

    if env == "development" and request_origin:
        return f"{request_origin.rstrip('/')}{path}"

    logger.warning(
        f"No redirect URI configured for {provider}; falling back to {LOCALHOST_URL}. "
        f"Set {provider.upper()}_REDIRECT_URI or APP_URL."
    )
    return f"{LOCALHOST_URL}{path}"
