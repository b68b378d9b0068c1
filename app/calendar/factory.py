"""Provider lookup and construction."""

from typing import Optional

import httpx

from app.calendar.apple import AppleCalendarProvider
from app.calendar.base import CalendarProvider
from app.calendar.google import GoogleCalendarProvider
from app.calendar.outlook import OutlookCalendarProvider
from app.calendar.config import get_provider_config
from app.config import Settings
from app.errors import ConfigurationError, UnsupportedProviderError

PROVIDERS: dict[str, type[CalendarProvider]] = {
    "google": GoogleCalendarProvider,
    "outlook": OutlookCalendarProvider,
    "apple": AppleCalendarProvider,
}


def is_provider_supported(name: Optional[str]) -> bool:
    return bool(name) and name.strip().lower() in PROVIDERS


def validate_provider(name: Optional[str]) -> str:
    """Normalize a provider name or raise UnsupportedProviderError."""
    if not is_provider_supported(name):
        raise UnsupportedProviderError(
            f"Unsupported calendar provider: {name!r}. "
            f"Supported providers: {', '.join(PROVIDERS)}"
        )
    return name.strip().lower()


def get_provider(
    provider_type: str,
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> CalendarProvider:
    """
    Build a fresh adapter for a provider.

    Raises:
        UnsupportedProviderError: for unknown provider names
        ConfigurationError: if the provider's client credentials are missing
    """
    provider_cls = PROVIDERS[validate_provider(provider_type)]
    provider = provider_cls(settings=settings, transport=transport)
    provider.validate_config()
    return provider


def is_provider_configured(provider_type: str, settings: Optional[Settings] = None) -> bool:
    """True when the provider's client credentials are present."""
    try:
        get_provider_config(validate_provider(provider_type), settings)
    except ConfigurationError:
        return False
    return True
