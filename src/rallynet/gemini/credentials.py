"""API key sources for the Gemini transport."""

from __future__ import annotations

from typing import Optional

from rallynet.core.config import Settings, get_settings


class StaticCredentialProvider:
    """Serves a fixed API key."""

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

    def get_api_key(self) -> str:
        return self._api_key


class SettingsCredentialProvider:
    """Reads the API key from settings, falling back to ``GEMINI_API_KEY``.

    The key is looked up on every call so a key entered after start-up is
    picked up without rebuilding the transport.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings

    def get_api_key(self) -> str:
        settings = self._settings or get_settings()
        return settings.api_key_value()


def is_valid_api_key_format(api_key: str) -> bool:
    """Basic offline format check for Google API keys.

    Keys start with ``AIza`` and are 30-50 characters long.
    """
    if not api_key or len(api_key) < 20:
        return False
    return api_key.startswith("AIza") and 30 <= len(api_key) <= 50
