"""Credential source protocol for RallyNet."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class CredentialProvider(Protocol):
    """Source of the API key (keychain, settings, environment).

    Note:
        Implementations do NOT need to inherit from this class.
    """

    def get_api_key(self) -> str:
        """Return the API key, or an empty string when none is configured."""
        ...  # pragma: no cover
