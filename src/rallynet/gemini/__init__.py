"""Gemini REST API access: transport and credentials."""

from rallynet.gemini.credentials import (
    SettingsCredentialProvider,
    StaticCredentialProvider,
    is_valid_api_key_format,
)
from rallynet.gemini.transport import GeminiTransport, raise_for_status, translate_transport_error

__all__ = [
    "GeminiTransport",
    "SettingsCredentialProvider",
    "StaticCredentialProvider",
    "is_valid_api_key_format",
    "raise_for_status",
    "translate_transport_error",
]
