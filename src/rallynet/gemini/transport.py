"""Shared HTTP transport for the Gemini API.

Owns one ``httpx.AsyncClient`` and turns everything that can go wrong on
the wire into the RallyNet exception taxonomy:

- httpx transport exceptions -> ``TransportError`` with a normalized kind
- non-2xx responses -> ``HTTPStatusError`` / ``RateLimitedError`` /
  ``InvalidCredentialError``

No retries happen here; callers wrap each request in ``RetryExecutor``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx
import structlog

from rallynet.core.config import ApiConfig
from rallynet.core.exceptions import (
    HTTPStatusError,
    InvalidCredentialError,
    MalformedResponseError,
    RateLimitedError,
    TransportError,
    TransportKind,
)
from rallynet.protocols.credentials import CredentialProvider

log = structlog.get_logger()

API_KEY_HEADER = "x-goog-api-key"
_BODY_EXCERPT = 500


def translate_transport_error(exc: httpx.TransportError) -> TransportError:
    """Map an httpx transport exception onto a normalized ``TransportError``."""
    if isinstance(exc, httpx.TimeoutException):
        kind = TransportKind.TIMEOUT
    elif isinstance(exc, httpx.ConnectError):
        kind = TransportKind.NO_CONNECTIVITY
    elif isinstance(exc, (httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError, httpx.CloseError)):
        kind = TransportKind.CONNECTION_RESET
    else:
        kind = TransportKind.OTHER
    return TransportError(kind, message=f"Transport failure ({kind.value}): {exc}")


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
        return str(data.get("error", {}).get("message") or response.text)
    except (ValueError, AttributeError):
        return response.text


def _error_status(response: httpx.Response) -> str:
    try:
        details = response.json().get("error", {}).get("details", [])
    except (ValueError, AttributeError):
        return ""
    for detail in details if isinstance(details, list) else []:
        if isinstance(detail, dict) and detail.get("reason"):
            return str(detail["reason"])
    return ""


def raise_for_status(response: httpx.Response) -> None:
    """Raise the RallyNet exception matching a non-2xx response.

    The response body must already be read.
    """
    if response.is_success:
        return

    status = response.status_code
    retry_after = response.headers.get("Retry-After")
    body = response.text[:_BODY_EXCERPT]

    if status == 429:
        raise RateLimitedError(retry_after=retry_after, body=body)

    if status in (400, 401, 403) and _error_status(response) == "API_KEY_INVALID":
        log.error("api_auth_error", status=status)
        raise InvalidCredentialError("API key was rejected by the service.")

    raise HTTPStatusError(
        status,
        retry_after=retry_after,
        body=body,
        message=f"HTTP error {status}: {_error_message(response)[:_BODY_EXCERPT]}",
    )


def parse_json(response: httpx.Response) -> Dict[str, Any]:
    """Decode a JSON object body.

    Raises:
        MalformedResponseError: If the body is not a JSON object.
    """
    try:
        data = response.json()
    except ValueError as e:
        raise MalformedResponseError(f"invalid JSON body: {e}") from e
    if not isinstance(data, dict):
        raise MalformedResponseError("JSON body is not an object")
    return data


class GeminiTransport:
    """HTTP access to the Gemini REST API.

    Usable as an async context manager; closes the client it created.
    """

    def __init__(
        self,
        api: ApiConfig,
        credentials: CredentialProvider,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """Initialize the transport.

        Args:
            api: Endpoint configuration.
            credentials: Source of the API key.
            client: Optional preconfigured client (the caller keeps ownership).
        """
        self._api = api
        self._credentials = credentials
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=api.timeout)

    @property
    def api(self) -> ApiConfig:
        return self._api

    def url(self, path: str, upload: bool = False) -> str:
        """Build an absolute API URL (``/upload`` prefix for upload endpoints)."""
        prefix = "/upload" if upload else ""
        return f"{self._api.base_url}{prefix}/{self._api.api_version}/{path.lstrip('/')}"

    def require_api_key(self) -> str:
        """Return the API key or fail before any network I/O.

        Raises:
            InvalidCredentialError: If no key is configured.
        """
        api_key = self._credentials.get_api_key()
        if not api_key:
            raise InvalidCredentialError("API key is not configured.")
        return api_key

    def _headers(self, extra: Optional[Dict[str, str]]) -> Dict[str, str]:
        headers = {API_KEY_HEADER: self.require_api_key()}
        if extra:
            headers.update(extra)
        return headers

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        content: Optional[bytes] = None,
        json: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        """Send one request and return the fully read, successful response.

        Raises:
            TransportError: No response was received.
            HTTPStatusError: The response status was not 2xx.
        """
        kwargs: Dict[str, Any] = {"headers": self._headers(headers)}
        if content is not None:
            kwargs["content"] = content
        if json is not None:
            kwargs["json"] = json
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise translate_transport_error(e) from e
        raise_for_status(response)
        return response

    async def open_stream(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send a request and return the response with its body unread.

        The caller owns the returned response and must ``aclose()`` it.
        Error responses are read, closed and raised here.
        """
        request = self._client.build_request(method, url, headers=self._headers(headers), json=json)
        try:
            response = await self._client.send(request, stream=True)
        except httpx.TransportError as e:
            raise translate_transport_error(e) from e

        if not response.is_success:
            try:
                await response.aread()
            except httpx.TransportError as e:
                raise translate_transport_error(e) from e
            finally:
                await response.aclose()
            raise_for_status(response)
        return response

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "GeminiTransport":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
