"""RallyNet Exception Hierarchy.

This module defines the structured exception hierarchy for RallyNet.
All custom exceptions inherit from RallyNetError, enabling consistent
error handling across the upload, streaming and chat layers.

Failure Categories:
- Transient transport (timeout, reset, no connectivity) -> retried
- Rate limited (HTTP 429) -> retried after server-directed delay
- Permanent client (bad request, unauthorized, bad credential) -> never retried
- Server-side processing failure -> never retried
- Protocol/parse failure -> never retried, treated as a defect signal
- Cancellation -> always distinct from every failure above

Exhaustion is not a class of its own: when retries run out the executor
re-raises the last underlying exception with ``exhausted`` set to True.

Usage:
    from rallynet.core.exceptions import HTTPStatusError, is_exhausted

    try:
        await client.upload(path)
    except HTTPStatusError as e:
        if is_exhausted(e):
            ...  # offer a retry affordance
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Optional


class TransportKind(StrEnum):
    """Normalized transport-level failure kinds."""

    TIMEOUT = "timeout"
    CONNECTION_RESET = "connection_reset"
    NO_CONNECTIVITY = "no_connectivity"
    OTHER = "other"


class RallyNetError(Exception):
    """Base exception for all RallyNet errors.

    Attributes:
        message: Human-readable error description.
        exhausted: True when the retry executor gave up on this failure.
        attempts: Number of attempts made when the failure surfaced.
    """

    def __init__(self, message: Optional[str] = None) -> None:
        """Initialize RallyNetError.

        Args:
            message: Optional custom message. Defaults to a generic message.
        """
        self.message = message or "A RallyNet error occurred."
        self.exhausted = False
        self.attempts = 0
        super().__init__(self.message)

    def mark_exhausted(self, attempts: int) -> None:
        """Tag this failure as the last one observed before retries ran out."""
        self.exhausted = True
        self.attempts = attempts

    @property
    def context(self) -> dict[str, Any]:
        """Return context dictionary for structured logging."""
        return {}

    def __repr__(self) -> str:
        """Return debug representation."""
        return f"{self.__class__.__name__}({self.message!r})"


def is_exhausted(exc: BaseException) -> bool:
    """Return True if ``exc`` surfaced because retries were exhausted."""
    return bool(getattr(exc, "exhausted", False))


class ConfigurationError(RallyNetError):
    """Configuration file or value is invalid.

    Attributes:
        config_path: Path to the configuration file.
        key: The configuration key that caused the error.
    """

    def __init__(
        self,
        config_path: str,
        key: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        self.config_path = config_path
        self.key = key

        if message is None:
            key_info = f" key '{key}'" if key else ""
            message = f"Configuration error in '{config_path}'{key_info}."

        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        return {"config_path": self.config_path, "key": self.key}

    def __repr__(self) -> str:
        return (
            f"ConfigurationError(config_path={self.config_path!r}, "
            f"key={self.key!r})"
        )


class OperationCancelledError(RallyNetError):
    """The logical operation was cancelled through its cancellation token.

    Never classified for retry and never conflated with a failure.

    Attributes:
        operation: Name of the cancelled operation.
    """

    def __init__(self, operation: str = "operation", message: Optional[str] = None) -> None:
        self.operation = operation
        if message is None:
            message = f"{operation} was cancelled."
        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        return {"operation": self.operation}


# =============================================================================
# Network failures
# =============================================================================


class TransportError(RallyNetError):
    """The request never produced an HTTP response.

    Attributes:
        kind: Normalized transport failure kind.
    """

    def __init__(self, kind: TransportKind, message: Optional[str] = None) -> None:
        self.kind = TransportKind(kind)
        if message is None:
            message = f"Transport failure: {self.kind.value}."
        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        return {"kind": self.kind.value}

    def __repr__(self) -> str:
        return f"TransportError(kind={self.kind.value!r})"


class HTTPStatusError(RallyNetError):
    """The server answered with a non-success HTTP status.

    Attributes:
        status_code: HTTP status code.
        retry_after: Raw ``Retry-After`` header value, if any.
        body: Response body excerpt for diagnostics.
    """

    def __init__(
        self,
        status_code: int,
        retry_after: Optional[str] = None,
        body: str = "",
        message: Optional[str] = None,
    ) -> None:
        self.status_code = status_code
        self.retry_after = retry_after
        self.body = body
        if message is None:
            message = f"HTTP error: {status_code}."
        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        return {"status_code": self.status_code, "retry_after": self.retry_after}

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(status_code={self.status_code!r}, "
            f"retry_after={self.retry_after!r})"
        )


class RateLimitedError(HTTPStatusError):
    """The server rejected the request with HTTP 429."""

    def __init__(
        self,
        retry_after: Optional[str] = None,
        body: str = "",
        message: Optional[str] = None,
    ) -> None:
        if message is None:
            retry_info = f" (retry after {retry_after})" if retry_after else ""
            message = f"Rate limit exceeded{retry_info}."
        super().__init__(429, retry_after=retry_after, body=body, message=message)


class InvalidCredentialError(RallyNetError):
    """The API key is missing or was rejected; re-enter the credential."""

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or "API key is missing or invalid.")


# =============================================================================
# Protocol failures
# =============================================================================


class MalformedResponseError(RallyNetError):
    """The response did not have the expected shape.

    Attributes:
        reason: Description of the format issue.
    """

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        self.reason = reason
        if message is None:
            message = f"Malformed response: {reason}."
        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        return {"reason": self.reason}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(reason={self.reason!r})"


class StreamTruncatedError(MalformedResponseError):
    """The response stream ended without a completion marker."""

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__("stream ended without a completion marker", message=message)


class StreamBufferOverflowError(MalformedResponseError):
    """Buffered-but-unemitted stream bytes exceeded the configured bound.

    Attributes:
        limit: Maximum number of buffered bytes.
    """

    def __init__(self, limit: int, message: Optional[str] = None) -> None:
        self.limit = limit
        super().__init__(f"stream buffer exceeded {limit} bytes", message=message)

    @property
    def context(self) -> dict[str, Any]:
        ctx = super().context
        ctx["limit"] = self.limit
        return ctx


class ResponseBlockedError(RallyNetError):
    """The service refused to generate a response for the prompt.

    Attributes:
        reason: Block reason reported by the service.
    """

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        self.reason = reason
        if message is None:
            message = f"Response blocked: {reason}."
        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        return {"reason": self.reason}


class StreamInterruptedError(RallyNetError):
    """A streaming response failed after output was already delivered.

    The original failure is chained as ``__cause__``. Mid-stream failures
    are never retried transparently; recovery is left to the caller.

    Attributes:
        chunks_emitted: Number of chunks delivered before the failure.
        partial_text: Concatenated text of the delivered chunks.
    """

    def __init__(
        self,
        chunks_emitted: int,
        partial_text: str = "",
        message: Optional[str] = None,
    ) -> None:
        self.chunks_emitted = chunks_emitted
        self.partial_text = partial_text
        if message is None:
            message = f"Stream interrupted after {chunks_emitted} chunk(s)."
        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        return {
            "chunks_emitted": self.chunks_emitted,
            "partial_chars": len(self.partial_text),
        }

    def __repr__(self) -> str:
        return f"StreamInterruptedError(chunks_emitted={self.chunks_emitted!r})"


# =============================================================================
# Upload failures
# =============================================================================


class UploadError(RallyNetError):
    """The upload cannot proceed (bad input or inconsistent server state)."""

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        self.reason = reason
        super().__init__(message or f"Upload failed: {reason}.")

    @property
    def context(self) -> dict[str, Any]:
        return {"reason": self.reason}


class FileTooLargeError(UploadError):
    """The file exceeds the maximum upload size.

    Attributes:
        size_bytes: Actual file size.
        max_bytes: Configured limit.
    """

    def __init__(self, size_bytes: int, max_bytes: int) -> None:
        self.size_bytes = size_bytes
        self.max_bytes = max_bytes
        size_mb = size_bytes / (1024 * 1024)
        max_mb = max_bytes / (1024 * 1024)
        super().__init__(
            "file too large",
            message=f"Video file too large ({size_mb:.1f}MB), maximum is {max_mb:.0f}MB.",
        )

    @property
    def context(self) -> dict[str, Any]:
        return {"size_bytes": self.size_bytes, "max_bytes": self.max_bytes}


class UploadOffsetError(UploadError):
    """The server reported a committed offset that contradicts the session.

    Attributes:
        committed: Offset the client had already seen acknowledged.
        reported: Offset reported by the server.
    """

    def __init__(self, committed: int, reported: int) -> None:
        self.committed = committed
        self.reported = reported
        super().__init__(
            "inconsistent committed offset",
            message=(
                f"Server reported committed offset {reported} "
                f"but {committed} bytes were already acknowledged."
            ),
        )

    @property
    def context(self) -> dict[str, Any]:
        return {"committed": self.committed, "reported": self.reported}


class ProcessingFailedError(RallyNetError):
    """Server-side processing of an uploaded file failed.

    Attributes:
        file_name: Remote file name (``files/abc123``).
        state: Terminal state reported by the server.
    """

    def __init__(self, file_name: str, state: str = "FAILED", message: Optional[str] = None) -> None:
        self.file_name = file_name
        self.state = state
        if message is None:
            message = f"Processing of '{file_name}' failed (state {state})."
        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        return {"file_name": self.file_name, "state": self.state}

    def __repr__(self) -> str:
        return f"ProcessingFailedError(file_name={self.file_name!r}, state={self.state!r})"


class ProcessingTimeoutError(RallyNetError):
    """The file did not become ready within the bounded number of polls.

    Attributes:
        file_name: Remote file name.
        polls: Number of polls performed.
    """

    def __init__(self, file_name: str, polls: int, message: Optional[str] = None) -> None:
        self.file_name = file_name
        self.polls = polls
        if message is None:
            message = f"'{file_name}' still processing after {polls} polls."
        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        return {"file_name": self.file_name, "polls": self.polls}
