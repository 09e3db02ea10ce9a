"""Retry decisions for normalized network failures.

The classifier is the contract between the network layer and the retry
executor. Every failure is first normalized into a ``FailureDescriptor``
(transport kind, HTTP status, or domain failure) and then mapped onto a
``RetryDecision``:

- transport timeout / connection reset / no connectivity -> Retry
- HTTP 5xx and 408 -> Retry
- HTTP 429 -> RetryAfter(Retry-After header, else the policy delay)
- HTTP 400, 401, 403 and other 4xx -> DoNotRetry
- invalid credential, malformed response, processing failure -> DoNotRetry
- anything unrecognized -> DoNotRetry (fail closed)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import StrEnum
from typing import Optional, Union

import httpx

from rallynet.core.exceptions import (
    HTTPStatusError,
    InvalidCredentialError,
    MalformedResponseError,
    OperationCancelledError,
    ProcessingFailedError,
    ProcessingTimeoutError,
    ResponseBlockedError,
    StreamInterruptedError,
    TransportError,
    TransportKind,
    UploadError,
)
from rallynet.resilience.backoff import BackoffPolicy


@dataclass(frozen=True)
class Retry:
    """Retry after the policy-computed delay."""


@dataclass(frozen=True)
class RetryAfter:
    """Retry after an explicit delay in seconds."""

    delay: float


@dataclass(frozen=True)
class DoNotRetry:
    """Fail immediately."""


RetryDecision = Union[Retry, RetryAfter, DoNotRetry]

RETRY = Retry()
DO_NOT_RETRY = DoNotRetry()


class FailureKind(StrEnum):
    """Normalized failure categories the classifier understands."""

    TIMEOUT = "timeout"
    CONNECTION_RESET = "connection_reset"
    NO_CONNECTIVITY = "no_connectivity"
    OTHER_TRANSPORT = "other_transport"
    HTTP = "http"
    INVALID_CREDENTIAL = "invalid_credential"
    MALFORMED_RESPONSE = "malformed_response"
    PROCESSING_FAILED = "processing_failed"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


_TRANSPORT_KINDS = {
    TransportKind.TIMEOUT: FailureKind.TIMEOUT,
    TransportKind.CONNECTION_RESET: FailureKind.CONNECTION_RESET,
    TransportKind.NO_CONNECTIVITY: FailureKind.NO_CONNECTIVITY,
    TransportKind.OTHER: FailureKind.OTHER_TRANSPORT,
}


@dataclass(frozen=True)
class FailureDescriptor:
    """A failure reduced to what the retry decision depends on.

    Attributes:
        kind: Failure category.
        status_code: HTTP status for ``FailureKind.HTTP``.
        retry_after: Raw ``Retry-After`` header value, if any.
    """

    kind: FailureKind
    status_code: Optional[int] = None
    retry_after: Optional[str] = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> "FailureDescriptor":
        """Normalize an exception raised by a network operation."""
        if isinstance(exc, (OperationCancelledError, asyncio.CancelledError)):
            return cls(FailureKind.CANCELLED)
        if isinstance(exc, TransportError):
            return cls(_TRANSPORT_KINDS[exc.kind])
        if isinstance(exc, HTTPStatusError):
            return cls(FailureKind.HTTP, status_code=exc.status_code, retry_after=exc.retry_after)
        if isinstance(exc, InvalidCredentialError):
            return cls(FailureKind.INVALID_CREDENTIAL)
        if isinstance(exc, (MalformedResponseError, ResponseBlockedError, UploadError, StreamInterruptedError)):
            return cls(FailureKind.MALFORMED_RESPONSE)
        if isinstance(exc, (ProcessingFailedError, ProcessingTimeoutError)):
            return cls(FailureKind.PROCESSING_FAILED)
        # Raw httpx failures that escaped the transport layer
        if isinstance(exc, httpx.TimeoutException):
            return cls(FailureKind.TIMEOUT)
        if isinstance(exc, httpx.ConnectError):
            return cls(FailureKind.NO_CONNECTIVITY)
        if isinstance(exc, (httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError)):
            return cls(FailureKind.CONNECTION_RESET)
        if isinstance(exc, httpx.HTTPStatusError):
            return cls(
                FailureKind.HTTP,
                status_code=exc.response.status_code,
                retry_after=exc.response.headers.get("Retry-After"),
            )
        return cls(FailureKind.UNKNOWN)


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Parse a ``Retry-After`` header into seconds.

    Accepts delta-seconds and HTTP-date forms. Returns None when the value
    is missing, unparseable or negative.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        seconds = (when - (now or datetime.now(timezone.utc))).total_seconds()
    if seconds < 0 or seconds != seconds or seconds == float("inf"):
        return None
    return seconds


class ErrorClassifier:
    """Maps failures onto retry decisions."""

    def classify(
        self,
        failure: Union[BaseException, FailureDescriptor],
        policy: Optional[BackoffPolicy] = None,
        attempt: int = 0,
    ) -> RetryDecision:
        """Return the retry decision for ``failure``.

        Args:
            failure: Exception raised by an attempt, or an already
                normalized descriptor.
            policy: Policy used for the 429 fallback delay.
            attempt: 0-based index of the attempt that failed.
        """
        if isinstance(failure, FailureDescriptor):
            descriptor = failure
        else:
            descriptor = FailureDescriptor.from_exception(failure)

        kind = descriptor.kind
        if kind in (FailureKind.TIMEOUT, FailureKind.CONNECTION_RESET, FailureKind.NO_CONNECTIVITY):
            return RETRY
        if kind is FailureKind.HTTP and descriptor.status_code is not None:
            return self._classify_status(descriptor, policy, attempt)
        return DO_NOT_RETRY

    def _classify_status(
        self,
        descriptor: FailureDescriptor,
        policy: Optional[BackoffPolicy],
        attempt: int,
    ) -> RetryDecision:
        status = descriptor.status_code
        if status == 429:
            delay = parse_retry_after(descriptor.retry_after)
            if delay is not None:
                return RetryAfter(delay)
            if policy is not None:
                return RetryAfter(policy.delay(attempt))
            return RETRY
        if 500 <= status < 600 or status == 408:
            return RETRY
        return DO_NOT_RETRY


default_classifier = ErrorClassifier()
