"""Retry, backoff and cancellation primitives."""

from rallynet.resilience.backoff import BackoffPolicy, LENIENT_POLL_POLICY
from rallynet.resilience.cancellation import CancellationToken, interruptible_sleep, race
from rallynet.resilience.classifier import (
    DO_NOT_RETRY,
    RETRY,
    DoNotRetry,
    ErrorClassifier,
    FailureDescriptor,
    FailureKind,
    Retry,
    RetryAfter,
    RetryDecision,
    default_classifier,
    parse_retry_after,
)
from rallynet.resilience.executor import RetryAttemptState, RetryExecutor, with_retry

__all__ = [
    "BackoffPolicy",
    "LENIENT_POLL_POLICY",
    "CancellationToken",
    "interruptible_sleep",
    "race",
    "DO_NOT_RETRY",
    "RETRY",
    "DoNotRetry",
    "ErrorClassifier",
    "FailureDescriptor",
    "FailureKind",
    "Retry",
    "RetryAfter",
    "RetryDecision",
    "default_classifier",
    "parse_retry_after",
    "RetryAttemptState",
    "RetryExecutor",
    "with_retry",
]
