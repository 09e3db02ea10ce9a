"""Generic run-with-retry engine.

Every network step in RallyNet goes through ``RetryExecutor.run``: one
attempt is made, failures are classified, and retryable failures are
retried after an interruptible backoff sleep until the policy's attempt
budget is spent.

Exhaustion re-raises the *last observed* failure, tagged with
``exhausted=True`` and the attempt count, so callers can branch on the
original cause. Cancellation through the token aborts a pending sleep or
in-flight attempt with ``OperationCancelledError``.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from rallynet.core.exceptions import OperationCancelledError, RallyNetError
from rallynet.resilience.backoff import BackoffPolicy
from rallynet.resilience.cancellation import CancellationToken, interruptible_sleep, race
from rallynet.resilience.classifier import (
    DoNotRetry,
    ErrorClassifier,
    RetryAfter,
    RetryDecision,
    default_classifier,
)

log = structlog.get_logger()

T = TypeVar("T")

ShouldRetry = Callable[[BaseException, int], Optional[RetryDecision]]
Sleeper = Callable[[float, Optional[CancellationToken]], Awaitable[None]]


@dataclass
class RetryAttemptState:
    """Transient state of one ``run`` call; never shared between calls.

    Attributes:
        attempt: Number of attempts that have failed so far.
        total_delay: Cumulative backoff delay in seconds.
        cancelled: Set when the run ended through cancellation.
    """

    attempt: int = 0
    total_delay: float = 0.0
    cancelled: bool = False


def _mark_exhausted(exc: BaseException, attempts: int) -> None:
    if isinstance(exc, RallyNetError):
        exc.mark_exhausted(attempts)
        return
    exc.exhausted = True  # type: ignore[attr-defined]
    exc.attempts = attempts  # type: ignore[attr-defined]
    exc.add_note(f"retries exhausted after {attempts} attempt(s)")


class RetryExecutor:
    """Runs async operations with classified retries and backoff.

    An executor holds no per-call state, so one instance can serve many
    concurrent ``run`` calls; each call owns its own ``RetryAttemptState``
    and its own cancellation token. Aggregate counters are updated under a
    lock.
    """

    def __init__(
        self,
        classifier: Optional[ErrorClassifier] = None,
        sleep: Optional[Sleeper] = None,
    ) -> None:
        """Initialize the executor.

        Args:
            classifier: Error classifier; defaults to the shared classifier.
            sleep: Backoff sleeper ``(delay, token)``; defaults to an
                interruptible ``asyncio.sleep``.
        """
        self._classifier = classifier or default_classifier
        self._sleep = sleep or interruptible_sleep

        self._metrics_lock = threading.Lock()
        self._total_runs = 0
        self._total_retries = 0
        self._total_exhausted = 0

    async def run(
        self,
        policy: BackoffPolicy,
        operation: Callable[[], Awaitable[T]],
        should_retry: Optional[ShouldRetry] = None,
        token: Optional[CancellationToken] = None,
        name: str = "operation",
    ) -> T:
        """Run ``operation`` until it succeeds or the policy gives up.

        Args:
            policy: Backoff policy (attempt budget and delays).
            operation: Zero-arg callable returning a fresh awaitable per attempt.
            should_retry: Optional override ``(error, attempt) -> decision``;
                returning None falls back to the classifier.
            token: Cancellation token for this logical operation.
            name: Operation name for logs.

        Returns:
            The operation's result.

        Raises:
            OperationCancelledError: If the token fired.
            Exception: The last failure, immediately for non-retryable
                failures or tagged ``exhausted`` once attempts run out.
        """
        state = RetryAttemptState()
        with self._metrics_lock:
            self._total_runs += 1

        while True:
            try:
                return await race(operation(), token, name)
            except OperationCancelledError:
                state.cancelled = True
                log.info("retry_cancelled", operation=name, attempt=state.attempt + 1)
                raise
            except asyncio.CancelledError:
                state.cancelled = True
                raise
            except Exception as exc:
                delay = self._next_delay(policy, exc, state, should_retry, name)

            log.warning(
                "retry_scheduled",
                operation=name,
                attempt=state.attempt + 1,
                max_attempts=policy.max_attempts,
                delay=round(delay, 3),
            )
            try:
                await self._sleep(delay, token)
            except OperationCancelledError:
                state.cancelled = True
                log.info("retry_cancelled", operation=name, attempt=state.attempt + 1)
                raise OperationCancelledError(name) from None

            state.attempt += 1
            state.total_delay += delay
            with self._metrics_lock:
                self._total_retries += 1

    def _next_delay(
        self,
        policy: BackoffPolicy,
        exc: Exception,
        state: RetryAttemptState,
        should_retry: Optional[ShouldRetry],
        name: str,
    ) -> float:
        """Return the backoff delay for ``exc`` or re-raise it."""
        decision: Optional[RetryDecision] = None
        if should_retry is not None:
            decision = should_retry(exc, state.attempt)
        if decision is None:
            decision = self._classifier.classify(exc, policy=policy, attempt=state.attempt)

        error_info = getattr(exc, "context", None) or {}
        log.debug(
            "retry_attempt_failed",
            operation=name,
            attempt=state.attempt + 1,
            error_class=type(exc).__name__,
            decision=type(decision).__name__,
            **error_info,
        )

        if isinstance(decision, DoNotRetry):
            log.warning(
                "retry_not_retryable",
                operation=name,
                attempt=state.attempt + 1,
                error_class=type(exc).__name__,
                error=str(exc),
            )
            raise exc

        attempts = state.attempt + 1
        if attempts >= policy.max_attempts:
            _mark_exhausted(exc, attempts)
            with self._metrics_lock:
                self._total_exhausted += 1
            log.error(
                "retry_exhausted",
                operation=name,
                attempts=attempts,
                error_class=type(exc).__name__,
                error=str(exc),
            )
            raise exc

        if isinstance(decision, RetryAfter):
            return min(max(0.0, decision.delay), policy.max_delay)
        return policy.delay(state.attempt)

    @property
    def total_runs(self) -> int:
        """Total ``run`` calls started."""
        with self._metrics_lock:
            return self._total_runs

    @property
    def total_retries(self) -> int:
        """Total retries performed across all runs."""
        with self._metrics_lock:
            return self._total_retries

    @property
    def total_exhausted(self) -> int:
        """Runs that ended with an exhausted retry budget."""
        with self._metrics_lock:
            return self._total_exhausted


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: BackoffPolicy = BackoffPolicy.DEFAULT,
    should_retry: Optional[ShouldRetry] = None,
    token: Optional[CancellationToken] = None,
) -> T:
    """Run ``operation`` with a fresh executor."""
    return await RetryExecutor().run(policy, operation, should_retry=should_retry, token=token)
