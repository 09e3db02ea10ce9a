"""Backoff configuration and delay computation for retried network calls."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import ClassVar, Optional


@dataclass(frozen=True)
class BackoffPolicy:
    """Immutable exponential backoff policy.

    Instances are freely shared between concurrent operations.

    Attributes:
        max_attempts: Total attempts including the first one (>= 1).
        initial_delay: Delay before the first retry in seconds (> 0).
        max_delay: Upper bound for any delay in seconds (>= initial_delay).
        multiplier: Exponential growth factor (> 1).
        jitter_fraction: Symmetric random variation as a fraction of the base delay (0-1).
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter_fraction: float = 0.1

    DEFAULT: ClassVar["BackoffPolicy"]
    AGGRESSIVE: ClassVar["BackoffPolicy"]
    CONSERVATIVE: ClassVar["BackoffPolicy"]

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay <= 0:
            raise ValueError("initial_delay must be > 0")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if self.multiplier <= 1:
            raise ValueError("multiplier must be > 1")
        if not 0.0 <= self.jitter_fraction <= 1.0:
            raise ValueError("jitter_fraction must be between 0.0 and 1.0")

    def base_delay(self, attempt: int) -> float:
        """Return the un-jittered delay after ``attempt`` prior attempts."""
        if attempt < 0:
            raise ValueError("attempt must be >= 0")
        try:
            exponential = self.initial_delay * (self.multiplier ** attempt)
        except OverflowError:
            return self.max_delay
        return min(self.max_delay, exponential)

    def delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Return the jittered delay after ``attempt`` prior attempts.

        Jitter is symmetric: base +/- base * jitter_fraction, sampled
        uniformly, then clamped to [0, max_delay].
        """
        base = self.base_delay(attempt)
        spread = base * self.jitter_fraction
        if spread:
            uniform = rng.uniform if rng is not None else random.uniform
            base += uniform(-spread, spread)
        return min(self.max_delay, max(0.0, base))


BackoffPolicy.DEFAULT = BackoffPolicy()
BackoffPolicy.AGGRESSIVE = BackoffPolicy(max_attempts=5, initial_delay=0.5, multiplier=1.5)
BackoffPolicy.CONSERVATIVE = BackoffPolicy(max_attempts=2, initial_delay=2.0)

# Processing polls tolerate many short transport hiccups.
LENIENT_POLL_POLICY = BackoffPolicy(
    max_attempts=10, initial_delay=0.5, max_delay=2.0, multiplier=1.5
)
