"""Caller-visible upload progress.

Progress is derived from server-acknowledged offsets only, and is reported
monotonically: a retried step that re-synchronizes to an offset the caller
has already seen never produces a smaller fraction.
"""

from __future__ import annotations

import threading
from typing import Dict, Optional

from rallynet.protocols.progress import ProgressCallback


class ProgressReporter:
    """Forwards progress for one upload, dropping non-increasing values.

    Safe to call from several threads; the callback sees values in
    increasing order.
    """

    def __init__(self, callback: Optional[ProgressCallback] = None) -> None:
        self._callback = callback
        self._last: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def last_reported(self) -> Optional[float]:
        return self._last

    def report(self, fraction: float) -> None:
        fraction = min(1.0, max(0.0, fraction))
        with self._lock:
            if self._last is not None and fraction <= self._last:
                return
            self._last = fraction
            if self._callback is not None:
                self._callback(fraction)

    def report_bytes(self, committed: int, total: int) -> None:
        self.report(1.0 if total == 0 else committed / total)


class AggregateProgressTracker:
    """Combines progress of several concurrent uploads into one fraction.

    All updates go through a single lock, so concurrent completions never
    lose an update. The callback runs outside that lock and may read the
    tracker; the reporter keeps it monotonic.
    """

    def __init__(self, callback: Optional[ProgressCallback] = None) -> None:
        self._lock = threading.Lock()
        self._totals: Dict[str, int] = {}
        self._committed: Dict[str, int] = {}
        self._reporter = ProgressReporter(callback)

    def register(self, key: str, total_bytes: int) -> None:
        """Declare an upload before its bytes start moving."""
        with self._lock:
            self._totals[key] = total_bytes
            self._committed.setdefault(key, 0)

    def update(self, key: str, committed_bytes: int) -> None:
        """Record the acknowledged offset of one upload."""
        with self._lock:
            if key not in self._totals:
                raise KeyError(f"Upload '{key}' was not registered")
            previous = self._committed[key]
            self._committed[key] = max(previous, min(committed_bytes, self._totals[key]))
            fraction = self._fraction_locked()
        self._reporter.report(fraction)

    def callback_for(self, key: str) -> ProgressCallback:
        """Return a per-upload fraction callback feeding this tracker."""

        def _on_progress(fraction: float) -> None:
            with self._lock:
                total = self._totals[key]
            self.update(key, round(fraction * total))

        return _on_progress

    @property
    def fraction(self) -> float:
        with self._lock:
            return self._fraction_locked()

    @property
    def committed_bytes(self) -> int:
        with self._lock:
            return sum(self._committed.values())

    def _fraction_locked(self) -> float:
        total = sum(self._totals.values())
        if total == 0:
            return 1.0 if self._totals else 0.0
        return sum(self._committed.values()) / total
