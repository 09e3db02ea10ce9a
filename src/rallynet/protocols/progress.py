"""Upload progress callback protocol for RallyNet."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class ProgressCallback(Protocol):
    """Receives upload progress as a fraction in [0, 1].

    The core never reports a smaller fraction than one already reported
    for the same upload, even across retried steps.
    """

    def __call__(self, fraction: float) -> None:
        ...  # pragma: no cover
