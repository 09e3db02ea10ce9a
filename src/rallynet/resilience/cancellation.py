"""Cooperative cancellation for one logical operation.

A ``CancellationToken`` governs exactly one upload or one chat turn. It is
observed at every suspension point the core owns (backoff sleeps, polls,
stream reads) through ``race``: the awaited work and the token compete,
whichever finishes first wins and the loser is cancelled.

Usage:
    token = CancellationToken()
    task = asyncio.create_task(client.upload(path, token=token))
    ...
    token.cancel()  # upload raises OperationCancelledError promptly
"""

from __future__ import annotations

import asyncio
import threading
from typing import Awaitable, Optional, TypeVar

from rallynet.core.exceptions import OperationCancelledError

T = TypeVar("T")


class CancellationToken:
    """Single-fire cancellation signal for one logical operation.

    Not bound to an event loop until first awaited, so a token can be
    created anywhere and shared with the operation it governs. ``cancel``
    may be called from any thread; the waiting loop is woken through
    ``call_soon_threadsafe``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._reason: Optional[str] = None
        self._event: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        """Request cancellation. Idempotent and thread-safe."""
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            self._reason = reason
            event, loop = self._event, self._loop
        if event is None or loop is None:
            return
        if _running_loop() is loop:
            event.set()
        elif not loop.is_closed():
            loop.call_soon_threadsafe(event.set)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self, operation: str = "operation") -> None:
        """Raise OperationCancelledError if cancellation was requested."""
        if self._cancelled:
            raise OperationCancelledError(operation)

    async def wait(self) -> None:
        """Block until cancellation is requested."""
        with self._lock:
            if self._event is None:
                self._event = asyncio.Event()
                self._loop = asyncio.get_running_loop()
                if self._cancelled:
                    self._event.set()
            event = self._event
        await event.wait()


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


async def race(
    work: Awaitable[T],
    token: Optional[CancellationToken],
    operation: str = "operation",
) -> T:
    """Await ``work`` unless ``token`` fires first.

    The result slot is written exactly once: either by ``work`` or by the
    cancellation. The losing task is cancelled before returning.

    Raises:
        OperationCancelledError: If the token fired first.
    """
    if token is None:
        return await work
    if token.cancelled:
        if asyncio.iscoroutine(work):
            work.close()
        raise OperationCancelledError(operation)

    work_task = asyncio.ensure_future(work)
    cancel_task = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {work_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        work_task.cancel()
        cancel_task.cancel()
        raise

    if work_task in done:
        cancel_task.cancel()
        return work_task.result()

    work_task.cancel()
    await asyncio.gather(work_task, return_exceptions=True)
    raise OperationCancelledError(operation)


async def interruptible_sleep(
    delay: float,
    token: Optional[CancellationToken] = None,
    operation: str = "sleep",
) -> None:
    """Sleep for ``delay`` seconds, aborting immediately on cancellation."""
    await race(asyncio.sleep(delay), token, operation)
