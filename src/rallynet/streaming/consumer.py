"""Streaming generation response consumer.

``StreamingResponseConsumer`` turns the SSE byte stream of a
``streamGenerateContent`` call into ``StreamingChunk`` values.

Two sides meet in the chunk buffer:

- a reader task pushes: it drains the response as bytes arrive, decodes
  complete SSE frames and appends fully delineated fragments;
- the caller pulls: ``async for chunk in consumer`` emits buffered
  fragments in order, waiting on the reader when the buffer is empty.

Bytes received but not yet emitted are bounded by ``max_buffer_bytes``;
a caller that stops draining gets ``StreamBufferOverflowError``.

Failures before the first emitted chunk propagate unchanged so that
``open_stream`` can retry the connection. Once output has been delivered,
failures surface as ``StreamInterruptedError`` carrying the partial text
and are never retried here.
"""

from __future__ import annotations

import asyncio
import json
from collections import deque
from typing import AsyncIterator, Awaitable, Callable, Deque, List, NamedTuple, Optional

import httpx
import structlog

from rallynet.core.exceptions import (
    HTTPStatusError,
    MalformedResponseError,
    OperationCancelledError,
    ResponseBlockedError,
    StreamBufferOverflowError,
    StreamInterruptedError,
    StreamTruncatedError,
)
from rallynet.core.models import StreamingChunk
from rallynet.gemini.transport import translate_transport_error
from rallynet.resilience.backoff import BackoffPolicy
from rallynet.resilience.cancellation import CancellationToken, race
from rallynet.resilience.executor import RetryExecutor
from rallynet.streaming.sse import SSEDecoder, SSEEvent

log = structlog.get_logger()

DEFAULT_MAX_BUFFER_BYTES = 1024 * 1024
DONE_MARKER = "[DONE]"


class Fragment(NamedTuple):
    """Parsed payload of one SSE event."""

    text: str
    is_final: bool
    finish_reason: Optional[str]
    size: int = 0


def parse_generate_event(event: SSEEvent) -> Optional[Fragment]:
    """Parse one ``streamGenerateContent`` event.

    Returns:
        The fragment, or None for events that carry no candidate
        (for example usage-only frames).

    Raises:
        MalformedResponseError: The payload is not the expected JSON shape.
        ResponseBlockedError: The prompt was blocked.
        HTTPStatusError: The server reported an error inside the stream.
    """
    if event.data.strip() == DONE_MARKER:
        return Fragment("", True, None, event.size)

    try:
        payload = json.loads(event.data)
    except ValueError as e:
        raise MalformedResponseError(f"invalid JSON in stream event: {e}") from e
    if not isinstance(payload, dict):
        raise MalformedResponseError("stream event is not a JSON object")

    error = payload.get("error")
    if isinstance(error, dict):
        code = error.get("code")
        status = code if isinstance(code, int) else 500
        raise HTTPStatusError(
            status,
            body=event.data[:500],
            message=f"Stream error {status}: {error.get('message', '')}",
        )

    candidates = payload.get("candidates")
    if not candidates:
        feedback = payload.get("promptFeedback") or {}
        block_reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
        if block_reason:
            raise ResponseBlockedError(str(block_reason))
        return None

    candidate = candidates[0] if isinstance(candidates, list) else None
    if not isinstance(candidate, dict):
        raise MalformedResponseError("stream candidate is not an object")

    content = candidate.get("content") or {}
    parts = content.get("parts", []) if isinstance(content, dict) else None
    if not isinstance(parts, list):
        raise MalformedResponseError("candidate content has no parts list")

    # Thought summaries are not part of the answer text
    text = "".join(
        str(part["text"])
        for part in parts
        if isinstance(part, dict) and "text" in part and not part.get("thought")
    )
    finish_reason = candidate.get("finishReason")
    return Fragment(text, finish_reason is not None, finish_reason, event.size)


class StreamingResponseConsumer:
    """Lazy, forward-only sequence of ``StreamingChunk`` from a byte stream.

    Usage:
        async with consumer:
            async for chunk in consumer:
                print(chunk.text_delta, end="")

    Closing (``aclose``, leaving the context manager, or the token firing)
    cancels the reader, releases the connection, and drops any buffered
    fragments. No chunk is emitted after that.
    """

    def __init__(
        self,
        source: AsyncIterator[bytes],
        *,
        max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES,
        token: Optional[CancellationToken] = None,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
        parse: Callable[[SSEEvent], Optional[Fragment]] = parse_generate_event,
    ) -> None:
        """Initialize the consumer.

        Args:
            source: Response body byte iterator.
            max_buffer_bytes: Bound on received-but-unemitted bytes.
            token: Cancellation token of the chat turn.
            on_close: Releases the underlying connection.
            parse: Event parser.
        """
        if max_buffer_bytes < 1:
            raise ValueError("max_buffer_bytes must be >= 1")
        self._source = source
        self._max_buffer_bytes = max_buffer_bytes
        self._token = token
        self._on_close = on_close
        self._parse = parse

        self._decoder = SSEDecoder()
        self._ready: Deque[Fragment] = deque()
        self._ready_bytes = 0
        self._failure: Optional[Exception] = None
        self._finished = False
        self._closed = False
        self._reader: Optional[asyncio.Task] = None
        self._watcher: Optional[asyncio.Task] = None
        self._changed: Optional[asyncio.Event] = None

        self._emitted = 0
        self._parts: List[str] = []
        self._completed = False

    @property
    def chunks_emitted(self) -> int:
        return self._emitted

    @property
    def text(self) -> str:
        """Concatenated text of the chunks emitted so far."""
        return "".join(self._parts)

    @property
    def completed(self) -> bool:
        """True once the chunk carrying the completion marker was emitted."""
        return self._completed

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def buffered_bytes(self) -> int:
        """Bytes received but not yet emitted."""
        return self._decoder.pending_bytes + self._ready_bytes

    # ------------------------------------------------------------------
    # Push side
    # ------------------------------------------------------------------

    def _start(self) -> None:
        if self._reader is None:
            self._changed = asyncio.Event()
            self._reader = asyncio.create_task(self._read())
            if self._token is not None:
                self._watcher = asyncio.create_task(self._watch(self._token))

    async def _watch(self, token: CancellationToken) -> None:
        # Releases the connection even while nobody is pulling
        await token.wait()
        if not self._closed:
            log.info("stream_cancelled", chunks_emitted=self._emitted)
            await self.aclose()

    def _notify(self) -> None:
        if self._changed is not None:
            self._changed.set()

    def _accept(self, event: SSEEvent) -> bool:
        fragment = self._parse(event)
        if fragment is None:
            return False
        self._ready.append(fragment)
        self._ready_bytes += fragment.size
        self._notify()
        return fragment.is_final

    async def _read(self) -> None:
        try:
            async for data in self._source:
                for event in self._decoder.feed(data):
                    if self._accept(event):
                        self._finished = True
                        return
                if self.buffered_bytes > self._max_buffer_bytes:
                    self._ready.clear()
                    self._ready_bytes = 0
                    raise StreamBufferOverflowError(self._max_buffer_bytes)
            for event in self._decoder.flush():
                if self._accept(event):
                    self._finished = True
                    return
            raise StreamTruncatedError()
        except httpx.TransportError as e:
            failure = translate_transport_error(e)
            failure.__cause__ = e
            self._failure = failure
        except Exception as e:
            self._failure = e
        finally:
            self._notify()

    # ------------------------------------------------------------------
    # Pull side
    # ------------------------------------------------------------------

    async def _wait(self) -> None:
        assert self._changed is not None
        self._changed.clear()
        try:
            await race(self._changed.wait(), self._token, "stream_read")
        except (OperationCancelledError, asyncio.CancelledError):
            if not self._closed:
                log.info("stream_cancelled", chunks_emitted=self._emitted)
                await self.aclose()
            raise

    async def _check_token(self) -> None:
        if self._token is not None and self._token.cancelled:
            if not self._closed:
                log.info("stream_cancelled", chunks_emitted=self._emitted)
                await self.aclose()
            raise OperationCancelledError("stream_read")

    async def prime(self) -> None:
        """Wait until the first fragment is buffered or the stream ends.

        Raises the failure if the stream failed before producing output.
        Nothing is emitted.
        """
        self._start()
        while not self._ready:
            await self._check_token()
            if self._failure is not None:
                raise self._failure
            if self._finished:
                return
            await self._wait()

    def __aiter__(self) -> "StreamingResponseConsumer":
        return self

    async def __anext__(self) -> StreamingChunk:
        await self._check_token()
        if self._closed:
            raise StopAsyncIteration
        self._start()
        while True:
            await self._check_token()
            if self._ready:
                return self._emit(self._ready.popleft())
            if self._failure is not None:
                await self._raise_failure(self._failure)
            if self._finished:
                await self.aclose()
                raise StopAsyncIteration
            await self._wait()

    def _emit(self, fragment: Fragment) -> StreamingChunk:
        chunk = StreamingChunk(
            sequence_index=self._emitted,
            text_delta=fragment.text,
            is_final=fragment.is_final,
            finish_reason=fragment.finish_reason,
        )
        self._emitted += 1
        self._ready_bytes -= fragment.size
        self._parts.append(fragment.text)
        if fragment.is_final:
            self._completed = True
            log.info(
                "stream_completed",
                chunks=self._emitted,
                chars=sum(len(p) for p in self._parts),
                finish_reason=fragment.finish_reason,
            )
        return chunk

    async def _raise_failure(self, failure: Exception) -> None:
        await self.aclose()
        log.warning(
            "stream_failed",
            chunks_emitted=self._emitted,
            error_class=type(failure).__name__,
            error=str(failure),
        )
        if self._emitted == 0:
            raise failure
        raise StreamInterruptedError(self._emitted, self.text) from failure

    async def aclose(self) -> None:
        """Stop reading and release the connection. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._ready.clear()
        self._ready_bytes = 0
        if self._watcher is not None and self._watcher is not asyncio.current_task():
            self._watcher.cancel()
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
        if self._on_close is not None:
            await self._on_close()

    async def __aenter__(self) -> "StreamingResponseConsumer":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()


async def open_stream(
    connect: Callable[[], Awaitable[httpx.Response]],
    *,
    executor: Optional[RetryExecutor] = None,
    policy: BackoffPolicy = BackoffPolicy.CONSERVATIVE,
    max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES,
    token: Optional[CancellationToken] = None,
) -> StreamingResponseConsumer:
    """Connect a streaming response with retries.

    Each attempt sends the request and waits for the first fragment, so a
    failure anywhere before output exists (refused connection, 503, reset
    before the first frame) is retried under ``policy``.

    Args:
        connect: Sends the request and returns the unread response.
        executor: Retry executor; a fresh one when None.
        policy: Backoff policy for connection establishment.
        max_buffer_bytes: Buffer bound passed to the consumer.
        token: Cancellation token of the chat turn.

    Returns:
        A primed consumer; the caller must close it.
    """
    executor = executor or RetryExecutor()

    async def attempt() -> StreamingResponseConsumer:
        response = await connect()
        consumer = StreamingResponseConsumer(
            response.aiter_bytes(),
            max_buffer_bytes=max_buffer_bytes,
            token=token,
            on_close=response.aclose,
        )
        try:
            await consumer.prime()
        except BaseException:
            await consumer.aclose()
            raise
        return consumer

    consumer = await executor.run(policy, attempt, token=token, name="stream_connect")
    log.info("stream_opened", buffered_bytes=consumer.buffered_bytes)
    return consumer
