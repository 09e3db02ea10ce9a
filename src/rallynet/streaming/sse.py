"""Incremental Server-Sent Events decoder.

Network reads do not line up with event boundaries. The decoder keeps the
incomplete tail of the stream between ``feed`` calls and only returns an
event once its terminating blank line has arrived. Lines are split on
bytes before decoding, so multi-byte UTF-8 characters split across reads
are reassembled intact.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from rallynet.core.exceptions import MalformedResponseError


@dataclass(frozen=True)
class SSEEvent:
    """One dispatched event.

    Attributes:
        data: Data lines joined with newlines.
        event: Event type, if the server named one.
        id: Last event id, if any.
        size: Encoded size of the event in bytes.
    """

    data: str
    event: Optional[str] = None
    id: Optional[str] = None
    size: int = 0


class SSEDecoder:
    """Turns arbitrary byte slices into complete ``SSEEvent`` values."""

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._data_lines: List[str] = []
        self._event: Optional[str] = None
        self._id: Optional[str] = None
        self._event_bytes = 0

    @property
    def pending_bytes(self) -> int:
        """Bytes received but not yet dispatched as part of an event."""
        return len(self._buffer) + self._event_bytes

    def feed(self, data: bytes) -> List[SSEEvent]:
        """Consume ``data`` and return every event it completed."""
        self._buffer.extend(data)
        events: List[SSEEvent] = []
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            raw = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]
            self._event_bytes += newline + 1
            event = self._process_line(raw.rstrip(b"\r"))
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> List[SSEEvent]:
        """Dispatch whatever is left once the stream has ended."""
        events: List[SSEEvent] = []
        if self._buffer:
            raw = bytes(self._buffer)
            self._buffer.clear()
            self._event_bytes += len(raw)
            event = self._process_line(raw.rstrip(b"\r"))
            if event is not None:
                events.append(event)
        event = self._dispatch()
        if event is not None:
            events.append(event)
        return events

    def _process_line(self, raw: bytes) -> Optional[SSEEvent]:
        if not raw:
            return self._dispatch()
        try:
            line = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedResponseError(f"stream is not valid UTF-8: {e}") from e
        if line.startswith(":"):
            return None
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            self._data_lines.append(value)
        elif field == "event":
            self._event = value
        elif field == "id":
            self._id = value
        return None

    def _dispatch(self) -> Optional[SSEEvent]:
        size = self._event_bytes
        self._event_bytes = 0
        if not self._data_lines:
            self._event = None
            return None
        event = SSEEvent(
            data="\n".join(self._data_lines),
            event=self._event,
            id=self._id,
            size=size,
        )
        self._data_lines = []
        self._event = None
        return event
