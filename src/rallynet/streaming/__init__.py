"""Streaming response consumption."""

from rallynet.streaming.consumer import StreamingResponseConsumer, open_stream, parse_generate_event
from rallynet.streaming.sse import SSEDecoder, SSEEvent

__all__ = [
    "SSEDecoder",
    "SSEEvent",
    "StreamingResponseConsumer",
    "open_stream",
    "parse_generate_event",
]
