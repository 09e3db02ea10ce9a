"""Core Data Models for RallyNet.

This module defines the value types shared by the upload, streaming and
chat layers.

Models:
    ConversationTurn: One prior turn of a conversation (read-only to the core).
    StreamingChunk: One fully delineated fragment of a streaming response.
    UploadSession: State of one resumable upload, owned by a single call.
    RemoteFile: Server-side file record returned by finalize/poll.
    GenerationParameters: Generation settings sent with each request.

Usage:
    from rallynet.core.models import ConversationTurn, Role

    turn = ConversationTurn(role=Role.USER, content="How was my serve?")
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Dict, Optional

from rallynet.core.exceptions import MalformedResponseError, UploadOffsetError


class Role(StrEnum):
    """Author of a conversation turn."""

    USER = "user"
    ASSISTANT = "assistant"

    @property
    def wire_role(self) -> str:
        """Role name used in generation requests."""
        return "user" if self is Role.USER else "model"


@dataclass(frozen=True)
class ConversationTurn:
    """One turn of a conversation.

    Attributes:
        role: Who wrote the turn.
        content: Turn text.
        timestamp: UTC time the turn was completed.
    """

    role: Role
    content: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        # Accept plain strings from collaborators ("user", "assistant")
        object.__setattr__(self, "role", Role(self.role))


@dataclass(frozen=True)
class StreamingChunk:
    """One fully delineated fragment of a streaming response.

    The concatenation of ``text_delta`` over all chunks of one stream, in
    ``sequence_index`` order, is the full response text.

    Attributes:
        sequence_index: 0-based, strictly increasing within one stream.
        text_delta: Text carried by this fragment (possibly empty).
        is_final: True for the chunk carrying the completion marker.
        finish_reason: Finish reason reported on the final chunk, if any.
    """

    sequence_index: int
    text_delta: str
    is_final: bool = False
    finish_reason: Optional[str] = None

    def __post_init__(self) -> None:
        if self.sequence_index < 0:
            raise ValueError("sequence_index must be >= 0")


class UploadState(StrEnum):
    """Lifecycle of a resumable upload."""

    INITIATED = "initiated"
    UPLOADING = "uploading"
    FINALIZING = "finalizing"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


_UPLOAD_TRANSITIONS: Dict[UploadState, frozenset[UploadState]] = {
    UploadState.INITIATED: frozenset({UploadState.UPLOADING, UploadState.FAILED}),
    UploadState.UPLOADING: frozenset({UploadState.UPLOADING, UploadState.FINALIZING, UploadState.FAILED}),
    UploadState.FINALIZING: frozenset({UploadState.PROCESSING, UploadState.READY, UploadState.FAILED}),
    UploadState.PROCESSING: frozenset({UploadState.READY, UploadState.FAILED}),
    UploadState.READY: frozenset(),
    UploadState.FAILED: frozenset(),
}


@dataclass
class UploadSession:
    """One resumable upload.

    ``bytes_committed`` is the server-acknowledged offset and the sole
    resumption anchor; it never decreases.

    Attributes:
        total_bytes: Size of the payload.
        display_name: Name declared in the start request.
        content_type: MIME type declared in the start request.
        resumable_upload_uri: Opaque upload URL returned by the start step.
        chunk_granularity: Server-chosen chunk size hint in bytes.
        bytes_committed: Server-acknowledged offset.
        state: Current lifecycle state.
        remote_file: File record once finalized.
    """

    total_bytes: int
    display_name: str
    content_type: str
    resumable_upload_uri: Optional[str] = None
    chunk_granularity: Optional[int] = None
    bytes_committed: int = 0
    state: UploadState = UploadState.INITIATED
    remote_file: Optional["RemoteFile"] = None

    def transition(self, new_state: UploadState) -> None:
        """Move to ``new_state``, rejecting transitions the protocol forbids."""
        if new_state not in _UPLOAD_TRANSITIONS[self.state]:
            raise ValueError(f"Invalid upload transition: {self.state} -> {new_state}")
        self.state = new_state

    def commit(self, offset: int) -> None:
        """Record a server-acknowledged offset.

        Raises:
            UploadOffsetError: If the offset moves backwards or past the end.
        """
        if offset < self.bytes_committed or offset > self.total_bytes:
            raise UploadOffsetError(committed=self.bytes_committed, reported=offset)
        self.bytes_committed = offset

    @property
    def is_complete(self) -> bool:
        return self.bytes_committed == self.total_bytes

    @property
    def fraction(self) -> float:
        """Committed fraction in [0, 1]."""
        if self.total_bytes == 0:
            return 1.0
        return self.bytes_committed / self.total_bytes


class RemoteFileState(StrEnum):
    """Server-side processing state of an uploaded file."""

    PROCESSING = "PROCESSING"
    ACTIVE = "ACTIVE"
    FAILED = "FAILED"


@dataclass(frozen=True)
class RemoteFile:
    """Server-side file record.

    Attributes:
        name: Resource name (``files/abc123``).
        uri: Durable file reference usable in generation requests.
        mime_type: MIME type recorded by the server.
        state: Processing state.
        size_bytes: Size recorded by the server, if reported.
    """

    name: str
    uri: str
    mime_type: str
    state: RemoteFileState
    size_bytes: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self.state is RemoteFileState.ACTIVE

    @classmethod
    def from_api(cls, data: Dict[str, Any], default_mime_type: str = "video/mp4") -> "RemoteFile":
        """Build from a ``File`` resource as returned by the API.

        Raises:
            MalformedResponseError: If required fields are missing.
        """
        if not isinstance(data, dict):
            raise MalformedResponseError("file resource is not an object")
        name = data.get("name")
        uri = data.get("uri")
        if not isinstance(name, str) or not isinstance(uri, str):
            raise MalformedResponseError("file resource missing 'name' or 'uri'")
        raw_state = data.get("state", RemoteFileState.PROCESSING.value)
        try:
            state = RemoteFileState(raw_state)
        except ValueError:
            raise MalformedResponseError(f"unknown file state {raw_state!r}") from None
        size = data.get("sizeBytes")
        return cls(
            name=name,
            uri=uri,
            mime_type=data.get("mimeType", default_mime_type),
            state=state,
            size_bytes=int(size) if size is not None else None,
        )


class MediaResolution(StrEnum):
    """Sampling resolution for video input (quality vs. latency)."""

    LOW = "MEDIA_RESOLUTION_LOW"
    MEDIUM = "MEDIA_RESOLUTION_MEDIUM"
    HIGH = "MEDIA_RESOLUTION_HIGH"


@dataclass(frozen=True)
class GenerationParameters:
    """Generation settings sent with each streaming request.

    Attributes:
        temperature: Consistency vs. creativity (0.0-2.0), None for server default.
        max_output_tokens: Truncation ceiling, None for server default.
        media_resolution: Video sampling resolution.
    """

    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None
    media_resolution: MediaResolution = MediaResolution.MEDIUM

    def __post_init__(self) -> None:
        if self.temperature is not None and not 0.0 <= self.temperature <= 2.0:
            raise ValueError("temperature must be between 0.0 and 2.0")
        if self.max_output_tokens is not None and self.max_output_tokens < 1:
            raise ValueError("max_output_tokens must be >= 1")

    def to_api(self) -> Dict[str, Any]:
        """Return the ``generationConfig`` request object."""
        config: Dict[str, Any] = {"mediaResolution": MediaResolution(self.media_resolution).value}
        if self.temperature is not None:
            config["temperature"] = self.temperature
        if self.max_output_tokens is not None:
            config["maxOutputTokens"] = self.max_output_tokens
        return config
