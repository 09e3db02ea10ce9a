"""Chat turns over an uploaded video.

``ChatSessionManager`` builds generation requests from an immutable
``RemoteFile`` reference, the caller's prior turns and the new message,
and streams the reply through ``open_stream``.

The caller's ``HistoryStore`` is read, never modified, while a turn is in
flight. The user and assistant turns are appended together only once the
final chunk has been received; a failed, blocked or cancelled turn leaves
the history exactly as it was.
"""

from __future__ import annotations

import threading
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Sequence

import structlog

from rallynet.core.config import PromptConfig, StreamingConfig
from rallynet.core.models import (
    ConversationTurn,
    GenerationParameters,
    RemoteFile,
    Role,
    StreamingChunk,
)
from rallynet.gemini.transport import GeminiTransport
from rallynet.protocols.history import HistoryStore
from rallynet.resilience.backoff import BackoffPolicy
from rallynet.resilience.cancellation import CancellationToken
from rallynet.resilience.executor import RetryExecutor
from rallynet.streaming.consumer import StreamingResponseConsumer, open_stream

log = structlog.get_logger()


class InMemoryHistoryStore:
    """Thread-safe list-backed ``HistoryStore``."""

    def __init__(self, turns: Optional[Iterable[ConversationTurn]] = None) -> None:
        self._turns: List[ConversationTurn] = list(turns or [])
        self._lock = threading.Lock()

    def turns(self) -> Sequence[ConversationTurn]:
        with self._lock:
            return tuple(self._turns)

    def append_turns(self, turns: Sequence[ConversationTurn]) -> None:
        with self._lock:
            self._turns.extend(turns)

    def __len__(self) -> int:
        with self._lock:
            return len(self._turns)


# =============================================================================
# Request bodies
# =============================================================================


def _text_content(role: str, text: str) -> Dict[str, Any]:
    return {"role": role, "parts": [{"text": text}]}


def file_part(file: RemoteFile) -> Dict[str, Any]:
    """Reference to an uploaded file inside a request part list."""
    return {"fileData": {"mimeType": file.mime_type, "fileUri": file.uri}}


def build_analysis_request(
    file: RemoteFile,
    prompt: str,
    parameters: Optional[GenerationParameters] = None,
) -> Dict[str, Any]:
    """Request body for the initial analysis of a video."""
    parameters = parameters or GenerationParameters()
    return {
        "contents": [
            {"role": Role.USER.wire_role, "parts": [file_part(file), {"text": prompt}]},
        ],
        "generationConfig": parameters.to_api(),
    }


def build_chat_request(
    file: RemoteFile,
    history: Sequence[ConversationTurn],
    message: str,
    prompts: Optional[PromptConfig] = None,
    parameters: Optional[GenerationParameters] = None,
) -> Dict[str, Any]:
    """Request body for a follow-up question.

    The video and context prompt come first, followed by a synthetic model
    acknowledgement so the prior turns alternate correctly, then the
    history oldest first and finally the new message.
    """
    prompts = prompts or PromptConfig()
    parameters = parameters or GenerationParameters()
    contents: List[Dict[str, Any]] = [
        {
            "role": Role.USER.wire_role,
            "parts": [file_part(file), {"text": prompts.follow_up_system}],
        },
        _text_content(Role.ASSISTANT.wire_role, prompts.acknowledgement),
    ]
    contents.extend(_text_content(turn.role.wire_role, turn.content) for turn in history)
    contents.append(_text_content(Role.USER.wire_role, message))
    return {"contents": contents, "generationConfig": parameters.to_api()}


# =============================================================================
# Session manager
# =============================================================================


class ChatSessionManager:
    """Streams analysis and follow-up replies for one uploaded video."""

    def __init__(
        self,
        transport: GeminiTransport,
        *,
        prompts: Optional[PromptConfig] = None,
        parameters: Optional[GenerationParameters] = None,
        streaming: Optional[StreamingConfig] = None,
        executor: Optional[RetryExecutor] = None,
        policy: BackoffPolicy = BackoffPolicy.CONSERVATIVE,
        model: Optional[str] = None,
    ) -> None:
        """Initialize the manager.

        Args:
            transport: Shared HTTP transport.
            prompts: Prompt texts.
            parameters: Generation parameters for every request.
            streaming: Buffer bound for streamed responses.
            executor: Retry executor for connection establishment.
            policy: Policy for connection establishment.
            model: Model name; defaults to the transport's configured model.
        """
        self._transport = transport
        self._prompts = prompts or PromptConfig()
        self._parameters = parameters or GenerationParameters()
        self._streaming = streaming or StreamingConfig()
        self._executor = executor or RetryExecutor()
        self._policy = policy
        self._model = model or transport.api.model

    @classmethod
    def from_settings(cls, transport: GeminiTransport, settings: Any, **kwargs: Any) -> "ChatSessionManager":
        """Build a manager from a ``Settings`` instance."""
        return cls(
            transport,
            prompts=settings.prompts,
            parameters=settings.generation.to_parameters(),
            streaming=settings.streaming,
            **kwargs,
        )

    @property
    def stream_url(self) -> str:
        return self._transport.url(f"models/{self._model}:streamGenerateContent") + "?alt=sse"

    async def open(
        self,
        body: Dict[str, Any],
        token: Optional[CancellationToken] = None,
    ) -> StreamingResponseConsumer:
        """Send ``body`` to the streaming endpoint and return a primed consumer."""
        self._transport.require_api_key()
        url = self.stream_url

        async def connect():
            return await self._transport.open_stream("POST", url, json=body)

        return await open_stream(
            connect,
            executor=self._executor,
            policy=self._policy,
            max_buffer_bytes=self._streaming.max_buffer_bytes,
            token=token,
        )

    async def analyze(
        self,
        file: RemoteFile,
        *,
        history: Optional[HistoryStore] = None,
        prompt: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[StreamingChunk]:
        """Stream the initial analysis of ``file``.

        When ``history`` is given, the displayed request and the analysis
        are appended to it once the reply completed.
        """
        body = build_analysis_request(file, prompt or self._prompts.analysis, self._parameters)
        async for chunk in self._stream(body, history, self._prompts.analysis_request, token):
            yield chunk

    async def stream_reply(
        self,
        file: RemoteFile,
        history: HistoryStore,
        message: str,
        token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[StreamingChunk]:
        """Stream the reply to ``message`` in the context of ``history``.

        Raises:
            ValueError: ``message`` is blank.
            StreamInterruptedError: The stream failed after output was delivered.
            OperationCancelledError: The token fired.
        """
        async for chunk in self._reply_chunks(file, history, message, token):
            yield chunk

    async def reply(
        self,
        file: RemoteFile,
        history: HistoryStore,
        message: str,
        token: Optional[CancellationToken] = None,
    ) -> ConversationTurn:
        """Run one chat turn to completion and return the committed assistant turn."""
        committed: List[ConversationTurn] = []
        async for _ in self._reply_chunks(file, history, message, token, on_commit=committed.append):
            pass
        return committed[-1]

    async def _reply_chunks(
        self,
        file: RemoteFile,
        history: HistoryStore,
        message: str,
        token: Optional[CancellationToken],
        on_commit: Optional[Callable[[ConversationTurn], None]] = None,
    ) -> AsyncIterator[StreamingChunk]:
        if not message.strip():
            raise ValueError("message must not be empty")
        body = build_chat_request(file, history.turns(), message, self._prompts, self._parameters)
        async for chunk in self._stream(body, history, message, token, on_commit):
            yield chunk

    async def _stream(
        self,
        body: Dict[str, Any],
        history: Optional[HistoryStore],
        user_text: str,
        token: Optional[CancellationToken],
        on_commit: Optional[Callable[[ConversationTurn], None]] = None,
    ) -> AsyncIterator[StreamingChunk]:
        consumer = await self.open(body, token)
        async with consumer:
            async for chunk in consumer:
                # Commit before handing out the final chunk so a caller that
                # stops iterating after it still gets a consistent history
                if chunk.is_final and history is not None:
                    turn = self._commit(history, user_text, consumer.text)
                    if on_commit is not None:
                        on_commit(turn)
                yield chunk

    def _commit(self, history: HistoryStore, user_text: str, reply: str) -> ConversationTurn:
        turns = [
            ConversationTurn(role=Role.USER, content=user_text),
            ConversationTurn(role=Role.ASSISTANT, content=reply),
        ]
        history.append_turns(turns)
        log.info("chat_turn_committed", reply_chars=len(reply), history_turns=len(history.turns()))
        return turns[1]
