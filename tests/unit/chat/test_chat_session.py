"""Unit tests for ChatSessionManager and request building."""

import asyncio
import json

import httpx
import pytest
import respx
from httpx import Response

from conftest import BASE_URL, FailingStream, sse_body, sse_event
from rallynet.chat.session import (
    ChatSessionManager,
    InMemoryHistoryStore,
    build_analysis_request,
    build_chat_request,
)
from rallynet.core.config import PromptConfig, Settings
from rallynet.core.exceptions import (
    InvalidCredentialError,
    OperationCancelledError,
    ResponseBlockedError,
    StreamInterruptedError,
)
from rallynet.core.models import ConversationTurn, GenerationParameters, MediaResolution, Role
from rallynet.gemini.credentials import StaticCredentialProvider
from rallynet.gemini.transport import GeminiTransport
from rallynet.protocols import HistoryStore
from rallynet.resilience.cancellation import CancellationToken

STREAM_URL = f"{BASE_URL}/v1beta/models/gemini-test:streamGenerateContent?alt=sse"


@pytest.fixture
def prompts() -> PromptConfig:
    return PromptConfig(
        analysis="Analyze the stroke.",
        follow_up_system="You are a tennis coach.",
        acknowledgement="Understood.",
        analysis_request="Analyze my video.",
    )


@pytest.fixture
def manager(transport, executor, prompts) -> ChatSessionManager:
    return ChatSessionManager(transport, prompts=prompts, executor=executor)


@pytest.fixture
def history() -> InMemoryHistoryStore:
    return InMemoryHistoryStore(
        [
            ConversationTurn(role=Role.USER, content="Analyze my video."),
            ConversationTurn(role=Role.ASSISTANT, content="Your toss is low."),
        ]
    )


def sent_body(route) -> dict:
    return json.loads(route.calls.last.request.content)


class TestInMemoryHistoryStore:
    """InMemoryHistoryStore."""

    def test_append_and_read(self):
        store = InMemoryHistoryStore()
        store.append_turns([ConversationTurn(role=Role.USER, content="hi")])
        assert len(store) == 1
        assert store.turns()[0].content == "hi"
        assert isinstance(store, HistoryStore)

    def test_turns_is_a_snapshot(self, history):
        snapshot = history.turns()
        history.append_turns([ConversationTurn(role=Role.USER, content="more")])
        assert len(snapshot) == 2
        assert len(history) == 3


class TestRequestBodies:
    """build_analysis_request / build_chat_request."""

    def test_analysis_request(self, remote_file):
        body = build_analysis_request(
            remote_file, "Analyze the stroke.", GenerationParameters(temperature=0.2)
        )
        assert body["contents"] == [
            {
                "role": "user",
                "parts": [
                    {"fileData": {"mimeType": "video/mp4", "fileUri": remote_file.uri}},
                    {"text": "Analyze the stroke."},
                ],
            }
        ]
        assert body["generationConfig"] == {
            "mediaResolution": "MEDIA_RESOLUTION_MEDIUM",
            "temperature": 0.2,
        }

    def test_chat_request_order(self, remote_file, history, prompts):
        body = build_chat_request(
            remote_file,
            history.turns(),
            "How is my footwork?",
            prompts,
            GenerationParameters(media_resolution=MediaResolution.LOW, max_output_tokens=256),
        )
        contents = body["contents"]
        assert [c["role"] for c in contents] == ["user", "model", "user", "model", "user"]
        assert contents[0]["parts"][0]["fileData"]["fileUri"] == remote_file.uri
        assert contents[0]["parts"][1] == {"text": "You are a tennis coach."}
        assert contents[1]["parts"] == [{"text": "Understood."}]
        assert contents[3]["parts"] == [{"text": "Your toss is low."}]
        assert contents[4]["parts"] == [{"text": "How is my footwork?"}]
        assert body["generationConfig"] == {
            "mediaResolution": "MEDIA_RESOLUTION_LOW",
            "maxOutputTokens": 256,
        }


class TestStreamReply:
    """ChatSessionManager.stream_reply."""

    @respx.mock
    @pytest.mark.asyncio
    async def test_streams_and_commits_on_completion(self, manager, remote_file, history):
        route = respx.post(STREAM_URL).mock(
            return_value=Response(200, content=sse_body(["Stay ", "low ", "and split-step."]))
        )
        lengths_during_stream = []
        deltas = []

        async for chunk in manager.stream_reply(remote_file, history, "How is my footwork?"):
            if not chunk.is_final:
                lengths_during_stream.append(len(history))
            deltas.append(chunk.text_delta)

        assert "".join(deltas) == "Stay low and split-step."
        assert lengths_during_stream == [2, 2]
        turns = history.turns()
        assert len(turns) == 4
        assert (turns[2].role, turns[2].content) == (Role.USER, "How is my footwork?")
        assert (turns[3].role, turns[3].content) == (Role.ASSISTANT, "Stay low and split-step.")
        assert sent_body(route)["contents"][-1]["parts"] == [{"text": "How is my footwork?"}]

    @respx.mock
    @pytest.mark.asyncio
    async def test_commit_visible_when_caller_stops_at_final_chunk(self, manager, remote_file, history):
        respx.post(STREAM_URL).mock(return_value=Response(200, content=sse_body(["Done."])))

        stream = manager.stream_reply(remote_file, history, "Anything else?")
        chunk = await stream.__anext__()
        assert chunk.is_final
        assert len(history) == 4
        await stream.aclose()

    @respx.mock
    @pytest.mark.asyncio
    async def test_mid_stream_failure_leaves_history_unchanged(self, manager, remote_file, history):
        route = respx.post(STREAM_URL).mock(
            side_effect=lambda request: Response(
                200,
                stream=FailingStream([sse_event("Your grip ")], httpx.ReadError("reset")),
            )
        )
        seen = []

        with pytest.raises(StreamInterruptedError) as exc_info:
            async for chunk in manager.stream_reply(remote_file, history, "And the grip?"):
                seen.append(chunk.text_delta)

        assert seen == ["Your grip "]
        assert exc_info.value.partial_text == "Your grip "
        assert len(history) == 2
        assert route.call_count == 1

    @respx.mock
    @pytest.mark.asyncio
    async def test_connect_failure_is_retried(self, manager, remote_file, history, no_sleep):
        route = respx.post(STREAM_URL).mock(
            side_effect=[
                Response(503, text="overloaded"),
                Response(200, content=sse_body(["ok"])),
            ]
        )

        reply = await manager.reply(remote_file, history, "Again?")

        assert reply.content == "ok"
        assert reply.role is Role.ASSISTANT
        assert route.call_count == 2
        assert no_sleep.await_count == 1

    @respx.mock
    @pytest.mark.asyncio
    async def test_reply_returns_the_committed_turn(self, manager, remote_file, history):
        respx.post(STREAM_URL).mock(return_value=Response(200, content=sse_body(["Use ", "more legs."])))

        reply = await manager.reply(remote_file, history, "More power?")

        committed = history.turns()[-1]
        assert reply is committed
        assert reply.timestamp == committed.timestamp
        assert reply.content == "Use more legs."

    @respx.mock
    @pytest.mark.asyncio
    async def test_blocked_prompt(self, manager, remote_file, history):
        body = b'data: {"promptFeedback": {"blockReason": "SAFETY"}}\n\n'
        respx.post(STREAM_URL).mock(return_value=Response(200, content=body))

        with pytest.raises(ResponseBlockedError):
            await manager.reply(remote_file, history, "Something unsafe")

        assert len(history) == 2

    @respx.mock
    @pytest.mark.asyncio
    async def test_cancel_leaves_history_unchanged(self, manager, remote_file, history):
        never = asyncio.Event()

        class StalledStream(httpx.AsyncByteStream):
            async def __aiter__(self):
                yield sse_event("Partial ")
                await never.wait()

        respx.post(STREAM_URL).mock(side_effect=lambda request: Response(200, stream=StalledStream()))
        token = CancellationToken()
        seen = []

        with pytest.raises(OperationCancelledError):
            async for chunk in manager.stream_reply(remote_file, history, "Serve?", token=token):
                seen.append(chunk.text_delta)
                token.cancel()

        assert seen == ["Partial "]
        assert len(history) == 2

    @pytest.mark.asyncio
    async def test_blank_message(self, manager, remote_file, history):
        with pytest.raises(ValueError):
            await manager.reply(remote_file, history, "   ")

    @respx.mock
    @pytest.mark.asyncio
    async def test_missing_api_key(self, api_config, remote_file, history):
        route = respx.post(STREAM_URL).mock(return_value=Response(200))
        transport = GeminiTransport(api_config, StaticCredentialProvider(""))
        manager = ChatSessionManager(transport)

        with pytest.raises(InvalidCredentialError):
            await manager.reply(remote_file, history, "Hello?")

        assert not route.called
        await transport.aclose()


class TestAnalyze:
    """ChatSessionManager.analyze."""

    @respx.mock
    @pytest.mark.asyncio
    async def test_analysis_committed(self, manager, remote_file):
        route = respx.post(STREAM_URL).mock(
            return_value=Response(200, content=sse_body(["Good ", "serve."]))
        )
        history = InMemoryHistoryStore()

        chunks = [c async for c in manager.analyze(remote_file, history=history)]

        assert "".join(c.text_delta for c in chunks) == "Good serve."
        assert [t.content for t in history.turns()] == ["Analyze my video.", "Good serve."]
        assert sent_body(route)["contents"][0]["parts"][1] == {"text": "Analyze the stroke."}

    @respx.mock
    @pytest.mark.asyncio
    async def test_custom_prompt_without_history(self, manager, remote_file):
        route = respx.post(STREAM_URL).mock(return_value=Response(200, content=sse_body(["ok"])))

        chunks = [c async for c in manager.analyze(remote_file, prompt="Only the backhand.")]

        assert chunks[-1].is_final
        assert sent_body(route)["contents"][0]["parts"][1] == {"text": "Only the backhand."}


class TestFromSettings:
    """ChatSessionManager.from_settings."""

    @pytest.mark.asyncio
    async def test_uses_configured_model_and_prompts(self, transport):
        settings = Settings(
            api={"model": "gemini-other"},
            prompts={"analysis": "Check the volley."},
            streaming={"max_buffer_bytes": 2048},
        )
        manager = ChatSessionManager.from_settings(transport, settings, model="gemini-other")

        assert manager.stream_url == f"{BASE_URL}/v1beta/models/gemini-other:streamGenerateContent?alt=sse"
