"""
RallyNet Test Configuration

Shared pytest fixtures and configuration for all test types.
"""

import json
from pathlib import Path
from typing import Callable, Iterable, List
from unittest.mock import AsyncMock

import httpx
import pytest
import respx
import structlog
from hypothesis import HealthCheck
from hypothesis import settings as hypothesis_settings

from rallynet.core.config import ApiConfig, UploadConfig, reset_settings
from rallynet.core.models import RemoteFile, RemoteFileState
from rallynet.gemini.credentials import StaticCredentialProvider
from rallynet.gemini.transport import GeminiTransport
from rallynet.resilience.executor import RetryExecutor

BASE_URL = "https://gemini.test"
API_KEY = "AIzaSyTest-0123456789abcdefghijklmn"

# The autouse reset fixture is function scoped and harmless to share across examples
hypothesis_settings.register_profile(
    "rallynet", suppress_health_check=[HealthCheck.function_scoped_fixture], deadline=None
)
hypothesis_settings.load_profile("rallynet")


# Configure pytest collection
def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for test categorization."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests (end-to-end flows against mocked HTTP)")


@pytest.fixture(autouse=True)
def reset_global_state():
    """Drop cached settings and structlog configuration between tests."""
    reset_settings()
    yield
    reset_settings()
    structlog.reset_defaults()


@pytest.fixture
def api_config() -> ApiConfig:
    """API configuration pointing at the mocked host."""
    return ApiConfig(base_url=BASE_URL, model="gemini-test")


@pytest.fixture
def upload_config() -> UploadConfig:
    """Small chunks and fast polls so tests exercise several steps."""
    return UploadConfig(
        chunk_size=1024,
        max_upload_bytes=1024 * 1024,
        large_file_warning_bytes=512 * 1024,
        poll_interval=0.01,
        max_polls=5,
    )


@pytest.fixture
async def transport(api_config):
    """Transport with a static key; closed after the test."""
    t = GeminiTransport(api_config, StaticCredentialProvider(API_KEY))
    yield t
    await t.aclose()


@pytest.fixture
def no_sleep() -> AsyncMock:
    """Backoff sleeper that returns immediately and records delays."""
    return AsyncMock(return_value=None)


@pytest.fixture
def executor(no_sleep) -> RetryExecutor:
    """Executor that never actually sleeps."""
    return RetryExecutor(sleep=no_sleep)


@pytest.fixture
def video_file(tmp_path) -> Path:
    """A 10 KiB fake video with a recognizable byte pattern."""
    path = tmp_path / "serve.mp4"
    path.write_bytes(bytes(i % 251 for i in range(10 * 1024)))
    return path


@pytest.fixture
def remote_file() -> RemoteFile:
    """An ACTIVE uploaded file."""
    return RemoteFile(
        name="files/abc123",
        uri=f"{BASE_URL}/v1beta/files/abc123",
        mime_type="video/mp4",
        state=RemoteFileState.ACTIVE,
    )


def file_resource(state: str = "ACTIVE", name: str = "files/abc123") -> dict:
    """File API resource as returned by finalize and poll calls."""
    return {
        "name": name,
        "uri": f"{BASE_URL}/v1beta/{name}",
        "mimeType": "video/mp4",
        "state": state,
        "sizeBytes": "10240",
    }


def sse_event(text: str = "", finish_reason: str = None) -> bytes:
    """One streamGenerateContent SSE frame."""
    candidate = {"content": {"role": "model", "parts": [{"text": text}]}}
    if finish_reason:
        candidate["finishReason"] = finish_reason
    return f"data: {json.dumps({'candidates': [candidate]})}\r\n\r\n".encode()


def sse_body(texts: Iterable[str], finish_reason: str = "STOP") -> bytes:
    """Complete SSE body whose last frame carries ``finish_reason``."""
    texts = list(texts)
    frames = [sse_event(t) for t in texts[:-1]]
    frames.append(sse_event(texts[-1] if texts else "", finish_reason))
    return b"".join(frames)


class ByteStream:
    """Async byte iterator over fixed reads, optionally failing at the end."""

    def __init__(self, reads: List[bytes], error: Exception = None) -> None:
        self.reads = list(reads)
        self.error = error
        self.consumed = 0

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for data in self.reads:
            self.consumed += 1
            yield data
        if self.error is not None:
            raise self.error


class FailingStream(httpx.AsyncByteStream):
    """httpx response stream that yields ``reads`` and then raises ``error``."""

    def __init__(self, reads: List[bytes], error: Exception) -> None:
        self.reads = reads
        self.error = error

    async def __aiter__(self):
        for data in self.reads:
            yield data
        raise self.error


@pytest.fixture
def make_stream() -> Callable[..., ByteStream]:
    """Factory for ``ByteStream`` sources."""
    return ByteStream


class FakeFileService:
    """In-memory File API speaking the resumable upload protocol.

    Faults are injected per upload command (1-based count across sessions):
    ``"drop"`` resets the connection before committing, ``"commit_then_drop"``
    commits the bytes and then resets, an ``httpx.Response`` is returned
    as-is without committing.
    """

    def __init__(self, granularity=None, finalize_state="PROCESSING", poll_states=("ACTIVE",)):
        self.granularity = granularity
        self.finalize_state = finalize_state
        self.poll_states = list(poll_states)
        self.status = "active"
        self.sessions = {}
        self.totals = {}
        self.commands = []
        self.upload_faults = {}
        self.start_faults = []
        self.polls = 0
        self._uploads = 0

    def install(self) -> None:
        """Register routes on the active respx router."""
        self.upload_route = respx.post(url__startswith=f"{BASE_URL}/upload/v1beta/files").mock(
            side_effect=self.handle_upload
        )
        self.get_route = respx.get(url__startswith=f"{BASE_URL}/v1beta/files/").mock(
            side_effect=self.handle_get
        )

    def data(self, index: int = 0) -> bytes:
        return bytes(self.sessions[f"u{index}"])

    def offsets(self) -> List[int]:
        return [int(offset) for command, offset in self.commands if command == "upload"]

    def count(self, command: str) -> int:
        return sum(1 for c, _ in self.commands if c == command)

    def handle_upload(self, request: httpx.Request) -> httpx.Response:
        command = request.headers.get("X-Goog-Upload-Command")
        self.commands.append((command, request.headers.get("X-Goog-Upload-Offset")))

        if command == "start":
            if self.start_faults:
                fault = self.start_faults.pop(0)
                if isinstance(fault, Exception):
                    raise fault
                return fault
            upload_id = f"u{len(self.sessions)}"
            self.sessions[upload_id] = bytearray()
            self.totals[upload_id] = int(request.headers["X-Goog-Upload-Header-Content-Length"])
            headers = {
                "X-Goog-Upload-URL": f"{BASE_URL}/upload/v1beta/files?upload_id={upload_id}",
                "X-Goog-Upload-Status": "active",
            }
            if self.granularity:
                headers["X-Goog-Upload-Chunk-Granularity"] = str(self.granularity)
            return httpx.Response(200, headers=headers, json={})

        upload_id = request.url.params.get("upload_id")
        received = self.sessions[upload_id]

        if command == "query":
            return httpx.Response(
                200,
                headers={
                    "X-Goog-Upload-Status": self.status,
                    "X-Goog-Upload-Size-Received": str(len(received)),
                },
            )

        if command == "upload":
            self._uploads += 1
            offset = int(request.headers["X-Goog-Upload-Offset"])
            if offset != len(received):
                return httpx.Response(400, text=f"offset {offset} does not match {len(received)}")
            fault = self.upload_faults.pop(self._uploads, None)
            if fault == "drop":
                raise httpx.ReadError("connection reset by peer", request=request)
            if fault == "commit_then_drop":
                received.extend(request.content)
                raise httpx.ReadError("connection reset by peer", request=request)
            if isinstance(fault, httpx.Response):
                return fault
            received.extend(request.content)
            return httpx.Response(
                200,
                headers={
                    "X-Goog-Upload-Status": "active",
                    "X-Goog-Upload-Size-Received": str(len(received)),
                },
            )

        if command == "finalize":
            if len(received) != self.totals[upload_id]:
                return httpx.Response(400, text="upload incomplete")
            return httpx.Response(
                200, json={"file": file_resource(self.finalize_state, name=f"files/{upload_id}")}
            )

        return httpx.Response(400, text=f"unknown command {command}")

    def handle_get(self, request: httpx.Request) -> httpx.Response:
        self.polls += 1
        name = request.url.path.split("/v1beta/", 1)[1]
        state = self.poll_states.pop(0) if len(self.poll_states) > 1 else self.poll_states[0]
        return httpx.Response(200, json=file_resource(state, name=name))


@pytest.fixture
def file_service() -> FakeFileService:
    """Fake File API; call ``install()`` inside ``respx.mock``."""
    return FakeFileService()
