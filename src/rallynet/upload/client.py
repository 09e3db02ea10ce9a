"""Resumable upload client for the Gemini File API.

An upload is a state machine driven one step at a time, and every step is
wrapped individually by ``RetryExecutor`` so a transient failure in one
step never forces earlier steps to be redone:

1. start     INITIATED -> UPLOADING    declare size/type, receive upload URL
2. transfer  UPLOADING -> UPLOADING    send bytes from the committed offset
3. finalize  UPLOADING -> FINALIZING   close the upload, receive file record
4. poll      FINALIZING -> PROCESSING -> READY

A failed transfer attempt never assumes what the server received: the
next attempt first queries the authoritative committed offset and resumes
from there. ``UploadSession.bytes_committed`` never decreases.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import BinaryIO, List, Optional, Sequence, Union

import httpx
import structlog

from rallynet.core.config import UploadConfig
from rallynet.core.exceptions import (
    MalformedResponseError,
    OperationCancelledError,
    ProcessingFailedError,
    ProcessingTimeoutError,
    UploadError,
    FileTooLargeError,
)
from rallynet.core.models import RemoteFile, RemoteFileState, UploadSession, UploadState
from rallynet.gemini.transport import GeminiTransport, parse_json
from rallynet.protocols.progress import ProgressCallback
from rallynet.resilience.backoff import LENIENT_POLL_POLICY, BackoffPolicy
from rallynet.resilience.cancellation import CancellationToken, interruptible_sleep
from rallynet.resilience.executor import RetryExecutor, Sleeper
from rallynet.upload.progress import AggregateProgressTracker, ProgressReporter

log = structlog.get_logger()

PathLike = Union[str, Path]

HEADER_PROTOCOL = "X-Goog-Upload-Protocol"
HEADER_COMMAND = "X-Goog-Upload-Command"
HEADER_OFFSET = "X-Goog-Upload-Offset"
HEADER_URL = "X-Goog-Upload-URL"
HEADER_STATUS = "X-Goog-Upload-Status"
HEADER_SIZE_RECEIVED = "X-Goog-Upload-Size-Received"
HEADER_GRANULARITY = "X-Goog-Upload-Chunk-Granularity"


def _read_range(fh: BinaryIO, offset: int, length: int) -> bytes:
    fh.seek(offset)
    return fh.read(length)


def _int_header(response: httpx.Response, name: str) -> Optional[int]:
    value = response.headers.get(name)
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        raise MalformedResponseError(f"header {name} is not an integer: {value!r}") from None


class ResumableUploadClient:
    """Uploads local files with the resumable protocol and waits for processing."""

    def __init__(
        self,
        transport: GeminiTransport,
        config: Optional[UploadConfig] = None,
        executor: Optional[RetryExecutor] = None,
        policy: BackoffPolicy = BackoffPolicy.DEFAULT,
        poll_policy: BackoffPolicy = LENIENT_POLL_POLICY,
        sleep: Optional[Sleeper] = None,
    ) -> None:
        """Initialize the upload client.

        Args:
            transport: Shared HTTP transport.
            config: Upload configuration.
            executor: Retry executor shared by all steps.
            policy: Policy for start, transfer and finalize steps.
            poll_policy: Policy for transport failures of a single poll.
            sleep: Sleeper used between processing polls.
        """
        self._transport = transport
        self._config = config or UploadConfig()
        self._executor = executor or RetryExecutor()
        self._policy = policy
        self._poll_policy = poll_policy
        self._sleep = sleep or interruptible_sleep

    async def upload(
        self,
        path: PathLike,
        *,
        display_name: Optional[str] = None,
        content_type: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
        token: Optional[CancellationToken] = None,
    ) -> RemoteFile:
        """Upload ``path`` and return the file once it is ready for generation.

        Args:
            path: Local file to upload.
            display_name: Name shown in the File API; defaults to the file name.
            content_type: MIME type; defaults to the configured type.
            progress: Receives committed fractions, monotonically.
            token: Cancellation token for this upload.

        Raises:
            InvalidCredentialError: No API key is configured.
            UploadError: The file is missing, empty or too large.
            ProcessingFailedError: Server-side processing rejected the file.
            ProcessingTimeoutError: Processing did not finish within the poll budget.
            OperationCancelledError: The token fired.
        """
        self._transport.require_api_key()
        path = Path(path)
        size = self._validate_file(path)
        return await self._upload(path, size, display_name, content_type, progress, token)

    async def _upload(
        self,
        path: Path,
        size: int,
        display_name: Optional[str],
        content_type: Optional[str],
        progress: Optional[ProgressCallback],
        token: Optional[CancellationToken],
    ) -> RemoteFile:
        session = UploadSession(
            total_bytes=size,
            display_name=display_name or path.name,
            content_type=content_type or self._config.content_type,
        )
        reporter = ProgressReporter(progress)
        reporter.report(0.0)
        log.info("upload_started", display_name=session.display_name, total_bytes=size)

        try:
            with open(path, "rb") as fh:
                await self._start(session, token)
                await self._transfer_all(session, fh, reporter, token)
            remote = await self._finalize(session, token)
            remote = await self._wait_until_active(session, remote, token)
        except OperationCancelledError:
            session.state = UploadState.FAILED
            log.info("upload_cancelled", display_name=session.display_name,
                     bytes_committed=session.bytes_committed)
            raise
        except Exception as e:
            session.state = UploadState.FAILED
            log.error(
                "upload_failed",
                display_name=session.display_name,
                bytes_committed=session.bytes_committed,
                total_bytes=session.total_bytes,
                error_class=type(e).__name__,
                error=str(e),
            )
            raise

        reporter.report(1.0)
        return remote

    async def upload_many(
        self,
        paths: Sequence[PathLike],
        *,
        progress: Optional[ProgressCallback] = None,
        token: Optional[CancellationToken] = None,
    ) -> List[RemoteFile]:
        """Upload several files concurrently under one aggregate progress.

        If any upload fails the remaining ones are cancelled and the first
        failure is raised.
        """
        self._transport.require_api_key()
        tracker = AggregateProgressTracker(progress)
        segments = []
        for index, path in enumerate(paths):
            path = Path(path)
            key = f"{index}:{path}"
            size = self._validate_file(path)
            tracker.register(key, size)
            segments.append((path, size, key))

        tasks = [
            asyncio.create_task(
                self._upload(path, size, None, None, tracker.callback_for(key), token)
            )
            for path, size, key in segments
        ]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def get_file(self, name: str) -> RemoteFile:
        """Fetch the current record of an uploaded file (``files/abc123``)."""
        response = await self._transport.request("GET", self._transport.url(name))
        return RemoteFile.from_api(parse_json(response), default_mime_type=self._config.content_type)

    # Steps

    def _validate_file(self, path: Path) -> int:
        if not path.is_file():
            raise UploadError("file does not exist", message=f"File does not exist: {path}")
        size = path.stat().st_size
        if size == 0:
            raise UploadError("file is empty", message=f"File is empty: {path}")
        if size > self._config.max_upload_bytes:
            log.warning("upload_file_too_large", size_bytes=size, max_bytes=self._config.max_upload_bytes)
            raise FileTooLargeError(size_bytes=size, max_bytes=self._config.max_upload_bytes)
        if size > self._config.large_file_warning_bytes:
            log.info("upload_large_file", size_mb=round(size / (1024 * 1024), 1))
        return size

    async def _start(self, session: UploadSession, token: Optional[CancellationToken]) -> None:
        async def attempt() -> tuple[str, Optional[int]]:
            response = await self._transport.request(
                "POST",
                self._transport.url("files", upload=True),
                headers={
                    HEADER_PROTOCOL: "resumable",
                    HEADER_COMMAND: "start",
                    "X-Goog-Upload-Header-Content-Length": str(session.total_bytes),
                    "X-Goog-Upload-Header-Content-Type": session.content_type,
                },
                json={"file": {"display_name": session.display_name}},
            )
            upload_url = response.headers.get(HEADER_URL)
            if not upload_url:
                raise MalformedResponseError(f"start response missing {HEADER_URL}")
            return upload_url, _int_header(response, HEADER_GRANULARITY)

        upload_url, granularity = await self._executor.run(
            self._policy, attempt, token=token, name="upload_start"
        )
        session.resumable_upload_uri = upload_url
        session.chunk_granularity = granularity if granularity and granularity > 0 else None
        session.transition(UploadState.UPLOADING)

    def _chunk_size(self, session: UploadSession) -> int:
        size = self._config.chunk_size
        granularity = session.chunk_granularity
        if granularity:
            size = max(granularity, size - size % granularity)
        return size

    async def _transfer_all(
        self,
        session: UploadSession,
        fh: BinaryIO,
        reporter: ProgressReporter,
        token: Optional[CancellationToken],
    ) -> None:
        chunk_size = self._chunk_size(session)
        while not session.is_complete:
            await self._transfer_step(session, fh, chunk_size, reporter, token)

    async def _transfer_step(
        self,
        session: UploadSession,
        fh: BinaryIO,
        chunk_size: int,
        reporter: ProgressReporter,
        token: Optional[CancellationToken],
    ) -> None:
        """Send one chunk starting at the committed offset."""
        resync = False

        async def attempt() -> None:
            nonlocal resync
            try:
                if resync:
                    await self._resync_offset(session)
                    reporter.report(session.fraction)
                    if session.is_complete:
                        return
                offset = session.bytes_committed
                length = min(chunk_size, session.total_bytes - offset)
                data = await asyncio.to_thread(_read_range, fh, offset, length)
                if len(data) != length:
                    raise UploadError("file changed during upload")
                response = await self._transport.request(
                    "POST",
                    session.resumable_upload_uri,
                    headers={HEADER_COMMAND: "upload", HEADER_OFFSET: str(offset)},
                    content=data,
                    timeout=self._transport.api.upload_timeout,
                )
                received = _int_header(response, HEADER_SIZE_RECEIVED)
                session.commit(received if received is not None else offset + length)
            except Exception:
                resync = True
                raise
            reporter.report(session.fraction)
            log.debug(
                "upload_chunk_committed",
                bytes_committed=session.bytes_committed,
                total_bytes=session.total_bytes,
            )

        await self._executor.run(self._policy, attempt, token=token, name="upload_transfer")

    async def _resync_offset(self, session: UploadSession) -> None:
        """Adopt the server's committed offset before resending anything."""
        response = await self._transport.request(
            "POST",
            session.resumable_upload_uri,
            headers={HEADER_COMMAND: "query"},
        )
        status = response.headers.get(HEADER_STATUS, "active").lower()
        if status != "active":
            raise UploadError(
                "upload session closed",
                message=f"Upload session is no longer active (status {status}).",
            )
        received = _int_header(response, HEADER_SIZE_RECEIVED)
        if received is None:
            raise MalformedResponseError(f"query response missing {HEADER_SIZE_RECEIVED}")
        previous = session.bytes_committed
        session.commit(received)
        log.info("upload_offset_resynced", previous=previous, bytes_committed=received)

    async def _finalize(self, session: UploadSession, token: Optional[CancellationToken]) -> RemoteFile:
        session.transition(UploadState.FINALIZING)

        async def attempt() -> RemoteFile:
            response = await self._transport.request(
                "POST",
                session.resumable_upload_uri,
                headers={HEADER_COMMAND: "finalize", HEADER_OFFSET: str(session.total_bytes)},
                content=b"",
            )
            data = parse_json(response)
            if "file" not in data:
                raise MalformedResponseError("finalize response missing 'file'")
            return RemoteFile.from_api(data["file"], default_mime_type=session.content_type)

        remote = await self._executor.run(self._policy, attempt, token=token, name="upload_finalize")
        session.remote_file = remote
        log.info("upload_finalized", file_name=remote.name, state=remote.state.value)
        return remote

    async def _wait_until_active(
        self,
        session: UploadSession,
        remote: RemoteFile,
        token: Optional[CancellationToken],
    ) -> RemoteFile:
        """Poll on a fixed interval until the file is ACTIVE, FAILED, or the budget runs out."""
        if remote.state is RemoteFileState.FAILED:
            raise ProcessingFailedError(remote.name, remote.state.value)
        if remote.is_active:
            session.transition(UploadState.READY)
            log.info("upload_ready", file_name=remote.name, polls=0)
            return remote

        session.transition(UploadState.PROCESSING)
        name = remote.name
        for poll in range(1, self._config.max_polls + 1):
            await self._sleep(self._config.poll_interval, token)
            remote = await self._executor.run(
                self._poll_policy, lambda: self.get_file(name), token=token, name="upload_poll"
            )
            log.debug("upload_processing_poll", file_name=name, poll=poll, state=remote.state.value)
            if remote.is_active:
                session.remote_file = remote
                session.transition(UploadState.READY)
                log.info("upload_ready", file_name=name, polls=poll)
                return remote
            if remote.state is RemoteFileState.FAILED:
                raise ProcessingFailedError(name, remote.state.value)

        raise ProcessingTimeoutError(name, polls=self._config.max_polls)
