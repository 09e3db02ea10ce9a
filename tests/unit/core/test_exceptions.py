"""Unit tests for rallynet.core.exceptions module.

Tests the exception hierarchy:
- RallyNetError (base) and the exhaustion tag
- Transport, HTTP and credential failures
- Streaming and upload failures
"""

import pytest

from rallynet.core.exceptions import (
    ConfigurationError,
    FileTooLargeError,
    HTTPStatusError,
    InvalidCredentialError,
    MalformedResponseError,
    OperationCancelledError,
    ProcessingFailedError,
    ProcessingTimeoutError,
    RallyNetError,
    RateLimitedError,
    ResponseBlockedError,
    StreamBufferOverflowError,
    StreamInterruptedError,
    StreamTruncatedError,
    TransportError,
    TransportKind,
    UploadError,
    UploadOffsetError,
    is_exhausted,
)


class TestRallyNetError:
    """Tests for the base RallyNetError exception."""

    def test_inherits_from_exception(self):
        """RallyNetError should inherit from Exception."""
        assert issubclass(RallyNetError, Exception)

    def test_has_meaningful_default_message(self):
        """RallyNetError has a message when raised without args."""
        error = RallyNetError()
        assert "error" in str(error).lower()

    def test_not_exhausted_by_default(self):
        """Fresh errors are not tagged as exhausted."""
        error = RallyNetError("boom")
        assert error.exhausted is False
        assert error.attempts == 0
        assert is_exhausted(error) is False

    def test_mark_exhausted(self):
        """mark_exhausted sets the tag and the attempt count."""
        error = RallyNetError("boom")
        error.mark_exhausted(3)
        assert is_exhausted(error)
        assert error.attempts == 3

    def test_is_exhausted_on_foreign_exception(self):
        """is_exhausted reads a tag set on any exception object."""
        error = ValueError("x")
        assert is_exhausted(error) is False
        error.exhausted = True
        assert is_exhausted(error) is True

    @pytest.mark.parametrize(
        "error",
        [
            ConfigurationError("/tmp/config.yaml"),
            OperationCancelledError("upload"),
            TransportError(TransportKind.TIMEOUT),
            HTTPStatusError(503),
            InvalidCredentialError(),
            MalformedResponseError("bad json"),
            ResponseBlockedError("SAFETY"),
            StreamInterruptedError(2, "partial"),
            UploadError("missing"),
            ProcessingFailedError("files/x"),
            ProcessingTimeoutError("files/x", polls=3),
        ],
    )
    def test_all_errors_catchable_as_base(self, error):
        """Every RallyNet failure can be caught as RallyNetError."""
        with pytest.raises(RallyNetError):
            raise error


class TestTransportError:
    """Tests for TransportError."""

    def test_kind_is_normalized(self):
        """String kinds are coerced into TransportKind."""
        error = TransportError("connection_reset")
        assert error.kind is TransportKind.CONNECTION_RESET
        assert error.context == {"kind": "connection_reset"}

    def test_repr(self):
        assert repr(TransportError(TransportKind.TIMEOUT)) == "TransportError(kind='timeout')"


class TestHTTPStatusError:
    """Tests for HTTP status failures."""

    def test_attributes(self):
        error = HTTPStatusError(503, retry_after="2", body="unavailable")
        assert error.status_code == 503
        assert error.retry_after == "2"
        assert error.body == "unavailable"
        assert "503" in str(error)

    def test_rate_limited_is_http_429(self):
        """RateLimitedError is an HTTPStatusError with status 429."""
        error = RateLimitedError(retry_after="5")
        assert isinstance(error, HTTPStatusError)
        assert error.status_code == 429
        assert error.retry_after == "5"


class TestStreamErrors:
    """Tests for streaming failures."""

    def test_truncated_is_malformed(self):
        assert issubclass(StreamTruncatedError, MalformedResponseError)

    def test_overflow_reports_limit(self):
        error = StreamBufferOverflowError(1024)
        assert isinstance(error, MalformedResponseError)
        assert error.limit == 1024
        assert "1024" in str(error)

    def test_interrupted_carries_partial_output(self):
        """StreamInterruptedError keeps what was already delivered."""
        error = StreamInterruptedError(chunks_emitted=3, partial_text="Bend your knees")
        assert error.chunks_emitted == 3
        assert error.partial_text == "Bend your knees"
        assert error.context == {"chunks_emitted": 3, "partial_chars": 15}


class TestUploadErrors:
    """Tests for upload failures."""

    def test_file_too_large(self):
        error = FileTooLargeError(size_bytes=200, max_bytes=100)
        assert isinstance(error, UploadError)
        assert error.size_bytes == 200
        assert error.max_bytes == 100

    def test_offset_error(self):
        error = UploadOffsetError(committed=50, reported=10)
        assert isinstance(error, UploadError)
        assert error.committed == 50
        assert error.reported == 10

    def test_processing_failed_is_not_transport(self):
        """Server-side processing failures are distinct from transport failures."""
        error = ProcessingFailedError("files/abc", state="FAILED")
        assert not isinstance(error, TransportError)
        assert error.file_name == "files/abc"
