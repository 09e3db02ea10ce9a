"""Unit tests for rallynet.core.models module."""

from datetime import timezone

import pytest

from rallynet.core.exceptions import MalformedResponseError, UploadOffsetError
from rallynet.core.models import (
    ConversationTurn,
    GenerationParameters,
    MediaResolution,
    RemoteFile,
    RemoteFileState,
    Role,
    StreamingChunk,
    UploadSession,
    UploadState,
)


class TestConversationTurn:
    """Tests for ConversationTurn."""

    def test_role_coerced_from_string(self):
        turn = ConversationTurn(role="assistant", content="Good swing")
        assert turn.role is Role.ASSISTANT

    def test_timestamp_is_utc(self):
        turn = ConversationTurn(role=Role.USER, content="hi")
        assert turn.timestamp.tzinfo == timezone.utc

    def test_is_immutable(self):
        turn = ConversationTurn(role=Role.USER, content="hi")
        with pytest.raises(AttributeError):
            turn.content = "changed"

    def test_wire_roles(self):
        """Assistant turns are sent as 'model'."""
        assert Role.USER.wire_role == "user"
        assert Role.ASSISTANT.wire_role == "model"


class TestStreamingChunk:
    """Tests for StreamingChunk."""

    def test_defaults(self):
        chunk = StreamingChunk(sequence_index=0, text_delta="a")
        assert chunk.is_final is False
        assert chunk.finish_reason is None

    def test_negative_index_rejected(self):
        with pytest.raises(ValueError):
            StreamingChunk(sequence_index=-1, text_delta="a")


class TestUploadSession:
    """Tests for the UploadSession state machine."""

    def make_session(self, total=100):
        return UploadSession(total_bytes=total, display_name="serve.mp4", content_type="video/mp4")

    def test_happy_path_transitions(self):
        session = self.make_session()
        for state in (UploadState.UPLOADING, UploadState.FINALIZING, UploadState.PROCESSING, UploadState.READY):
            session.transition(state)
        assert session.state is UploadState.READY

    def test_finalizing_straight_to_ready(self):
        """A file that is ACTIVE at finalize time skips PROCESSING."""
        session = self.make_session()
        session.transition(UploadState.UPLOADING)
        session.transition(UploadState.FINALIZING)
        session.transition(UploadState.READY)
        assert session.state is UploadState.READY

    def test_illegal_transition_rejected(self):
        session = self.make_session()
        with pytest.raises(ValueError, match="Invalid upload transition"):
            session.transition(UploadState.READY)

    def test_terminal_states_are_final(self):
        session = self.make_session()
        session.transition(UploadState.FAILED)
        with pytest.raises(ValueError):
            session.transition(UploadState.UPLOADING)

    def test_commit_is_monotonic(self):
        """bytes_committed never decreases."""
        session = self.make_session()
        session.commit(40)
        session.commit(40)
        with pytest.raises(UploadOffsetError):
            session.commit(10)
        assert session.bytes_committed == 40

    def test_commit_past_end_rejected(self):
        session = self.make_session()
        with pytest.raises(UploadOffsetError):
            session.commit(101)

    def test_fraction_and_completion(self):
        session = self.make_session()
        session.commit(25)
        assert session.fraction == 0.25
        assert not session.is_complete
        session.commit(100)
        assert session.is_complete


class TestRemoteFile:
    """Tests for RemoteFile.from_api."""

    def test_parses_file_resource(self):
        remote = RemoteFile.from_api(
            {"name": "files/a", "uri": "https://x/files/a", "mimeType": "video/quicktime",
             "state": "ACTIVE", "sizeBytes": "2048"}
        )
        assert remote.name == "files/a"
        assert remote.mime_type == "video/quicktime"
        assert remote.is_active
        assert remote.size_bytes == 2048

    def test_defaults(self):
        remote = RemoteFile.from_api({"name": "files/a", "uri": "https://x/files/a"})
        assert remote.state is RemoteFileState.PROCESSING
        assert remote.mime_type == "video/mp4"
        assert remote.size_bytes is None

    @pytest.mark.parametrize(
        "data",
        [
            [],
            {"uri": "https://x/files/a"},
            {"name": "files/a"},
            {"name": "files/a", "uri": "https://x", "state": "EXPLODED"},
        ],
    )
    def test_malformed_resources_rejected(self, data):
        with pytest.raises(MalformedResponseError):
            RemoteFile.from_api(data)


class TestGenerationParameters:
    """Tests for GenerationParameters."""

    def test_default_request_object(self):
        assert GenerationParameters().to_api() == {"mediaResolution": "MEDIA_RESOLUTION_MEDIUM"}

    def test_full_request_object(self):
        params = GenerationParameters(
            temperature=0.4, max_output_tokens=1024, media_resolution=MediaResolution.HIGH
        )
        assert params.to_api() == {
            "mediaResolution": "MEDIA_RESOLUTION_HIGH",
            "temperature": 0.4,
            "maxOutputTokens": 1024,
        }

    @pytest.mark.parametrize("kwargs", [{"temperature": 2.5}, {"temperature": -0.1}, {"max_output_tokens": 0}])
    def test_validation(self, kwargs):
        with pytest.raises(ValueError):
            GenerationParameters(**kwargs)
