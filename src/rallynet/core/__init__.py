"""Core module for RallyNet.

Exports the core components: exceptions, data models, and configuration.
"""

from rallynet.core.exceptions import (
    RallyNetError,
    ConfigurationError,
    OperationCancelledError,
    TransportError,
    TransportKind,
    HTTPStatusError,
    RateLimitedError,
    InvalidCredentialError,
    MalformedResponseError,
    StreamTruncatedError,
    StreamBufferOverflowError,
    ResponseBlockedError,
    StreamInterruptedError,
    UploadError,
    FileTooLargeError,
    UploadOffsetError,
    ProcessingFailedError,
    ProcessingTimeoutError,
    is_exhausted,
)
from rallynet.core.models import (
    ConversationTurn,
    Role,
    StreamingChunk,
    UploadSession,
    UploadState,
    RemoteFile,
    RemoteFileState,
    MediaResolution,
    GenerationParameters,
)
from rallynet.core.config import (
    get_settings,
    reset_settings,
    create_settings,
    Settings,
    ApiConfig,
    RetryConfig,
    UploadConfig,
    StreamingConfig,
    GenerationConfig,
    PromptConfig,
    LoggingConfig,
)
from rallynet.core.log import configure_logging

__all__ = [
    # Exceptions
    "RallyNetError",
    "ConfigurationError",
    "OperationCancelledError",
    "TransportError",
    "TransportKind",
    "HTTPStatusError",
    "RateLimitedError",
    "InvalidCredentialError",
    "MalformedResponseError",
    "StreamTruncatedError",
    "StreamBufferOverflowError",
    "ResponseBlockedError",
    "StreamInterruptedError",
    "UploadError",
    "FileTooLargeError",
    "UploadOffsetError",
    "ProcessingFailedError",
    "ProcessingTimeoutError",
    "is_exhausted",
    # Models
    "ConversationTurn",
    "Role",
    "StreamingChunk",
    "UploadSession",
    "UploadState",
    "RemoteFile",
    "RemoteFileState",
    "MediaResolution",
    "GenerationParameters",
    # Config
    "get_settings",
    "reset_settings",
    "create_settings",
    "Settings",
    "ApiConfig",
    "RetryConfig",
    "UploadConfig",
    "StreamingConfig",
    "GenerationConfig",
    "PromptConfig",
    "LoggingConfig",
    "configure_logging",
]
