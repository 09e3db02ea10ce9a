"""Chat sessions over uploaded videos."""

from rallynet.chat.session import (
    ChatSessionManager,
    InMemoryHistoryStore,
    build_analysis_request,
    build_chat_request,
)

__all__ = [
    "ChatSessionManager",
    "InMemoryHistoryStore",
    "build_analysis_request",
    "build_chat_request",
]
