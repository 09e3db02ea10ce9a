"""
RallyNet - Network resilience client for video analysis with Gemini

Resumable video uploads, classified retries with backoff, and streamed
chat replies that never corrupt conversation history.
"""

from rallynet.protocols import (
    CredentialProvider,
    HistoryStore,
    ProgressCallback,
)

__version__ = "0.1.0"

__all__ = [
    "CredentialProvider",
    "HistoryStore",
    "ProgressCallback",
]
