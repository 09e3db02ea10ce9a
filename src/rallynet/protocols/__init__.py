"""Protocol abstractions for RallyNet.

Narrow interfaces through which excluded collaborators (UI, persistence,
secure credential storage) consume the core. All protocols use
`typing.Protocol` for structural subtyping with `@runtime_checkable`.

Protocols:
    HistoryStore: Caller-owned conversation history.
    CredentialProvider: Source of the API key.
    ProgressCallback: Receiver of monotonic upload progress.

Usage:
    from rallynet.protocols import HistoryStore

    assert isinstance(my_store, HistoryStore)
"""

from __future__ import annotations

from rallynet.protocols.credentials import CredentialProvider
from rallynet.protocols.history import HistoryStore
from rallynet.protocols.progress import ProgressCallback

__all__ = [
    "CredentialProvider",
    "HistoryStore",
    "ProgressCallback",
]
