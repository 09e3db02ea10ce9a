"""Conversation history protocol for RallyNet.

The core reads prior turns as an ordered, read-only context and writes
to the store only after a turn completed successfully.
"""

from __future__ import annotations

from typing import Protocol, Sequence, runtime_checkable

from rallynet.core.models import ConversationTurn


@runtime_checkable
class HistoryStore(Protocol):
    """Caller-owned, ordered conversation history.

    Methods:
        turns: Return prior turns, oldest first.
        append_turns: Atomically append completed turns.

    Note:
        Implementations do NOT need to inherit from this class.
    """

    def turns(self) -> Sequence[ConversationTurn]:
        """Return prior turns, oldest first."""
        ...  # pragma: no cover

    def append_turns(self, turns: Sequence[ConversationTurn]) -> None:
        """Append ``turns`` in order as one unit."""
        ...  # pragma: no cover
