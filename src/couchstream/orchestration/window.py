"""In-flight window tracking which admitted events have been applied.

Events enter the window in source order and may complete in any order. The
checkpoint may only move to the newest token of the longest completed prefix:
moving past an incomplete event would let a crash skip it on resume.

The pipeline admits an event only while the window holds fewer than
`concurrency` slots, so completed slots queued behind a slow oldest write
count against the same limit as outstanding ones.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass

from couchstream.core.models import SequenceToken


@dataclass(slots=True)
class Slot:
    """One admitted event awaiting completion."""

    token: SequenceToken
    document_id: str
    done: bool = False


class InFlightWindow:
    def __init__(self) -> None:
        self._slots: deque[Slot] = deque()

    def __len__(self) -> int:
        return len(self._slots)

    def admit(self, token: SequenceToken, document_id: str) -> Slot:
        """Append a new slot; must be called in source emission order."""
        slot = Slot(token=token, document_id=document_id)
        self._slots.append(slot)
        return slot

    @staticmethod
    def complete(slot: Slot) -> None:
        slot.done = True

    def advance(self) -> SequenceToken | None:
        """Pop the completed prefix and return its newest token.

        Returns None when the oldest slot is still outstanding (or the window
        is empty), i.e. when the checkpoint cannot move.
        """
        newest: SequenceToken | None = None
        while self._slots and self._slots[0].done:
            newest = self._slots.popleft().token
        return newest

    def pending(self) -> list[Slot]:
        """Slots not yet completed, oldest first."""
        return [s for s in self._slots if not s.done]
