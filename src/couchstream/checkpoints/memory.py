from __future__ import annotations

from couchstream.core.models import SequenceToken


class MemoryCheckpointStore:
    """Process-local checkpoint store.

    Works like a real store so the pipeline runs unchanged, but everything is
    lost when the process exits. Only meant for tests and local runs.
    """

    def __init__(self, initial: dict[str, SequenceToken] | None = None) -> None:
        self._values: dict[str, SequenceToken] = dict(initial or {})
        self.history: list[tuple[str, SequenceToken]] = []

    async def get(self, source_key: str) -> SequenceToken | None:
        return self._values.get(source_key)

    async def put(self, source_key: str, token: SequenceToken) -> None:
        self._values[source_key] = token
        self.history.append((source_key, token))

    async def aclose(self) -> None:
        return None
