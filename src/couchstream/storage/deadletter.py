from __future__ import annotations

import asyncio
import os

from couchstream.core.models import DeadLetterRecord


class DeadLetterLog:
    """Append-only JSONL journal of events skipped by the dead-letter policy.

    Each record is written and fsynced before `append` returns, so a record
    is on disk before the pipeline lets the checkpoint move past its event.
    """

    def __init__(self, path: str) -> None:
        """Initialize the journal at the given path.

        Args:
            path: File path for the dead-letter JSONL file
        """
        self.path = path
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        open(self.path, "a").close()
        self._lock = asyncio.Lock()

    async def append(self, record: DeadLetterRecord) -> None:
        """Append a dead-letter record atomically.

        Args:
            record: DeadLetterRecord to write to the journal
        """
        line = record.to_json_line()
        async with self._lock:
            await asyncio.to_thread(self._write_line, self.path, line)

    @staticmethod
    def _write_line(path: str, line: str) -> None:
        """Write a line to file with immediate flush and sync."""
        with open(path, "a", buffering=1) as f:
            f.write(line)
            f.flush()
            os.fsync(f.fileno())


class MemoryDeadLetterSink:
    """Keeps dead-letter records in a list; for tests and dry runs."""

    def __init__(self) -> None:
        self.records: list[DeadLetterRecord] = []

    async def append(self, record: DeadLetterRecord) -> None:
        self.records.append(record)
