"""Storage for events the pipeline could not apply.

This package provides:
- DeadLetterLog: fsynced JSONL journal of skipped events
- MemoryDeadLetterSink: in-memory stand-in for tests
"""

from couchstream.storage.deadletter import DeadLetterLog, MemoryDeadLetterSink

__all__ = [
    "DeadLetterLog",
    "MemoryDeadLetterSink",
]
