"""Core data models for change replication.

This module defines:
- `ChangeEvent`: one entry of the source change feed, minimally normalized.
- `ChangesBatch`: one response of the source change API.
- `WriteOp`: a sink write produced by the translator.
- `Checkpoint`: the persisted resume position of one source.
- `DeadLetterRecord`: an event that could not be applied and was skipped.
- `PipelineStats` / `PipelineResult`: what a pipeline run reports back.

Design notes
------------
- Sequence tokens are opaque strings. They are never compared by value; the
  order that matters is the order in which the feed emitted them.
- Events and write ops are frozen once produced. Bodies are plain dicts and
  are never mutated after construction.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

SequenceToken = str

WriteKind = Literal["upsert", "delete"]
FailureStage = Literal["translate", "write"]
RunStatus = Literal["stopped", "halted", "failed"]


# === Source records ===


@dataclass(slots=True, frozen=True)
class ChangeEvent:
    """A single change as emitted by the source feed."""

    token: SequenceToken
    document_id: str
    revision: str | None = None
    body: dict[str, Any] | None = None
    deleted: bool = False

    def __post_init__(self) -> None:
        if self.deleted and self.body is not None:
            raise ValueError("deleted change events carry no body")


@dataclass(slots=True, frozen=True)
class ChangesBatch:
    """One page of the change feed plus the token to ask for next."""

    events: tuple[ChangeEvent, ...]
    last_token: SequenceToken


# === Sink records ===


@dataclass(slots=True, frozen=True)
class WriteOp:
    """Upsert-with-body or delete-by-id against one sink collection.

    A delete with no collection removes the document from whichever
    collection holds it.
    """

    document_id: str
    kind: WriteKind
    collection: str | None
    token: SequenceToken
    body: dict[str, Any] | None = None

    @classmethod
    def upsert(
        cls, document_id: str, body: dict[str, Any], *, collection: str, token: SequenceToken
    ) -> WriteOp:
        return cls(document_id=document_id, kind="upsert", collection=collection, token=token, body=body)

    @classmethod
    def delete(cls, document_id: str, *, collection: str | None, token: SequenceToken) -> WriteOp:
        return cls(document_id=document_id, kind="delete", collection=collection, token=token)

    @property
    def target(self) -> str:
        return self.collection if self.collection is not None else "every collection"


# === Progress records ===


@dataclass(slots=True, frozen=True)
class Checkpoint:
    """Last sequence token known to be fully applied for a source."""

    source_key: str
    token: SequenceToken
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class DeadLetterRecord:
    """An event skipped under the dead-letter policy."""

    source_key: str
    token: SequenceToken
    document_id: str
    stage: FailureStage
    error: str
    body: dict[str, Any] | None = None
    recorded_at: float = field(default_factory=time.time)

    def to_json_line(self) -> str:
        """Serialize as a compact JSON line."""
        return json.dumps(asdict(self), separators=(",", ":"), default=str) + "\n"


# === Run reporting ===


@dataclass(kw_only=True)
class PipelineStats:
    """
    Aggregated counters for one pipeline run.

    Mutated by the dispatch tasks as events complete:
    - admitted: events accepted from the reader into the window
    - applied: writes that reached the sink
    - skipped: events filtered out before translation (design documents)
    - dead_lettered / failed: events that could not be applied
    """

    admitted: int = 0
    applied: int = 0
    upserts: int = 0
    deletes: int = 0
    skipped: int = 0
    dead_lettered: int = 0
    failed: int = 0
    checkpoints_written: int = 0


@dataclass(kw_only=True)
class PipelineResult:
    """High-level outcome of one pipeline instance."""

    source_key: str
    status: RunStatus
    stats: PipelineStats
    last_checkpoint: SequenceToken | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.status == "stopped"
