from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from couchstream.core.models import ChangesBatch, DeadLetterRecord, SequenceToken


# ---------------------------------------------------------------------------
# IChangesSource
# ---------------------------------------------------------------------------

@runtime_checkable
class IChangesSource(Protocol):
    """
    Abstract client for a source change feed.

    Domain expectations:
    - It returns ChangeEvent objects already mapped into internal models.
    - It hides the underlying HTTP protocol (CouchDB, Cloudant, fakes).
    - A token the source no longer accepts raises StaleTokenError.
    - Retryable failures raise TransientError.
    """

    async def fetch_changes(
        self,
        *,
        since: SequenceToken,
        limit: int,
        timeout_ms: int,
    ) -> ChangesBatch:
        """
        Return the next batch of changes strictly after `since`.

        Implementations:
        - CouchDBClient (long-poll `_changes`)
        - In-memory feed for testing
        """
        ...

    async def current_token(self) -> SequenceToken:
        """Return the token of the newest change the source knows about."""
        ...


# ---------------------------------------------------------------------------
# ISinkClient
# ---------------------------------------------------------------------------

@runtime_checkable
class ISinkClient(Protocol):
    """
    Abstract target store client.

    Domain expectations:
    - Every call has network semantics: it returns once the sink has
      acknowledged the write, or raise.
    - Deleting an absent document is not an error.
    """

    async def upsert(self, collection: str, document_id: str, body: dict[str, Any]) -> None:
        ...

    async def delete(self, collection: str, document_id: str) -> None:
        ...

    async def delete_everywhere(self, document_id: str) -> None:
        """Delete the document from every collection that holds it."""
        ...


# ---------------------------------------------------------------------------
# ICheckpointStore
# ---------------------------------------------------------------------------

@runtime_checkable
class ICheckpointStore(Protocol):
    """
    Persistent map from source key to last applied sequence token.

    Domain expectations:
    - `get` returns None for a key that was never written.
    - `put` is a single-key overwrite; after a crash either the old or the
      new value is readable, never a torn one.
    """

    async def get(self, source_key: str) -> SequenceToken | None:
        ...

    async def put(self, source_key: str, token: SequenceToken) -> None:
        ...

    async def aclose(self) -> None:
        """Release any connection held by the backend."""
        ...


# ---------------------------------------------------------------------------
# IDeadLetterSink
# ---------------------------------------------------------------------------

@runtime_checkable
class IDeadLetterSink(Protocol):
    """
    Append-only journal of events skipped under the dead-letter policy.

    Implementations:
    - DeadLetterLog (JSONL file writer)
    - In-memory list for testing
    """

    async def append(self, record: DeadLetterRecord) -> None:
        ...
