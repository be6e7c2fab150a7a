import asyncio
from typing import Any

import pytest

from couchstream.core.config import FeedConfig, PipelineConfig, RetryConfig, TranslatorConfig
from couchstream.core.models import ChangeEvent, ChangesBatch
from couchstream.core.retry import RetryPolicy
from couchstream.errors import StaleTokenError, TransientError
from couchstream.feed import ChangeFeedReader
from couchstream.orchestration import ReplicationPipeline
from couchstream.sink import SinkWriter
from couchstream.translation import Translator

FAST_RETRY = RetryConfig(max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=False)


def upsert_event(token: str, doc_id: str, **fields: Any) -> ChangeEvent:
    body = {"_id": doc_id, "_rev": f"{token}-abc", **fields}
    return ChangeEvent(token=token, document_id=doc_id, revision=body["_rev"], body=body)


def delete_event(token: str, doc_id: str) -> ChangeEvent:
    return ChangeEvent(token=token, document_id=doc_id, revision=f"{token}-del", deleted=True)


class FakeChangesSource:
    """In-memory change feed. Tokens are positions in `events`."""

    def __init__(self, events: list[ChangeEvent] | None = None, *, transient_failures: int = 0) -> None:
        self.events = list(events or [])
        self.transient_failures = transient_failures
        self.calls: list[dict[str, Any]] = []

    def append(self, event: ChangeEvent) -> None:
        self.events.append(event)

    def _position(self, since: str) -> int:
        if since == "0":
            return 0
        for i, e in enumerate(self.events):
            if e.token == since:
                return i + 1
        raise StaleTokenError(since, "unknown sequence")

    async def fetch_changes(self, *, since: str, limit: int, timeout_ms: int) -> ChangesBatch:
        self.calls.append({"since": since, "limit": limit, "timeout_ms": timeout_ms})
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise TransientError("connection reset")
        start = self._position(since)
        page = tuple(self.events[start : start + limit])
        if not page and timeout_ms > 0:
            # long-poll with nothing new
            await asyncio.sleep(0.01)
        return ChangesBatch(events=page, last_token=page[-1].token if page else since)

    async def current_token(self) -> str:
        return self.events[-1].token if self.events else "0"


class FakeSinkClient:
    """Dict-backed sink keyed by (collection, _id).

    `failures` maps a document id to an exception raised on every write of
    it; `gates` holds writes of a document until the event is set;
    `delays` maps (document id, nth write of it) to a sleep before writing.
    """

    def __init__(self) -> None:
        self.docs: dict[tuple[str, str], dict[str, Any]] = {}
        self.ops: list[tuple[str, str, str]] = []
        self.failures: dict[str, BaseException] = {}
        self.transient: dict[str, int] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.delays: dict[tuple[str, int], float] = {}
        self._seen: dict[str, int] = {}

    async def _before_write(self, document_id: str) -> None:
        nth = self._seen.get(document_id, 0)
        self._seen[document_id] = nth + 1
        if document_id in self.gates:
            await self.gates[document_id].wait()
        delay = self.delays.get((document_id, nth))
        if delay:
            await asyncio.sleep(delay)
        if self.transient.get(document_id, 0) > 0:
            self.transient[document_id] -= 1
            raise TransientError(f"write of {document_id} timed out")
        if document_id in self.failures:
            raise self.failures[document_id]

    async def upsert(self, collection: str, document_id: str, body: dict[str, Any]) -> None:
        await self._before_write(document_id)
        self.docs[(collection, document_id)] = dict(body)
        self.ops.append(("upsert", collection, document_id))

    async def delete(self, collection: str, document_id: str) -> None:
        await self._before_write(document_id)
        self.docs.pop((collection, document_id), None)
        self.ops.append(("delete", collection, document_id))

    async def delete_everywhere(self, document_id: str) -> None:
        await self._before_write(document_id)
        for key in [k for k in self.docs if k[1] == document_id]:
            del self.docs[key]
        self.ops.append(("delete", "*", document_id))

    def ids(self, collection: str = "things") -> set[str]:
        return {doc_id for (coll, doc_id) in self.docs if coll == collection}


async def wait_for(predicate: Any, timeout: float = 2.0) -> None:
    """Poll `predicate` until it is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def make_pipeline(
    source: FakeChangesSource,
    sink: FakeSinkClient,
    checkpoints: Any,
    *,
    follow: bool = False,
    batch_size: int = 100,
    dead_letters: Any = None,
    collection_field: str | None = None,
    **config: Any,
) -> ReplicationPipeline:
    retry = RetryPolicy.from_config(FAST_RETRY)
    config.setdefault("source_key", "things")
    config.setdefault("retry", FAST_RETRY)
    return ReplicationPipeline(
        config=PipelineConfig(**config),
        reader=ChangeFeedReader(
            source,
            config=FeedConfig(batch_size=batch_size, longpoll_timeout_ms=50, follow=follow),
            retry=retry,
        ),
        translator=Translator(TranslatorConfig(default_collection="things", collection_field=collection_field)),
        writer=SinkWriter(sink, retry=retry),
        checkpoints=checkpoints,
        dead_letters=dead_letters,
    )


@pytest.fixture
def source() -> FakeChangesSource:
    return FakeChangesSource(
        [
            upsert_event("1", "a", n=1),
            upsert_event("2", "b", n=2),
            upsert_event("3", "c", n=3),
        ]
    )


@pytest.fixture
def sink() -> FakeSinkClient:
    return FakeSinkClient()
