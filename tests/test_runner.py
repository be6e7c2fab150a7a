import asyncio

import pytest
from conftest import FakeChangesSource, FakeSinkClient, make_pipeline, upsert_event, wait_for

from couchstream.checkpoints import MemoryCheckpointStore
from couchstream.core.models import PipelineResult, PipelineStats
from couchstream.orchestration import merge_stats, run_pipelines


@pytest.mark.asyncio
async def test_one_failing_pipeline_does_not_stop_the_others() -> None:
    store = MemoryCheckpointStore()
    good_sink, bad_sink = FakeSinkClient(), FakeSinkClient()
    bad_sink.failures["x"] = RuntimeError("boom")
    good = make_pipeline(
        FakeChangesSource([upsert_event("1", "a"), upsert_event("2", "b")]), good_sink, store, source_key="good"
    )
    bad = make_pipeline(FakeChangesSource([upsert_event("1", "x")]), bad_sink, store, source_key="bad")

    results = await run_pipelines([good, bad])

    assert [r.source_key for r in results] == ["good", "bad"]
    assert results[0].status == "stopped"
    assert results[1].status == "halted"
    assert await store.get("good") == "2"
    assert await store.get("bad") is None
    assert good_sink.ids() == {"a", "b"}


@pytest.mark.asyncio
async def test_shared_stop_event_stops_every_pipeline() -> None:
    stop = asyncio.Event()
    pipelines = [
        make_pipeline(
            FakeChangesSource([upsert_event("1", key)]),
            FakeSinkClient(),
            MemoryCheckpointStore(),
            source_key=key,
            follow=True,
        )
        for key in ("one", "two")
    ]

    task = asyncio.create_task(run_pipelines(pipelines, stop))
    await wait_for(lambda: all(p.last_checkpoint == "1" for p in pipelines))
    stop.set()
    results = await asyncio.wait_for(task, timeout=2)

    assert [r.status for r in results] == ["stopped", "stopped"]
    assert [r.last_checkpoint for r in results] == ["1", "1"]


@pytest.mark.asyncio
async def test_duplicate_source_keys_rejected() -> None:
    pipelines = [make_pipeline(FakeChangesSource(), FakeSinkClient(), MemoryCheckpointStore()) for _ in range(2)]

    with pytest.raises(ValueError, match="duplicate"):
        await run_pipelines(pipelines)


def test_merge_stats() -> None:
    results = [
        PipelineResult(source_key="a", status="stopped", stats=PipelineStats(admitted=3, applied=2, skipped=1)),
        PipelineResult(source_key="b", status="halted", stats=PipelineStats(admitted=5, applied=4, failed=1)),
    ]

    total = merge_stats(results)

    assert total.admitted == 8
    assert total.applied == 6
    assert total.failed == 1
    assert total.skipped == 1
