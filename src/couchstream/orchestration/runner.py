from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from couchstream.core.models import PipelineResult, PipelineStats
from couchstream.orchestration.pipeline import ReplicationPipeline

logger = logging.getLogger(__name__)


async def run_pipelines(
    pipelines: Sequence[ReplicationPipeline],
    stop: asyncio.Event | None = None,
) -> list[PipelineResult]:
    """Run independent pipeline instances concurrently.

    Each instance stops on its own failure without affecting the others; a
    shared `stop` event asks all of them to drain and exit. Results come back
    in the order of `pipelines`.
    """
    if not pipelines:
        return []

    keys = [p.source_key for p in pipelines]
    if len(set(keys)) != len(keys):
        raise ValueError(f"duplicate source keys: {keys}")

    logger.info("starting %d pipelines: %s", len(pipelines), ", ".join(keys))
    outcomes = await asyncio.gather(*(p.run(stop) for p in pipelines), return_exceptions=True)

    results: list[PipelineResult] = []
    for pipeline, outcome in zip(pipelines, outcomes):
        if isinstance(outcome, PipelineResult):
            results.append(outcome)
            continue
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        logger.error("%s: pipeline crashed", pipeline.source_key, exc_info=outcome)
        results.append(
            PipelineResult(
                source_key=pipeline.source_key,
                status="failed",
                stats=pipeline.stats,
                last_checkpoint=pipeline.last_checkpoint,
                error=outcome,
            )
        )
    return results


def merge_stats(results: Sequence[PipelineResult]) -> PipelineStats:
    """Sum the counters of several runs."""
    total = PipelineStats()
    for r in results:
        for name in vars(total):
            setattr(total, name, getattr(total, name) + getattr(r.stats, name))
    return total
