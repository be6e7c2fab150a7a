"""Build pipelines and their clients from validated settings."""

from __future__ import annotations

import contextlib
import dataclasses
import logging
from collections.abc import AsyncIterator

from couchstream.checkpoints import (
    DynamoDBCheckpointStore,
    FileCheckpointStore,
    MemoryCheckpointStore,
    RedisCheckpointStore,
)
from couchstream.clients import CouchDBClient, MongoSinkClient
from couchstream.core.interfaces import ICheckpointStore
from couchstream.core.retry import RetryPolicy
from couchstream.errors import ConfigurationError
from couchstream.feed import ChangeFeedReader
from couchstream.orchestration.pipeline import ReplicationPipeline
from couchstream.settings import PipelineSettings
from couchstream.sink import SinkWriter
from couchstream.storage import DeadLetterLog
from couchstream.translation import Translator

logger = logging.getLogger(__name__)


def build_checkpoint_store(ps: PipelineSettings) -> ICheckpointStore:
    """Select the checkpoint backend named in the settings."""
    backend = ps.checkpoint_backend
    if backend == "dynamodb" and ps.dynamodb is not None:
        return DynamoDBCheckpointStore.from_settings(ps.dynamodb)
    if backend == "redis" and ps.redis is not None:
        return RedisCheckpointStore.from_settings(ps.redis)
    if backend == "file" and ps.file is not None:
        return FileCheckpointStore(ps.file.path)
    if backend == "memory":
        logger.warning("%s: memory checkpoint store, progress is lost on exit", ps.display_name)
        return MemoryCheckpointStore()
    raise ConfigurationError(f"{ps.display_name}: checkpoint backend {backend!r} is not configured")


def build_source(ps: PipelineSettings) -> CouchDBClient:
    return CouchDBClient(
        ps.source_url,
        ps.source_database,
        username=ps.couchdb_username,
        password=ps.couchdb_password,
        timeout_s=ps.source_timeout_s,
    )


@contextlib.asynccontextmanager
async def open_pipeline(
    ps: PipelineSettings,
    *,
    follow: bool | None = None,
) -> AsyncIterator[ReplicationPipeline]:
    """Construct one pipeline with its own clients and close them afterwards.

    `follow=False` overrides the settings to stop once the feed is caught up.
    """
    feed_config = ps.to_feed_config()
    if follow is not None:
        feed_config = dataclasses.replace(feed_config, follow=follow)
    retry = RetryPolicy.from_config(ps.to_retry_config())

    source = build_source(ps)
    sink = MongoSinkClient(ps.sink_url, ps.sink_database)
    checkpoints = build_checkpoint_store(ps)
    try:
        sink.connect()
        dead_letters = None
        if ps.on_write_failure == "dead-letter" and ps.dead_letter_path is not None:
            dead_letters = DeadLetterLog(str(ps.dead_letter_path))

        yield ReplicationPipeline(
            config=ps.to_pipeline_config(),
            reader=ChangeFeedReader(source, config=feed_config, retry=retry),
            translator=Translator(ps.to_translator_config()),
            writer=SinkWriter(sink, retry=retry),
            checkpoints=checkpoints,
            dead_letters=dead_letters,
        )
    finally:
        await source.aclose()
        sink.close()
        await checkpoints.aclose()
