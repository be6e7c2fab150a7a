"""couchstream: resumable replication of CouchDB change feeds into MongoDB."""

from __future__ import annotations

from .core.config import FeedConfig, PipelineConfig, RetryConfig, TranslatorConfig
from .core.models import ChangeEvent, Checkpoint, PipelineResult, PipelineStats, WriteOp
from .errors import ReplicationError
from .orchestration import ReplicationPipeline, run_pipelines
from .settings import Settings, load_settings

__all__ = [
    "ReplicationPipeline",
    "run_pipelines",
    "Settings",
    "load_settings",
    "PipelineConfig",
    "FeedConfig",
    "RetryConfig",
    "TranslatorConfig",
    "ChangeEvent",
    "Checkpoint",
    "WriteOp",
    "PipelineResult",
    "PipelineStats",
    "ReplicationError",
]
