"""Core data models, configurations, and retry policy.

This package provides:
- Data models (ChangeEvent, WriteOp, Checkpoint, DeadLetterRecord, ...)
- Configuration classes (PipelineConfig, FeedConfig, TranslatorConfig)
- Abstract ports for the source, sink, checkpoint and dead-letter stores
- RetryPolicy and the retry helper shared by every I/O boundary
"""

from couchstream.core.config import FeedConfig, PipelineConfig, RetryConfig, TranslatorConfig
from couchstream.core.models import (
    ChangeEvent,
    ChangesBatch,
    Checkpoint,
    DeadLetterRecord,
    PipelineResult,
    PipelineStats,
    WriteOp,
)
from couchstream.core.retry import RetryPolicy, retry_async

__all__ = [
    "FeedConfig",
    "PipelineConfig",
    "RetryConfig",
    "TranslatorConfig",
    "ChangeEvent",
    "ChangesBatch",
    "Checkpoint",
    "DeadLetterRecord",
    "PipelineResult",
    "PipelineStats",
    "WriteOp",
    "RetryPolicy",
    "retry_async",
]
