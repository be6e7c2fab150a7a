from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

WriteFailurePolicy = Literal["halt", "dead-letter"]
StaleTokenPolicy = Literal["fail", "reseed-now"]


@dataclass(frozen=True)
class RetryConfig:
    """Backoff budget for one kind of operation."""

    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 30.0
    jitter: bool = True


@dataclass(frozen=True)
class PipelineConfig:
    """Configuration for one replication pipeline instance.

    Free of infrastructure concerns: no URLs, credentials or backend
    selection. Those live in `couchstream.settings`.
    """

    source_key: str
    concurrency: int = 8
    on_write_failure: WriteFailurePolicy = "halt"
    on_stale_token: StaleTokenPolicy = "fail"
    shutdown_drain_timeout: float = 30.0
    verify_checkpoint: bool = True
    retry: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if self.shutdown_drain_timeout < 0:
            raise ValueError("shutdown_drain_timeout must be >= 0")


@dataclass(frozen=True)
class FeedConfig:
    """How the change feed reader polls the source."""

    batch_size: int = 500
    longpoll_timeout_ms: int = 60_000
    follow: bool = True


@dataclass(frozen=True)
class TranslatorConfig:
    """How source documents are reshaped for the sink."""

    default_collection: str
    collection_field: str | None = None
    id_field: str = "_id"
    strip_fields: tuple[str, ...] = (
        "_rev",
        "_revisions",
        "_conflicts",
        "_deleted_conflicts",
        "_local_seq",
    )
    skip_design_documents: bool = True
