"""Settings file loading and validation.

Settings come from a TOML file validated with pydantic. Top-level keys can be
overridden from ``COUCHSTREAM_<KEY>`` environment variables (for example
``COUCHSTREAM_LOG_LEVEL=debug``). Each ``[[pipelines]]`` table describes one
(source, sink) pair.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, model_validator

from couchstream.core.config import FeedConfig, PipelineConfig, RetryConfig, TranslatorConfig
from couchstream.errors import ConfigurationError

ENV_PREFIX = "COUCHSTREAM_"

CheckpointBackend = Literal["dynamodb", "redis", "file", "memory"]


class RedisSettings(BaseModel):
    use_tls: bool = False
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    prefix: str | None = None
    password: str | None = None


class DynamoDBSettings(BaseModel):
    table: str
    region: str | None = None
    local_url: str | None = None
    # create the table if it doesn't exist
    create_table: bool = True


class FileSettings(BaseModel):
    path: Path = Path("checkpoints.json")


class PipelineSettings(BaseModel):
    """One replicated (source, sink) pair."""

    name: str | None = None

    # CouchDB / Cloudant source, e.g. http://localhost:5984/
    source_url: str
    source_database: str
    couchdb_username: str | None = None
    couchdb_password: str | None = None
    source_timeout_s: int = Field(default=10, ge=1)

    # MongoDB sink
    sink_url: str
    sink_database: str
    sink_collection: str | None = None
    sink_collection_field: str | None = None

    checkpoint_backend: CheckpointBackend = "file"
    checkpoint_key: str | None = None
    redis: RedisSettings | None = None
    dynamodb: DynamoDBSettings | None = None
    file: FileSettings | None = None

    concurrency: int = Field(default=8, ge=1)
    retry_max_attempts: int = Field(default=5, ge=1)
    retry_base_delay: float = Field(default=0.5, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    on_write_failure: Literal["halt", "dead-letter"] = "halt"
    dead_letter_path: Path | None = None
    shutdown_drain_timeout: float = Field(default=30.0, ge=0)
    on_stale_token: Literal["fail", "reseed-now"] = "fail"
    verify_checkpoint: bool = True

    batch_size: int = Field(default=500, ge=1)
    longpoll_timeout: float = Field(default=60.0, gt=0)
    follow: bool = True
    skip_design_documents: bool = True

    @model_validator(mode="after")
    def _check_consistency(self) -> PipelineSettings:
        if self.checkpoint_backend == "redis" and self.redis is None:
            self.redis = RedisSettings()
        if self.checkpoint_backend == "dynamodb" and self.dynamodb is None:
            raise ValueError("checkpoint_backend=dynamodb requires a [pipelines.dynamodb] table")
        if self.checkpoint_backend == "file" and self.file is None:
            self.file = FileSettings()
        if self.on_write_failure == "dead-letter" and self.dead_letter_path is None:
            raise ValueError("on_write_failure=dead-letter requires dead_letter_path")
        if self.retry_base_delay > self.retry_max_delay:
            raise ValueError("retry_base_delay must be <= retry_max_delay")
        return self

    @property
    def display_name(self) -> str:
        return self.name or self.source_database

    def get_checkpoint_key(self) -> str:
        return self.checkpoint_key or self.source_database

    def to_pipeline_config(self) -> PipelineConfig:
        return PipelineConfig(
            source_key=self.get_checkpoint_key(),
            concurrency=self.concurrency,
            on_write_failure=self.on_write_failure,
            on_stale_token=self.on_stale_token,
            shutdown_drain_timeout=self.shutdown_drain_timeout,
            verify_checkpoint=self.verify_checkpoint,
            retry=self.to_retry_config(),
        )

    def to_retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )

    def to_feed_config(self) -> FeedConfig:
        return FeedConfig(
            batch_size=self.batch_size,
            longpoll_timeout_ms=int(self.longpoll_timeout * 1000),
            follow=self.follow,
        )

    def to_translator_config(self) -> TranslatorConfig:
        return TranslatorConfig(
            default_collection=self.sink_collection or self.source_database,
            collection_field=self.sink_collection_field,
            skip_design_documents=self.skip_design_documents,
        )


class Settings(BaseModel):
    log_level: Literal["debug", "info", "warning", "error"] = "info"
    log_format: Literal["compact", "json"] = "compact"
    pipelines: list[PipelineSettings] = Field(min_length=1)

    @model_validator(mode="after")
    def _unique_names(self) -> Settings:
        names = [p.display_name for p in self.pipelines]
        if len(set(names)) != len(names):
            raise ValueError(f"pipeline names must be unique: {names}")
        keys = [(p.checkpoint_backend, p.get_checkpoint_key()) for p in self.pipelines]
        if len(set(keys)) != len(keys):
            raise ValueError("two pipelines share a checkpoint key on the same backend")
        return self

    def pipeline(self, name: str) -> PipelineSettings:
        for p in self.pipelines:
            if p.display_name == name:
                return p
        raise ConfigurationError(f"no pipeline named {name!r}")


def _env_overrides(environ: dict[str, str]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for field_name in ("log_level", "log_format"):
        value = environ.get(ENV_PREFIX + field_name.upper())
        if value:
            out[field_name] = value.lower()
    return out


def load_settings(path: str | Path | None, environ: dict[str, str] | None = None) -> Settings:
    """Load settings from a TOML file plus environment overrides.

    Raises ConfigurationError on a missing/unparseable file or invalid values.
    """
    raw: dict[str, Any] = {}
    if path is not None:
        try:
            with open(path, "rb") as f:
                raw = tomllib.load(f)
        except FileNotFoundError as e:
            raise ConfigurationError(f"config file not found: {path}") from e
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise ConfigurationError(f"cannot read config {path}: {e}") from e

    raw.update(_env_overrides(dict(os.environ) if environ is None else environ))
    try:
        return Settings.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"invalid configuration:\n{e}") from e
