"""Exception hierarchy for the replication pipeline.

Every error carries a ``category`` (reported to operators) and an
``exit_code`` used by the CLI to distinguish restart-safe failures from
failures that need operator intervention.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

    from couchstream.core.models import ChangeEvent, WriteOp

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_CONFIG = 2
EXIT_RESTARTABLE = 3
EXIT_INTERVENTION = 4

# least to most severe; a restart-safe failure must not mask the others
_SEVERITY = (EXIT_OK, EXIT_RESTARTABLE, EXIT_UNEXPECTED, EXIT_CONFIG, EXIT_INTERVENTION)


class ReplicationError(Exception):
    """Base class for all couchstream errors."""

    category = "fatal"
    exit_code = EXIT_RESTARTABLE


class ConfigurationError(ReplicationError):
    """Settings are missing, invalid or inconsistent."""

    category = "configuration"
    exit_code = EXIT_CONFIG


class TransientError(ReplicationError):
    """Network timeout, throttling or similar: worth retrying."""

    category = "transient"


class RetryExhaustedError(ReplicationError):
    """A transient failure outlasted the retry budget."""

    category = "retry-exhausted"

    def __init__(self, operation: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class SourceError(ReplicationError):
    """The change feed returned something the reader cannot use."""

    category = "source"
    exit_code = EXIT_INTERVENTION


class StaleTokenError(SourceError):
    """The source no longer recognizes the resume token."""

    category = "stale-token"

    def __init__(self, token: str | None, detail: str = "") -> None:
        msg = f"source rejected resume token {token!r}"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)
        self.token = token


class TranslationError(ReplicationError):
    """A source document cannot be reshaped for the sink."""

    category = "translation"
    exit_code = EXIT_INTERVENTION

    def __init__(self, event: ChangeEvent, reason: str) -> None:
        super().__init__(f"cannot translate {event.document_id!r} at {event.token!r}: {reason}")
        self.event = event
        self.reason = reason


class SinkWriteError(ReplicationError):
    """A write to the sink failed for good."""

    category = "sink-write"

    def __init__(self, op: WriteOp, reason: str) -> None:
        super().__init__(f"{op.kind} of {op.document_id!r} in {op.target} failed: {reason}")
        self.op = op
        self.reason = reason


class SinkAuthError(SinkWriteError):
    """The sink refused our credentials."""

    category = "sink-auth"
    exit_code = EXIT_INTERVENTION


class CheckpointStoreError(ReplicationError):
    """A checkpoint backend call failed (non-transient)."""

    category = "checkpoint-store"


class CheckpointWriteError(CheckpointStoreError):
    """Progress could not be persisted; the instance must stop."""

    category = "checkpoint-write"


class CheckpointConflictError(CheckpointStoreError):
    """Someone else moved the stored checkpoint beneath this instance."""

    category = "checkpoint-conflict"
    exit_code = EXIT_INTERVENTION

    def __init__(self, source_key: str, expected: str | None, found: str | None) -> None:
        super().__init__(
            f"checkpoint for {source_key!r} changed beneath us: expected {expected!r}, found {found!r}"
        )
        self.source_key = source_key
        self.expected = expected
        self.found = found


def exit_code_for(error: BaseException | None) -> int:
    """Map a terminating error to the process exit code."""
    if error is None:
        return EXIT_OK
    if isinstance(error, ReplicationError):
        return error.exit_code
    return EXIT_UNEXPECTED


def worst_exit_code(errors: Iterable[BaseException | None]) -> int:
    """Exit code for several pipelines: the most severe of their codes."""
    return max((exit_code_for(e) for e in errors), key=_SEVERITY.index, default=EXIT_OK)
