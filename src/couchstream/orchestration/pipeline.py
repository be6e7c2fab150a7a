"""Resumable replication pipeline: change feed → translate → sink → checkpoint.

One `ReplicationPipeline` exists per (source, sink) pair. It:

1) Reads the last checkpoint and opens the change feed after it.
2) Admits events in source order into an in-flight window of at most
   `concurrency` events; a slot frees only once the checkpoint moves past
   its event, so admission pauses behind a slow oldest write (backpressure).
3) Translates each event and applies it as an asyncio task. Writes for the
   same document are chained so they land in emission order.
4) Persists the newest token of the contiguous completed prefix, never
   moving past an event whose write has not completed.

On stop, admission ends immediately, in-flight writes drain within
`shutdown_drain_timeout`, and the resulting prefix is persisted.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from typing import Any

from couchstream.core.config import PipelineConfig
from couchstream.core.interfaces import ICheckpointStore, IDeadLetterSink
from couchstream.core.models import (
    ChangeEvent,
    DeadLetterRecord,
    PipelineResult,
    PipelineStats,
    SequenceToken,
    WriteOp,
)
from couchstream.core.retry import RetryPolicy, retry_async
from couchstream.errors import (
    CheckpointConflictError,
    CheckpointWriteError,
    ConfigurationError,
    ReplicationError,
    SinkAuthError,
    SinkWriteError,
    StaleTokenError,
    TranslationError,
)
from couchstream.feed.reader import ChangeFeedReader
from couchstream.orchestration.window import InFlightWindow, Slot
from couchstream.sink.writer import SinkWriter
from couchstream.translation.translator import Translator

logger = logging.getLogger(__name__)

_INTERRUPTED = object()


async def _next_event(events: AsyncIterator[ChangeEvent]) -> ChangeEvent | None:
    try:
        return await events.__anext__()
    except StopAsyncIteration:
        return None


class ReplicationPipeline:
    """Binds reader, translator, writer and checkpoint store for one source."""

    def __init__(
        self,
        *,
        config: PipelineConfig,
        reader: ChangeFeedReader,
        translator: Translator,
        writer: SinkWriter,
        checkpoints: ICheckpointStore,
        dead_letters: IDeadLetterSink | None = None,
    ) -> None:
        if config.on_write_failure == "dead-letter" and dead_letters is None:
            raise ConfigurationError(
                f"{config.source_key}: on_write_failure=dead-letter needs a dead-letter sink"
            )
        self.config = config
        self.source_key = config.source_key
        self._reader = reader
        self._translator = translator
        self._writer = writer
        self._checkpoints = checkpoints
        self._dead_letters = dead_letters
        self._retry = RetryPolicy.from_config(config.retry)
        self._stop = asyncio.Event()
        self._reset()

    def _reset(self) -> None:
        self.stats = PipelineStats()
        self._window = InFlightWindow()
        self._sem = asyncio.Semaphore(self.config.concurrency)
        self._commit_lock = asyncio.Lock()
        self._halt = asyncio.Event()
        self._tasks: set[asyncio.Task[None]] = set()
        self._doc_tails: dict[str, asyncio.Task[None]] = {}
        self._fatal: BaseException | None = None
        self._checkpoint_broken = False
        self._stored: SequenceToken | None = None
        self._waiters: tuple[asyncio.Task[Any], ...] = ()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        """Ask a running pipeline to stop admitting and drain."""
        self._stop.set()

    @property
    def last_checkpoint(self) -> SequenceToken | None:
        """Last token this instance read from or wrote to the store."""
        return self._stored

    async def run(self, stop: asyncio.Event | None = None) -> PipelineResult:
        """Replicate until stopped, caught up (non-follow feeds) or failed.

        Failures, including unexpected ones from the clients, are reported
        in the returned PipelineResult after in-flight writes drain.
        """
        self._reset()
        signals = [self._stop, self._halt] + ([stop] if stop is not None else [])
        self._waiters = tuple(asyncio.create_task(s.wait()) for s in signals)
        try:
            try:
                token = await retry_async(
                    lambda: self._checkpoints.get(self.source_key),
                    self._retry,
                    describe=f"read checkpoint for {self.source_key}",
                )
                self._stored = token
                await self._replicate(token)
            except ReplicationError as e:
                self._fail(e)
            except Exception as e:
                logger.error("%s: unexpected failure", self.source_key, exc_info=e)
                self._fail(e)

            await self._drain()
            await self._commit_progress()
        finally:
            for w in self._waiters:
                w.cancel()
            await asyncio.gather(*self._waiters, return_exceptions=True)

        return self._result()

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def _replicate(self, token: SequenceToken | None) -> None:
        try:
            await self._consume(token)
        except StaleTokenError as e:
            if self.config.on_stale_token != "reseed-now":
                raise
            await self._reseed(e)

    async def _reseed(self, error: StaleTokenError) -> None:
        """Jump to the source's current token, accepting the gap."""
        await self._drain()
        await self._commit_progress()
        if self._halt.is_set():
            return
        new_token = await self._reader.current_token()
        logger.warning(
            "%s: resume token %r rejected (%s); re-seeding from current token %r, "
            "changes in between will not be replicated",
            self.source_key,
            error.token,
            error,
            new_token,
        )
        self._window = InFlightWindow()
        self._sem = asyncio.Semaphore(self.config.concurrency)
        async with self._commit_lock:
            await self._persist(new_token)
        if not self._halt.is_set():
            await self._consume(new_token)

    async def _consume(self, token: SequenceToken | None) -> None:
        async with contextlib.aclosing(self._reader.open(self.source_key, token)) as events:
            while True:
                acquired = await self._until_interrupted(self._sem.acquire())
                if acquired is _INTERRUPTED:
                    return

                try:
                    event = await self._until_interrupted(_next_event(events))
                except BaseException:
                    self._sem.release()
                    raise
                if event is _INTERRUPTED or event is None:
                    self._sem.release()
                    if event is None:
                        logger.info("%s: change feed ended", self.source_key)
                    return

                await self._admit(event)

    async def _until_interrupted(self, aw: Any) -> Any:
        """Await `aw` unless stop/halt fires first; then cancel it."""
        task = asyncio.ensure_future(aw)
        done, _ = await asyncio.wait({task, *self._waiters}, return_when=asyncio.FIRST_COMPLETED)
        if task in done:
            return task.result()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        return _INTERRUPTED

    async def _admit(self, event: ChangeEvent) -> None:
        """Place one event in the window.

        The caller holds a semaphore slot; `_commit_progress` releases it once
        the event leaves the window.
        """
        self.stats.admitted += 1
        slot = self._window.admit(event.token, event.document_id)
        logger.debug("%s: admitted %s at %s", self.source_key, event.document_id, event.token)

        if not self._translator.is_replicable(event):
            logger.info("%s: skipping design document %s", self.source_key, event.document_id)
            self.stats.skipped += 1
            self._window.complete(slot)
            await self._commit_progress()
            return

        try:
            op = self._translator.translate(event)
        except TranslationError as e:
            if await self._handle_failure(event, slot, e, stage="translate"):
                await self._commit_progress()
            return

        prev = self._doc_tails.get(op.document_id)
        task = asyncio.create_task(self._apply(event, slot, op, prev))
        self._doc_tails[op.document_id] = task
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _apply(
        self,
        event: ChangeEvent,
        slot: Slot,
        op: WriteOp,
        prev: asyncio.Task[None] | None,
    ) -> None:
        completed = False
        try:
            if prev is not None:
                await asyncio.wait({prev})
            if self._halt.is_set():
                return
            try:
                await self._writer.apply(op)
            except SinkWriteError as e:
                completed = await self._handle_failure(event, slot, e, stage="write")
                return
            self.stats.applied += 1
            if op.kind == "upsert":
                self.stats.upserts += 1
            else:
                self.stats.deletes += 1
            self._window.complete(slot)
            completed = True
        finally:
            if self._doc_tails.get(op.document_id) is asyncio.current_task():
                del self._doc_tails[op.document_id]

        if completed:
            await self._commit_progress()

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s: write task crashed", self.source_key, exc_info=exc)
            self._fail(exc)

    async def _handle_failure(
        self,
        event: ChangeEvent,
        slot: Slot,
        error: ReplicationError,
        *,
        stage: str,
    ) -> bool:
        """Apply the failure policy. Returns True if the slot was completed."""
        dead_letter = (
            self.config.on_write_failure == "dead-letter"
            and self._dead_letters is not None
            and not isinstance(error, SinkAuthError)
        )
        if not dead_letter:
            self.stats.failed += 1
            logger.error(
                "%s: %s failed for %s at %s, halting: %s",
                self.source_key,
                stage,
                event.document_id,
                event.token,
                error,
            )
            self._fail(error)
            return False

        record = DeadLetterRecord(
            source_key=self.source_key,
            token=event.token,
            document_id=event.document_id,
            stage=stage,  # type: ignore[arg-type]
            error=str(error),
            body=event.body,
        )
        try:
            await self._dead_letters.append(record)  # type: ignore[union-attr]
        except Exception as e:
            logger.error("%s: cannot record dead letter for %s: %s", self.source_key, event.token, e)
            self.stats.failed += 1
            self._fail(e)
            return False

        logger.error(
            "%s: dead-lettered %s at %s (%s): %s",
            self.source_key,
            event.document_id,
            event.token,
            stage,
            error,
        )
        self.stats.dead_lettered += 1
        self._window.complete(slot)
        return True

    def _fail(self, error: BaseException) -> None:
        """Record the first fatal error and stop admission."""
        if self._fatal is None:
            self._fatal = error
        self._halt.set()

    # ------------------------------------------------------------------
    # Checkpointing
    # ------------------------------------------------------------------

    async def _commit_progress(self) -> None:
        async with self._commit_lock:
            if self._checkpoint_broken:
                return
            before = len(self._window)
            newest = self._window.advance()
            if newest is None:
                return
            for _ in range(before - len(self._window)):
                self._sem.release()
            await self._persist(newest)

    async def _persist(self, token: SequenceToken) -> None:
        """Write `token` as the checkpoint; caller holds the commit lock."""
        try:
            if self.config.verify_checkpoint:
                found = await retry_async(
                    lambda: self._checkpoints.get(self.source_key),
                    self._retry,
                    describe=f"verify checkpoint for {self.source_key}",
                )
                if found != self._stored:
                    raise CheckpointConflictError(self.source_key, self._stored, found)
            await retry_async(
                lambda: self._checkpoints.put(self.source_key, token),
                self._retry,
                describe=f"write checkpoint {token} for {self.source_key}",
            )
        except CheckpointConflictError as e:
            self._checkpoint_broken = True
            self._fail(e)
            return
        except Exception as e:
            self._checkpoint_broken = True
            err = CheckpointWriteError(f"cannot persist checkpoint {token!r} for {self.source_key!r}: {e}")
            err.__cause__ = e
            self._fail(err)
            return

        self._stored = token
        self.stats.checkpoints_written += 1
        logger.debug("%s: checkpoint now %s", self.source_key, token)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def _drain(self) -> None:
        """Wait for in-flight writes, cancelling those past the drain timeout."""
        tasks = set(self._tasks)
        if not tasks:
            return
        logger.info("%s: draining %d in-flight writes", self.source_key, len(tasks))
        _, pending = await asyncio.wait(tasks, timeout=self.config.shutdown_drain_timeout)
        if pending:
            oldest = self._window.pending()
            logger.warning(
                "%s: drain timed out; abandoning %d writes, checkpoint stays before %s",
                self.source_key,
                len(pending),
                oldest[0].token if oldest else "-",
            )
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    def _result(self) -> PipelineResult:
        error = self._fatal
        if error is None:
            status = "stopped"
            logger.info("%s: stopped at checkpoint %s", self.source_key, self._stored)
        else:
            status = "halted" if isinstance(error, (SinkWriteError, TranslationError)) else "failed"
            logger.error(
                "%s: %s (%s) at checkpoint %s: %s",
                self.source_key,
                status,
                getattr(error, "category", type(error).__name__),
                self._stored,
                error,
            )
        return PipelineResult(
            source_key=self.source_key,
            status=status,
            stats=self.stats,
            last_checkpoint=self._stored,
            error=error,
        )
