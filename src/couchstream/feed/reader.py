"""Change feed reader: a lazy, resumable stream of ChangeEvents.

`ChangeFeedReader.open(source_key, token)` yields every change after
`token` in source order, fetching batches from an `IChangesSource` and
re-issuing the request with each batch's last token. Opening again with the
same token replays the same events, which is what makes at-least-once
delivery sound.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from couchstream.core.config import FeedConfig
from couchstream.core.interfaces import IChangesSource
from couchstream.core.models import ChangeEvent, SequenceToken
from couchstream.core.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)


class ChangeFeedReader:
    """Long-poll reader over one source database."""

    def __init__(
        self,
        source: IChangesSource,
        *,
        config: FeedConfig | None = None,
        retry: RetryPolicy | None = None,
        origin_token: SequenceToken = "0",
    ) -> None:
        self._source = source
        self._config = config or FeedConfig()
        self._retry = retry or RetryPolicy()
        self.origin_token = origin_token

    async def current_token(self) -> SequenceToken:
        """Return the source's newest token (used to re-seed a stale checkpoint)."""
        return await retry_async(
            self._source.current_token,
            self._retry,
            describe="read current source token",
        )

    async def open(
        self,
        source_key: str,
        resume_token: SequenceToken | None,
    ) -> AsyncIterator[ChangeEvent]:
        """Yield changes after `resume_token` (or from the origin if None).

        Raises StaleTokenError if the source rejects the token and
        RetryExhaustedError if fetching keeps failing transiently.
        """
        token = resume_token if resume_token is not None else self.origin_token
        logger.info("opening change feed for %s since %s", source_key, token)

        while True:
            since = token
            batch = await retry_async(
                lambda: self._source.fetch_changes(
                    since=since,
                    limit=self._config.batch_size,
                    timeout_ms=self._config.longpoll_timeout_ms if self._config.follow else 0,
                ),
                self._retry,
                describe=f"fetch changes for {source_key} since {since}",
            )
            logger.debug(
                "fetched %d changes for %s since %s (last_seq=%s)",
                len(batch.events),
                source_key,
                since,
                batch.last_token,
            )

            for event in batch.events:
                yield event

            token = batch.last_token
            if not batch.events and not self._config.follow:
                logger.info("change feed for %s caught up at %s", source_key, token)
                return
