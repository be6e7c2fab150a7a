from __future__ import annotations

import logging

from couchstream.clients.mongo import SinkAuthFailure
from couchstream.core.interfaces import ISinkClient
from couchstream.core.models import WriteOp
from couchstream.core.retry import RetryPolicy, retry_async
from couchstream.errors import RetryExhaustedError, SinkAuthError, SinkWriteError

logger = logging.getLogger(__name__)


class SinkWriter:
    """Apply WriteOps to the sink idempotently, retrying transient failures.

    Upserts replace the whole document (last write wins); deletes of absent
    documents succeed. Applying the same op twice leaves the same state as
    applying it once, so replays after a resume are harmless.
    """

    def __init__(self, client: ISinkClient, *, retry: RetryPolicy | None = None) -> None:
        self._client = client
        self._retry = retry or RetryPolicy()

    async def apply(self, op: WriteOp) -> None:
        try:
            await retry_async(
                lambda: self._dispatch(op),
                self._retry,
                describe=f"{op.kind} {op.document_id} (seq {op.token})",
            )
        except SinkAuthFailure as e:
            raise SinkAuthError(op, str(e)) from e
        except RetryExhaustedError as e:
            raise SinkWriteError(op, str(e)) from e
        except SinkWriteError:
            raise
        except Exception as e:
            raise SinkWriteError(op, f"{type(e).__name__}: {e}") from e

    async def _dispatch(self, op: WriteOp) -> None:
        if op.kind == "delete":
            logger.info("deleting document %s from %s (seq %s)", op.document_id, op.target, op.token)
            if op.collection is None:
                await self._client.delete_everywhere(op.document_id)
            else:
                await self._client.delete(op.collection, op.document_id)
            return

        assert op.collection is not None
        logger.info("replacing document %s in %s (seq %s)", op.document_id, op.collection, op.token)
        await self._client.upsert(op.collection, op.document_id, op.body or {})
