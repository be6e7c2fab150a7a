"""MongoSinkClient: Motor client lifecycle plus the two writes the sink needs."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pymongo.errors import (
    AutoReconnect,
    ConnectionFailure,
    NetworkTimeout,
    OperationFailure,
    PyMongoError,
    ServerSelectionTimeoutError,
)

from couchstream.errors import ConfigurationError, TransientError

if TYPE_CHECKING:
    from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

# Unauthorized, AuthenticationFailed
_AUTH_ERROR_CODES = frozenset({13, 18})


class SinkAuthFailure(Exception):
    """Raised by the client when the server rejects our credentials."""


def _is_transient(e: PyMongoError) -> bool:
    if isinstance(e, (AutoReconnect, NetworkTimeout, ConnectionFailure, ServerSelectionTimeoutError)):
        return True
    return e.has_error_label("RetryableWriteError")


class MongoSinkClient:
    """Wrap a Motor client bound to one database.

    `upsert` is a wholesale `replace_one(..., upsert=True)` keyed by `_id`;
    `delete` is `delete_one` and treats a missing document as success;
    `delete_everywhere` runs it against every non-system collection.
    """

    def __init__(
        self,
        url: str = "mongodb://localhost:27017",
        database: str = "couchstream",
        *,
        server_selection_timeout_ms: int = 5000,
        connect_timeout_ms: int = 10000,
        client: AsyncIOMotorClient | None = None,
        **kwargs: Any,
    ) -> None:
        self._url = url
        self._database_name = database
        self._server_selection_timeout_ms = server_selection_timeout_ms
        self._connect_timeout_ms = connect_timeout_ms
        self._kwargs = kwargs
        self._client = client

    def connect(self) -> AsyncIOMotorClient:
        """Create and cache the Motor client. Idempotent."""
        if self._client is not None:
            return self._client
        from motor.motor_asyncio import AsyncIOMotorClient

        try:
            self._client = AsyncIOMotorClient(
                self._url,
                serverSelectionTimeoutMS=self._server_selection_timeout_ms,
                connectTimeoutMS=self._connect_timeout_ms,
                **self._kwargs,
            )
        except (PyMongoError, ValueError) as e:
            raise ConfigurationError(f"invalid sink url: {e}") from e
        return self._client

    @property
    def database(self) -> AsyncIOMotorDatabase:
        return self.connect()[self._database_name]

    async def upsert(self, collection: str, document_id: str, body: dict[str, Any]) -> None:
        try:
            await self.database[collection].replace_one({"_id": document_id}, body, upsert=True)
        except PyMongoError as e:
            raise self._translate(e, f"replace {document_id!r} in {collection!r}") from e

    async def delete(self, collection: str, document_id: str) -> None:
        try:
            await self.database[collection].delete_one({"_id": document_id})
        except PyMongoError as e:
            raise self._translate(e, f"delete {document_id!r} from {collection!r}") from e

    async def delete_everywhere(self, document_id: str) -> None:
        db = self.database
        try:
            names = await db.list_collection_names()
            for name in names:
                if name.startswith("system."):
                    continue
                await db[name].delete_one({"_id": document_id})
        except PyMongoError as e:
            raise self._translate(e, f"delete {document_id!r} from every collection") from e

    @staticmethod
    def _translate(e: PyMongoError, action: str) -> Exception:
        if isinstance(e, OperationFailure) and e.code in _AUTH_ERROR_CODES:
            return SinkAuthFailure(f"{action}: {e}")
        if _is_transient(e):
            return TransientError(f"{action}: {type(e).__name__}: {e}")
        return e

    def close(self) -> None:
        """Close the client (synchronous; Motor client.close() is sync)."""
        if self._client is not None:
            self._client.close()
            self._client = None

