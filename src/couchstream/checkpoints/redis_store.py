"""Redis-backed checkpoint store."""

from __future__ import annotations

from typing import TYPE_CHECKING

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from couchstream.core.models import SequenceToken
from couchstream.errors import CheckpointStoreError, TransientError

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from couchstream.settings import RedisSettings


def generate_redis_url(settings: RedisSettings) -> str:
    """Build a Redis URL from settings.

    Format: ``redis[s]://[:password@]host:port/db``
    """
    scheme = "rediss" if settings.use_tls else "redis"
    auth = f":{settings.password}@" if settings.password else ""
    return f"{scheme}://{auth}{settings.host}:{settings.port}/{settings.db}"


class RedisCheckpointStore:
    """Checkpoint store using plain SET/GET on an async Redis client.

    A single SET is atomic, so readers never observe a torn token. Durability
    depends on the server's persistence settings (AOF/RDB).
    """

    def __init__(self, redis_client: Redis, key_prefix: str | None = None) -> None:
        self._redis = redis_client
        self._key_prefix = key_prefix

    @classmethod
    def from_settings(cls, settings: RedisSettings) -> RedisCheckpointStore:
        from redis.asyncio import Redis

        client = Redis.from_url(generate_redis_url(settings), decode_responses=True)
        return cls(client, key_prefix=settings.prefix)

    def _get_key(self, source_key: str) -> str:
        if self._key_prefix:
            return f"{self._key_prefix}:{source_key}"
        return source_key

    async def get(self, source_key: str) -> SequenceToken | None:
        try:
            value = await self._redis.get(self._get_key(source_key))
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise TransientError(f"redis get failed: {e}") from e
        except RedisError as e:
            raise CheckpointStoreError(f"redis get failed: {e}") from e
        if value is None:
            return None
        return value.decode() if isinstance(value, bytes) else str(value)

    async def put(self, source_key: str, token: SequenceToken) -> None:
        try:
            await self._redis.set(self._get_key(source_key), token)
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise TransientError(f"redis set failed: {e}") from e
        except RedisError as e:
            raise CheckpointStoreError(f"redis set failed: {e}") from e

    async def aclose(self) -> None:
        await self._redis.aclose()
