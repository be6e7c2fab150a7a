"""Checkpoint ("sequence") stores.

This package provides one capability, `get`/`put` of a token by source key,
behind interchangeable backends:
- DynamoDBCheckpointStore: managed table, durable
- RedisCheckpointStore: cache-backed
- FileCheckpointStore: local JSON file with atomic replace
- MemoryCheckpointStore: process-local, loses progress on exit
"""

from couchstream.checkpoints.dynamodb import DynamoDBCheckpointStore
from couchstream.checkpoints.file import FileCheckpointStore
from couchstream.checkpoints.memory import MemoryCheckpointStore
from couchstream.checkpoints.redis_store import RedisCheckpointStore, generate_redis_url

__all__ = [
    "DynamoDBCheckpointStore",
    "FileCheckpointStore",
    "MemoryCheckpointStore",
    "RedisCheckpointStore",
    "generate_redis_url",
]
