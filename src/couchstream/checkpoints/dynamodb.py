"""DynamoDB-backed checkpoint store (aiobotocore)."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

from aiobotocore.session import AioSession
from botocore.exceptions import BotoCoreError, ClientError, EndpointConnectionError

from couchstream.core.models import SequenceToken
from couchstream.errors import CheckpointStoreError, TransientError

if TYPE_CHECKING:
    from couchstream.settings import DynamoDBSettings

logger = logging.getLogger(__name__)

_TRANSIENT_CODES = frozenset(
    {
        "ProvisionedThroughputExceededException",
        "ThrottlingException",
        "RequestLimitExceeded",
        "InternalServerError",
        "ServiceUnavailable",
    }
)


def _wrap(action: str, e: Exception) -> Exception:
    """Map a botocore failure to TransientError or CheckpointStoreError."""
    if isinstance(e, ClientError):
        code = e.response.get("Error", {}).get("Code", "")
        if code in _TRANSIENT_CODES:
            return TransientError(f"dynamodb {action} throttled: {code}")
        return CheckpointStoreError(f"dynamodb {action} failed: {code or e}")
    if isinstance(e, EndpointConnectionError):
        return TransientError(f"dynamodb {action} unreachable: {e}")
    return CheckpointStoreError(f"dynamodb {action} failed: {e}")


class DynamoDBCheckpointStore:
    """Checkpoint store on a DynamoDB table keyed by ``key`` (S).

    Items look like ``{key: S, value: S, updated_at: S}``. Reads are strongly
    consistent; ``put_item`` replaces the item atomically.
    """

    def __init__(
        self,
        table_name: str,
        *,
        region_name: str | None = None,
        endpoint_url: str | None = None,
        create_table: bool = True,
        session: AioSession | None = None,
        client: Any = None,
    ) -> None:
        self.table_name = table_name
        self._region = region_name
        self._endpoint_url = endpoint_url
        self._create_table = create_table
        self._session = session or AioSession()
        self._client: Any = client
        self._client_cm: Any = None
        self._ready = not create_table

    @classmethod
    def from_settings(cls, settings: DynamoDBSettings) -> DynamoDBCheckpointStore:
        if settings.local_url:
            logger.info("using local DynamoDB at %s", settings.local_url)
        return cls(
            settings.table,
            region_name=settings.region,
            endpoint_url=settings.local_url,
            create_table=settings.create_table,
        )

    async def _get_client(self) -> Any:
        """Return the client, creating it (and the table) on first use."""
        if self._client is None:
            kwargs: dict[str, Any] = {}
            if self._region:
                kwargs["region_name"] = self._region
            if self._endpoint_url:
                kwargs["endpoint_url"] = self._endpoint_url
            self._client_cm = self._session.create_client("dynamodb", **kwargs)
            self._client = await self._client_cm.__aenter__()
        if not self._ready:
            await self.ensure_table()
            self._ready = True
        return self._client

    async def ensure_table(self, poll_interval: float = 1.0) -> None:
        """Create the table if missing and wait until it is ACTIVE."""
        client = self._client
        try:
            await client.describe_table(TableName=self.table_name)
        except BotoCoreError as e:
            raise _wrap("describe_table", e) from e
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "ResourceNotFoundException":
                raise _wrap("describe_table", e) from e
            logger.info("creating table %s", self.table_name)
            try:
                await client.create_table(
                    TableName=self.table_name,
                    AttributeDefinitions=[{"AttributeName": "key", "AttributeType": "S"}],
                    KeySchema=[{"AttributeName": "key", "KeyType": "HASH"}],
                    BillingMode="PAY_PER_REQUEST",
                )
            except BotoCoreError as be:
                raise _wrap("create_table", be) from be
            except ClientError as ce:
                # lost a creation race with another process
                if ce.response.get("Error", {}).get("Code") != "ResourceInUseException":
                    raise _wrap("create_table", ce) from ce

        while True:
            logger.info("waiting for table %s to become available", self.table_name)
            try:
                out = await client.describe_table(TableName=self.table_name)
            except (ClientError, BotoCoreError) as e:
                raise _wrap("describe_table", e) from e
            if out["Table"]["TableStatus"] == "ACTIVE":
                break
            await asyncio.sleep(poll_interval)
        logger.info("table %s is available", self.table_name)

    async def get(self, source_key: str) -> SequenceToken | None:
        client = await self._get_client()
        try:
            out = await client.get_item(
                TableName=self.table_name,
                Key={"key": {"S": source_key}},
                ConsistentRead=True,
            )
        except (ClientError, BotoCoreError) as e:
            raise _wrap("get_item", e) from e
        item = out.get("Item")
        if not item or "value" not in item:
            return None
        return item["value"].get("S")

    async def put(self, source_key: str, token: SequenceToken) -> None:
        client = await self._get_client()
        try:
            await client.put_item(
                TableName=self.table_name,
                Item={
                    "key": {"S": source_key},
                    "value": {"S": token},
                    "updated_at": {"S": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())},
                },
            )
        except (ClientError, BotoCoreError) as e:
            raise _wrap("put_item", e) from e

    async def aclose(self) -> None:
        if self._client_cm is not None:
            await self._client_cm.__aexit__(None, None, None)
            self._client_cm = None
            self._client = None
