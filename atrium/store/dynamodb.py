"""DynamoDB key-value store for production deployments."""

from __future__ import annotations

import math
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from .backend import StoreError


class DynamoDBStore:
    """Key-value store using an AWS DynamoDB table.

    Table schema:
        Partition key: key (S)
        Attributes: value (S), members (SS), expires_at (N)

    Enable TTL on the `expires_at` attribute for automatic cleanup. DynamoDB
    removes expired items lazily, so every read also checks `expires_at`.
    """

    def __init__(
        self,
        table_name: str = "atrium_kv",
        endpoint_url: str = "",
        region_name: str = "us-east-1",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._table_name = table_name
        self._session = aioboto3.Session()
        self._endpoint_url = endpoint_url or None
        self._region_name = region_name
        self._clock = clock

    @asynccontextmanager
    async def _table(self) -> AsyncIterator[Any]:
        try:
            async with self._session.resource(
                "dynamodb",
                endpoint_url=self._endpoint_url,
                region_name=self._region_name,
            ) as dynamodb:
                yield await dynamodb.Table(self._table_name)
        except ClientError as e:
            if _is_condition_failure(e):
                raise
            raise StoreError(f"DynamoDB request failed: {_error_code(e)}") from e
        except BotoCoreError as e:
            raise StoreError(f"DynamoDB unavailable: {e}") from e

    def _is_live(self, item: dict[str, Any] | None) -> bool:
        if item is None:
            return False
        return float(item.get("expires_at", 0)) > self._clock()

    async def _get_item(self, key: str) -> dict[str, Any] | None:
        async with self._table() as table:
            response = await table.get_item(Key={"key": key}, ConsistentRead=True)
        item = response.get("Item")
        return item if self._is_live(item) else None

    async def get(self, key: str) -> str | None:
        item = await self._get_item(key)
        if item is None:
            return None
        return item.get("value")

    async def set(
        self, key: str, value: str, ttl: float, *, only_if_absent: bool = False
    ) -> bool:
        now = self._clock()
        kwargs: dict[str, Any] = {
            "Item": {"key": key, "value": value, "expires_at": math.ceil(now + ttl)}
        }
        if only_if_absent:
            kwargs["ConditionExpression"] = "attribute_not_exists(#k) OR #e <= :now"
            kwargs["ExpressionAttributeNames"] = {"#k": "key", "#e": "expires_at"}
            kwargs["ExpressionAttributeValues"] = {":now": int(now)}
        try:
            async with self._table() as table:
                await table.put_item(**kwargs)
        except ClientError as e:
            if _is_condition_failure(e):
                return False
            raise
        return True

    async def expire(self, key: str, ttl: float) -> bool:
        now = self._clock()
        try:
            async with self._table() as table:
                await table.update_item(
                    Key={"key": key},
                    UpdateExpression="SET #e = :exp",
                    ConditionExpression="attribute_exists(#k) AND #e > :now",
                    ExpressionAttributeNames={"#k": "key", "#e": "expires_at"},
                    ExpressionAttributeValues={":exp": math.ceil(now + ttl), ":now": int(now)},
                )
        except ClientError as e:
            if _is_condition_failure(e):
                return False
            raise
        return True

    async def ttl(self, key: str) -> float | None:
        item = await self._get_item(key)
        if item is None:
            return None
        return float(item["expires_at"]) - self._clock()

    async def delete(self, *keys: str) -> int:
        deleted = 0
        async with self._table() as table:
            for key in keys:
                response = await table.delete_item(
                    Key={"key": key}, ReturnValues="ALL_OLD"
                )
                if self._is_live(response.get("Attributes")):
                    deleted += 1
        return deleted

    async def delete_if_value(self, key: str, expected: str) -> bool:
        try:
            async with self._table() as table:
                await table.delete_item(
                    Key={"key": key},
                    ConditionExpression="#v = :expected",
                    ExpressionAttributeNames={"#v": "value"},
                    ExpressionAttributeValues={":expected": expected},
                )
        except ClientError as e:
            if _is_condition_failure(e):
                return False
            raise
        return True

    async def scan(self, prefix: str) -> list[str]:
        keys: list[str] = []
        kwargs: dict[str, Any] = {
            "FilterExpression": "begins_with(#k, :prefix) AND #e > :now",
            "ProjectionExpression": "#k",
            "ExpressionAttributeNames": {"#k": "key", "#e": "expires_at"},
            "ExpressionAttributeValues": {":prefix": prefix, ":now": int(self._clock())},
        }
        async with self._table() as table:
            while True:
                response = await table.scan(**kwargs)
                keys.extend(item["key"] for item in response.get("Items", []))
                last_key = response.get("LastEvaluatedKey")
                if not last_key:
                    break
                kwargs["ExclusiveStartKey"] = last_key
        return keys

    async def add_member(self, key: str, member: str, ttl: float) -> None:
        now = self._clock()
        expires_at = math.ceil(now + ttl)
        try:
            async with self._table() as table:
                await table.update_item(
                    Key={"key": key},
                    UpdateExpression="ADD #m :member SET #e = :exp",
                    ConditionExpression="attribute_not_exists(#k) OR #e > :now",
                    ExpressionAttributeNames={
                        "#k": "key",
                        "#m": "members",
                        "#e": "expires_at",
                    },
                    ExpressionAttributeValues={
                        ":member": {member},
                        ":exp": expires_at,
                        ":now": int(now),
                    },
                )
        except ClientError as e:
            if not _is_condition_failure(e):
                raise
            # Expired but not yet reaped: start a fresh set
            async with self._table() as table:
                await table.put_item(
                    Item={"key": key, "members": {member}, "expires_at": expires_at}
                )

    async def members(self, key: str) -> set[str]:
        item = await self._get_item(key)
        if item is None:
            return set()
        return set(item.get("members", ()))


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "Unknown")


def _is_condition_failure(e: ClientError) -> bool:
    return _error_code(e) == "ConditionalCheckFailedException"
