"""
Redis client adapter.

Wraps redis-py's asyncio client behind the ClientAdapter protocol.
Responses are decoded to str; redis errors are re-raised as StoreError
(StoreConnectionError for connectivity and timeouts).

Example:
    >>> adapter = RedisClientAdapter.from_config(OdmConfig.from_env())
    >>> await adapter.ping()
    True
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Mapping, Optional, Sequence, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..config import OdmConfig, RedisConfig
from ..errors import StoreConnectionError, StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _translate(operation: str, error: RedisError, address: str | None = None) -> StoreError:
    if isinstance(error, (RedisConnectionError, RedisTimeoutError)):
        return StoreConnectionError(f"Redis {operation} failed: {error}", address=address)
    return StoreError(f"Redis {operation} failed: {error}", operation=operation)


class RedisPipeline:
    """Pipeline over a redis-py asyncio pipeline."""

    def __init__(self, pipeline: Any, transaction: bool, address: str | None = None) -> None:
        self._pipe = pipeline
        self._transaction = transaction
        self._address = address
        self._queued = 0

    def _queue(self, command: str, *args: Any, **kwargs: Any) -> RedisPipeline:
        getattr(self._pipe, command)(*args, **kwargs)
        self._queued += 1
        return self

    def get(self, key: str) -> RedisPipeline:
        return self._queue("get", key)

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> RedisPipeline:
        return self._queue("set", key, value, ex=ttl or None)

    def exists(self, key: str) -> RedisPipeline:
        return self._queue("exists", key)

    def delete(self, *keys: str) -> RedisPipeline:
        return self._queue("delete", *keys)

    def rename(self, key: str, new_key: str) -> RedisPipeline:
        return self._queue("rename", key, new_key)

    def expire(self, key: str, seconds: int) -> RedisPipeline:
        return self._queue("expire", key, seconds)

    def hgetall(self, key: str) -> RedisPipeline:
        return self._queue("hgetall", key)

    def hset(self, key: str, mapping: Mapping[str, str]) -> RedisPipeline:
        return self._queue("hset", key, mapping=dict(mapping))

    def hmget(self, key: str, fields: Sequence[str]) -> RedisPipeline:
        return self._queue("hmget", key, list(fields))

    def hdel(self, key: str, *fields: str) -> RedisPipeline:
        return self._queue("hdel", key, *fields)

    def sadd(self, key: str, *members: str) -> RedisPipeline:
        return self._queue("sadd", key, *members)

    def srem(self, key: str, *members: str) -> RedisPipeline:
        return self._queue("srem", key, *members)

    def smembers(self, key: str) -> RedisPipeline:
        return self._queue("smembers", key)

    def scard(self, key: str) -> RedisPipeline:
        return self._queue("scard", key)

    def zadd(self, key: str, mapping: Mapping[str, float]) -> RedisPipeline:
        return self._queue("zadd", key, dict(mapping))

    def zrem(self, key: str, *members: str) -> RedisPipeline:
        return self._queue("zrem", key, *members)

    def zcard(self, key: str) -> RedisPipeline:
        return self._queue("zcard", key)

    async def execute(self) -> list[Any]:
        """Run all queued commands.

        Raises:
            StoreError: If redis rejects the batch or a command in it
        """
        try:
            return list(await self._pipe.execute())
        except RedisError as e:
            operation = "transaction" if self._transaction else "pipeline"
            raise _translate(operation, e, self._address) from e
        finally:
            self._queued = 0

    def __len__(self) -> int:
        return self._queued


class RedisClientAdapter:
    """ClientAdapter implementation backed by redis.asyncio.

    Attributes:
        address: Redacted connection URL used in error details
    """

    def __init__(self, client: Any, address: str | None = None) -> None:
        """Wrap an existing redis.asyncio client.

        The client must be created with ``decode_responses=True``.
        """
        self._client = client
        self.address = address

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 5.0) -> RedisClientAdapter:
        config = RedisConfig(url=url, socket_timeout=socket_timeout)
        client = aioredis.from_url(url, decode_responses=True, socket_timeout=socket_timeout)
        return cls(client, address=config.redacted_url)

    @classmethod
    def from_config(cls, config: OdmConfig) -> RedisClientAdapter:
        client = aioredis.from_url(
            config.redis.url,
            decode_responses=True,
            socket_timeout=config.redis.socket_timeout,
        )
        return cls(client, address=config.redis.redacted_url)

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except RedisError as e:
            logger.error(
                "Redis command failed",
                extra={"operation": operation, "error": str(e), "address": self.address},
            )
            raise _translate(operation, e, self.address) from e

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", self._client.get(key))

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        await self._call("set", self._client.set(key, value, ex=ttl or None))

    async def exists(self, key: str) -> bool:
        return bool(await self._call("exists", self._client.exists(key)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._call("delete", self._client.delete(*keys)))

    async def rename(self, key: str, new_key: str) -> None:
        await self._call("rename", self._client.rename(key, new_key))

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self._call("expire", self._client.expire(key, seconds)))

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(await self._call("hgetall", self._client.hgetall(key)))

    async def hset(self, key: str, mapping: Mapping[str, str]) -> int:
        return int(await self._call("hset", self._client.hset(key, mapping=dict(mapping))))

    async def hmget(self, key: str, fields: Sequence[str]) -> list[Optional[str]]:
        return list(await self._call("hmget", self._client.hmget(key, list(fields))))

    async def hdel(self, key: str, *fields: str) -> int:
        return int(await self._call("hdel", self._client.hdel(key, *fields)))

    async def sadd(self, key: str, *members: str) -> int:
        return int(await self._call("sadd", self._client.sadd(key, *members)))

    async def srem(self, key: str, *members: str) -> int:
        return int(await self._call("srem", self._client.srem(key, *members)))

    async def smembers(self, key: str) -> set[str]:
        return set(await self._call("smembers", self._client.smembers(key)))

    async def scard(self, key: str) -> int:
        return int(await self._call("scard", self._client.scard(key)))

    async def sscan(
        self,
        key: str,
        cursor: int = 0,
        match: Optional[str] = None,
        count: Optional[int] = None,
    ) -> tuple[int, list[str]]:
        next_cursor, members = await self._call(
            "sscan", self._client.sscan(key, cursor=cursor, match=match, count=count)
        )
        return int(next_cursor), list(members)

    async def sinterstore(self, destination: str, keys: Sequence[str]) -> int:
        return int(
            await self._call("sinterstore", self._client.sinterstore(destination, list(keys)))
        )

    async def zadd(self, key: str, mapping: Mapping[str, float]) -> int:
        return int(await self._call("zadd", self._client.zadd(key, dict(mapping))))

    async def zrem(self, key: str, *members: str) -> int:
        return int(await self._call("zrem", self._client.zrem(key, *members)))

    async def zcard(self, key: str) -> int:
        return int(await self._call("zcard", self._client.zcard(key)))

    async def zcount(self, key: str, min_score: str, max_score: str) -> int:
        return int(await self._call("zcount", self._client.zcount(key, min_score, max_score)))

    async def zrangebyscore(
        self,
        key: str,
        min_score: str,
        max_score: str,
        offset: Optional[int] = None,
        count: Optional[int] = None,
    ) -> list[str]:
        if offset is None and count is None:
            start, num = None, None
        else:
            start, num = offset or 0, -1 if count is None else count
        return list(
            await self._call(
                "zrangebyscore",
                self._client.zrangebyscore(key, min_score, max_score, start=start, num=num),
            )
        )

    async def scan(
        self,
        cursor: int = 0,
        match: Optional[str] = None,
        count: Optional[int] = None,
    ) -> tuple[int, list[str]]:
        next_cursor, keys = await self._call(
            "scan", self._client.scan(cursor=cursor, match=match, count=count)
        )
        return int(next_cursor), list(keys)

    def pipeline(self, transaction: bool = True) -> RedisPipeline:
        return RedisPipeline(
            self._client.pipeline(transaction=transaction), transaction, self.address
        )

    async def ping(self) -> bool:
        return bool(await self._call("ping", self._client.ping()))

    async def close(self) -> None:
        await self._client.aclose()
        logger.debug("Redis adapter closed", extra={"address": self.address})
