"""
Base protocols for the key-value store client.

This module defines the ClientAdapter protocol the mapper talks to, the
Pipeline protocol for batched commands, and score-bound helpers for sorted
index range reads.

Invariants:
    - Adapters return str (never bytes) for keys, members and values
    - Missing keys read as None (scalar), {} (hash) or empty collections
    - Pipeline commands are queued synchronously; ``execute`` returns one
      result per queued command, in order
    - Adapter failures surface as StoreError / StoreConnectionError

How to change safely:
    - Protocol changes require updating all implementations
    - Keep command names and argument order aligned with Redis
"""

from __future__ import annotations

import math
from abc import abstractmethod
from typing import Any, Mapping, Optional, Protocol, Sequence, runtime_checkable

NEG_INF = "-inf"
POS_INF = "+inf"


def format_bound(value: Optional[float], inclusive: bool = True, *, upper: bool = False) -> str:
    """Render a score bound for ZCOUNT / ZRANGEBYSCORE.

    Args:
        value: Score, or None for an open bound
        inclusive: Whether the bound itself matches
        upper: Whether this is the upper bound

    Returns:
        "-inf" / "+inf" for open bounds, "(x" for exclusive, "x" otherwise

    Example:
        >>> format_bound(10)
        '10'
        >>> format_bound(10, inclusive=False)
        '(10'
        >>> format_bound(None, upper=True)
        '+inf'
    """
    if value is None:
        return POS_INF if upper else NEG_INF
    number = float(value)
    text = str(int(number)) if number.is_integer() else repr(number)
    return text if inclusive else f"({text}"


def parse_bound(bound: str | float) -> tuple[float, bool]:
    """Parse a score bound into (score, exclusive)."""
    if isinstance(bound, (int, float)):
        return float(bound), False
    text = str(bound).strip()
    exclusive = text.startswith("(")
    if exclusive:
        text = text[1:]
    if text in ("-inf", "-INF"):
        return -math.inf, exclusive
    if text in ("+inf", "inf", "+INF", "INF"):
        return math.inf, exclusive
    return float(text), exclusive


@runtime_checkable
class Pipeline(Protocol):
    """Batched commands executed in one round trip.

    A transactional pipeline (MULTI/EXEC) applies all queued commands
    atomically; a plain pipeline only batches them.

    Example:
        >>> pipe = client.pipeline(transaction=True)
        >>> pipe.hset("user:1", {"name": "Ada"})
        >>> pipe.sadd("idx:user:name:Ada", "1")
        >>> results = await pipe.execute()
    """

    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> Any: ...

    def exists(self, key: str) -> Any: ...

    def delete(self, *keys: str) -> Any: ...

    def rename(self, key: str, new_key: str) -> Any: ...

    def expire(self, key: str, seconds: int) -> Any: ...

    def hgetall(self, key: str) -> Any: ...

    def hset(self, key: str, mapping: Mapping[str, str]) -> Any: ...

    def hmget(self, key: str, fields: Sequence[str]) -> Any: ...

    def hdel(self, key: str, *fields: str) -> Any: ...

    def sadd(self, key: str, *members: str) -> Any: ...

    def srem(self, key: str, *members: str) -> Any: ...

    def smembers(self, key: str) -> Any: ...

    def scard(self, key: str) -> Any: ...

    def zadd(self, key: str, mapping: Mapping[str, float]) -> Any: ...

    def zrem(self, key: str, *members: str) -> Any: ...

    def zcard(self, key: str) -> Any: ...

    @abstractmethod
    async def execute(self) -> list[Any]:
        """Run all queued commands.

        Returns:
            One result per queued command, in queue order

        Raises:
            StoreError: If the store rejects the batch
        """
        ...

    def __len__(self) -> int: ...


@runtime_checkable
class ClientAdapter(Protocol):
    """Protocol for key-value store clients.

    This is the only surface the mapper uses to reach the store. The
    production implementation wraps redis-py's asyncio client; tests use
    the in-memory implementation.
    """

    # Scalars / keys

    @abstractmethod
    async def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None: ...

    @abstractmethod
    async def exists(self, key: str) -> bool: ...

    @abstractmethod
    async def delete(self, *keys: str) -> int: ...

    @abstractmethod
    async def rename(self, key: str, new_key: str) -> None: ...

    @abstractmethod
    async def expire(self, key: str, seconds: int) -> bool: ...

    # Hashes

    @abstractmethod
    async def hgetall(self, key: str) -> dict[str, str]: ...

    @abstractmethod
    async def hset(self, key: str, mapping: Mapping[str, str]) -> int: ...

    @abstractmethod
    async def hmget(self, key: str, fields: Sequence[str]) -> list[Optional[str]]: ...

    @abstractmethod
    async def hdel(self, key: str, *fields: str) -> int: ...

    # Sets

    @abstractmethod
    async def sadd(self, key: str, *members: str) -> int: ...

    @abstractmethod
    async def srem(self, key: str, *members: str) -> int: ...

    @abstractmethod
    async def smembers(self, key: str) -> set[str]: ...

    @abstractmethod
    async def scard(self, key: str) -> int: ...

    @abstractmethod
    async def sscan(
        self,
        key: str,
        cursor: int = 0,
        match: Optional[str] = None,
        count: Optional[int] = None,
    ) -> tuple[int, list[str]]: ...

    @abstractmethod
    async def sinterstore(self, destination: str, keys: Sequence[str]) -> int: ...

    # Sorted sets

    @abstractmethod
    async def zadd(self, key: str, mapping: Mapping[str, float]) -> int: ...

    @abstractmethod
    async def zrem(self, key: str, *members: str) -> int: ...

    @abstractmethod
    async def zcard(self, key: str) -> int: ...

    @abstractmethod
    async def zcount(self, key: str, min_score: str, max_score: str) -> int: ...

    @abstractmethod
    async def zrangebyscore(
        self,
        key: str,
        min_score: str,
        max_score: str,
        offset: Optional[int] = None,
        count: Optional[int] = None,
    ) -> list[str]:
        """Members with min_score <= score <= max_score, ascending.

        Bounds use Redis syntax ("(5" exclusive, "-inf"/"+inf" open).
        offset/count page the range store-side; count=None means no limit.
        """
        ...

    # Keyspace

    @abstractmethod
    async def scan(
        self,
        cursor: int = 0,
        match: Optional[str] = None,
        count: Optional[int] = None,
    ) -> tuple[int, list[str]]:
        """Incremental key scan.

        Returns:
            (next cursor, keys); a next cursor of 0 ends the iteration.
            Keys may repeat across calls.
        """
        ...

    @abstractmethod
    def pipeline(self, transaction: bool = True) -> Pipeline: ...

    @abstractmethod
    async def ping(self) -> bool: ...

    @abstractmethod
    async def close(self) -> None: ...
