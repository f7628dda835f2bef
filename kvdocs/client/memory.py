"""
In-memory client adapter for testing.

This module provides a ClientAdapter that keeps strings, hashes, sets and
sorted sets in process memory, for:
- Unit tests
- Local development without a Redis server

Invariants:
    - All data is lost on process exit
    - Command semantics follow Redis for the subset the mapper uses
      (missing keys read empty, emptied collections disappear, WRONGTYPE
      on type mismatch, lazy key expiry)
    - Pipelines follow MULTI/EXEC: a command that fails at run time (such as
      WRONGTYPE) does not stop or undo the others, and the first error is
      raised after the batch; an argument-count error discards a whole
      transaction (EXECABORT)
    - fail_next() simulates a batch that never reaches the server

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the ClientAdapter protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import time
from typing import Any, Callable, Mapping, Optional, Sequence

from ..errors import StoreError
from .base import parse_bound

logger = logging.getLogger(__name__)

STRING = "string"
HASH = "hash"
SET = "set"
ZSET = "zset"

_ARITY_ERROR = "wrong number of arguments"


class _Keyspace:
    """Synchronous command implementations over plain dicts."""

    def __init__(self, clock: Callable[[], float]) -> None:
        self.data: dict[str, tuple[str, Any]] = {}
        self.expires: dict[str, float] = {}
        self._clock = clock

    # Internals

    def _alive(self, key: str) -> bool:
        deadline = self.expires.get(key)
        if deadline is not None and deadline <= self._clock():
            self.data.pop(key, None)
            self.expires.pop(key, None)
        return key in self.data

    def _read(self, key: str, kind: str) -> Any:
        if not self._alive(key):
            return None
        actual, value = self.data[key]
        if actual != kind:
            raise StoreError(
                "WRONGTYPE Operation against a key holding the wrong kind of value",
                operation=kind,
            )
        return value

    def _write(self, key: str, kind: str, factory: Callable[[], Any]) -> Any:
        value = self._read(key, kind)
        if value is None:
            value = factory()
            self.data[key] = (kind, value)
        return value

    def _drop_if_empty(self, key: str) -> None:
        entry = self.data.get(key)
        if entry is not None and not entry[1]:
            self.data.pop(key, None)
            self.expires.pop(key, None)

    def live_keys(self) -> list[str]:
        return sorted(k for k in list(self.data) if self._alive(k))

    # Keys / strings

    def get(self, key: str) -> Optional[str]:
        return self._read(key, STRING)

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        self.data[key] = (STRING, str(value))
        self.expires.pop(key, None)
        if ttl:
            self.expires[key] = self._clock() + ttl
        return True

    def exists(self, key: str) -> int:
        return 1 if self._alive(key) else 0

    def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._alive(key):
                self.data.pop(key)
                self.expires.pop(key, None)
                removed += 1
        return removed

    def rename(self, key: str, new_key: str) -> bool:
        if not self._alive(key):
            raise StoreError("ERR no such key", operation="rename")
        self.data[new_key] = self.data.pop(key)
        self.expires.pop(new_key, None)
        if key in self.expires:
            self.expires[new_key] = self.expires.pop(key)
        return True

    def expire(self, key: str, seconds: int) -> int:
        if not self._alive(key):
            return 0
        if seconds <= 0:
            self.delete(key)
        else:
            self.expires[key] = self._clock() + seconds
        return 1

    def ttl(self, key: str) -> int:
        if not self._alive(key):
            return -2
        deadline = self.expires.get(key)
        if deadline is None:
            return -1
        return max(0, round(deadline - self._clock()))

    # Hashes

    def hgetall(self, key: str) -> dict[str, str]:
        return dict(self._read(key, HASH) or {})

    def hset(self, key: str, mapping: Mapping[str, str]) -> int:
        if not mapping:
            raise StoreError(f"ERR {_ARITY_ERROR} for 'hset' command", "hset")
        value = self._write(key, HASH, dict)
        added = sum(1 for f in mapping if f not in value)
        value.update({f: str(v) for f, v in mapping.items()})
        return added

    def hmget(self, key: str, fields: Sequence[str]) -> list[Optional[str]]:
        if not fields:
            raise StoreError(f"ERR {_ARITY_ERROR} for 'hmget' command", "hmget")
        value = self._read(key, HASH) or {}
        return [value.get(f) for f in fields]

    def hdel(self, key: str, *fields: str) -> int:
        value = self._read(key, HASH)
        if value is None:
            return 0
        removed = sum(1 for f in fields if value.pop(f, None) is not None)
        self._drop_if_empty(key)
        return removed

    # Sets

    def sadd(self, key: str, *members: str) -> int:
        value = self._write(key, SET, set)
        before = len(value)
        value.update(str(m) for m in members)
        return len(value) - before

    def srem(self, key: str, *members: str) -> int:
        value = self._read(key, SET)
        if value is None:
            return 0
        before = len(value)
        value.difference_update(members)
        self._drop_if_empty(key)
        return before - len(value)

    def smembers(self, key: str) -> set[str]:
        return set(self._read(key, SET) or ())

    def scard(self, key: str) -> int:
        return len(self._read(key, SET) or ())

    def sinterstore(self, destination: str, keys: Sequence[str]) -> int:
        sets = [self.smembers(k) for k in keys]
        result = set.intersection(*sets) if sets else set()
        self.delete(destination)
        if result:
            self.data[destination] = (SET, result)
        return len(result)

    # Sorted sets

    def zadd(self, key: str, mapping: Mapping[str, float]) -> int:
        value = self._write(key, ZSET, dict)
        added = sum(1 for m in mapping if m not in value)
        value.update({str(m): float(s) for m, s in mapping.items()})
        return added

    def zrem(self, key: str, *members: str) -> int:
        value = self._read(key, ZSET)
        if value is None:
            return 0
        removed = sum(1 for m in members if value.pop(m, None) is not None)
        self._drop_if_empty(key)
        return removed

    def zcard(self, key: str) -> int:
        return len(self._read(key, ZSET) or {})

    def zscore(self, key: str, member: str) -> Optional[float]:
        return (self._read(key, ZSET) or {}).get(member)

    def _zrange(self, key: str, min_score: str, max_score: str) -> list[str]:
        low, low_exclusive = parse_bound(min_score)
        high, high_exclusive = parse_bound(max_score)
        entries = sorted((self._read(key, ZSET) or {}).items(), key=lambda e: (e[1], e[0]))
        return [
            member
            for member, score in entries
            if (score > low if low_exclusive else score >= low)
            and (score < high if high_exclusive else score <= high)
        ]

    def zcount(self, key: str, min_score: str, max_score: str) -> int:
        return len(self._zrange(key, min_score, max_score))

    def zrangebyscore(
        self,
        key: str,
        min_score: str,
        max_score: str,
        offset: Optional[int] = None,
        count: Optional[int] = None,
    ) -> list[str]:
        members = self._zrange(key, min_score, max_score)
        start = offset or 0
        if count is None or count < 0:
            return members[start:]
        return members[start : start + count]


class InMemoryPipeline:
    """Queued commands applied against an InMemoryClientAdapter."""

    def __init__(self, adapter: InMemoryClientAdapter, transaction: bool) -> None:
        self._adapter = adapter
        self._transaction = transaction
        self._commands: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []

    def _queue(self, command: str, *args: Any, **kwargs: Any) -> InMemoryPipeline:
        self._commands.append((command, args, kwargs))
        return self

    def get(self, key: str) -> InMemoryPipeline:
        return self._queue("get", key)

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> InMemoryPipeline:
        return self._queue("set", key, value, ttl)

    def exists(self, key: str) -> InMemoryPipeline:
        return self._queue("exists", key)

    def delete(self, *keys: str) -> InMemoryPipeline:
        return self._queue("delete", *keys)

    def rename(self, key: str, new_key: str) -> InMemoryPipeline:
        return self._queue("rename", key, new_key)

    def expire(self, key: str, seconds: int) -> InMemoryPipeline:
        return self._queue("expire", key, seconds)

    def hgetall(self, key: str) -> InMemoryPipeline:
        return self._queue("hgetall", key)

    def hset(self, key: str, mapping: Mapping[str, str]) -> InMemoryPipeline:
        return self._queue("hset", key, dict(mapping))

    def hmget(self, key: str, fields: Sequence[str]) -> InMemoryPipeline:
        return self._queue("hmget", key, list(fields))

    def hdel(self, key: str, *fields: str) -> InMemoryPipeline:
        return self._queue("hdel", key, *fields)

    def sadd(self, key: str, *members: str) -> InMemoryPipeline:
        return self._queue("sadd", key, *members)

    def srem(self, key: str, *members: str) -> InMemoryPipeline:
        return self._queue("srem", key, *members)

    def smembers(self, key: str) -> InMemoryPipeline:
        return self._queue("smembers", key)

    def scard(self, key: str) -> InMemoryPipeline:
        return self._queue("scard", key)

    def zadd(self, key: str, mapping: Mapping[str, float]) -> InMemoryPipeline:
        return self._queue("zadd", key, dict(mapping))

    def zrem(self, key: str, *members: str) -> InMemoryPipeline:
        return self._queue("zrem", key, *members)

    def zcard(self, key: str) -> InMemoryPipeline:
        return self._queue("zcard", key)

    async def execute(self) -> list[Any]:
        """Apply queued commands in order.

        Raises:
            StoreError: On an injected failure, nothing is applied. On a
                command error, the other commands are applied unless a
                transaction was discarded for an argument-count error.
        """
        commands, self._commands = self._commands, []
        return await self._adapter._run_batch(commands, self._transaction)

    def __len__(self) -> int:
        return len(self._commands)


class InMemoryClientAdapter:
    """In-memory implementation of ClientAdapter for testing.

    Attributes:
        command_counts: Number of times each command name was executed

    Thread safety:
        Uses an asyncio lock. Safe to use from multiple coroutines.

    Example:
        >>> client = InMemoryClientAdapter()
        >>> await client.sadd("idx:user:city:Oslo", "1", "2")
        2
        >>> await client.smembers("idx:user:city:Oslo")
        {'1', '2'}
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        """Initialize an empty keyspace.

        Args:
            clock: Time source used for key expiry
        """
        self._keyspace = _Keyspace(clock)
        self._lock = asyncio.Lock()
        self._fail_on: dict[str, StoreError] = {}
        self._scans: dict[int, list[str]] = {}
        self._next_scan = 1
        self.command_counts: dict[str, int] = {}
        self.closed = False

    async def _run(self, command: str, *args: Any) -> Any:
        async with self._lock:
            self._count(command)
            return getattr(self._keyspace, command)(*args)

    def _count(self, command: str) -> None:
        self.command_counts[command] = self.command_counts.get(command, 0) + 1

    def _page(
        self,
        snapshot: Callable[[], list[str]],
        cursor: int,
        match: Optional[str],
        count: Optional[int],
    ) -> tuple[int, list[str]]:
        """One SCAN step over a snapshot taken when the cursor starts at 0.

        The cursor packs (scan id, position); items present for the whole
        iteration are returned exactly once.
        """
        if cursor == 0:
            scan_id = self._next_scan
            self._next_scan += 1
            self._scans[scan_id] = snapshot()
            position = 0
        else:
            scan_id, position = cursor >> 32, cursor & 0xFFFFFFFF
        items = self._scans.get(scan_id, [])
        step = count or 10
        window = items[position : position + step]
        if position + step < len(items):
            next_cursor = (scan_id << 32) | (position + step)
        else:
            next_cursor = 0
            self._scans.pop(scan_id, None)
        if match is not None:
            window = [item for item in window if fnmatch.fnmatchcase(item, match)]
        return next_cursor, window

    async def _run_batch(
        self,
        commands: list[tuple[str, tuple[Any, ...], dict[str, Any]]],
        transaction: bool,
    ) -> list[Any]:
        async with self._lock:
            for name, _, _ in commands:
                if name in self._fail_on:
                    raise self._fail_on.pop(name)

            if transaction:
                saved = (
                    {k: (kind, _copy(v)) for k, (kind, v) in self._keyspace.data.items()},
                    dict(self._keyspace.expires),
                )
            results: list[Any] = []
            errors: list[StoreError] = []
            for name, args, kwargs in commands:
                self._count(name)
                try:
                    results.append(getattr(self._keyspace, name)(*args, **kwargs))
                except StoreError as e:
                    errors.append(e)
            self._count("pipeline")

            if not errors:
                return results
            if transaction and any(_ARITY_ERROR in e.message for e in errors):
                self._keyspace.data, self._keyspace.expires = saved
                raise StoreError(
                    "EXECABORT Transaction discarded because of previous errors: "
                    + errors[0].message,
                    operation="exec",
                )
            raise errors[0]

    # Test helpers

    def fail_next(self, command: str, error: StoreError | None = None) -> None:
        """Make the next pipeline containing ``command`` fail before it reaches the keyspace."""
        self._fail_on[command] = error or StoreError(
            f"Injected failure on '{command}'", operation=command
        )

    def keys(self, pattern: str = "*") -> list[str]:
        """All live keys matching a glob pattern, sorted."""
        return [k for k in self._keyspace.live_keys() if fnmatch.fnmatchcase(k, pattern)]

    def ttl(self, key: str) -> int:
        """Seconds to live; -1 without expiry, -2 for a missing key."""
        return self._keyspace.ttl(key)

    def zscore(self, key: str, member: str) -> Optional[float]:
        return self._keyspace.zscore(key, member)

    def reset_counts(self) -> None:
        self.command_counts.clear()

    # ClientAdapter

    async def get(self, key: str) -> Optional[str]:
        return await self._run("get", key)

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        await self._run("set", key, value, ttl)

    async def exists(self, key: str) -> bool:
        return bool(await self._run("exists", key))

    async def delete(self, *keys: str) -> int:
        return await self._run("delete", *keys)

    async def rename(self, key: str, new_key: str) -> None:
        await self._run("rename", key, new_key)

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self._run("expire", key, seconds))

    async def hgetall(self, key: str) -> dict[str, str]:
        return await self._run("hgetall", key)

    async def hset(self, key: str, mapping: Mapping[str, str]) -> int:
        return await self._run("hset", key, dict(mapping))

    async def hmget(self, key: str, fields: Sequence[str]) -> list[Optional[str]]:
        return await self._run("hmget", key, list(fields))

    async def hdel(self, key: str, *fields: str) -> int:
        return await self._run("hdel", key, *fields)

    async def sadd(self, key: str, *members: str) -> int:
        return await self._run("sadd", key, *members)

    async def srem(self, key: str, *members: str) -> int:
        return await self._run("srem", key, *members)

    async def smembers(self, key: str) -> set[str]:
        return await self._run("smembers", key)

    async def scard(self, key: str) -> int:
        return await self._run("scard", key)

    async def sscan(
        self,
        key: str,
        cursor: int = 0,
        match: Optional[str] = None,
        count: Optional[int] = None,
    ) -> tuple[int, list[str]]:
        async with self._lock:
            self._count("sscan")
            return self._page(lambda: sorted(self._keyspace.smembers(key)), cursor, match, count)

    async def sinterstore(self, destination: str, keys: Sequence[str]) -> int:
        return await self._run("sinterstore", destination, list(keys))

    async def zadd(self, key: str, mapping: Mapping[str, float]) -> int:
        return await self._run("zadd", key, dict(mapping))

    async def zrem(self, key: str, *members: str) -> int:
        return await self._run("zrem", key, *members)

    async def zcard(self, key: str) -> int:
        return await self._run("zcard", key)

    async def zcount(self, key: str, min_score: str, max_score: str) -> int:
        return await self._run("zcount", key, min_score, max_score)

    async def zrangebyscore(
        self,
        key: str,
        min_score: str,
        max_score: str,
        offset: Optional[int] = None,
        count: Optional[int] = None,
    ) -> list[str]:
        return await self._run("zrangebyscore", key, min_score, max_score, offset, count)

    async def scan(
        self,
        cursor: int = 0,
        match: Optional[str] = None,
        count: Optional[int] = None,
    ) -> tuple[int, list[str]]:
        async with self._lock:
            self._count("scan")
            return self._page(self._keyspace.live_keys, cursor, match, count)

    def pipeline(self, transaction: bool = True) -> InMemoryPipeline:
        return InMemoryPipeline(self, transaction)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        """Close (data is kept so a test can inspect it afterwards)."""
        self.closed = True
        logger.debug("InMemoryClientAdapter closed")


def _copy(value: Any) -> Any:
    if isinstance(value, (dict, set)):
        return value.copy()
    return value
