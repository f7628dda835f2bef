"""
Unit tests for the in-memory client adapter.

Tests cover:
- String, hash, set and sorted-set commands
- Key expiry
- Cursor scans
- Pipelines, transactions and injected failures
- Score-bound helpers
"""

import math

import pytest

from kvdocs import InMemoryClientAdapter, StoreError
from kvdocs.client import format_bound, parse_bound


class TestStrings:
    """Tests for string keys and expiry."""

    @pytest.mark.asyncio
    async def test_set_get(self, client):
        await client.set("k", "v")
        assert await client.get("k") == "v"
        assert await client.exists("k")
        assert await client.get("missing") is None

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, client, clock):
        """Keys disappear once their TTL passes."""
        await client.set("k", "v", ttl=10)
        assert client.ttl("k") == 10

        clock.advance(11)

        assert await client.get("k") is None
        assert not await client.exists("k")
        assert client.ttl("k") == -2

    @pytest.mark.asyncio
    async def test_set_clears_ttl(self, client):
        await client.set("k", "v", ttl=10)
        await client.set("k", "w")
        assert client.ttl("k") == -1

    @pytest.mark.asyncio
    async def test_expire(self, client, clock):
        await client.hset("h", {"a": "1"})
        assert await client.expire("h", 5)
        assert not await client.expire("missing", 5)
        clock.advance(5)
        assert await client.hgetall("h") == {}

    @pytest.mark.asyncio
    async def test_delete(self, client):
        await client.set("a", "1")
        await client.set("b", "2")
        assert await client.delete("a", "b", "c") == 2
        assert client.keys() == []

    @pytest.mark.asyncio
    async def test_rename(self, client, clock):
        """Rename keeps the value and TTL."""
        await client.sadd("old", "x")
        await client.expire("old", 30)
        await client.rename("old", "new")
        assert await client.smembers("new") == {"x"}
        assert not await client.exists("old")
        assert client.ttl("new") == 30

    @pytest.mark.asyncio
    async def test_rename_missing_key(self, client):
        with pytest.raises(StoreError, match="no such key"):
            await client.rename("missing", "new")


class TestHashes:
    """Tests for hash commands."""

    @pytest.mark.asyncio
    async def test_hset_hgetall(self, client):
        assert await client.hset("h", {"a": "1", "b": "2"}) == 2
        assert await client.hset("h", {"b": "3"}) == 0
        assert await client.hgetall("h") == {"a": "1", "b": "3"}

    @pytest.mark.asyncio
    async def test_hmget(self, client):
        await client.hset("h", {"a": "1"})
        assert await client.hmget("h", ["a", "z"]) == ["1", None]
        assert await client.hmget("missing", ["a"]) == [None]

    @pytest.mark.asyncio
    async def test_hmget_without_fields(self, client):
        await client.hset("h", {"a": "1"})
        with pytest.raises(StoreError, match="wrong number of arguments"):
            await client.hmget("h", [])

    @pytest.mark.asyncio
    async def test_hdel_removes_empty_hash(self, client):
        await client.hset("h", {"a": "1"})
        assert await client.hdel("h", "a") == 1
        assert not await client.exists("h")

    @pytest.mark.asyncio
    async def test_wrong_type(self, client):
        """Commands against another type raise WRONGTYPE."""
        await client.set("k", "v")
        with pytest.raises(StoreError, match="WRONGTYPE"):
            await client.sadd("k", "x")


class TestSets:
    """Tests for set commands."""

    @pytest.mark.asyncio
    async def test_sadd_srem(self, client):
        assert await client.sadd("s", "a", "b") == 2
        assert await client.sadd("s", "a") == 0
        assert await client.scard("s") == 2
        assert await client.srem("s", "a", "z") == 1
        assert await client.smembers("s") == {"b"}

    @pytest.mark.asyncio
    async def test_empty_set_disappears(self, client):
        await client.sadd("s", "a")
        await client.srem("s", "a")
        assert not await client.exists("s")

    @pytest.mark.asyncio
    async def test_sinterstore(self, client):
        await client.sadd("s1", "a", "b", "c")
        await client.sadd("s2", "b", "c", "d")
        assert await client.sinterstore("dest", ["s1", "s2"]) == 2
        assert await client.smembers("dest") == {"b", "c"}

    @pytest.mark.asyncio
    async def test_sinterstore_empty_result(self, client):
        await client.sadd("s1", "a")
        await client.sadd("dest", "stale")
        assert await client.sinterstore("dest", ["s1", "missing"]) == 0
        assert not await client.exists("dest")

    @pytest.mark.asyncio
    async def test_sscan_pages(self, client):
        members = [f"m{i:03d}" for i in range(25)]
        await client.sadd("s", *members)

        seen = []
        cursor = 0
        pages = 0
        while True:
            cursor, batch = await client.sscan("s", cursor, count=10)
            seen.extend(batch)
            pages += 1
            if cursor == 0:
                break

        assert pages == 3
        assert sorted(seen) == members


class TestSortedSets:
    """Tests for sorted-set commands."""

    @pytest.mark.asyncio
    async def test_zcount_bounds(self, client):
        await client.zadd("z", {"a": 5, "b": 50, "c": 500})
        assert await client.zcount("z", "-inf", "+inf") == 3
        assert await client.zcount("z", "10", "1000") == 2
        assert await client.zcount("z", "(50", "+inf") == 1
        assert await client.zcount("z", "-inf", "(50") == 1

    @pytest.mark.asyncio
    async def test_zrangebyscore_order_and_paging(self, client):
        await client.zadd("z", {"c": 500, "a": 5, "b": 50})
        assert await client.zrangebyscore("z", "-inf", "+inf") == ["a", "b", "c"]
        assert await client.zrangebyscore("z", "-inf", "+inf", offset=1, count=1) == ["b"]
        assert await client.zrangebyscore("z", "-inf", "+inf", offset=1) == ["b", "c"]

    @pytest.mark.asyncio
    async def test_zadd_updates_score(self, client):
        assert await client.zadd("z", {"a": 1}) == 1
        assert await client.zadd("z", {"a": 2}) == 0
        assert client.zscore("z", "a") == 2.0
        assert await client.zcard("z") == 1

    @pytest.mark.asyncio
    async def test_zrem_removes_empty_key(self, client):
        await client.zadd("z", {"a": 1})
        assert await client.zrem("z", "a") == 1
        assert not await client.exists("z")


class TestScan:
    """Tests for keyspace scans."""

    @staticmethod
    async def scan_all(client, pattern, count=10):
        keys = []
        cursor = 0
        while True:
            cursor, batch = await client.scan(cursor, match=pattern, count=count)
            keys.extend(batch)
            if cursor == 0:
                return keys

    @pytest.mark.asyncio
    async def test_scan_with_pattern(self, client):
        for i in range(30):
            await client.set(f"a:{i}", "x")
            await client.set(f"b:{i}", "x")
        keys = await self.scan_all(client, "a:*")
        assert sorted(keys) == sorted(f"a:{i}" for i in range(30))

    @pytest.mark.asyncio
    async def test_scan_survives_deletes(self, client):
        """Deleting keys mid-scan does not skip the remaining ones."""
        for i in range(30):
            await client.set(f"k:{i:02d}", "x")

        seen = []
        cursor = 0
        while True:
            cursor, batch = await client.scan(cursor, match="k:*", count=7)
            seen.extend(batch)
            if batch:
                await client.delete(*batch)
            if cursor == 0:
                break

        assert sorted(seen) == [f"k:{i:02d}" for i in range(30)]
        assert client.keys() == []

    @pytest.mark.asyncio
    async def test_scan_counts(self, client):
        await client.scan(0, match="*")
        assert client.command_counts["scan"] == 1
        client.reset_counts()
        assert client.command_counts == {}


class TestPipelines:
    """Tests for pipelines and transactions."""

    @pytest.mark.asyncio
    async def test_results_in_order(self, client):
        pipe = client.pipeline(transaction=False)
        pipe.set("a", "1")
        pipe.get("a")
        pipe.sadd("s", "x")
        assert len(pipe) == 3
        assert await pipe.execute() == [True, "1", 1]
        assert len(pipe) == 0

    @pytest.mark.asyncio
    async def test_transaction_command_error_keeps_other_writes(self, client):
        """Like EXEC, a failing command neither stops nor undoes the others."""
        await client.set("keep", "1")
        pipe = client.pipeline(transaction=True)
        pipe.delete("keep")
        pipe.set("a", "1")
        pipe.sadd("a", "x")
        pipe.set("b", "2")

        with pytest.raises(StoreError, match="WRONGTYPE"):
            await pipe.execute()

        assert await client.get("keep") is None
        assert await client.get("a") == "1"
        assert await client.get("b") == "2"

    @pytest.mark.asyncio
    async def test_transaction_discarded_on_argument_error(self, client):
        await client.set("keep", "1")
        pipe = client.pipeline(transaction=True)
        pipe.delete("keep")
        pipe.hmget("h", [])

        with pytest.raises(StoreError, match="EXECABORT"):
            await pipe.execute()

        assert await client.get("keep") == "1"

    @pytest.mark.asyncio
    async def test_plain_pipeline_keeps_partial_writes(self, client):
        pipe = client.pipeline(transaction=False)
        pipe.set("a", "1")
        pipe.sadd("a", "x")
        pipe.set("b", "2")

        with pytest.raises(StoreError):
            await pipe.execute()

        assert await client.get("a") == "1"
        assert await client.get("b") == "2"

    @pytest.mark.asyncio
    async def test_fail_next(self, client):
        """Injected failures apply once, before any command runs."""
        client.fail_next("hset")
        pipe = client.pipeline()
        pipe.set("a", "1")
        pipe.hset("h", {"f": "v"})

        with pytest.raises(StoreError, match="Injected failure"):
            await pipe.execute()
        assert client.keys() == []

        pipe.set("a", "1")
        pipe.hset("h", {"f": "v"})
        await pipe.execute()
        assert client.keys() == ["a", "h"]

    @pytest.mark.asyncio
    async def test_pipeline_counts(self, client):
        pipe = client.pipeline()
        pipe.get("a")
        await pipe.execute()
        assert client.command_counts["pipeline"] == 1
        assert client.command_counts["get"] == 1


class TestLifecycle:
    """Tests for ping/close."""

    @pytest.mark.asyncio
    async def test_close_keeps_data(self):
        client = InMemoryClientAdapter()
        await client.set("a", "1")
        assert await client.ping()
        await client.close()
        assert client.closed
        assert client.keys() == ["a"]


class TestScoreBounds:
    """Tests for format_bound/parse_bound."""

    def test_format(self):
        assert format_bound(10) == "10"
        assert format_bound(10.5) == "10.5"
        assert format_bound(10, inclusive=False) == "(10"
        assert format_bound(None) == "-inf"
        assert format_bound(None, upper=True) == "+inf"

    def test_parse(self):
        assert parse_bound("10") == (10.0, False)
        assert parse_bound("(10") == (10.0, True)
        assert parse_bound("-inf") == (-math.inf, False)
        assert parse_bound("+inf") == (math.inf, False)
        assert parse_bound(3) == (3.0, False)
