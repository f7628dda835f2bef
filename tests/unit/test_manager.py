"""
Unit tests for DocumentManager.

Tests cover:
- Identity map and loading
- Unit of work: persist, remove, clear, evict
- Commit: payloads, index deltas, sorted indexes, unique constraints
- Id strategies and immutability
- TTLs, timestamps, forced index rebuild
- Failure handling
"""

import json
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import pytest

from kvdocs import (
    ClassMetadata,
    DocumentManager,
    DuplicateIdentityError,
    ImmutableIdentityError,
    InMemoryClientAdapter,
    InvalidIndexValueError,
    MissingIdentityError,
    StoreError,
    UniqueConstraintViolationError,
    ValidationError,
    field,
)
from tests.documents import Article, User, save


@dataclass
class Session:
    id: Optional[str] = None
    token: Optional[str] = None


SESSION = ClassMetadata(
    document_class=Session,
    collection="session",
    ttl=60,
    fields=(field("token", index=True, index_ttl=120),),
)


class ScriptedScanClient(InMemoryClientAdapter):
    """SCAN replays fixed pages, repeating keys across pages as Redis may."""

    def __init__(self, pages):
        super().__init__()
        self.pages = pages
        self.scan_calls = 0

    async def scan(self, cursor=0, match=None, count=None):
        self.scan_calls += 1
        next_cursor = cursor + 1 if cursor + 1 < len(self.pages) else 0
        return next_cursor, list(self.pages[cursor])


class TestPersist:
    """Tests for persist and the stored layout."""

    @pytest.mark.asyncio
    async def test_generates_id(self, manager):
        article = Article(title="Hello")
        await manager.persist(article)
        assert re.fullmatch(r"[0-9a-f]{32}", article.id)
        assert manager.pending_count == 1

    @pytest.mark.asyncio
    async def test_commit_writes_record_and_indexes(self, manager, client):
        article = Article(
            title="Hello", category="tech", published=True, views=10, slug="hello"
        )
        await manager.persist(article)
        result = await manager.commit()

        key = f"article:{article.id}"
        assert result.written == [key]
        assert await client.hgetall(key) == {
            "title": "Hello",
            "category": "tech",
            "published": "1",
            "views": "10",
            "slug": "hello",
        }
        assert await client.smembers("idx:article:category:tech") == {article.id}
        assert await client.smembers("idx:article:published:1") == {article.id}
        assert client.zscore("zidx:article:views", article.id) == 10.0
        assert await client.get("unq:article:slug:hello") == article.id
        assert manager.pending_count == 0

    @pytest.mark.asyncio
    async def test_commit_result(self, manager):
        first = Article(title="a")
        second = Article(title="b")
        await save(manager, first)
        await manager.persist(second)
        manager.remove(first)

        result = await manager.commit()

        assert result.written == [f"article:{second.id}"]
        assert result.deleted == [f"article:{first.id}"]
        assert result.total == 2

    @pytest.mark.asyncio
    async def test_empty_commit(self, manager, client):
        """Nothing pending means no store round trip."""
        result = await manager.commit()
        assert result.total == 0
        assert client.command_counts == {}

    @pytest.mark.asyncio
    async def test_non_nullable_field(self, manager, client):
        await manager.persist(Article(title=None, category="tech"))
        with pytest.raises(ValidationError, match="'title' is not nullable"):
            await manager.commit()
        assert client.keys() == []
        assert manager.pending_count == 1

    @pytest.mark.asyncio
    async def test_non_numeric_sorted_value(self, manager, client):
        await manager.persist(Article(title="x", views="many"))
        with pytest.raises(InvalidIndexValueError):
            await manager.commit()
        assert client.keys() == []

    @pytest.mark.asyncio
    async def test_non_finite_sorted_value(self, manager, client):
        """NaN fails while planning, before any command is sent."""
        await manager.persist(Article(title="x", views=float("nan")))
        client.reset_counts()
        with pytest.raises(InvalidIndexValueError):
            await manager.commit()
        assert client.command_counts == {}
        assert manager.pending_count == 1

    @pytest.mark.asyncio
    async def test_wrong_value_types_are_not_coerced(self, manager, client):
        await manager.persist(Article(title="x", views=3.7))
        with pytest.raises(ValidationError) as exc_info:
            await manager.commit()
        assert exc_info.value.field_name == "views"
        assert client.keys() == []

        manager.clear()
        await manager.persist(Article(title="x", published="false"))
        with pytest.raises(ValidationError) as exc_info:
            await manager.commit()
        assert exc_info.value.field_name == "published"
        assert client.keys() == []

    @pytest.mark.asyncio
    async def test_wrong_criterion_type(self, manager):
        await save(manager, Article(title="x", published=True))
        with pytest.raises(ValidationError, match="Article.published"):
            await manager.get_repository(Article).find_by({"published": "false"})

    @pytest.mark.asyncio
    async def test_json_storage(self, manager, client):
        user = User(id="u1", email="ada@example.com", age=36, tags=["admin", "ops"])
        await save(manager, user)

        stored = json.loads(await client.get("app:user:u1"))
        assert stored["email"] == "ada@example.com"
        assert stored["age"] == 36
        assert stored["tags"] == ["admin", "ops"]
        assert "name" not in stored
        assert await client.smembers("app:idx:user:email:ada@example.com") == {"u1"}
        assert client.zscore("app:zidx:user:age", "u1") == 36.0
        assert await client.get("app:unq:user:email:ada@example.com") == "u1"


class TestIdentity:
    """Tests for id strategies and identity rules."""

    @pytest.mark.asyncio
    async def test_manual_id_required(self, manager):
        with pytest.raises(MissingIdentityError) as exc_info:
            await manager.persist(User(email="a@example.com"))
        assert exc_info.value.strategy == "manual"

    @pytest.mark.asyncio
    async def test_duplicate_tracked_id(self, manager):
        await manager.persist(User(id="u1", email="a@example.com"))
        with pytest.raises(DuplicateIdentityError):
            await manager.persist(User(id="u1", email="b@example.com"))

    @pytest.mark.asyncio
    async def test_duplicate_stored_id(self, manager, client, registry):
        """An untracked instance cannot take over a stored id."""
        await save(manager, User(id="u1", email="a@example.com"))
        other = DocumentManager(client, registry)
        with pytest.raises(DuplicateIdentityError, match="u1"):
            await other.persist(User(id="u1", email="b@example.com"))

    @pytest.mark.asyncio
    async def test_persist_tracked_instance_again(self, manager):
        user = User(id="u1", email="a@example.com")
        await save(manager, user)
        user.name = "Ada"
        await manager.persist(user)
        assert manager.pending_count == 1

    @pytest.mark.asyncio
    async def test_changed_id_on_persist(self, manager):
        user = User(id="u1", email="a@example.com")
        await save(manager, user)
        user.id = "u2"
        with pytest.raises(ImmutableIdentityError) as exc_info:
            await manager.persist(user)
        assert exc_info.value.registered_id == "u1"
        assert exc_info.value.current_id == "u2"

    @pytest.mark.asyncio
    async def test_changed_id_on_commit(self, manager, client):
        """The id is re-checked before anything is written."""
        user = User(id="u1", email="a@example.com")
        await manager.persist(user)
        user.id = "u2"
        with pytest.raises(ImmutableIdentityError):
            await manager.commit()
        assert client.keys() == []

    @pytest.mark.asyncio
    async def test_changed_id_on_remove(self, manager):
        user = User(id="u1", email="a@example.com")
        await save(manager, user)
        user.id = "u2"
        with pytest.raises(ImmutableIdentityError):
            manager.remove(user)


class TestFind:
    """Tests for loading and the identity map."""

    @pytest.mark.asyncio
    async def test_identity_map(self, manager):
        article = Article(title="Hello")
        await save(manager, article)
        assert await manager.find(Article, article.id) is article

    @pytest.mark.asyncio
    async def test_load_in_new_manager(self, manager, client, registry):
        article = Article(title="Hello", published=False, views=3)
        await save(manager, article)

        other = DocumentManager(client, registry)
        loaded = await other.find(Article, article.id)

        assert loaded == article
        assert loaded is not article
        assert await other.find(Article, article.id) is loaded
        assert other.stats["reads"] == 1

    @pytest.mark.asyncio
    async def test_missing(self, manager):
        assert await manager.find(Article, "nope") is None
        assert await manager.find(Article, "") is None
        assert await manager.find(Article, None) is None

    @pytest.mark.asyncio
    async def test_pending_removal_hides_document(self, manager):
        article = Article(title="Hello")
        await save(manager, article)
        manager.remove(article)
        assert await manager.find(Article, article.id) is None

    @pytest.mark.asyncio
    async def test_pending_insert_is_visible(self, manager):
        article = Article(title="Hello")
        await manager.persist(article)
        assert await manager.find(Article, article.id) is article

    @pytest.mark.asyncio
    async def test_find_many_order_and_single_round_trip(self, manager, client, registry):
        first, second = Article(title="a"), Article(title="b")
        await save(manager, first, second)
        other = DocumentManager(client, registry)
        client.reset_counts()

        found = await other.find_many(Article, [second.id, "missing", first.id, second.id])

        assert [a.title for a in found] == ["b", "a", "b"]
        assert client.command_counts["pipeline"] == 1
        assert client.command_counts["hgetall"] == 3

    @pytest.mark.asyncio
    async def test_json_round_trip(self, manager, client, registry):
        await save(manager, User(id="u1", email="a@example.com", age=30, tags={"k": [1]}))
        other = DocumentManager(client, registry)

        user = await other.find(User, "u1")

        assert user.email == "a@example.com"
        assert user.age == 30
        assert user.tags == {"k": [1]}
        assert isinstance(user.created_at, datetime)
        assert user.created_at.tzinfo is not None


class TestUpdates:
    """Tests for index maintenance on update."""

    @pytest.mark.asyncio
    async def test_index_moves_with_value(self, manager, client):
        article = Article(title="Hello", category="tech", views=10)
        await save(manager, article)

        article.category = "news"
        article.views = 20
        await manager.persist(article)
        await manager.commit()

        assert not await client.exists("idx:article:category:tech")
        assert await client.smembers("idx:article:category:news") == {article.id}
        assert client.zscore("zidx:article:views", article.id) == 20.0

    @pytest.mark.asyncio
    async def test_null_removes_field_and_index(self, manager, client):
        article = Article(title="Hello", category="tech", views=10)
        await save(manager, article)

        article.category = None
        article.views = None
        await manager.persist(article)
        await manager.commit()

        assert await client.hgetall(f"article:{article.id}") == {"title": "Hello"}
        assert not await client.exists("idx:article:category:tech")
        assert client.zscore("zidx:article:views", article.id) is None

    @pytest.mark.asyncio
    async def test_unchanged_document_rewrites_no_index(self, manager, client):
        article = Article(title="Hello", category="tech")
        await save(manager, article)
        client.reset_counts()

        await manager.persist(article)
        await manager.commit()

        assert "sadd" not in client.command_counts
        assert client.command_counts["hset"] == 1

    @pytest.mark.asyncio
    async def test_timestamps(self, manager):
        user = User(id="u1", email="a@example.com")
        await save(manager, user)
        created = user.created_at
        first_update = user.updated_at
        assert created is not None and created.tzinfo is not None

        user.name = "Ada"
        await manager.persist(user)
        await manager.commit()

        assert user.created_at == created
        assert user.updated_at >= first_update

    @pytest.mark.asyncio
    async def test_force_rebuild_rewrites_indexes(self, manager, client):
        article = Article(title="Hello", category="tech", views=4, slug="hello")
        await save(manager, article)
        await client.delete("idx:article:category:tech", "zidx:article:views")
        await client.delete("unq:article:slug:hello")

        manager.enable_force_rebuild_indexes()
        assert manager.force_rebuild_indexes
        await manager.persist(article)
        await manager.commit()

        assert await client.smembers("idx:article:category:tech") == {article.id}
        assert client.zscore("zidx:article:views", article.id) == 4.0
        assert await client.get("unq:article:slug:hello") == article.id
        assert not manager.force_rebuild_indexes


class TestUniqueConstraints:
    """Tests for unique fields."""

    @pytest.mark.asyncio
    async def test_violation(self, manager, client):
        """A second document cannot claim a taken value."""
        first = Article(title="x", slug="same")
        await save(manager, first)
        second = Article(title="y", slug="same")
        await manager.persist(second)

        with pytest.raises(UniqueConstraintViolationError) as exc_info:
            await manager.commit()

        assert exc_info.value.owner_id == first.id
        assert exc_info.value.claimant_id == second.id
        assert exc_info.value.field_name == "slug"
        assert not await client.exists(f"article:{second.id}")
        assert await client.get("unq:article:slug:same") == first.id
        assert manager.pending_count == 1

    @pytest.mark.asyncio
    async def test_duplicate_within_commit(self, manager, client):
        await manager.persist(Article(title="x", slug="same"))
        await manager.persist(Article(title="y", slug="same"))
        with pytest.raises(UniqueConstraintViolationError):
            await manager.commit()
        assert client.keys() == []

    @pytest.mark.asyncio
    async def test_released_value_can_be_claimed(self, manager, client):
        first = Article(title="x", slug="a")
        await save(manager, first)
        first.slug = "b"
        await manager.persist(first)
        await manager.commit()

        second = Article(title="y", slug="a")
        await save(manager, second)

        assert await client.get("unq:article:slug:a") == second.id
        assert await client.get("unq:article:slug:b") == first.id

    @pytest.mark.asyncio
    async def test_swap_in_one_commit(self, manager, client):
        """Values released in the same commit may be claimed."""
        first = Article(title="x", slug="a")
        second = Article(title="y", slug="b")
        await save(manager, first, second)

        first.slug, second.slug = "b", "a"
        await manager.persist(first)
        await manager.persist(second)
        await manager.commit()

        assert await client.get("unq:article:slug:a") == second.id
        assert await client.get("unq:article:slug:b") == first.id

    @pytest.mark.asyncio
    async def test_nulling_releases_value(self, manager, client):
        article = Article(title="x", slug="a")
        await save(manager, article)
        article.slug = None
        await manager.persist(article)
        await manager.commit()
        assert not await client.exists("unq:article:slug:a")


class TestRemove:
    """Tests for removal and index cleanup."""

    @pytest.mark.asyncio
    async def test_remove_cleans_every_key(self, manager, client):
        article = Article(title="x", category="tech", published=True, views=3, slug="s")
        await save(manager, article)

        manager.remove(article)
        result = await manager.commit()

        assert result.deleted == [f"article:{article.id}"]
        assert client.keys() == []
        assert await manager.find(Article, article.id) is None
        assert not manager.contains(article)

    @pytest.mark.asyncio
    async def test_remove_untracked_instance(self, manager, client, registry):
        """The stored record drives cleanup when nothing was loaded."""
        article = Article(title="x", category="tech", slug="s")
        await save(manager, article)

        other = DocumentManager(client, registry)
        other.remove(Article(id=article.id, title="stale", category="other"))
        await other.commit()

        assert client.keys() == []

    @pytest.mark.asyncio
    async def test_remove_orphaned_entries(self, manager, client):
        """Without a stored record, index sets are scanned for the id."""
        await client.sadd("idx:article:category:tech", "ghost", "alive")
        await client.set("unq:article:slug:g", "ghost")
        await client.set("unq:article:slug:h", "alive")
        await client.zadd("zidx:article:views", {"ghost": 1, "alive": 2})

        manager.remove(Article(id="ghost"))
        await manager.commit()

        assert await client.smembers("idx:article:category:tech") == {"alive"}
        assert not await client.exists("unq:article:slug:g")
        assert await client.get("unq:article:slug:h") == "alive"
        assert client.zscore("zidx:article:views", "ghost") is None

    @pytest.mark.asyncio
    async def test_remove_without_id_is_noop(self, manager):
        manager.remove(Article(title="x"))
        assert manager.pending_count == 0


class TestTtl:
    """Tests for record and index TTLs."""

    @pytest.fixture
    def session_manager(self, client, registry):
        registry.register(SESSION)
        return DocumentManager(client, registry)

    @pytest.mark.asyncio
    async def test_type_ttl_and_index_ttl(self, session_manager, client):
        session = Session(token="t1")
        await save(session_manager, session)
        assert client.ttl(f"session:{session.id}") == 60
        assert client.ttl("idx:session:token:t1") == 120

    @pytest.mark.asyncio
    async def test_ttl_refreshed_on_update(self, session_manager, client, clock):
        session = Session(token="t1")
        await save(session_manager, session)
        clock.advance(45)
        assert client.ttl(f"session:{session.id}") == 15

        session.token = "t2"
        await session_manager.persist(session)
        await session_manager.commit()

        assert client.ttl(f"session:{session.id}") == 60

    @pytest.mark.asyncio
    async def test_expired_record(self, session_manager, client, registry, clock):
        session = Session(token="t1")
        await save(session_manager, session)
        clock.advance(61)
        other = DocumentManager(client, registry)
        assert await other.find(Session, session.id) is None

    @pytest.mark.asyncio
    async def test_per_record_ttl(self, manager, client):
        article = Article(title="x")
        await manager.persist(article, ttl=30)
        await manager.commit()
        assert client.ttl(f"article:{article.id}") == 30

    @pytest.mark.asyncio
    async def test_json_ttl(self, manager, client):
        await manager.persist(User(id="u1", email="a@example.com"), ttl=90)
        await manager.commit()
        assert client.ttl("app:user:u1") == 90


class TestFailures:
    """Tests for store failures during commit."""

    @pytest.mark.asyncio
    async def test_store_error_keeps_pending_changes(self, manager, client, caplog):
        """A batch that never reaches the store leaves the unit of work intact."""
        article = Article(title="x", category="tech")
        await manager.persist(article)
        client.fail_next("hset")

        with pytest.raises(StoreError):
            await manager.commit()

        assert client.keys() == []
        assert manager.pending_count == 1
        assert "Commit transaction failed" in caplog.text

        await manager.commit()
        assert await client.exists(f"article:{article.id}")
        assert manager.pending_count == 0

    @pytest.mark.asyncio
    async def test_failed_update_keeps_snapshot(self, manager, client):
        """A retried update still removes the old index entry."""
        article = Article(title="x", category="tech")
        await save(manager, article)
        article.category = "news"
        await manager.persist(article)
        client.fail_next("hset")

        with pytest.raises(StoreError):
            await manager.commit()
        await manager.commit()

        assert not await client.exists("idx:article:category:tech")
        assert await client.smembers("idx:article:category:news") == {article.id}


class TestLifecycle:
    """Tests for clear, evict, contains and stats."""

    @pytest.mark.asyncio
    async def test_clear_is_idempotent(self, manager):
        article = Article(title="x")
        await save(manager, article)
        await manager.persist(Article(title="y"))

        manager.clear()
        manager.clear()

        assert manager.pending_count == 0
        assert manager.identity_map_size == 0
        assert not manager.contains(article)
        reloaded = await manager.find(Article, article.id)
        assert reloaded is not article
        assert reloaded == article

    @pytest.mark.asyncio
    async def test_evict_keeps_pending(self, manager):
        kept, dropped = Article(title="x"), Article(title="y")
        await save(manager, kept, dropped)
        kept.title = "changed"
        await manager.persist(kept)

        assert manager.evict(Article) == 1
        assert manager.contains(kept)
        assert not manager.contains(dropped)

    @pytest.mark.asyncio
    async def test_evict_by_class(self, manager):
        await save(manager, Article(title="x"), User(id="u1", email="a@example.com"))
        assert manager.evict(User) == 1
        assert manager.identity_map_size == 1

    @pytest.mark.asyncio
    async def test_stats(self, manager):
        article = Article(title="x")
        await save(manager, article, Article(title="y"))
        manager.remove(article)
        await manager.commit()

        assert manager.stats == {"reads": 0, "writes": 2, "deletes": 1}
        manager.reset_stats()
        assert manager.stats == {"reads": 0, "writes": 0, "deletes": 0}

    @pytest.mark.asyncio
    async def test_iter_keys(self, manager):
        await save(manager, *[Article(title=str(i)) for i in range(120)])
        batches = [batch async for batch in manager.iter_keys("article:*", count=25)]
        keys = [k for batch in batches for k in batch]
        assert len(keys) == 120
        assert len(set(keys)) == 120


class TestScanning:
    """Tests for cursor scans holding at most one batch of keys."""

    @pytest.mark.asyncio
    async def test_duplicates_dropped_within_a_batch_only(self, registry):
        client = ScriptedScanClient([["k1", "k1", "k2"], ["k2", "k3"]])
        manager = DocumentManager(client, registry)

        batches = [batch async for batch in manager.iter_keys("*")]

        assert batches == [["k1", "k2"], ["k2", "k3"]]

    @pytest.mark.asyncio
    async def test_unique_scan_drops_repeats(self, registry):
        client = ScriptedScanClient([["k1", "k2"], ["k2", "k3"], []])
        manager = DocumentManager(client, registry)

        batches = [batch async for batch in manager.iter_keys("*", unique=True)]

        assert batches == [["k1", "k2"], ["k3"]]

    @pytest.mark.asyncio
    async def test_stream_processes_each_page_before_the_next_scan(self, registry, config):
        keys = [f"article:{i:02d}" for i in range(30)]
        client = ScriptedScanClient([keys[:10], keys[10:20], keys[20:]])
        for key in keys:
            await client.hset(key, {"title": key})
        manager = DocumentManager(client, registry, config)
        scans_seen = []

        processed = await manager.get_repository(Article).stream(
            lambda article: scans_seen.append(client.scan_calls), batch_size=10
        )

        assert processed == 30
        assert scans_seen == [1] * 10 + [2] * 10 + [3] * 10
        assert manager.identity_map_size == 0
