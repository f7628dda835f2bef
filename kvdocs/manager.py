"""
Document manager: identity map, unit of work and commit engine.

The manager tracks document instances loaded from or scheduled for the
store and writes all pending changes in one commit:

    plan     compute every write (field payloads, index deltas, unique
             claims/releases, sorted-index scores) without touching the store
    check    read the current owner of every claimed unique key
    execute  apply all writes in one transactional pipeline

Invariants:
    - Plan and check failures abort the commit before any store write
    - A tracked instance keeps the id it was registered under
    - Snapshots hold the last persisted store-form values and drive
      index deltas; they are refreshed on load and after each commit
    - Not found is None, never an exception

How to change safely:
    - New write kinds must be queued as pipeline operations during the plan
      phase; never write to the store outside ``_execute``
    - Unique releases must be queued before unique claims
    - The unique check is not serialisable across processes: two managers
      can both pass the check before either executes

Example:
    >>> manager = DocumentManager(client, registry)
    >>> article = Article(title="Hello", category="tech", views=10)
    >>> await manager.persist(article)
    >>> await manager.commit()
    >>> same = await manager.find(Article, article.id)
    >>> same is article
    True
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Optional, Sequence

from .client.base import ClientAdapter, Pipeline
from .config import OdmConfig
from .errors import (
    DuplicateIdentityError,
    ImmutableIdentityError,
    MissingIdentityError,
    StoreError,
    UniqueConstraintViolationError,
    ValidationError,
)
from .mapping.hydrator import Hydrator
from .mapping.registry import MetadataRegistry
from .mapping.types import (
    ClassMetadata,
    FieldDescriptor,
    HasTimestamps,
    IdStrategy,
    IndexDescriptor,
    StorageType,
)

logger = logging.getLogger(__name__)

DocumentKey = tuple[type, str]
Operation = Callable[[Pipeline], None]


@dataclass
class CommitResult:
    """Result of a commit.

    Attributes:
        written: Primary keys of documents inserted or updated
        deleted: Primary keys of documents removed
    """

    written: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.written) + len(self.deleted)


@dataclass
class ManagerStats:
    """Store access counters."""

    reads: int = 0
    writes: int = 0
    deletes: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"reads": self.reads, "writes": self.writes, "deletes": self.deletes}


@dataclass
class _WorkItem:
    instance: Any
    removed: bool = False
    ttl: Optional[int] = None


@dataclass
class _Claim:
    metadata: ClassMetadata
    descriptor: FieldDescriptor
    token: str
    claimant_id: str


@dataclass
class _Change:
    key: DocumentKey
    metadata: ClassMetadata
    document_id: str
    instance: Any
    removed: bool
    after: dict[str, str] = field(default_factory=dict)


@dataclass
class _CommitPlan:
    changes: list[_Change] = field(default_factory=list)
    claims: dict[str, _Claim] = field(default_factory=dict)
    releases: dict[str, str] = field(default_factory=dict)
    release_ops: list[Operation] = field(default_factory=list)
    claim_ops: list[Operation] = field(default_factory=list)
    write_ops: list[Operation] = field(default_factory=list)

    @property
    def operations(self) -> list[Operation]:
        return self.release_ops + self.claim_ops + self.write_ops


class DocumentManager:
    """Tracks documents and commits their changes to the store.

    One manager is meant to be used by one logical unit of work at a time.
    Commits issued through the same manager are serialised.

    Attributes:
        client: Store adapter
        registry: Metadata registry
        hydrator: Value converter
        config: Mapper configuration
    """

    def __init__(
        self,
        client: ClientAdapter,
        registry: MetadataRegistry,
        config: OdmConfig | None = None,
        hydrator: Hydrator | None = None,
    ) -> None:
        self.client = client
        self.registry = registry
        self.config = config or OdmConfig()
        self.hydrator = hydrator or Hydrator()

        self._identity_map: dict[DocumentKey, Any] = {}
        self._snapshots: dict[DocumentKey, dict[str, str]] = {}
        self._unit_of_work: dict[DocumentKey, _WorkItem] = {}
        self._registered: dict[int, DocumentKey] = {}
        self._repositories: dict[type, Any] = {}
        self._force_rebuild = False
        self._stats = ManagerStats()
        self._commit_lock = asyncio.Lock()

    # Metadata / repositories

    def metadata_for(self, document_class: type) -> ClassMetadata:
        return self.registry.get(document_class)

    def get_repository(self, document_class: type):
        """Repository for a document class (one instance per class)."""
        metadata = self.registry.get(document_class)
        repository = self._repositories.get(document_class)
        if repository is None or repository.metadata is not metadata:
            from .repository import DocumentRepository

            repository_class = metadata.repository_class or DocumentRepository
            repository = repository_class(self, metadata)
            self._repositories[document_class] = repository
        return repository

    # Force rebuild

    def enable_force_rebuild_indexes(self) -> None:
        """Rewrite every index entry on the next commit, changed or not."""
        self._force_rebuild = True

    def disable_force_rebuild_indexes(self) -> None:
        self._force_rebuild = False

    @property
    def force_rebuild_indexes(self) -> bool:
        return self._force_rebuild

    # Stats

    @property
    def stats(self) -> dict[str, int]:
        return self._stats.to_dict()

    def reset_stats(self) -> None:
        self._stats = ManagerStats()

    @property
    def identity_map_size(self) -> int:
        return len(self._identity_map)

    @property
    def pending_count(self) -> int:
        return len(self._unit_of_work)

    # Reads

    async def find(self, document_class: type, document_id: Any) -> Any | None:
        """Find a document by id.

        Args:
            document_class: Registered document class
            document_id: Document id

        Returns:
            The tracked instance, or None when the document does not exist
            or its removal is pending
        """
        metadata = self.registry.get(document_class)
        if document_id is None or document_id == "":
            return None
        document_id = str(document_id)
        key = (metadata.document_class, document_id)

        pending = self._unit_of_work.get(key)
        if pending is not None:
            return None if pending.removed else pending.instance
        if key in self._identity_map:
            return self._identity_map[key]

        raw = await self._load_raw(metadata, document_id)
        self._stats.reads += 1
        return self._hydrate(metadata, document_id, raw)

    async def find_many(self, document_class: type, ids: Sequence[Any]) -> list[Any]:
        """Find several documents, loading misses in one pipeline.

        Returns:
            Instances in input order; missing ids are skipped
        """
        metadata = self.registry.get(document_class)
        ordered = [str(i) for i in ids if i is not None and i != ""]

        missing: list[str] = []
        for document_id in dict.fromkeys(ordered):
            key = (metadata.document_class, document_id)
            if key not in self._identity_map and key not in self._unit_of_work:
                missing.append(document_id)

        if missing:
            pipe = self.client.pipeline(transaction=False)
            for document_id in missing:
                self._queue_load(pipe, metadata, document_id)
            raws = await pipe.execute()
            self._stats.reads += len(missing)
            for document_id, raw in zip(missing, raws):
                self._hydrate(metadata, document_id, raw)

        found = []
        for document_id in ordered:
            key = (metadata.document_class, document_id)
            pending = self._unit_of_work.get(key)
            if pending is not None:
                if not pending.removed:
                    found.append(pending.instance)
            elif key in self._identity_map:
                found.append(self._identity_map[key])
        return found

    async def count(self, document_class: type, criteria: dict[str, Any] | None = None) -> int:
        return await self.get_repository(document_class).count(criteria)

    def _queue_load(self, pipe: Pipeline, metadata: ClassMetadata, document_id: str) -> None:
        if metadata.storage == StorageType.JSON:
            pipe.get(metadata.key_name(document_id))
        else:
            pipe.hgetall(metadata.key_name(document_id))

    async def _load_raw(self, metadata: ClassMetadata, document_id: str) -> Any:
        if metadata.storage == StorageType.JSON:
            return await self.client.get(metadata.key_name(document_id))
        return await self.client.hgetall(metadata.key_name(document_id))

    def _hydrate(self, metadata: ClassMetadata, document_id: str, raw: Any) -> Any | None:
        data = self.hydrator.decode(metadata, metadata.key_name(document_id), raw)
        if data is None:
            return None
        instance = self.hydrator.build_instance(metadata, data, document_id)
        key = (metadata.document_class, document_id)
        self._identity_map[key] = instance
        self._snapshots[key] = data
        self._registered[id(instance)] = key
        return instance

    # Unit of work

    async def persist(self, document: Any, ttl: Optional[int] = None) -> None:
        """Schedule a document for insert or update on the next commit.

        Args:
            document: Instance of a registered document class
            ttl: TTL in seconds for this record, overriding the type default

        Raises:
            MissingIdentityError: No id and the type does not generate ids
            ImmutableIdentityError: A tracked instance's id was changed
            DuplicateIdentityError: The id belongs to another instance or
                to a record this manager never loaded
        """
        metadata = self.registry.get(type(document))
        current = metadata.id_accessor.get(document)
        registered = self._registered.get(id(document))

        if registered is not None:
            if current is None or str(current) != registered[1]:
                raise ImmutableIdentityError(metadata.type_name, registered[1], current)
            self._unit_of_work[registered] = _WorkItem(document, ttl=ttl)
            return

        generated = False
        if current is None or current == "":
            if metadata.id_strategy != IdStrategy.AUTO:
                raise MissingIdentityError(metadata.type_name, metadata.id_strategy.value)
            current = uuid.uuid4().hex
            metadata.id_accessor.set(document, current)
            generated = True

        document_id = str(current)
        key = (metadata.document_class, document_id)
        if key in self._identity_map or key in self._unit_of_work:
            raise DuplicateIdentityError(metadata.type_name, document_id)
        if not generated and await self.client.exists(metadata.key_name(document_id)):
            raise DuplicateIdentityError(metadata.type_name, document_id)

        self._unit_of_work[key] = _WorkItem(document, ttl=ttl)
        self._registered[id(document)] = key

    def remove(self, document: Any) -> None:
        """Schedule a document for removal on the next commit.

        Documents without an id are ignored.
        """
        metadata = self.registry.get(type(document))
        current = metadata.id_accessor.get(document)
        if current is None or current == "":
            return

        registered = self._registered.get(id(document))
        if registered is not None and str(current) != registered[1]:
            raise ImmutableIdentityError(metadata.type_name, registered[1], current)

        key = (metadata.document_class, str(current))
        self._unit_of_work[key] = _WorkItem(document, removed=True)
        self._registered[id(document)] = key

    def contains(self, document: Any) -> bool:
        """Whether the instance is tracked by this manager."""
        return id(document) in self._registered

    def clear(self) -> None:
        """Forget every tracked instance and pending change. Idempotent."""
        self._identity_map.clear()
        self._snapshots.clear()
        self._unit_of_work.clear()
        self._registered.clear()

    def evict(self, document_class: type | None = None) -> int:
        """Drop identity-map entries that have no pending change.

        Returns:
            Number of evicted entries
        """
        evicted = 0
        for key in list(self._identity_map):
            if key in self._unit_of_work:
                continue
            if document_class is not None and key[0] is not document_class:
                continue
            instance = self._identity_map.pop(key)
            self._snapshots.pop(key, None)
            self._registered.pop(id(instance), None)
            evicted += 1
        return evicted

    # Index primitives

    def add_to_index(
        self,
        pipe: Pipeline,
        metadata: ClassMetadata,
        index: IndexDescriptor,
        token: str,
        document_id: str,
    ) -> None:
        key = metadata.index_key(index.name, token)
        pipe.sadd(key, document_id)
        if index.ttl:
            pipe.expire(key, index.ttl)

    def remove_from_index(
        self,
        pipe: Pipeline,
        metadata: ClassMetadata,
        index: IndexDescriptor,
        token: str,
        document_id: str,
    ) -> None:
        pipe.srem(metadata.index_key(index.name, token), document_id)

    def add_to_sorted_index(
        self,
        pipe: Pipeline,
        metadata: ClassMetadata,
        index: IndexDescriptor,
        score: float,
        document_id: str,
    ) -> None:
        key = metadata.sorted_index_key(index.name)
        pipe.zadd(key, {document_id: score})
        if index.ttl:
            pipe.expire(key, index.ttl)

    def remove_from_sorted_index(
        self,
        pipe: Pipeline,
        metadata: ClassMetadata,
        index: IndexDescriptor,
        document_id: str,
    ) -> None:
        pipe.zrem(metadata.sorted_index_key(index.name), document_id)

    # Scanning

    async def iter_keys(
        self, pattern: str, count: Optional[int] = None, unique: bool = False
    ) -> AsyncIterator[list[str]]:
        """Cursor-scan keys matching pattern, yielding one batch per SCAN step.

        Keys are de-duplicated within a batch only. SCAN may return a key
        more than once across steps, so callers that tally batch sizes can
        over-count while keys are being added or removed.

        Args:
            pattern: Glob pattern passed to SCAN MATCH
            count: SCAN COUNT hint (defaults to config.scan_count)
            unique: Also drop keys already yielded by an earlier batch. This
                keeps every yielded key in memory for the whole scan.
        """
        seen: Optional[set[str]] = set() if unique else None
        cursor = 0
        while True:
            cursor, keys = await self.client.scan(
                cursor, match=pattern, count=count or self.config.scan_count
            )
            fresh = list(dict.fromkeys(keys))
            if seen is not None:
                fresh = [k for k in fresh if k not in seen]
                seen.update(fresh)
            if fresh:
                yield fresh
            if cursor == 0:
                break

    # Commit

    async def commit(self) -> CommitResult:
        """Write all pending changes.

        Returns:
            CommitResult listing written and deleted primary keys

        Raises:
            ValidationError: A non-nullable field is None, a value has the
                wrong Python type, or a hash document has nothing to store
            InvalidIndexValueError: A sorted-index field is not a finite number
            ImmutableIdentityError: A tracked instance's id was changed
            UniqueConstraintViolationError: A unique value is owned by
                another document
            StoreError: The store failed the transaction; pending changes
                are kept. Redis does not roll back the other commands of a
                transaction when one of them fails, so indexes may need
                IndexMaintenance.rebuild_indexes afterwards.

        Unique checks and writes are separate round trips, so a concurrent
        writer in another process can claim a value in between.
        """
        if not self._unit_of_work:
            return CommitResult()

        async with self._commit_lock:
            plan = await self._plan()
            await self._check(plan)
            await self._execute(plan)
            return self._apply(plan)

    async def _plan(self) -> _CommitPlan:
        plan = _CommitPlan()
        now = datetime.now(timezone.utc)

        for key, item in list(self._unit_of_work.items()):
            metadata = self.registry.get(key[0])
            document_id = key[1]
            current = metadata.id_accessor.get(item.instance)
            if current is None or str(current) != document_id:
                raise ImmutableIdentityError(metadata.type_name, document_id, current)

            if item.removed:
                await self._plan_removal(plan, key, metadata, item)
            else:
                self._plan_upsert(plan, key, metadata, item, now)

        return plan

    def _plan_upsert(
        self,
        plan: _CommitPlan,
        key: DocumentKey,
        metadata: ClassMetadata,
        item: _WorkItem,
        now: datetime,
    ) -> None:
        instance = item.instance
        document_id = key[1]

        if not self._force_rebuild and isinstance(instance, HasTimestamps):
            if instance.created_at is None:
                instance.created_at = now
            instance.updated_at = now

        errors = [
            f"Field '{d.name}' is not nullable"
            for d in metadata.fields
            if not d.nullable and metadata.accessors[d.name].get(instance) is None
        ]
        if errors:
            raise ValidationError(
                f"Invalid '{metadata.type_name}' document '{document_id}': {'; '.join(errors)}",
                errors=errors,
            )

        scores: dict[str, Optional[float]] = {}
        for name in metadata.sorted_indexes:
            scores[name] = self.hydrator.score(
                metadata.accessors[name].get(instance), metadata.get_field(name)
            )

        after = self.hydrator.extract_fields(metadata, instance)
        if metadata.storage == StorageType.HASH and not after:
            raise ValidationError(
                f"'{metadata.type_name}' document '{document_id}' has no field to store"
            )
        before = self._snapshots.get(key, {})

        for descriptor in metadata.unique_fields:
            old = before.get(descriptor.store_name)
            new = after.get(descriptor.store_name)
            if old is not None and old != new:
                self._plan_release(plan, metadata, descriptor, old, document_id)
            if new is not None and (new != old or self._force_rebuild):
                self._plan_claim(plan, metadata, descriptor, new, document_id)

        primary = metadata.key_name(document_id)
        ttl = item.ttl if item.ttl is not None else metadata.ttl
        if metadata.storage == StorageType.JSON:
            payload = self.hydrator.encode(metadata, instance)
            plan.write_ops.append(lambda p, k=primary, v=payload, t=ttl: p.set(k, v, t or None))
        else:
            stale = [s for s in before if s not in after]
            plan.write_ops.append(lambda p, k=primary, v=dict(after): p.hset(k, v))
            if stale:
                plan.write_ops.append(lambda p, k=primary, s=tuple(stale): p.hdel(k, *s))
            if ttl:
                plan.write_ops.append(lambda p, k=primary, t=ttl: p.expire(k, t))

        for name, index in metadata.indexes.items():
            store_name = metadata.get_field(name).store_name
            old = before.get(store_name)
            new = after.get(store_name)
            if old is not None and old != new:
                plan.write_ops.append(
                    lambda p, i=index, t=old: self.remove_from_index(p, metadata, i, t, document_id)
                )
            if new is not None and (new != old or self._force_rebuild):
                plan.write_ops.append(
                    lambda p, i=index, t=new: self.add_to_index(p, metadata, i, t, document_id)
                )

        for name, index in metadata.sorted_indexes.items():
            store_name = metadata.get_field(name).store_name
            old_token = before.get(store_name)
            old_score = float(old_token) if old_token is not None else None
            new_score = scores[name]
            if new_score is None:
                if old_score is not None:
                    plan.write_ops.append(
                        lambda p, i=index: self.remove_from_sorted_index(p, metadata, i, document_id)
                    )
            elif new_score != old_score or self._force_rebuild:
                plan.write_ops.append(
                    lambda p, i=index, s=new_score: self.add_to_sorted_index(
                        p, metadata, i, s, document_id
                    )
                )

        plan.changes.append(
            _Change(key, metadata, document_id, instance, removed=False, after=after)
        )

    async def _plan_removal(
        self,
        plan: _CommitPlan,
        key: DocumentKey,
        metadata: ClassMetadata,
        item: _WorkItem,
    ) -> None:
        document_id = key[1]
        before = self._snapshots.get(key)
        if before is None:
            raw = await self._load_raw(metadata, document_id)
            self._stats.reads += 1
            before = self.hydrator.decode(metadata, metadata.key_name(document_id), raw)

        primary = metadata.key_name(document_id)
        plan.write_ops.append(lambda p, k=primary: p.delete(k))

        if before is None:
            await self._plan_orphan_cleanup(plan, metadata, document_id)
        else:
            for name, index in metadata.indexes.items():
                token = before.get(metadata.get_field(name).store_name)
                if token is not None:
                    plan.write_ops.append(
                        lambda p, i=index, t=token: self.remove_from_index(
                            p, metadata, i, t, document_id
                        )
                    )
            for descriptor in metadata.unique_fields:
                token = before.get(descriptor.store_name)
                if token is not None:
                    self._plan_release(plan, metadata, descriptor, token, document_id)

        for index in metadata.sorted_indexes.values():
            plan.write_ops.append(
                lambda p, i=index: self.remove_from_sorted_index(p, metadata, i, document_id)
            )

        plan.changes.append(_Change(key, metadata, document_id, item.instance, removed=True))

    async def _plan_orphan_cleanup(
        self, plan: _CommitPlan, metadata: ClassMetadata, document_id: str
    ) -> None:
        """Find index and unique keys referencing a document with no stored record."""
        for index in metadata.indexes.values():
            async for keys in self.iter_keys(metadata.index_pattern(index.name)):
                for index_key in keys:
                    plan.write_ops.append(lambda p, k=index_key: p.srem(k, document_id))

        for descriptor in metadata.unique_fields:
            async for keys in self.iter_keys(metadata.unique_pattern(descriptor.store_name)):
                pipe = self.client.pipeline(transaction=False)
                for unique_key in keys:
                    pipe.get(unique_key)
                owners = await pipe.execute()
                for unique_key, owner in zip(keys, owners):
                    if owner == document_id:
                        plan.releases[unique_key] = document_id
                        plan.release_ops.append(lambda p, k=unique_key: p.delete(k))

        logger.debug(
            "Planned scan cleanup for document without stored record",
            extra={"collection": metadata.collection, "id": document_id},
        )

    def _plan_release(
        self,
        plan: _CommitPlan,
        metadata: ClassMetadata,
        descriptor: FieldDescriptor,
        token: str,
        document_id: str,
    ) -> None:
        unique_key = metadata.unique_key(descriptor.store_name, token)
        plan.releases[unique_key] = document_id
        plan.release_ops.append(lambda p, k=unique_key: p.delete(k))

    def _plan_claim(
        self,
        plan: _CommitPlan,
        metadata: ClassMetadata,
        descriptor: FieldDescriptor,
        token: str,
        document_id: str,
    ) -> None:
        unique_key = metadata.unique_key(descriptor.store_name, token)
        existing = plan.claims.get(unique_key)
        if existing is not None and existing.claimant_id != document_id:
            raise UniqueConstraintViolationError(
                metadata.type_name, descriptor.name, token, existing.claimant_id, document_id
            )
        plan.claims[unique_key] = _Claim(metadata, descriptor, token, document_id)
        plan.claim_ops.append(lambda p, k=unique_key: p.set(k, document_id))

    async def _check(self, plan: _CommitPlan) -> None:
        if not plan.claims:
            return

        keys = list(plan.claims)
        pipe = self.client.pipeline(transaction=False)
        for unique_key in keys:
            pipe.get(unique_key)
        owners = await pipe.execute()

        for unique_key, owner in zip(keys, owners):
            claim = plan.claims[unique_key]
            if owner is None or owner == claim.claimant_id:
                continue
            if plan.releases.get(unique_key) == owner:
                continue
            logger.warning(
                "Commit aborted: unique constraint violated",
                extra={
                    "collection": claim.metadata.collection,
                    "field": claim.descriptor.name,
                    "owner_id": owner,
                    "claimant_id": claim.claimant_id,
                },
            )
            raise UniqueConstraintViolationError(
                claim.metadata.type_name,
                claim.descriptor.name,
                claim.token,
                owner,
                claim.claimant_id,
            )

    async def _execute(self, plan: _CommitPlan) -> None:
        pipe = self.client.pipeline(transaction=True)
        for operation in plan.operations:
            operation(pipe)
        try:
            await pipe.execute()
        except StoreError:
            logger.error(
                "Commit transaction failed",
                extra={"documents": len(plan.changes), "commands": len(plan.operations)},
            )
            raise

    def _apply(self, plan: _CommitPlan) -> CommitResult:
        result = CommitResult()
        for change in plan.changes:
            primary = change.metadata.key_name(change.document_id)
            if change.removed:
                tracked = self._identity_map.pop(change.key, None)
                if tracked is not None:
                    self._registered.pop(id(tracked), None)
                self._snapshots.pop(change.key, None)
                self._registered.pop(id(change.instance), None)
                self._stats.deletes += 1
                result.deleted.append(primary)
            else:
                self._identity_map[change.key] = change.instance
                self._snapshots[change.key] = change.after
                self._registered[id(change.instance)] = change.key
                self._stats.writes += 1
                result.written.append(primary)

        self._unit_of_work.clear()
        self._force_rebuild = False
        logger.debug(
            "Commit applied",
            extra={"written": len(result.written), "deleted": len(result.deleted)},
        )
        return result
