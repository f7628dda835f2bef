"""
Bulk operations over whole collections.

Every operation walks the keyspace with cursor scans; none of them
enumerates keys in a single call.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING, Any, Callable, Mapping, Optional

from ..errors import OdmError, RegistryFrozenError
from ..mapping.types import ClassMetadata
from .batch import BatchProcessor, ProgressCallback, resolve

if TYPE_CHECKING:
    from ..manager import DocumentManager

logger = logging.getLogger(__name__)


class BulkOperations:
    """Collection-wide delete, update, rename and statistics.

    Example:
        >>> bulk = BulkOperations(manager)
        >>> await bulk.bulk_delete(Article, {"category": "spam"})
        42
        >>> (await bulk.collection_stats(Article))["document_count"]
        958
    """

    def __init__(
        self,
        manager: DocumentManager,
        batch_processor: Optional[BatchProcessor] = None,
    ) -> None:
        self.manager = manager
        self.batch_processor = batch_processor or BatchProcessor(manager)

    async def bulk_delete(
        self,
        document_class: type,
        criteria: Optional[Mapping[str, Any]] = None,
        batch_size: Optional[int] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> int:
        """Remove every matching document, committing once per batch.

        Index and unique entries are cleaned up by the regular commit path.

        Returns:
            Number of documents removed
        """
        size = batch_size or self.manager.config.batch_size
        repository = self.manager.get_repository(document_class)
        state = {"deleted": 0}

        async def visit(document: Any) -> None:
            self.manager.remove(document)
            state["deleted"] += 1
            if self.manager.pending_count >= size:
                await self.manager.commit()
                if progress is not None:
                    await resolve(progress(state["deleted"], None))

        await repository.stream(visit, criteria, size)
        if self.manager.pending_count:
            await self.manager.commit()
        if progress is not None:
            await resolve(progress(state["deleted"], None))

        logger.info(
            "Bulk delete finished",
            extra={"type": document_class.__name__, "deleted": state["deleted"]},
        )
        return state["deleted"]

    async def bulk_update(
        self,
        document_class: type,
        criteria: Optional[Mapping[str, Any]],
        updater: Callable[[Any], Any],
        batch_size: Optional[int] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> int:
        """Apply updater to every matching document.

        updater returns a truthy value when it modified the document; only
        those documents are written.

        Returns:
            Number of documents updated
        """
        repository = self.manager.get_repository(document_class)
        return await self.batch_processor.process_query(
            repository, criteria, updater, batch_size, progress
        )

    async def rename_collection(
        self,
        document_class: type,
        new_collection: str,
        new_prefix: Optional[str] = None,
    ) -> int:
        """Move every key of a collection to a new collection name.

        Primary, secondary index, sorted index and unique keys are renamed
        in one transaction. The registry entry for document_class is then
        replaced with metadata for the new name, and the manager is cleared.

        Args:
            document_class: Registered document class
            new_collection: New collection name
            new_prefix: New key prefix (None keeps the current prefix)

        Returns:
            Number of renamed keys

        Raises:
            RegistryFrozenError: If the registry is frozen
            DuplicateRegistrationError: If the new keys would overlap another
                registered type's keys
            OdmError: If the manager has pending changes
        """
        registry = self.manager.registry
        if registry.frozen:
            raise RegistryFrozenError("Cannot rename collection: registry is frozen")
        if self.manager.pending_count:
            raise OdmError(
                "Cannot rename collection while changes are pending; commit or clear first",
                code="PENDING_CHANGES",
            )

        old = registry.get(document_class)
        new = dataclasses.replace(
            old,
            collection=new_collection,
            prefix=old.prefix if new_prefix is None else new_prefix,
        )
        registry.check_key_space(new)

        renames: list[tuple[str, str]] = []
        for old_base, new_base in _key_families(old, new):
            async for keys in self.manager.iter_keys(old_base + "*", unique=True):
                renames.extend((key, new_base + key[len(old_base) :]) for key in keys)

        if renames:
            pipe = self.manager.client.pipeline(transaction=True)
            for key, new_key in renames:
                pipe.rename(key, new_key)
            await pipe.execute()

        registry.invalidate(document_class)
        registry.register(new)
        self.manager.clear()

        logger.info(
            "Collection renamed",
            extra={
                "type": old.type_name,
                "from": old.collection_pattern(),
                "to": new.collection_pattern(),
                "keys": len(renames),
            },
        )
        return len(renames)

    async def collection_stats(self, document_class: type) -> dict[str, Any]:
        """Key and reference counts for a collection and its indexes."""
        metadata = self.manager.registry.get(document_class)
        client = self.manager.client

        document_count = 0
        async for keys in self.manager.iter_keys(metadata.collection_pattern()):
            document_count += len(keys)

        indexes: dict[str, Any] = {}
        for field_name, index in metadata.indexes.items():
            key_count = 0
            references = 0
            async for keys in self.manager.iter_keys(metadata.index_pattern(index.name)):
                pipe = client.pipeline(transaction=False)
                for key in keys:
                    pipe.scard(key)
                key_count += len(keys)
                references += sum(int(n) for n in await pipe.execute())
            indexes[index.name] = {
                "field": field_name,
                "key_count": key_count,
                "total_references": references,
            }

        sorted_indexes: dict[str, Any] = {}
        for field_name, index in metadata.sorted_indexes.items():
            sorted_indexes[index.name] = {
                "field": field_name,
                "cardinality": await client.zcard(metadata.sorted_index_key(index.name)),
            }

        unique: dict[str, int] = {}
        for descriptor in metadata.unique_fields:
            count = 0
            async for keys in self.manager.iter_keys(
                metadata.unique_pattern(descriptor.store_name)
            ):
                count += len(keys)
            unique[descriptor.name] = count

        return {
            "collection": metadata.collection,
            "prefix": metadata.prefix,
            "storage": metadata.storage.value,
            "document_count": document_count,
            "indexes": indexes,
            "sorted_indexes": sorted_indexes,
            "unique_keys": unique,
        }

    async def scan_collection(
        self,
        document_class: type,
        callback: Callable[[str], Any],
        scan_count: Optional[int] = None,
    ) -> int:
        """Call callback with every primary key of the collection.

        Returns:
            Number of keys visited
        """
        metadata = self.manager.registry.get(document_class)
        visited = 0
        async for keys in self.manager.iter_keys(metadata.collection_pattern(), scan_count):
            for key in keys:
                await resolve(callback(key))
                visited += 1
        return visited


def _key_families(old: ClassMetadata, new: ClassMetadata) -> list[tuple[str, str]]:
    """(old key prefix, new key prefix) for every key family of a collection."""
    old_base = f"{old.prefix}:" if old.prefix else ""
    new_base = f"{new.prefix}:" if new.prefix else ""
    families = [
        (f"{old_base}{old.collection}:", f"{new_base}{new.collection}:"),
    ]
    for family in ("idx", "zidx", "unq"):
        families.append(
            (f"{old_base}{family}:{old.collection}:", f"{new_base}{family}:{new.collection}:")
        )
    return families
