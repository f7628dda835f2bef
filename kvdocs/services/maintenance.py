"""
Index maintenance: rebuild indexes from stored records and purge entries
that reference records which no longer exist.

Both operations are cursor based and process one batch at a time. They are
safe to run while the collection is in use, but entries written by other
processes during a purge may be judged against a stale existence check.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

from ..errors import OdmError
from ..mapping.types import ClassMetadata
from .batch import ProgressCallback, resolve

if TYPE_CHECKING:
    from ..manager import DocumentManager

logger = logging.getLogger(__name__)


class IndexMaintenance:
    """Rebuild and repair the index keys of a collection."""

    def __init__(self, manager: DocumentManager, batch_size: Optional[int] = None) -> None:
        self.manager = manager
        self.batch_size = batch_size or manager.config.batch_size

    async def rebuild_indexes(
        self,
        document_class: type,
        clear_existing: bool = False,
        progress: Optional[ProgressCallback] = None,
    ) -> int:
        """Rewrite every index, sorted index and unique entry of a collection.

        Each batch of documents is re-persisted and committed with forced
        index rebuild, so entries are written whether or not the document
        changed. Timestamps are left untouched.

        Args:
            document_class: Registered document class
            clear_existing: Delete all index keys of the collection first
            progress: Called with (documents processed, None) after each batch

        Returns:
            Number of documents processed

        Raises:
            OdmError: If the manager has pending changes
        """
        metadata = self.manager.registry.get(document_class)
        self._require_idle("rebuild indexes")

        if clear_existing:
            deleted = await self._delete_index_keys(metadata)
            logger.info(
                "Cleared index keys",
                extra={"collection": metadata.collection, "keys": deleted},
            )

        repository = self.manager.get_repository(document_class)
        processed = 0
        buffer: list[str] = []
        async for ids in repository.scan_ids():
            buffer.extend(ids)
            while len(buffer) >= self.batch_size:
                processed += await self._rebuild_batch(metadata, buffer[: self.batch_size])
                buffer = buffer[self.batch_size :]
                if progress is not None:
                    await resolve(progress(processed, None))
        if buffer:
            processed += await self._rebuild_batch(metadata, buffer)
            if progress is not None:
                await resolve(progress(processed, None))

        logger.info(
            "Index rebuild finished",
            extra={"collection": metadata.collection, "documents": processed},
        )
        return processed

    async def purge_orphans(self, document_class: type, dry_run: bool = False) -> dict[str, int]:
        """Remove index entries whose document no longer exists.

        Args:
            document_class: Registered document class
            dry_run: Count orphans without removing them

        Returns:
            Counts keyed by index_members_removed, index_keys_deleted,
            sorted_members_removed and unique_keys_deleted
        """
        metadata = self.manager.registry.get(document_class)
        client = self.manager.client
        report = {
            "index_members_removed": 0,
            "index_keys_deleted": 0,
            "sorted_members_removed": 0,
            "unique_keys_deleted": 0,
        }

        for index in metadata.indexes.values():
            async for keys in self.manager.iter_keys(metadata.index_pattern(index.name)):
                for index_key in keys:
                    members = await self._members(index_key)
                    orphans = await self._missing(metadata, members)
                    if not orphans:
                        continue
                    if len(orphans) == len(members):
                        report["index_keys_deleted"] += 1
                        if not dry_run:
                            await client.delete(index_key)
                    else:
                        report["index_members_removed"] += len(orphans)
                        if not dry_run:
                            await client.srem(index_key, *orphans)

        for index in metadata.sorted_indexes.values():
            sorted_key = metadata.sorted_index_key(index.name)
            offset = 0
            while True:
                members = await client.zrangebyscore(
                    sorted_key, "-inf", "+inf", offset=offset, count=self.batch_size
                )
                if not members:
                    break
                orphans = await self._missing(metadata, members)
                report["sorted_members_removed"] += len(orphans)
                if orphans and not dry_run:
                    await client.zrem(sorted_key, *orphans)
                    offset += len(members) - len(orphans)
                else:
                    offset += len(members)

        for descriptor in metadata.unique_fields:
            pattern = metadata.unique_pattern(descriptor.store_name)
            async for keys in self.manager.iter_keys(pattern):
                pipe = client.pipeline(transaction=False)
                for unique_key in keys:
                    pipe.get(unique_key)
                owners = await pipe.execute()
                owned = {k: o for k, o in zip(keys, owners) if o is not None}
                orphans = set(await self._missing(metadata, list(owned.values())))
                stale = [k for k, o in owned.items() if o in orphans]
                report["unique_keys_deleted"] += len(stale)
                if stale and not dry_run:
                    await client.delete(*stale)

        logger.info(
            "Orphan purge finished",
            extra={"collection": metadata.collection, "dry_run": dry_run, **report},
        )
        return report

    async def _rebuild_batch(self, metadata: ClassMetadata, ids: list[str]) -> int:
        documents = await self.manager.find_many(metadata.document_class, ids)
        if not documents:
            return 0
        for document in documents:
            await self.manager.persist(document)
        self.manager.enable_force_rebuild_indexes()
        try:
            await self.manager.commit()
        finally:
            self.manager.disable_force_rebuild_indexes()
        self.manager.evict(metadata.document_class)
        return len(documents)

    async def _delete_index_keys(self, metadata: ClassMetadata) -> int:
        patterns = [metadata.index_pattern(i.name) for i in metadata.indexes.values()]
        patterns += [metadata.unique_pattern(d.store_name) for d in metadata.unique_fields]
        keys: list[str] = []
        for pattern in patterns:
            async for batch in self.manager.iter_keys(pattern, unique=True):
                keys.extend(batch)
        keys += [metadata.sorted_index_key(i.name) for i in metadata.sorted_indexes.values()]

        for start in range(0, len(keys), self.batch_size):
            await self.manager.client.delete(*keys[start : start + self.batch_size])
        return len(keys)

    async def _members(self, key: str) -> list[str]:
        members: list[str] = []
        cursor = 0
        while True:
            cursor, batch = await self.manager.client.sscan(
                key, cursor, count=self.manager.config.scan_count
            )
            members.extend(batch)
            if cursor == 0:
                return list(dict.fromkeys(members))

    async def _missing(self, metadata: ClassMetadata, ids: list[str]) -> list[str]:
        """Subset of ids with no stored record."""
        if not ids:
            return []
        pipe = self.manager.client.pipeline(transaction=False)
        for document_id in ids:
            pipe.exists(metadata.key_name(document_id))
        found = await pipe.execute()
        return [i for i, exists in zip(ids, found) if not exists]

    def _require_idle(self, action: str) -> None:
        if self.manager.pending_count:
            raise OdmError(
                f"Cannot {action} while changes are pending; commit or clear first",
                code="PENDING_CHANGES",
            )
