"""
Document repository: query planning over indexes and collection scans.

Plans:
    id criterion         the id itself is the only candidate
    indexed criteria     one index set (SSCAN), or a store-side
                         intersection into a temporary key
    no usable index      cursor scan of the collection key pattern

Criteria not answered by an index are applied client-side on loaded
documents. Candidate ids are sorted before pagination so pages are stable.

How to change safely:
    - Never enumerate keys with KEYS; scans must stay cursor based
    - Temporary intersection keys must always be deleted, and carry a TTL
      in case the delete never runs
"""

from __future__ import annotations

import difflib
import inspect
import logging
import uuid
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Optional, Sequence, Union

from .errors import MappingError, ValidationError
from .mapping.types import ClassMetadata
from .query.criteria import Criteria, matches, sort_documents
from .query.range_query import RangeQuery
from .query.result import ResultPage

logger = logging.getLogger(__name__)

StreamCallback = Callable[[Any], Union[None, Awaitable[None]]]


class DocumentRepository:
    """Queries for one document type.

    Subclass and set ``ClassMetadata.repository_class`` to add
    type-specific finders.

    Example:
        >>> repository = manager.get_repository(Article)
        >>> page = await repository.find_by({"category": "tech"}, {"views": "DESC"}, limit=10)
        >>> for article in await page.get_results():
        ...     print(article.title)
    """

    def __init__(self, manager, metadata: ClassMetadata) -> None:
        self.manager = manager
        self.metadata = metadata

    @property
    def document_class(self) -> type:
        return self.metadata.document_class

    def create_query(self) -> Criteria:
        return Criteria.create()

    def create_range_query(self, field_name: str) -> RangeQuery:
        return RangeQuery.create(field_name)

    # Finders

    async def find(self, document_id: Any) -> Any | None:
        return await self.manager.find(self.document_class, document_id)

    async def find_by_ids(self, ids: Sequence[Any]) -> list[Any]:
        return await self.manager.find_many(self.document_class, ids)

    async def find_all(
        self,
        order_by: Optional[Mapping[str, str]] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> ResultPage:
        return await self.find_by({}, order_by, limit, offset)

    async def find_one_by(self, criteria: Mapping[str, Any]) -> Any | None:
        page = await self.find_by(criteria, limit=1)
        return await page.first()

    async def find_by(
        self,
        criteria: Mapping[str, Any],
        order_by: Optional[Mapping[str, str]] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> ResultPage:
        """Find documents by field equality.

        Args:
            criteria: attribute name -> expected value
            order_by: attribute name -> "ASC" | "DESC", applied in order
            limit: Page size
            offset: Offset of the first result

        Returns:
            ResultPage whose total_count is the number of matching documents

        Raises:
            MappingError: If a criterion or sort field is not mapped
            ValidationError: If an indexed criterion has the wrong value type
        """
        criteria = dict(criteria)
        self.validate_fields(list(criteria) + list(order_by or {}))
        offset = offset or 0

        ids, remaining = await self._candidates(criteria)
        if ids is None:
            scanned: set[str] = set()
            async for batch in self._scan_ids():
                scanned.update(batch)
            ids = sorted(scanned)
        if not ids:
            return ResultPage.empty(self.manager, self.metadata, limit or 0, offset)

        if remaining or order_by:
            documents = await self._load(ids)
            if remaining:
                documents = [
                    d for d in documents
                    if matches(self.metadata, self.manager.hydrator, d, remaining)
                ]
            if order_by:
                documents = sort_documents(self.metadata, documents, order_by)
            ids = [str(self.metadata.id_accessor.get(d)) for d in documents]

        total = len(ids)
        page = ids[offset : offset + limit] if limit else ids[offset:]
        return ResultPage(self.manager, self.metadata, page, total, limit or 0, offset)

    async def count(self, criteria: Optional[Mapping[str, Any]] = None) -> int:
        """Number of documents, optionally matching criteria.

        Without criteria the SCAN batch sizes are summed, which keeps memory
        flat but may count a key twice if the collection changes during the
        scan.
        """
        if criteria:
            page = await self.find_by(criteria)
            return page.total_count

        total = 0
        async for batch in self._scan_ids():
            total += len(batch)
        return total

    async def stream(
        self,
        callback: StreamCallback,
        criteria: Optional[Mapping[str, Any]] = None,
        batch_size: Optional[int] = None,
    ) -> int:
        """Invoke callback for every matching document, batch by batch.

        Documents are loaded batch_size at a time and evicted from the
        identity map after each batch, so memory stays bounded by one batch.
        Pending changes are never evicted.

        Args:
            callback: Called with each document; may be a coroutine function
            criteria: Optional equality criteria
            batch_size: Documents per batch (defaults to config.batch_size)

        Returns:
            Number of documents passed to callback
        """
        criteria = dict(criteria or {})
        self.validate_fields(list(criteria))
        size = batch_size or self.manager.config.batch_size

        ids, remaining = await self._candidates(criteria)
        processed = 0
        async for chunk in self._chunks(ids, size):
            documents = await self.manager.find_many(self.document_class, chunk)
            for document in documents:
                if remaining and not matches(
                    self.metadata, self.manager.hydrator, document, remaining
                ):
                    continue
                result = callback(document)
                if inspect.isawaitable(result):
                    await result
                processed += 1
            self.manager.evict(self.document_class)

        logger.debug(
            "Stream finished",
            extra={"collection": self.metadata.collection, "processed": processed},
        )
        return processed

    async def scan_ids(self) -> AsyncIterator[list[str]]:
        """Cursor-scan the collection, yielding batches of ids."""
        async for batch in self._scan_ids():
            yield batch

    # Planning

    def validate_fields(self, names: Sequence[str]) -> None:
        """Raise MappingError for names that are not mapped attributes."""
        known = self.metadata.get_field_names() + [self.metadata.id_field]
        for name in names:
            if name not in self.metadata.accessors:
                raise MappingError(
                    f"Unknown field '{name}' on '{self.metadata.type_name}'",
                    type_name=self.metadata.type_name,
                    suggestions=difflib.get_close_matches(name, known, n=3),
                )

    async def _candidates(
        self, criteria: dict[str, Any]
    ) -> tuple[Optional[list[str]], dict[str, Any]]:
        """Candidate ids from the id field or indexes.

        Returns:
            (sorted ids, or None when a collection scan is needed;
             criteria still to be checked client-side)
        """
        metadata = self.metadata
        remaining = dict(criteria)

        if metadata.id_field in remaining:
            document_id = remaining.pop(metadata.id_field)
            if document_id is None or document_id == "":
                return [], remaining
            document_id = str(document_id)
            if not await self.manager.client.exists(metadata.key_name(document_id)):
                return [], remaining
            return [document_id], remaining

        keys: list[str] = []
        for name, value in criteria.items():
            index = metadata.indexes.get(name)
            if index is None or value is None:
                continue
            try:
                token = self.manager.hydrator.index_token(value, metadata.get_field(name).type)
            except ValidationError as e:
                raise ValidationError(
                    f"Criterion '{metadata.type_name}.{name}': {e.message}", field_name=name
                ) from e
            keys.append(metadata.index_key(index.name, token))
            remaining.pop(name)

        if not keys:
            return None, remaining
        if len(keys) == 1:
            return sorted(await self._read_set(keys[0])), remaining
        return sorted(await self._intersect(keys)), remaining

    async def _read_set(self, key: str) -> set[str]:
        members: set[str] = set()
        cursor = 0
        while True:
            cursor, batch = await self.manager.client.sscan(
                key, cursor, count=self.manager.config.scan_count
            )
            members.update(batch)
            if cursor == 0:
                return members

    async def _intersect(self, keys: list[str]) -> set[str]:
        client = self.manager.client
        temp_key = self.metadata.temp_key(uuid.uuid4().hex)
        try:
            size = await client.sinterstore(temp_key, keys)
            await client.expire(temp_key, self.manager.config.intersection_ttl)
            logger.debug(
                "Index intersection",
                extra={"collection": self.metadata.collection, "sets": len(keys), "size": size},
            )
            if not size:
                return set()
            return await self._read_set(temp_key)
        finally:
            await client.delete(temp_key)

    async def _scan_ids(self) -> AsyncIterator[list[str]]:
        async for keys in self.manager.iter_keys(self.metadata.collection_pattern()):
            yield [self.metadata.id_from_key(k) for k in keys]

    async def _chunks(self, ids: Optional[list[str]], size: int) -> AsyncIterator[list[str]]:
        if ids is not None:
            for start in range(0, len(ids), size):
                yield ids[start : start + size]
            return

        buffer: list[str] = []
        async for batch in self._scan_ids():
            buffer.extend(batch)
            while len(buffer) >= size:
                yield buffer[:size]
                buffer = buffer[size:]
        if buffer:
            yield buffer

    async def _load(self, ids: list[str]) -> list[Any]:
        size = self.manager.config.batch_size
        documents: list[Any] = []
        for start in range(0, len(ids), size):
            documents.extend(
                await self.manager.find_many(self.document_class, ids[start : start + size])
            )
        return documents
