"""
Paginated query results.

A ResultPage holds the ordered ids of one page plus the total count the
query reported. Instances are hydrated on first access only; ``pluck``
reads selected fields straight from the store without building instances.

Example:
    >>> page = await repository.find_by({"category": "tech"}, limit=20)
    >>> page.total_count, page.total_pages
    (57, 3)
    >>> rows = await page.pluck(["title"])
    >>> rows[0]
    {'id': '4f1c...', 'title': 'Hello'}
"""

from __future__ import annotations

import difflib
import json
import math
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional, Sequence

from ..errors import DocumentDecodeError, MappingError
from ..mapping.types import ClassMetadata, StorageType

if TYPE_CHECKING:
    from ..manager import DocumentManager


class ResultPage:
    """One page of query results.

    Attributes:
        ids: Ordered document ids of this page
        total_count: Total matches reported by the query
        limit: Page size (0 = unlimited)
        offset: Offset of the first result
    """

    def __init__(
        self,
        manager: DocumentManager,
        metadata: ClassMetadata,
        ids: Sequence[str],
        total_count: int,
        limit: int = 0,
        offset: int = 0,
    ) -> None:
        self._manager = manager
        self._metadata = metadata
        self.ids: list[str] = list(ids)
        self.total_count = total_count
        self.limit = limit or 0
        self.offset = offset or 0
        self._results: Optional[list[Any]] = None

    @classmethod
    def empty(
        cls,
        manager: DocumentManager,
        metadata: ClassMetadata,
        limit: int = 0,
        offset: int = 0,
    ) -> ResultPage:
        return cls(manager, metadata, [], 0, limit, offset)

    async def get_results(self) -> list[Any]:
        """Hydrated documents of this page, loaded once and cached."""
        if self._results is None:
            if not self.ids:
                self._results = []
            else:
                self._results = await self._manager.find_many(
                    self._metadata.document_class, self.ids
                )
        return self._results

    async def first(self) -> Any | None:
        results = await self.get_results()
        return results[0] if results else None

    async def pluck(self, fields: Sequence[str]) -> list[dict[str, Any]]:
        """Project named fields of every document on the page.

        Values are converted to their Python types; no instance is built and
        the identity map is not touched. The id field is always included.

        Args:
            fields: Attribute names to project

        Returns:
            One dict per id, keyed by attribute name, in page order

        Raises:
            MappingError: If a field is not mapped
        """
        if not self.ids:
            return []

        metadata = self._metadata
        hydrator = self._manager.hydrator
        descriptors = []
        for name in fields:
            if name == metadata.id_field:
                continue
            descriptor = metadata.get_field(name)
            if descriptor is None:
                raise MappingError(
                    f"Unknown field '{name}' on '{metadata.type_name}'",
                    type_name=metadata.type_name,
                    suggestions=difflib.get_close_matches(name, metadata.get_field_names(), n=3),
                )
            descriptors.append(descriptor)

        if not descriptors:
            return [{metadata.id_field: document_id} for document_id in self.ids]

        pipe = self._manager.client.pipeline(transaction=False)
        for document_id in self.ids:
            key = metadata.key_name(document_id)
            if metadata.storage == StorageType.HASH:
                pipe.hmget(key, [d.store_name for d in descriptors])
            else:
                pipe.get(key)
        responses = await pipe.execute()

        rows: list[dict[str, Any]] = []
        for document_id, response in zip(self.ids, responses):
            row: dict[str, Any] = {metadata.id_field: document_id}
            if metadata.storage == StorageType.HASH:
                values = response or [None] * len(descriptors)
                for descriptor, raw in zip(descriptors, values):
                    row[descriptor.name] = hydrator.to_native(raw, descriptor.type)
            else:
                document = _decode(metadata.key_name(document_id), response)
                for descriptor in descriptors:
                    row[descriptor.name] = hydrator.from_document(
                        document.get(descriptor.store_name), descriptor.type
                    )
            rows.append(row)
        return rows

    # Pagination

    @property
    def current_page(self) -> int:
        if self.limit <= 0:
            return 1
        return self.offset // self.limit + 1

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 1
        return math.ceil(self.total_count / self.limit)

    @property
    def has_next_page(self) -> bool:
        if self.limit <= 0:
            return False
        return self.offset + self.limit < self.total_count

    @property
    def has_previous_page(self) -> bool:
        return self.offset > 0

    @property
    def next_page_offset(self) -> Optional[int]:
        if not self.has_next_page:
            return None
        return self.offset + self.limit

    @property
    def previous_page_offset(self) -> Optional[int]:
        if not self.has_previous_page:
            return None
        return max(0, self.offset - self.limit)

    @property
    def is_empty(self) -> bool:
        return not self.ids

    def pagination(self) -> dict[str, Any]:
        return {
            "total_count": self.total_count,
            "offset": self.offset,
            "limit": self.limit,
            "current_page": self.current_page,
            "total_pages": self.total_pages,
            "has_next_page": self.has_next_page,
            "has_previous_page": self.has_previous_page,
        }

    async def to_dict(self) -> dict[str, Any]:
        return {"results": await self.get_results(), "pagination": self.pagination()}

    def __len__(self) -> int:
        return len(self.ids)

    async def __aiter__(self) -> AsyncIterator[Any]:
        for document in await self.get_results():
            yield document

    def __repr__(self) -> str:
        return (
            f"ResultPage(collection={self._metadata.collection!r}, size={len(self.ids)}, "
            f"total={self.total_count}, offset={self.offset}, limit={self.limit})"
        )


def _decode(key: str, response: Any) -> dict[str, Any]:
    if not response:
        return {}
    try:
        document = json.loads(response)
    except ValueError as e:
        raise DocumentDecodeError(key, str(e)) from e
    return document if isinstance(document, dict) else {}
