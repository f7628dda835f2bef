"""
Range queries over sorted indexes.

Example:
    >>> page = await (
    ...     RangeQuery.create("views")
    ...     .min(10)
    ...     .max(1000, inclusive=False)
    ...     .set_max_results(20)
    ...     .execute(repository)
    ... )
"""

from __future__ import annotations

import difflib
import logging
from typing import TYPE_CHECKING, Any, Optional

from ..client.base import format_bound
from ..errors import MappingError
from .criteria import ASC, matches, normalize_direction, sort_documents
from .result import ResultPage

if TYPE_CHECKING:
    from ..repository import DocumentRepository

logger = logging.getLogger(__name__)


class RangeQuery:
    """Fluent builder for score-range lookups on a sorted-index field.

    Bounds accept numbers or datetimes; both default to unbounded.
    """

    def __init__(self, field_name: str) -> None:
        self.field_name = field_name
        self._min: Any = None
        self._max: Any = None
        self._include_min = True
        self._include_max = True
        self._criteria: dict[str, Any] = {}
        self._order_by: Optional[dict[str, str]] = None
        self._limit: Optional[int] = None
        self._offset: Optional[int] = None

    @classmethod
    def create(cls, field_name: str) -> RangeQuery:
        return cls(field_name)

    def min(self, value: Any, inclusive: bool = True) -> RangeQuery:
        self._min = value
        self._include_min = inclusive
        return self

    def max(self, value: Any, inclusive: bool = True) -> RangeQuery:
        self._max = value
        self._include_max = inclusive
        return self

    def and_where(self, field_name: str, value: Any) -> RangeQuery:
        self._criteria[field_name] = value
        return self

    def order_by(self, field_name: str, direction: str = ASC) -> RangeQuery:
        if self._order_by is None:
            self._order_by = {}
        self._order_by[field_name] = normalize_direction(direction)
        return self

    def set_max_results(self, limit: int) -> RangeQuery:
        self._limit = limit
        return self

    def set_first_result(self, offset: int) -> RangeQuery:
        self._offset = offset
        return self

    async def execute(self, repository: DocumentRepository) -> ResultPage:
        """Run the query.

        The page of ids is read store-side with ZRANGEBYSCORE offset/limit.
        Extra criteria then filter that page client-side, and ordering
        re-sorts it. ``total_count`` is the number of ids in the score range
        before criteria are applied.

        Raises:
            MappingError: If the field has no sorted index or a criterion
                names an unknown field
            InvalidIndexValueError: If a bound is not numeric or datetime
        """
        manager = repository.manager
        metadata = repository.metadata

        index = metadata.sorted_indexes.get(self.field_name)
        if index is None:
            raise MappingError(
                f"Field '{self.field_name}' of '{metadata.type_name}' has no sorted index",
                type_name=metadata.type_name,
                suggestions=difflib.get_close_matches(
                    self.field_name, list(metadata.sorted_indexes), n=3
                ),
            )
        repository.validate_fields(list(self._criteria) + list(self._order_by or {}))

        descriptor = metadata.get_field(self.field_name)
        low = format_bound(manager.hydrator.score(self._min, descriptor), self._include_min)
        high = format_bound(
            manager.hydrator.score(self._max, descriptor), self._include_max, upper=True
        )
        key = metadata.sorted_index_key(index.name)

        total = await manager.client.zcount(key, low, high)
        ids = await manager.client.zrangebyscore(
            key, low, high, offset=self._offset, count=self._limit
        )
        logger.debug(
            "Range query",
            extra={"index": key, "min": low, "max": high, "total": total, "page": len(ids)},
        )

        if ids and (self._criteria or self._order_by):
            documents = await manager.find_many(metadata.document_class, ids)
            if self._criteria:
                documents = [
                    d for d in documents if matches(metadata, manager.hydrator, d, self._criteria)
                ]
            if self._order_by:
                documents = sort_documents(metadata, documents, self._order_by)
            ids = [str(metadata.id_accessor.get(d)) for d in documents]

        return ResultPage(manager, metadata, ids, total, self._limit or 0, self._offset or 0)
