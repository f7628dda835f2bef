"""
Criteria builder and client-side matching helpers.

Example:
    >>> page = await (
    ...     Criteria.create()
    ...     .and_where("category", "tech")
    ...     .and_where("published", True)
    ...     .order_by("views", "DESC")
    ...     .set_page(2, 20)
    ...     .execute(repository)
    ... )
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterable, Mapping, Optional

from ..errors import ValidationError
from ..mapping.hydrator import Hydrator
from ..mapping.types import ClassMetadata

if TYPE_CHECKING:
    from ..repository import DocumentRepository
    from .result import ResultPage

ASC = "ASC"
DESC = "DESC"


def normalize_direction(direction: str) -> str:
    """Upper-case a sort direction.

    Raises:
        ValueError: If direction is not ASC or DESC
    """
    value = direction.upper()
    if value not in (ASC, DESC):
        raise ValueError(f"Invalid sort direction '{direction}'. Must be one of: ASC, DESC")
    return value


class Criteria:
    """Fluent builder for equality queries."""

    def __init__(self) -> None:
        self._criteria: dict[str, Any] = {}
        self._order_by: Optional[dict[str, str]] = None
        self._limit: Optional[int] = None
        self._offset: Optional[int] = None

    @classmethod
    def create(cls) -> Criteria:
        return cls()

    def and_where(self, field_name: str, value: Any) -> Criteria:
        self._criteria[field_name] = value
        return self

    def order_by(self, field_name: str, direction: str = ASC) -> Criteria:
        if self._order_by is None:
            self._order_by = {}
        self._order_by[field_name] = normalize_direction(direction)
        return self

    def set_max_results(self, limit: int) -> Criteria:
        self._limit = limit
        return self

    def set_first_result(self, offset: int) -> Criteria:
        self._offset = offset
        return self

    def set_page(self, page: int, items_per_page: int) -> Criteria:
        """Set limit and offset for a 1-based page number."""
        page = max(page, 1)
        self._limit = items_per_page
        self._offset = (page - 1) * items_per_page
        return self

    @property
    def criteria(self) -> dict[str, Any]:
        return dict(self._criteria)

    @property
    def order(self) -> Optional[dict[str, str]]:
        return dict(self._order_by) if self._order_by is not None else None

    @property
    def limit(self) -> Optional[int]:
        return self._limit

    @property
    def offset(self) -> Optional[int]:
        return self._offset

    async def execute(self, repository: DocumentRepository) -> ResultPage:
        return await repository.find_by(self._criteria, self._order_by, self._limit, self._offset)


def values_equal(
    metadata: ClassMetadata,
    hydrator: Hydrator,
    name: str,
    actual: Any,
    expected: Any,
) -> bool:
    """Loose equality: native values first, then their store tokens."""
    if actual is None or expected is None:
        return actual is None and expected is None
    if actual == expected:
        return True
    descriptor = metadata.get_field(name)
    if descriptor is None:
        return str(actual) == str(expected)
    try:
        return hydrator.to_store(actual, descriptor.type) == hydrator.to_store(
            expected, descriptor.type
        )
    except ValidationError:
        return False


def matches(
    metadata: ClassMetadata,
    hydrator: Hydrator,
    instance: Any,
    criteria: Mapping[str, Any],
) -> bool:
    """Whether an instance satisfies every equality criterion."""
    for name, expected in criteria.items():
        actual = metadata.accessors[name].get(instance)
        if not values_equal(metadata, hydrator, name, actual, expected):
            return False
    return True


def sort_documents(
    metadata: ClassMetadata,
    documents: Iterable[Any],
    order_by: Mapping[str, str],
) -> list[Any]:
    """Stable multi-key sort; None sorts before any value."""
    result = list(documents)
    for name, direction in reversed(list(order_by.items())):
        accessor = metadata.accessors[name]
        result.sort(
            key=lambda d: (accessor.get(d) is not None, accessor.get(d)),
            reverse=normalize_direction(direction) == DESC,
        )
    return result
