"""
Document types and helpers shared by the test suite.

Article: hash storage, generated ids, secondary, sorted and unique indexes.
User: JSON storage under the "app" prefix, manual ids, timestamps.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from kvdocs import (
    ClassMetadata,
    DocumentManager,
    IdStrategy,
    StorageType,
    field,
    timestamp_fields,
)


@dataclass
class Article:
    id: Optional[str] = None
    title: Optional[str] = None
    category: Optional[str] = None
    published: Optional[bool] = None
    views: Optional[int] = None
    slug: Optional[str] = None


@dataclass
class User:
    id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    age: Optional[int] = None
    tags: Optional[Any] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


ARTICLE = ClassMetadata(
    document_class=Article,
    collection="article",
    fields=(
        field("title"),
        field("category", nullable=True, index=True),
        field("published", "boolean", nullable=True, index=True),
        field("views", "integer", nullable=True, sorted_index=True),
        field("slug", nullable=True, unique=True),
    ),
)

USER = ClassMetadata(
    document_class=User,
    collection="user",
    prefix="app",
    storage=StorageType.JSON,
    id_strategy=IdStrategy.MANUAL,
    fields=(
        field("email", unique=True, index=True),
        field("name", nullable=True),
        field("age", "integer", nullable=True, sorted_index=True),
        field("tags", "json", nullable=True),
        *timestamp_fields(),
    ),
)


class FakeClock:
    """Manually advanced time source for key expiry."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def save(manager: DocumentManager, *documents: Any) -> None:
    """Persist documents and commit."""
    for document in documents:
        await manager.persist(document)
    await manager.commit()
