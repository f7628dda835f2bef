"""
Mapping types for kvdocs.

This module provides the static description of a document type:
- FieldDescriptor: One mapped field (store name, type, nullability, indexes)
- ClassMetadata: Collection, key layout, storage encoding, fields, indexes
- FieldAccessor: Typed get/set closures built once per field
- HasTimestamps: Optional capability for created/updated timestamps

Descriptors are built explicitly by the application (or by a separate
declaration layer) and are read-only afterwards.

Invariants:
    - ClassMetadata is immutable once constructed
    - Key layout is bit-exact:
        primary record   [prefix:]collection:id
        secondary index  [prefix:]idx:collection:indexName:value
        sorted index     [prefix:]zidx:collection:indexName
        unique index     [prefix:]unq:collection:fieldName:value
    - Sorted indexes only exist on integer, float or datetime fields

Example:
    >>> @dataclass
    ... class Article:
    ...     id: str | None = None
    ...     title: str = ""
    ...     category: str = ""
    ...     views: int = 0
    >>> ArticleMeta = ClassMetadata(
    ...     document_class=Article,
    ...     collection="article",
    ...     fields=(
    ...         field("title"),
    ...         field("category", index=True),
    ...         field("views", "integer", sorted_index=True),
    ...     ),
    ... )
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field as dataclass_field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional, Protocol, runtime_checkable


class FieldType(Enum):
    """Supported field types."""

    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    DATETIME = "datetime"  # Stored as epoch seconds
    JSON = "json"  # Arbitrary JSON value

    @classmethod
    def from_str(cls, value: str) -> FieldType:
        """Convert string representation to FieldType.

        Raises:
            ValueError: If value is not a valid field type
        """
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid field type '{value}'. Valid types: {valid}")


class StorageType(Enum):
    """How a document is laid out under its primary key."""

    HASH = "hash"
    JSON = "json"


class IdStrategy(Enum):
    """How document ids are assigned."""

    AUTO = "auto"
    MANUAL = "manual"
    NONE = "none"


SORTABLE_TYPES = frozenset({FieldType.INTEGER, FieldType.FLOAT, FieldType.DATETIME})


@dataclass(frozen=True)
class FieldDescriptor:
    """Field definition within a document type.

    Attributes:
        name: Attribute name on the document instance
        store_name: Field name in the store (defaults to name)
        type: Semantic type
        nullable: Whether None is an acceptable value
        unique: Whether values must be unique across the collection
        index: Secondary index name, or None
        index_ttl: TTL in seconds for secondary index sets (0 = none)
        sorted_index: Sorted index name, or None
        sorted_index_ttl: TTL in seconds for the sorted index (0 = none)
    """

    name: str
    type: FieldType = FieldType.STRING
    store_name: str = ""
    nullable: bool = False
    unique: bool = False
    index: Optional[str] = None
    index_ttl: int = 0
    sorted_index: Optional[str] = None
    sorted_index_ttl: int = 0

    def __post_init__(self) -> None:
        """Validate field definition."""
        if not self.name:
            raise ValueError("Field name cannot be empty")
        if not self.store_name:
            object.__setattr__(self, "store_name", self.name)
        if self.sorted_index and self.type not in SORTABLE_TYPES:
            raise ValueError(
                f"Sorted index on '{self.name}' requires a numeric or datetime field, "
                f"got '{self.type.value}'"
            )
        if self.type == FieldType.JSON and (self.index or self.unique):
            raise ValueError(f"JSON field '{self.name}' cannot be indexed or unique")
        if self.index_ttl < 0 or self.sorted_index_ttl < 0:
            raise ValueError(f"Index TTL on '{self.name}' cannot be negative")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        result: dict[str, Any] = {
            "name": self.name,
            "store_name": self.store_name,
            "type": self.type.value,
        }
        if self.nullable:
            result["nullable"] = True
        if self.unique:
            result["unique"] = True
        if self.index:
            result["index"] = self.index
            if self.index_ttl:
                result["index_ttl"] = self.index_ttl
        if self.sorted_index:
            result["sorted_index"] = self.sorted_index
            if self.sorted_index_ttl:
                result["sorted_index_ttl"] = self.sorted_index_ttl
        return result


def field(
    name: str,
    type: str | FieldType = FieldType.STRING,
    *,
    store_name: Optional[str] = None,
    nullable: bool = False,
    unique: bool = False,
    index: bool | str = False,
    index_ttl: int = 0,
    sorted_index: bool | str = False,
    sorted_index_ttl: int = 0,
) -> FieldDescriptor:
    """Convenience function to create a FieldDescriptor.

    Args:
        name: Attribute name
        type: Field type (name or FieldType)
        store_name: Name in the store
        nullable: Accept None
        unique: Enforce uniqueness
        index: True, or an explicit secondary index name
        index_ttl: TTL for secondary index sets
        sorted_index: True, or an explicit sorted index name
        sorted_index_ttl: TTL for the sorted index

    Returns:
        FieldDescriptor instance

    Example:
        >>> email = field("email", unique=True, index=True)
        >>> score = field("score", "float", sorted_index="score_idx")
    """
    if isinstance(type, str):
        type = FieldType.from_str(type)
    store = store_name or name
    return FieldDescriptor(
        name=name,
        type=type,
        store_name=store,
        nullable=nullable,
        unique=unique,
        index=(store if index is True else index) or None,
        index_ttl=index_ttl,
        sorted_index=(store if sorted_index is True else sorted_index) or None,
        sorted_index_ttl=sorted_index_ttl,
    )


@dataclass(frozen=True)
class IndexDescriptor:
    """A secondary or sorted index backing one field."""

    field_name: str
    name: str
    ttl: int = 0


@dataclass(frozen=True)
class FieldAccessor:
    """Typed accessors for one attribute, built once per document type."""

    name: str
    get: Callable[[Any], Any]
    set: Callable[[Any, Any], None]


def _make_accessor(attribute: str) -> FieldAccessor:
    def get(instance: Any) -> Any:
        return getattr(instance, attribute, None)

    def set_(instance: Any, value: Any) -> None:
        setattr(instance, attribute, value)

    return FieldAccessor(name=attribute, get=get, set=set_)


@runtime_checkable
class HasTimestamps(Protocol):
    """Documents that carry creation and modification timestamps.

    The manager sets ``created_at`` on first commit and ``updated_at`` on
    every commit for instances satisfying this protocol. The metadata of
    such a type should include ``timestamp_fields()``.
    """

    created_at: Optional[datetime]
    updated_at: Optional[datetime]


def timestamp_fields() -> tuple[FieldDescriptor, FieldDescriptor]:
    """Field descriptors for HasTimestamps documents."""
    return (
        field("created_at", FieldType.DATETIME, store_name="_created_at", nullable=True),
        field("updated_at", FieldType.DATETIME, store_name="_updated_at", nullable=True),
    )


@dataclass(frozen=True)
class ClassMetadata:
    """Definition of a document type.

    Attributes:
        document_class: Python class of the documents
        collection: Collection name used in every key
        fields: Ordered field descriptors (the id field excluded)
        prefix: Optional key prefix
        storage: Storage encoding
        id_field: Attribute holding the document id
        id_strategy: How ids are assigned
        ttl: Default document TTL in seconds (0 = none)
        repository_class: Optional DocumentRepository subclass
        factory: Optional zero-argument callable creating blank instances

    Derived (read-only):
        indexes: field name -> IndexDescriptor for secondary indexes
        sorted_indexes: field name -> IndexDescriptor for sorted indexes
        unique_fields: descriptors of unique fields
        accessors: attribute name -> FieldAccessor (id field included)
    """

    document_class: type
    collection: str
    fields: tuple[FieldDescriptor, ...] = dataclass_field(default_factory=tuple)
    prefix: str = ""
    storage: StorageType = StorageType.HASH
    id_field: str = "id"
    id_strategy: IdStrategy = IdStrategy.AUTO
    ttl: int = 0
    repository_class: Optional[type] = None
    factory: Optional[Callable[[], Any]] = None

    indexes: dict[str, IndexDescriptor] = dataclass_field(
        init=False, repr=False, compare=False
    )
    sorted_indexes: dict[str, IndexDescriptor] = dataclass_field(
        init=False, repr=False, compare=False
    )
    unique_fields: tuple[FieldDescriptor, ...] = dataclass_field(
        init=False, repr=False, compare=False
    )
    accessors: dict[str, FieldAccessor] = dataclass_field(
        init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        """Validate the definition and build derived lookups."""
        if not self.collection:
            raise ValueError("Collection name cannot be empty")
        if ":" in self.collection:
            raise ValueError(f"Collection name cannot contain ':', got '{self.collection}'")
        if self.ttl < 0:
            raise ValueError(f"TTL cannot be negative, got {self.ttl}")

        names = [f.name for f in self.fields]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate field name in '{self.collection}'")
        store_names = [f.store_name for f in self.fields]
        if len(store_names) != len(set(store_names)):
            raise ValueError(f"Duplicate store field name in '{self.collection}'")
        if self.id_field in names:
            raise ValueError(f"Id field '{self.id_field}' must not be listed in fields")

        indexes = {
            f.name: IndexDescriptor(f.name, f.index, f.index_ttl) for f in self.fields if f.index
        }
        sorted_indexes = {
            f.name: IndexDescriptor(f.name, f.sorted_index, f.sorted_index_ttl)
            for f in self.fields
            if f.sorted_index
        }
        accessors = {f.name: _make_accessor(f.name) for f in self.fields}
        accessors[self.id_field] = _make_accessor(self.id_field)

        object.__setattr__(self, "indexes", indexes)
        object.__setattr__(self, "sorted_indexes", sorted_indexes)
        object.__setattr__(self, "unique_fields", tuple(f for f in self.fields if f.unique))
        object.__setattr__(self, "accessors", accessors)

    @property
    def type_name(self) -> str:
        return self.document_class.__name__

    @property
    def id_accessor(self) -> FieldAccessor:
        return self.accessors[self.id_field]

    def get_field(self, name: str) -> FieldDescriptor | None:
        """Get field descriptor by attribute name."""
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def get_field_names(self) -> list[str]:
        """Attribute names of all mapped fields, id excluded."""
        return [f.name for f in self.fields]

    def is_indexed(self, name: str) -> bool:
        return name in self.indexes

    def has_sorted_index(self, name: str) -> bool:
        return name in self.sorted_indexes

    # Key layout

    def _base(self) -> str:
        return f"{self.prefix}:" if self.prefix else ""

    def key_name(self, document_id: str) -> str:
        return f"{self._base()}{self.collection}:{document_id}"

    def collection_pattern(self) -> str:
        return f"{self._base()}{self.collection}:*"

    def id_from_key(self, key: str) -> str:
        """Extract the document id from a primary key."""
        return key[len(self._base()) + len(self.collection) + 1 :]

    def index_key(self, index_name: str, token: str) -> str:
        return f"{self._base()}idx:{self.collection}:{index_name}:{token}"

    def index_pattern(self, index_name: str) -> str:
        return f"{self._base()}idx:{self.collection}:{index_name}:*"

    def sorted_index_key(self, index_name: str) -> str:
        return f"{self._base()}zidx:{self.collection}:{index_name}"

    def unique_key(self, store_name: str, token: str) -> str:
        return f"{self._base()}unq:{self.collection}:{store_name}:{token}"

    def unique_pattern(self, store_name: str) -> str:
        return f"{self._base()}unq:{self.collection}:{store_name}:*"

    def temp_key(self, suffix: str) -> str:
        return f"{self._base()}tmp:{self.collection}:{suffix}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "class": f"{self.document_class.__module__}.{self.document_class.__qualname__}",
            "collection": self.collection,
            "prefix": self.prefix,
            "storage": self.storage.value,
            "id_field": self.id_field,
            "id_strategy": self.id_strategy.value,
            "ttl": self.ttl,
            "fields": [f.to_dict() for f in self.fields],
            "key_pattern": self.collection_pattern(),
        }

    def __hash__(self) -> int:
        return hash((self.document_class, self.collection, self.prefix))
