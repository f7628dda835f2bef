"""
Mapping metadata, registry and value conversion.

ClassMetadata describes how one document class is laid out in the store;
the Hydrator converts between attribute values and their stored strings.

Invariants:
    - Metadata is immutable once constructed
    - A collection namespace belongs to exactly one document class
"""

from .hydrator import Hydrator
from .registry import MetadataRegistry
from .types import (
    SORTABLE_TYPES,
    ClassMetadata,
    FieldAccessor,
    FieldDescriptor,
    FieldType,
    HasTimestamps,
    IdStrategy,
    IndexDescriptor,
    StorageType,
    field,
    timestamp_fields,
)

__all__ = [
    # Types
    "FieldType",
    "StorageType",
    "IdStrategy",
    "SORTABLE_TYPES",
    "FieldDescriptor",
    "IndexDescriptor",
    "FieldAccessor",
    "ClassMetadata",
    "HasTimestamps",
    "field",
    "timestamp_fields",
    # Registry
    "MetadataRegistry",
    # Conversion
    "Hydrator",
]
