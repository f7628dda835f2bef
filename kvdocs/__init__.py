"""
kvdocs - typed documents on Redis.

kvdocs maps ordinary Python objects onto Redis keys and keeps secondary
indexes in step with them:
- Mapping metadata (ClassMetadata, FieldDescriptor, field)
- Metadata registry for type management
- DocumentManager with identity map and unit of work
- Repositories with index-backed queries, range queries and streaming
- Batch, bulk and index-maintenance services

Example:
    >>> from kvdocs import ClassMetadata, FieldType, MetadataRegistry, field
    >>> from kvdocs import create_document_manager
    >>>
    >>> registry = MetadataRegistry()
    >>> registry.register(ClassMetadata(
    ...     document_class=Article,
    ...     collection="articles",
    ...     fields=(
    ...         field("title"),
    ...         field("category", index=True),
    ...         field("views", FieldType.INTEGER, sorted_index=True),
    ...     ),
    ... ))
    >>> manager = create_document_manager(registry=registry)
    >>> await manager.persist(Article(title="Hello", category="tech", views=3))
    >>> await manager.commit()

Invariants:
    - A commit writes all pending changes in one transaction, or none
    - Index entries always reflect the last committed field values
    - Unique values have exactly one owner

Version: 1.0.0
"""

from __future__ import annotations

__version__ = "1.0.0"

from typing import Optional

from .client import ClientAdapter, InMemoryClientAdapter, Pipeline, RedisClientAdapter
from .config import ObservabilityConfig, OdmConfig, RedisConfig
from .errors import (
    DocumentDecodeError,
    DuplicateIdentityError,
    DuplicateRegistrationError,
    ImmutableIdentityError,
    InvalidIndexValueError,
    MappingError,
    MissingIdentityError,
    OdmError,
    RegistryFrozenError,
    StoreConnectionError,
    StoreError,
    UniqueConstraintViolationError,
    ValidationError,
)
from .log_setup import setup_logging
from .manager import CommitResult, DocumentManager
from .mapping import (
    ClassMetadata,
    FieldDescriptor,
    FieldType,
    HasTimestamps,
    Hydrator,
    IdStrategy,
    IndexDescriptor,
    MetadataRegistry,
    StorageType,
    field,
    timestamp_fields,
)
from .query import ASC, DESC, Criteria, RangeQuery, ResultPage
from .repository import DocumentRepository
from .services import BatchProcessor, BulkOperations, IndexMaintenance


def create_document_manager(
    config: Optional[OdmConfig] = None,
    registry: Optional[MetadataRegistry] = None,
    client: Optional[ClientAdapter] = None,
) -> DocumentManager:
    """Create a DocumentManager from configuration.

    Args:
        config: Mapper configuration (defaults to OdmConfig.from_env())
        registry: Metadata registry (defaults to an empty registry)
        client: Store adapter (defaults to a Redis adapter for config.redis)

    Returns:
        DocumentManager ready for use
    """
    config = config or OdmConfig.from_env()
    if client is None:
        client = RedisClientAdapter.from_config(config)
    return DocumentManager(client, registry or MetadataRegistry(), config)


__all__ = [
    # Version
    "__version__",
    # Factory
    "create_document_manager",
    # Mapping
    "ClassMetadata",
    "FieldDescriptor",
    "FieldType",
    "StorageType",
    "IdStrategy",
    "IndexDescriptor",
    "HasTimestamps",
    "field",
    "timestamp_fields",
    "MetadataRegistry",
    "Hydrator",
    # Manager and queries
    "DocumentManager",
    "CommitResult",
    "DocumentRepository",
    "Criteria",
    "RangeQuery",
    "ResultPage",
    "ASC",
    "DESC",
    # Services
    "BatchProcessor",
    "BulkOperations",
    "IndexMaintenance",
    # Clients
    "ClientAdapter",
    "Pipeline",
    "RedisClientAdapter",
    "InMemoryClientAdapter",
    # Configuration
    "OdmConfig",
    "RedisConfig",
    "ObservabilityConfig",
    "setup_logging",
    # Errors
    "OdmError",
    "DuplicateIdentityError",
    "ImmutableIdentityError",
    "MissingIdentityError",
    "UniqueConstraintViolationError",
    "InvalidIndexValueError",
    "ValidationError",
    "MappingError",
    "DocumentDecodeError",
    "StoreError",
    "StoreConnectionError",
    "RegistryFrozenError",
    "DuplicateRegistrationError",
]
