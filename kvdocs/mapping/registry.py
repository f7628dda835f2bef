"""
Metadata registry for kvdocs.

This module provides the registry of document types:
- Registering ClassMetadata per document class
- Lookup by class or collection name
- Invalidation (one type or all) before freeze
- Describing every registered type for debugging

The registry is passed explicitly to the DocumentManager; there is no
process-wide instance. It can be frozen at startup to prevent runtime
modifications.

Example:
    >>> registry = MetadataRegistry()
    >>> registry.register(ArticleMeta)
    >>> registry.get(Article).collection
    'article'
"""

from __future__ import annotations

import difflib
import hashlib
import json
import threading
from collections.abc import Iterator
from typing import Any

from ..errors import DuplicateRegistrationError, MappingError, RegistryFrozenError
from .types import ClassMetadata


class MetadataRegistry:
    """Registry of document type metadata.

    Lookups are read-mostly; registration and invalidation take a lock.

    Example:
        >>> registry = MetadataRegistry()
        >>> registry.register(UserMeta)
        >>> registry.freeze()
    """

    def __init__(self) -> None:
        """Initialize empty registry."""
        self._by_class: dict[type, ClassMetadata] = {}
        self._by_collection: dict[str, ClassMetadata] = {}
        self._frozen = False
        self._fingerprint: str | None = None
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        """Whether registry is frozen."""
        return self._frozen

    @property
    def fingerprint(self) -> str | None:
        """Mapping fingerprint (available after freeze)."""
        return self._fingerprint

    def register(self, metadata: ClassMetadata) -> ClassMetadata:
        """Register metadata for a document class.

        Args:
            metadata: ClassMetadata to register

        Returns:
            The registered metadata

        Raises:
            RegistryFrozenError: If registry is frozen
            DuplicateRegistrationError: If the class or collection is taken, or
                the keys would overlap those of a registered type
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Cannot register: registry is frozen")

            if metadata.document_class in self._by_class:
                raise DuplicateRegistrationError(
                    f"class '{metadata.type_name}' already registered"
                )

            namespace = _namespace(metadata)
            if namespace in self._by_collection:
                existing = self._by_collection[namespace]
                raise DuplicateRegistrationError(
                    f"collection '{namespace}' already registered for '{existing.type_name}'"
                )
            self.check_key_space(metadata)

            self._by_class[metadata.document_class] = metadata
            self._by_collection[namespace] = metadata
            return metadata

    def check_key_space(self, metadata: ClassMetadata) -> None:
        """Reject metadata whose keys would match another type's scan patterns.

        With an empty prefix, collection "app" scans "app:*", which also
        matches every key of a type registered under prefix "app".

        A registered entry for the same class is not compared, so the check
        also applies to a replacement for that class.

        Args:
            metadata: Metadata to check against the registered types

        Raises:
            DuplicateRegistrationError: If the key spaces overlap
        """
        roots = _key_roots(metadata)
        for other in self._by_class.values():
            if other.document_class is metadata.document_class:
                continue
            for root in roots:
                for other_root in _key_roots(other):
                    if root.startswith(other_root) or other_root.startswith(root):
                        raise DuplicateRegistrationError(
                            f"keys of '{_namespace(metadata)}' overlap keys of "
                            f"'{_namespace(other)}' ({root}* vs {other_root}*)"
                        )

    def get(self, key: type | str) -> ClassMetadata:
        """Get metadata by document class or collection name.

        Raises:
            MappingError: If nothing is registered under key
        """
        if isinstance(key, str):
            metadata = self._by_collection.get(key)
            if metadata is None:
                for candidate in self._by_collection.values():
                    if candidate.collection == key:
                        return candidate
                known = sorted(self._by_collection) + [
                    m.type_name for m in self._by_class.values()
                ]
                raise MappingError(
                    f"No document type registered for '{key}'",
                    type_name=key,
                    suggestions=difflib.get_close_matches(key, known, n=3),
                )
            return metadata

        metadata = self._by_class.get(key)
        if metadata is None:
            known = [m.type_name for m in self._by_class.values()]
            name = getattr(key, "__name__", repr(key))
            raise MappingError(
                f"Class '{name}' is not a registered document type",
                type_name=name,
                suggestions=difflib.get_close_matches(name, known, n=3),
            )
        return metadata

    def has(self, key: type | str) -> bool:
        if isinstance(key, str):
            return key in self._by_collection or any(
                m.collection == key for m in self._by_collection.values()
            )
        return key in self._by_class

    def invalidate(self, document_class: type | None = None) -> None:
        """Drop one registration, or all of them.

        Raises:
            RegistryFrozenError: If registry is frozen
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Cannot invalidate: registry is frozen")

            if document_class is None:
                self._by_class.clear()
                self._by_collection.clear()
                return

            metadata = self._by_class.pop(document_class, None)
            if metadata is not None:
                self._by_collection.pop(_namespace(metadata), None)

    def __iter__(self) -> Iterator[ClassMetadata]:
        yield from self._by_class.values()

    def __len__(self) -> int:
        return len(self._by_class)

    def freeze(self) -> str:
        """Freeze registry and compute fingerprint.

        Returns:
            Mapping fingerprint

        Raises:
            RegistryFrozenError: If already frozen
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Registry is already frozen")

            canonical = json.dumps(self.describe(), sort_keys=True, separators=(",", ":"))
            self._fingerprint = "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()
            self._frozen = True
            return self._fingerprint

    def describe(self) -> dict[str, Any]:
        """JSON-serialisable summary of every registered type."""
        return {
            "types": [
                self._by_collection[namespace].to_dict()
                for namespace in sorted(self._by_collection)
            ]
        }

    def to_json(self, indent: int | None = 2) -> str:
        """Convert to JSON string."""
        return json.dumps(self.describe(), indent=indent, sort_keys=True)


def _namespace(metadata: ClassMetadata) -> str:
    if metadata.prefix:
        return f"{metadata.prefix}:{metadata.collection}"
    return metadata.collection


def _key_roots(metadata: ClassMetadata) -> list[str]:
    """Leading part of every key family written for a collection."""
    base = f"{metadata.prefix}:" if metadata.prefix else ""
    roots = [f"{base}{metadata.collection}:"]
    for family in ("idx", "zidx", "unq", "tmp"):
        roots.append(f"{base}{family}:{metadata.collection}:")
    return roots
