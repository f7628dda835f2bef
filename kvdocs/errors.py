"""
Error types for kvdocs.

This module defines all exception types raised by the mapper:
- OdmError: Base exception
- DuplicateIdentityError: An id is already owned by another document
- ImmutableIdentityError: The id of a tracked document was changed
- UniqueConstraintViolationError: A unique value is claimed by another document
- InvalidIndexValueError: A non-numeric or non-finite value was offered to a sorted index
- MappingError: Unknown type/field or a query the mapping cannot serve
- StoreError: The key-value store rejected or failed a command

Invariants:
    - All errors inherit from OdmError
    - Errors carry the offending field/value/id in ``details``
    - "Not found" is never an error; lookups return None
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class OdmError(Exception):
    """Base exception for all kvdocs errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "ODM_ERROR"
        self.details = details or {}


class DuplicateIdentityError(OdmError):
    """Persisting an id that already belongs to a different document.

    Raised when:
    - Another instance with the same id is tracked by the manager
    - The store already holds a record under that key and the instance
      was never loaded through this manager
    """

    def __init__(self, type_name: str, document_id: str) -> None:
        super().__init__(
            f"Document '{type_name}' with id '{document_id}' already exists",
            code="DUPLICATE_IDENTITY",
            details={"type": type_name, "id": document_id},
        )
        self.type_name = type_name
        self.document_id = document_id


class ImmutableIdentityError(OdmError):
    """The id of a tracked document was modified.

    Ids are assigned once and never change. Changing the id attribute of an
    instance the manager already tracks is rejected at persist or commit
    time, before any store write.
    """

    def __init__(self, type_name: str, registered_id: str, current_id: Any) -> None:
        super().__init__(
            f"Cannot change id of tracked '{type_name}' document "
            f"from '{registered_id}' to '{current_id}'",
            code="IMMUTABLE_IDENTITY",
            details={
                "type": type_name,
                "registered_id": registered_id,
                "current_id": current_id,
            },
        )
        self.type_name = type_name
        self.registered_id = registered_id
        self.current_id = current_id


class MissingIdentityError(OdmError):
    """Document has no id and its type does not generate one."""

    def __init__(self, type_name: str, strategy: str) -> None:
        super().__init__(
            f"Document '{type_name}' needs an id (id strategy is '{strategy}')",
            code="MISSING_IDENTITY",
            details={"type": type_name, "strategy": strategy},
        )
        self.type_name = type_name
        self.strategy = strategy


class UniqueConstraintViolationError(OdmError):
    """A unique field value is already owned by another document.

    Attributes:
        field_name: The unique field
        value: The contested value (store representation)
        owner_id: Id of the document currently holding the value
        claimant_id: Id of the document that tried to claim it
    """

    def __init__(
        self,
        type_name: str,
        field_name: str,
        value: str,
        owner_id: str,
        claimant_id: str,
    ) -> None:
        super().__init__(
            f"Unique constraint violated on '{type_name}.{field_name}': "
            f"value '{value}' is owned by '{owner_id}', claimed by '{claimant_id}'",
            code="UNIQUE_CONSTRAINT_VIOLATION",
            details={
                "type": type_name,
                "field": field_name,
                "value": value,
                "owner_id": owner_id,
                "claimant_id": claimant_id,
            },
        )
        self.type_name = type_name
        self.field_name = field_name
        self.value = value
        self.owner_id = owner_id
        self.claimant_id = claimant_id


class InvalidIndexValueError(OdmError):
    """A sorted index was offered a value that is not a finite number."""

    def __init__(
        self,
        field_name: str,
        value: Any,
        index_name: Optional[str] = None,
    ) -> None:
        target = f"sorted index '{index_name}'" if index_name else "a sorted index"
        super().__init__(
            f"Cannot add non-numeric or non-finite value to {target} on field '{field_name}'. "
            f"Got: {type(value).__name__}",
            code="INVALID_INDEX_VALUE",
            details={
                "field": field_name,
                "value": repr(value),
                "index": index_name,
            },
        )
        self.field_name = field_name
        self.value = value
        self.index_name = index_name


class ValidationError(OdmError):
    """Document field values failed validation.

    Raised when:
    - A non-nullable field holds None at commit time
    - A field value or indexed criterion has the wrong Python type
    - A hash-encoded document has no field to store
    """

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        errors: Optional[List[str]] = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name, "errors": errors or []},
        )
        self.field_name = field_name
        self.errors = errors or []


class MappingError(OdmError):
    """The mapping cannot serve the request.

    Raised when:
    - A document class is not registered
    - A criterion names an unknown field
    - A range query targets a field without a sorted index

    Attributes:
        type_name: The document type involved
        suggestions: Similar names, when a name was misspelled
    """

    def __init__(
        self,
        message: str,
        type_name: Optional[str] = None,
        suggestions: Optional[List[str]] = None,
    ) -> None:
        suggestions = suggestions or []
        if suggestions:
            message += f". Did you mean: {', '.join(suggestions)}?"
        super().__init__(
            message,
            code="MAPPING_ERROR",
            details={"type": type_name, "suggestions": suggestions},
        )
        self.type_name = type_name
        self.suggestions = suggestions


class DocumentDecodeError(OdmError):
    """A JSON-encoded document in the store could not be decoded."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(
            f"Cannot decode document stored at '{key}': {reason}",
            code="DOCUMENT_DECODE_ERROR",
            details={"key": key, "reason": reason},
        )
        self.key = key


class StoreError(OdmError):
    """The key-value store failed a command.

    Raised when a pipelined commit fails during execution. The unit of work
    is left intact so the caller can inspect or retry it.
    """

    def __init__(self, message: str, operation: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="STORE_ERROR",
            details={"operation": operation},
        )
        self.operation = operation


class StoreConnectionError(StoreError):
    """Failed to connect to the key-value store.

    Raised when:
    - Server is unreachable
    - Connection times out
    - Authentication fails
    """

    def __init__(self, message: str, address: Optional[str] = None) -> None:
        super().__init__(message, operation="connect")
        self.code = "CONNECTION_ERROR"
        self.details["address"] = address
        self.address = address


class RegistryFrozenError(OdmError):
    """Registry is frozen and cannot be modified."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="REGISTRY_FROZEN")


class DuplicateRegistrationError(OdmError):
    """A document class or collection is already registered."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="DUPLICATE_REGISTRATION")
