"""
Value conversion between document instances and the store.

Two stored representations exist:
- Store form: flat strings, used for hash fields, index tokens and unique
  tokens (``to_store`` / ``to_native``)
- Document form: JSON-native values, used for JSON-encoded documents
  (``to_document`` / ``from_document``)

Conversions:
    string    str                     <-> str
    integer   int                     <-> decimal string / JSON number
    float     float                   <-> repr string / JSON number
    boolean   bool                    <-> "1" | "0" / JSON bool
    datetime  datetime (UTC-aware)    <-> epoch seconds
    json      any JSON value          <-> JSON text / nested JSON

Invariants:
    - None is never converted; callers skip null fields
    - Values are never coerced; a value of the wrong Python type is rejected
      (ints are accepted for float fields, bools only for boolean fields)
    - Float values and sorted-index scores must be finite
    - Naive datetimes are interpreted as UTC
    - Sorted-index scores are only taken from int, float or datetime values
"""

from __future__ import annotations

import json
import logging
import math
from datetime import datetime, timezone
from typing import Any, Optional

from ..errors import DocumentDecodeError, InvalidIndexValueError, ValidationError
from .types import ClassMetadata, FieldDescriptor, FieldType, StorageType

logger = logging.getLogger(__name__)

_TRUE_TOKENS = frozenset({"1", "true", "True", "yes", "on"})

_ACCEPTED_TYPES: dict[FieldType, tuple[type, ...]] = {
    FieldType.STRING: (str,),
    FieldType.INTEGER: (int,),
    FieldType.FLOAT: (int, float),
    FieldType.BOOLEAN: (bool,),
    FieldType.DATETIME: (datetime,),
}


def _epoch(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def _format_number(number: float) -> str:
    if float(number).is_integer():
        return str(int(number))
    return repr(float(number))


class Hydrator:
    """Converts field values and builds document instances.

    The hydrator is stateless; one instance is shared by a manager and
    everything it creates.
    """

    # Scalar conversions

    def to_native(self, raw: Any, field_type: FieldType) -> Any:
        """Convert a store-form value to its Python value.

        Args:
            raw: Value read from a hash field or decoded from a token
            field_type: Semantic type of the field

        Returns:
            Typed value, or None for a missing value
        """
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")

        if field_type == FieldType.STRING:
            return str(raw)
        if field_type == FieldType.INTEGER:
            if isinstance(raw, int):
                return int(raw)
            try:
                return int(raw)
            except ValueError:
                return int(float(raw))
        if field_type == FieldType.FLOAT:
            return float(raw)
        if field_type == FieldType.BOOLEAN:
            if isinstance(raw, str):
                return raw in _TRUE_TOKENS
            return bool(raw)
        if field_type == FieldType.DATETIME:
            if isinstance(raw, datetime):
                return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
            if raw == "":
                return None
            try:
                return datetime.fromtimestamp(float(raw), tz=timezone.utc)
            except (TypeError, ValueError):
                logger.warning("Ignoring non-numeric datetime value", extra={"value": raw})
                return None
        if field_type == FieldType.JSON:
            if isinstance(raw, str):
                return json.loads(raw)
            return raw
        return raw

    def check_type(self, value: Any, field_type: FieldType) -> None:
        """Reject a value whose Python type does not match field_type.

        Raises:
            ValidationError: If the value would need coercion to be stored
        """
        accepted = _ACCEPTED_TYPES.get(field_type)
        if accepted is None:
            return
        if isinstance(value, bool) and field_type != FieldType.BOOLEAN:
            accepted = ()
        if not isinstance(value, accepted):
            raise ValidationError(
                f"Cannot store {type(value).__name__} value as {field_type.value}"
            )
        if field_type == FieldType.FLOAT and not math.isfinite(value):
            raise ValidationError(f"Cannot store non-finite value {value!r} as float")

    def to_store(self, value: Any, field_type: FieldType) -> str:
        """Convert a Python value to its store form.

        Raises:
            ValidationError: If the value is not of the field's Python type
        """
        self.check_type(value, field_type)
        if field_type == FieldType.STRING:
            return value
        if field_type == FieldType.INTEGER:
            return str(value)
        if field_type == FieldType.FLOAT:
            return _format_number(value)
        if field_type == FieldType.BOOLEAN:
            return "1" if value else "0"
        if field_type == FieldType.DATETIME:
            return _format_number(_epoch(value))
        try:
            return json.dumps(value, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise ValidationError(
                f"Cannot store {type(value).__name__} value as {field_type.value}: {e}"
            ) from e

    def to_document(self, value: Any, field_type: FieldType) -> Any:
        """Convert a Python value to its JSON-native document form."""
        self.check_type(value, field_type)
        if field_type == FieldType.DATETIME:
            epoch = _epoch(value)
            return int(epoch) if epoch.is_integer() else epoch
        return value

    def from_document(self, raw: Any, field_type: FieldType) -> Any:
        """Convert a JSON-native document value to its Python value."""
        if field_type == FieldType.JSON:
            return raw
        return self.to_native(raw, field_type)

    def index_token(self, value: Any, field_type: FieldType) -> str:
        """Token used in secondary and unique index keys."""
        return self.to_store(value, field_type)

    def score(self, value: Any, descriptor: FieldDescriptor) -> Optional[float]:
        """Sorted-index score for a value.

        Returns:
            The score, or None when value is None

        Raises:
            InvalidIndexValueError: If value is not a finite int, float or datetime
        """
        if value is None:
            return None
        if isinstance(value, datetime):
            return _epoch(value)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidIndexValueError(descriptor.name, value, descriptor.sorted_index)
        score = float(value)
        if not math.isfinite(score):
            raise InvalidIndexValueError(descriptor.name, value, descriptor.sorted_index)
        return score

    # Whole-document conversions

    def extract_fields(self, metadata: ClassMetadata, instance: Any) -> dict[str, str]:
        """Store-form map of the non-null fields of an instance.

        Returns:
            store name -> store-form string

        Raises:
            ValidationError: If a value cannot be converted
        """
        data: dict[str, str] = {}
        for descriptor in metadata.fields:
            value = metadata.accessors[descriptor.name].get(instance)
            if value is None:
                continue
            try:
                data[descriptor.store_name] = self.to_store(value, descriptor.type)
            except ValidationError as e:
                raise ValidationError(
                    f"Field '{metadata.type_name}.{descriptor.name}': {e.message}",
                    field_name=descriptor.name,
                ) from e
        return data

    def extract_document(self, metadata: ClassMetadata, instance: Any) -> dict[str, Any]:
        """JSON-native map of the non-null fields of an instance."""
        data: dict[str, Any] = {}
        for descriptor in metadata.fields:
            value = metadata.accessors[descriptor.name].get(instance)
            if value is None:
                continue
            try:
                data[descriptor.store_name] = self.to_document(value, descriptor.type)
            except ValidationError as e:
                raise ValidationError(
                    f"Field '{metadata.type_name}.{descriptor.name}': {e.message}",
                    field_name=descriptor.name,
                ) from e
        return data

    def encode(self, metadata: ClassMetadata, instance: Any) -> dict[str, str] | str:
        """Payload written under the primary key for the type's storage."""
        if metadata.storage == StorageType.JSON:
            return json.dumps(self.extract_document(metadata, instance), separators=(",", ":"))
        return self.extract_fields(metadata, instance)

    def decode(self, metadata: ClassMetadata, key: str, raw: Any) -> dict[str, str] | None:
        """Normalise a stored payload to the store-form field map.

        Args:
            metadata: Type of the stored document
            key: Primary key the payload was read from
            raw: Hash mapping or JSON text as returned by the adapter

        Returns:
            store name -> store-form string, or None when nothing is stored

        Raises:
            DocumentDecodeError: If a JSON payload is not a JSON object
        """
        if not raw:
            return None
        if metadata.storage == StorageType.HASH:
            return {
                d.store_name: raw[d.store_name] for d in metadata.fields if d.store_name in raw
            }

        try:
            document = json.loads(raw)
        except ValueError as e:
            raise DocumentDecodeError(key, str(e)) from e
        if not isinstance(document, dict):
            raise DocumentDecodeError(key, f"expected object, got {type(document).__name__}")

        data: dict[str, str] = {}
        for descriptor in metadata.fields:
            value = document.get(descriptor.store_name)
            if value is None:
                continue
            native = self.from_document(value, descriptor.type)
            if native is not None:
                data[descriptor.store_name] = self.to_store(native, descriptor.type)
        return data

    def build_instance(
        self,
        metadata: ClassMetadata,
        data: dict[str, str],
        document_id: str,
    ) -> Any:
        """Create a document instance from a store-form field map.

        Fields absent from data are set to None.
        """
        instance = metadata.factory() if metadata.factory else metadata.document_class()
        for descriptor in metadata.fields:
            value = self.to_native(data.get(descriptor.store_name), descriptor.type)
            metadata.accessors[descriptor.name].set(instance, value)
        metadata.id_accessor.set(instance, document_id)
        return instance
