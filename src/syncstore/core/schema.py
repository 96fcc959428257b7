"""Model schema definitions.

This module provides:
- FieldDefinition / Relationship / ModelDefinition: declarative description
  of a user model (fields, ordered primary key, relationships)
- Schema: the set of models a DataStore manages
- ValidationError: raised when a record does not fit its definition

Records themselves are plain dicts. A ModelDefinition knows how to
extract the identifier from a record, build the storage key, validate the
record and compute the field selection used in GraphQL documents.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

# Fields maintained by the backend for conflict detection
SYNC_FIELDS: tuple[str, ...] = ("_version", "_lastChangedAt", "_deleted")

# Separator for composite keys in storage
KEY_SEPARATOR = "#"

_STRING_SCALARS = frozenset({
    "ID",
    "String",
    "AWSDate",
    "AWSTime",
    "AWSDateTime",
    "AWSEmail",
    "AWSURL",
    "AWSPhone",
    "AWSIPAddress",
})
_INT_SCALARS = frozenset({"Int", "AWSTimestamp"})


class ValidationError(Exception):
    """A record or condition does not match the model definition."""


@dataclass(frozen=True)
class FieldDefinition:
    """A single model field.

    Attributes:
        name: Field name.
        type: GraphQL type name (scalar, enum, non-model or model name).
        required: Whether the field must be present and non-null.
        is_array: Whether the field holds a list.
        read_only: Whether the backend computes the field (never sent).
    """

    name: str
    type: str = "String"
    required: bool = False
    is_array: bool = False
    read_only: bool = False

    @property
    def is_scalar(self) -> bool:
        """Check if the field holds a built-in scalar."""
        return (
            self.type in _STRING_SCALARS
            or self.type in _INT_SCALARS
            or self.type in ("Float", "Boolean", "AWSJSON")
        )

    def check_value(self, value: Any) -> bool:
        """Check a non-null value against the declared scalar type."""
        if self.is_array:
            if not isinstance(value, list):
                return False
            item = FieldDefinition(self.name, self.type)
            return all(v is None or item.check_value(v) for v in value)
        if self.type in _STRING_SCALARS:
            return isinstance(value, str)
        if self.type in _INT_SCALARS:
            return isinstance(value, int) and not isinstance(value, bool)
        if self.type == "Float":
            return isinstance(value, (int, float)) and not isinstance(value, bool)
        if self.type == "Boolean":
            return isinstance(value, bool)
        if self.type == "AWSJSON":
            return isinstance(value, (str, dict, list))
        # Enums, non-model types and related models are not checked here
        return True


@dataclass(frozen=True)
class Relationship:
    """A connection from one model to another.

    Attributes:
        field: Field on this model that holds the related record(s).
        related_model: Name of the related model.
        kind: "BELONGS_TO", "HAS_ONE" or "HAS_MANY".
        target_names: Foreign-key fields on this model (BELONGS_TO/HAS_ONE).
    """

    field: str
    related_model: str
    kind: str = "BELONGS_TO"
    target_names: tuple[str, ...] = ()


@dataclass
class ModelDefinition:
    """Declarative description of a model.

    Attributes:
        name: Model name (e.g. "Post").
        fields: Field definitions by name.
        primary_key: Ordered identifier fields (single "id" by default).
        plural_name: Plural used in sync query names (default name + "s").
        relationships: Connections to other models.
        syncable: Whether the model is mirrored to the backend.
    """

    name: str
    fields: dict[str, FieldDefinition] = field(default_factory=dict)
    primary_key: tuple[str, ...] = ("id",)
    plural_name: str | None = None
    relationships: tuple[Relationship, ...] = ()
    syncable: bool = True

    def __post_init__(self) -> None:
        """Fill defaults and check the primary key."""
        self.primary_key = tuple(self.primary_key)
        if not self.primary_key:
            raise ValueError(f"Model {self.name} has an empty primary key")
        if self.plural_name is None:
            self.plural_name = f"{self.name}s"
        if "id" in self.primary_key and "id" not in self.fields:
            self.fields["id"] = FieldDefinition("id", "ID", required=True)
        for key_field in self.primary_key:
            if key_field not in self.fields:
                raise ValueError(
                    f"Primary key field {key_field!r} not declared on {self.name}"
                )

    @property
    def has_custom_primary_key(self) -> bool:
        """Check if the identifier is anything other than a single "id"."""
        return self.primary_key != ("id",)

    @property
    def relationship_fields(self) -> set[str]:
        """Fields holding related records (not sent, not selected)."""
        return {r.field for r in self.relationships}

    def identifier(self, record: dict[str, Any]) -> tuple[Any, ...]:
        """Get the ordered identifier values of a record.

        Raises:
            ValidationError: If a key field is missing.
        """
        values = []
        for key_field in self.primary_key:
            value = record.get(key_field)
            if value is None:
                raise ValidationError(
                    f"{self.name} record is missing key field {key_field!r}"
                )
            values.append(value)
        return tuple(values)

    def key(self, record: dict[str, Any]) -> str:
        """Get the storage key of a record."""
        return KEY_SEPARATOR.join(str(v) for v in self.identifier(record))

    def key_from_identifier(self, identifier: Any) -> str:
        """Build a storage key from an identifier value or tuple."""
        if isinstance(identifier, dict):
            return self.key(identifier)
        if not isinstance(identifier, (tuple, list)):
            identifier = (identifier,)
        if len(identifier) != len(self.primary_key):
            raise ValidationError(
                f"{self.name} identifier needs {len(self.primary_key)} values, "
                f"got {len(identifier)}"
            )
        return KEY_SEPARATOR.join(str(v) for v in identifier)

    def ensure_identifier(self, record: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of the record with a generated id when missing.

        Only single-"id" models get generated identifiers; custom keys
        must be supplied by the caller.
        """
        record = dict(record)
        if not self.has_custom_primary_key and not record.get("id"):
            record["id"] = str(uuid.uuid4())
        return record

    def validate(self, record: dict[str, Any]) -> None:
        """Check required fields and scalar types.

        Raises:
            ValidationError: On the first problem found.
        """
        self.identifier(record)
        for name, definition in self.fields.items():
            value = record.get(name)
            if value is None:
                if definition.required and not definition.read_only:
                    raise ValidationError(
                        f"Field {name!r} is required on {self.name}"
                    )
                continue
            if not definition.check_value(value):
                raise ValidationError(
                    f"Field {name!r} on {self.name} must be of type "
                    f"{'[' + definition.type + ']' if definition.is_array else definition.type}"
                )

    def selection_set(self) -> list[str]:
        """Fields requested back from the backend in GraphQL documents."""
        selected: list[str] = []
        relationship_fields = self.relationship_fields
        for name in self.fields:
            if name not in relationship_fields:
                selected.append(name)
        for relationship in self.relationships:
            for target in relationship.target_names:
                if target not in selected:
                    selected.append(target)
        for sync_field in SYNC_FIELDS:
            if sync_field not in selected:
                selected.append(sync_field)
        return selected

    def writable_fields(self, record: dict[str, Any]) -> dict[str, Any]:
        """Strip read-only and relationship fields from a record copy."""
        relationship_fields = self.relationship_fields
        result: dict[str, Any] = {}
        for name, value in record.items():
            if name in relationship_fields:
                continue
            definition = self.fields.get(name)
            if definition is not None and definition.read_only:
                continue
            result[name] = value
        return result


class Schema:
    """The set of models managed by a DataStore."""

    def __init__(self, models: list[ModelDefinition], version: str = "1") -> None:
        self._models: dict[str, ModelDefinition] = {m.name: m for m in models}
        self.version = version

    def get(self, model_name: str) -> ModelDefinition:
        """Get a model definition by name.

        Raises:
            ValidationError: If the model is unknown.
        """
        try:
            return self._models[model_name]
        except KeyError:
            raise ValidationError(f"Unknown model: {model_name}") from None

    def __contains__(self, model_name: object) -> bool:
        return model_name in self._models

    def __iter__(self):  # type: ignore[no-untyped-def]
        return iter(self._models.values())

    @property
    def syncable_models(self) -> list[ModelDefinition]:
        """Models mirrored to the backend, in declaration order."""
        return [m for m in self._models.values() if m.syncable]
