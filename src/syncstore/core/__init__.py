"""Core module - Shared schema, predicates, configuration and types."""

from syncstore.core.config import AUTH_MODES, DataStoreConfig
from syncstore.core.predicates import Predicate, matches, validate_predicate
from syncstore.core.schema import (
    SYNC_FIELDS,
    FieldDefinition,
    ModelDefinition,
    Relationship,
    Schema,
    ValidationError,
)
from syncstore.core.types import ErrorType, OpType, ProcessName, SyncState

__all__ = [
    # Config
    "AUTH_MODES",
    "DataStoreConfig",
    # Predicates
    "Predicate",
    "matches",
    "validate_predicate",
    # Schema
    "SYNC_FIELDS",
    "FieldDefinition",
    "ModelDefinition",
    "Relationship",
    "Schema",
    "ValidationError",
    # Types
    "ErrorType",
    "OpType",
    "ProcessName",
    "SyncState",
]
