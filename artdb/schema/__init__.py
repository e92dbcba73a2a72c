"""
Kind registry and payload validation for ArtDB.
"""

from .registry import KindRegistry, index_name
from .types import FlatType, Registration, SchemaVersion, canonical_json, content_hash
from .validator import SchemaValidator, ValidationResult

__all__ = [
    "KindRegistry",
    "index_name",
    "FlatType",
    "Registration",
    "SchemaVersion",
    "canonical_json",
    "content_hash",
    "SchemaValidator",
    "ValidationResult",
]
