"""
Core type definitions for the ArtDB kind registry.

This module defines:
- FlatType: Vocabulary of the flat schema dialect ({field: typeName})
- Registration: A registered (plugin, kind) with its permanent code
- SchemaVersion: One stored revision of a kind's schema
- canonical_json / content_hash: Deterministic hashing of schemas and payloads

Invariants:
    - A code is permanent once allocated and never reused
    - Schema versions are dense: 1, 2, 3, ... per code
    - Hashes are computed over sorted-key, compact JSON so that key order in
      the caller's dict never produces a spurious version bump
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any


class FlatType(Enum):
    """Type names accepted by the flat schema dialect."""

    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"
    ANY = "any"

    @classmethod
    def from_str(cls, value: str) -> FlatType:
        """Convert string representation to FlatType.

        Raises:
            ValueError: If value is not a valid type name
        """
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid field type '{value}'. Valid types: {valid}")

    def accepts(self, value: Any) -> bool:
        """Whether a decoded JSON value belongs to this type."""
        if self is FlatType.ANY:
            return True
        if self is FlatType.STRING:
            return isinstance(value, str)
        if self is FlatType.INTEGER:
            return isinstance(value, int) and not isinstance(value, bool)
        if self in (FlatType.FLOAT, FlatType.NUMBER):
            return isinstance(value, (int, float)) and not isinstance(value, bool)
        if self is FlatType.BOOLEAN:
            return isinstance(value, bool)
        if self is FlatType.ARRAY:
            return isinstance(value, list)
        return isinstance(value, dict)


# Keywords that mark a schema as structured (JSON Schema) rather than flat.
STRUCTURED_KEYWORDS = frozenset(
    {"$schema", "$id", "$ref", "$defs", "properties", "required", "additionalProperties"}
)


def is_flat_schema(schema: Any) -> bool:
    """Whether ``schema`` is written in the flat ``{field: typeName}`` dialect.

    An empty schema is treated as structured (it accepts any object), and so
    is any schema whose root ``type`` is ``"object"``. A flat schema therefore
    cannot declare a field named ``type`` of type ``object``.
    """
    if not isinstance(schema, dict) or not schema:
        return False
    if STRUCTURED_KEYWORDS & schema.keys() or schema.get("type") == "object":
        return False
    return all(isinstance(v, str) for v in schema.values())


def json_type_name(value: Any) -> str:
    """JSON type name of a decoded value, for error messages."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def canonical_json(value: Any) -> str:
    """Deterministic JSON encoding (sorted keys, no whitespace).

    Raises:
        ValueError: If value holds NaN or an infinity
    """
    return json.dumps(
        value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False
    )


def content_hash(value: Any) -> str:
    """SHA-256 fingerprint of a JSON value in the form 'sha256:<hex>'."""
    digest = hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


@dataclass(frozen=True)
class Registration:
    """A registered kind.

    Attributes:
        code: Permanent short code, the slug prefix (e.g. "E", "EN")
        kind: Lower-cased kind name
        plugin: Lower-cased owning plugin name
        description: Optional human-readable description
        symbol: Optional display symbol
        version: Current schema version
    """

    code: str
    kind: str
    plugin: str
    description: str | None
    symbol: str | None
    version: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "code": self.code,
            "kind": self.kind,
            "plugin": self.plugin,
            "description": self.description,
            "symbol": self.symbol,
            "version": self.version,
        }


@dataclass(frozen=True)
class SchemaVersion:
    """One stored revision of a kind's schema.

    Attributes:
        code: Registration code
        version: Revision number (1-based)
        schema: Decoded schema document
        hash: Fingerprint of the normalized schema
        created_at: Creation timestamp (Unix ms)
    """

    code: str
    version: int
    schema: Any
    hash: str
    created_at: int
