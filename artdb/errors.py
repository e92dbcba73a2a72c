"""
Error types for ArtDB.

This module defines all exception types raised by the stores:
- ArtDbError: Base exception
- ValidationError: Payload failed schema validation (all violations)
- UnknownKindError: Kind or code is not registered
- SupersededConflictError: COW update on a non-current version
- ArtifactNotFoundError: Mutation aimed at a row that does not exist
- InvalidSlugError: Slug is malformed or names no artifact
- DuplicateLinkError: Link triple already exists
- SchemaDefinitionError: Malformed schema, kind or field name
- TransactionError: Writer lock timeout or misuse of a closed scope

Invariants:
    - All errors inherit from ArtDbError (Rollback is a control signal, not an error)
    - Validation and resolution errors are raised before any write happens
    - Lookups never raise for absent rows; they return None or []
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorKind(Enum):
    """Category of a field-level validation failure."""

    MISSING = "missing"
    TYPE = "type"
    CONSTRAINT = "constraint"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class FieldError:
    """A single field-level violation.

    Attributes:
        field: Dotted path of the offending field ("" for the document root)
        message: Human-readable description
        kind: Violation category
    """

    field: str
    message: str
    kind: ErrorKind = ErrorKind.CONSTRAINT

    def __str__(self) -> str:
        return f"{self.field or '(root)'}: {self.message}"

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message, "kind": self.kind.value}


class ArtDbError(Exception):
    """Base exception for all ArtDB errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "ARTDB_ERROR"
        self.details = details or {}


class ValidationError(ArtDbError):
    """Payload validation failed.

    Carries every violation found in one pass, never just the first.

    Raised when:
    - Required field is missing
    - Field value has wrong type
    - A constraint (enum, bounds, pattern, ...) is violated
    - An undeclared field is present in strict mode
    """

    def __init__(self, errors: list[FieldError], kind: str | None = None) -> None:
        summary = "; ".join(str(e) for e in errors)
        prefix = f"Validation failed for {kind}" if kind else "Validation failed"
        super().__init__(
            f"{prefix}: {summary}",
            code="VALIDATION_ERROR",
            details={"kind": kind, "errors": [e.to_dict() for e in errors]},
        )
        self.errors = list(errors)

    @property
    def fields(self) -> list[str]:
        """Names of the offending fields, in report order."""
        return [e.field for e in self.errors]


class UnknownKindError(ArtDbError):
    """No registration matches the requested kind, code or plugin/kind pair."""

    def __init__(self, kind: str, plugin: str | None = None) -> None:
        label = f"{plugin}/{kind}" if plugin else kind
        super().__init__(
            f"Unknown artifact kind: {label}",
            code="UNKNOWN_KIND",
            details={"kind": kind, "plugin": plugin},
        )
        self.kind = kind
        self.plugin = plugin


class SupersededConflictError(ArtDbError):
    """COW update attempted on a version that already has a successor."""

    def __init__(self, artifact_id: int, successor_id: int) -> None:
        super().__init__(
            f"Cannot update superseded artifact {artifact_id} "
            f"(superseded by {successor_id}); operate on latest()",
            code="SUPERSEDED_CONFLICT",
            details={"artifact_id": artifact_id, "successor_id": successor_id},
        )
        self.artifact_id = artifact_id
        self.successor_id = successor_id


class ArtifactNotFoundError(ArtDbError):
    """A mutation referenced an artifact id that does not exist."""

    def __init__(self, artifact_id: int) -> None:
        super().__init__(
            f"Artifact not found: {artifact_id}",
            code="NOT_FOUND",
            details={"resource_type": "artifact", "resource_id": artifact_id},
        )
        self.artifact_id = artifact_id


class InvalidSlugError(ArtDbError):
    """A slug used to name an artifact is malformed or resolves to nothing."""

    def __init__(self, slug: str) -> None:
        super().__init__(
            f"Invalid artifact slug: {slug!r}",
            code="INVALID_SLUG",
            details={"slug": slug},
        )
        self.slug = slug


class DuplicateLinkError(ArtDbError):
    """A link with the same (from_id, to_id, rel) triple already exists."""

    def __init__(self, from_id: int, to_id: int, rel: str) -> None:
        super().__init__(
            f"Link already exists: {from_id} -[{rel}]-> {to_id}",
            code="DUPLICATE_LINK",
            details={"from_id": from_id, "to_id": to_id, "rel": rel},
        )
        self.from_id = from_id
        self.to_id = to_id
        self.rel = rel


class SchemaDefinitionError(ArtDbError):
    """A schema, kind name, index field or condition key is malformed."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(
            message,
            code="SCHEMA_ERROR",
            details={"errors": errors or []},
        )
        self.errors = errors or []


class TransactionError(ArtDbError):
    """Transaction could not be started or was used after it ended."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="TRANSACTION_ERROR")


class Rollback(Exception):
    """Raise inside a transaction block to roll back without surfacing an error."""
