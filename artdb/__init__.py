"""
ArtDB - schema-validated, versioned artifact store on SQLite.

This package provides:
- KindRegistry: plugins register kinds with a schema and get a short code
- SchemaValidator: flat or JSON Schema validation with defaults
- ArtifactStore: copy-on-write versioned artifacts addressed by slug
- LinkStore / TagStore: typed edges and tags between artifacts
- ArtifactDB: service object wiring them together with transactions

Example:
    >>> from artdb import ArtifactDB
    >>>
    >>> async with ArtifactDB.at("/tmp/art.db") as db:
    ...     await db.registry.register("memo", "notes", {"title": "string"})
    ...     memo = await db.artifacts.create("memo", {"title": "draft"})
    ...     memo.slug
    'M1'

Invariants:
    - Ids are global across kinds and never reused
    - Codes are permanent once allocated
    - Every write is atomic

Version: 0.1.0
"""

__version__ = "0.1.0"

from .client import ArtifactDB, Transaction
from .config import ObservabilityConfig, StorageConfig, StoreConfig
from .database import Database, Scope
from .errors import (
    ArtDbError,
    ArtifactNotFoundError,
    DuplicateLinkError,
    ErrorKind,
    FieldError,
    InvalidSlugError,
    Rollback,
    SchemaDefinitionError,
    SupersededConflictError,
    TransactionError,
    UnknownKindError,
    ValidationError,
)
from .log import setup_logging
from .schema import (
    FlatType,
    KindRegistry,
    Registration,
    SchemaValidator,
    SchemaVersion,
    ValidationResult,
)
from .store import (
    Artifact,
    ArtifactId,
    ArtifactStore,
    Link,
    LinkStore,
    Tag,
    TagStore,
    to_artifact_id,
)

__all__ = [
    "__version__",
    # Service
    "ArtifactDB",
    "Transaction",
    # Config
    "ObservabilityConfig",
    "StorageConfig",
    "StoreConfig",
    "setup_logging",
    # Database
    "Database",
    "Scope",
    # Schema
    "FlatType",
    "KindRegistry",
    "Registration",
    "SchemaValidator",
    "SchemaVersion",
    "ValidationResult",
    # Stores
    "Artifact",
    "ArtifactId",
    "ArtifactStore",
    "Link",
    "LinkStore",
    "Tag",
    "TagStore",
    "to_artifact_id",
    # Errors
    "ArtDbError",
    "ArtifactNotFoundError",
    "DuplicateLinkError",
    "ErrorKind",
    "FieldError",
    "InvalidSlugError",
    "Rollback",
    "SchemaDefinitionError",
    "SupersededConflictError",
    "TransactionError",
    "UnknownKindError",
    "ValidationError",
]
