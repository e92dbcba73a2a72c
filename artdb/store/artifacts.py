"""
Artifact store for ArtDB.

Artifacts are versioned JSON payloads of a registered kind. Every version
owns its own global id and the versions of one logical entity form a
copy-on-write chain linked through ``successor_id``.

Invariants:
    - successor_id IS NULL marks the current version; once set it never changes
    - Following successor_id from any member of a chain ends at exactly one
      current row; walking predecessors ends at exactly one root
    - A payload is validated against the registration's current schema
      version before any identity is allocated
    - The COW re-read, insert and supersede run in one write transaction

How to change safely:
    - Never clear successor_id; COW history depends on it
    - Keep condition keys validated before they are inlined into SQL
    - update_in_place() must not touch successor_id or created_at

Example:
    >>> memo = await artifacts.create("memo", {"title": "draft"})
    >>> memo.slug
    'M1'
    >>> v2 = await artifacts.update(memo.id, {"title": "final"})
    >>> [a.data["title"] for a in await artifacts.history(v2.id)]
    ['draft', 'final']
"""

from __future__ import annotations

import json
import logging
import math
import re
import sqlite3
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, NewType

from ..database import Database, Scope, now_ms
from ..errors import (
    ArtifactNotFoundError,
    ErrorKind,
    FieldError,
    SchemaDefinitionError,
    SupersededConflictError,
    UnknownKindError,
    ValidationError,
)
from ..schema.registry import FIELD_NAME_RE, KindRegistry
from ..schema.types import Registration, canonical_json, content_hash, json_type_name
from ..schema.validator import SchemaValidator

logger = logging.getLogger(__name__)

ArtifactId = NewType("ArtifactId", int)

# Ids are allocated from 1 and SQLite INTEGER is a signed 64-bit value.
MAX_ARTIFACT_ID = 2**63 - 1

SLUG_RE = re.compile(r"^([A-Za-z]+)(\d+)$")

ARTIFACT_COLUMNS = (
    "a.id, a.code, a.version, a.data, a.hash, a.successor_id, a.updated_at, i.created_at"
)
ARTIFACT_SELECT = f"SELECT {ARTIFACT_COLUMNS} FROM artifact a JOIN identity i ON i.id = a.id"


@dataclass
class Artifact:
    """One stored version of an artifact.

    Attributes:
        id: Global id of this version
        code: Registration code of the kind
        version: Schema version the payload was validated against
        data: Payload
        hash: Fingerprint of the payload
        created_at: Creation timestamp of this version (Unix ms)
        successor_id: Id of the next version, None while current
        updated_at: Last in-place patch timestamp (Unix ms), if any
    """

    id: ArtifactId
    code: str
    version: int
    data: dict[str, Any]
    hash: str
    created_at: int
    successor_id: int | None = None
    updated_at: int | None = None

    @property
    def slug(self) -> str:
        return f"{self.code}{self.id}"

    @property
    def is_current(self) -> bool:
        return self.successor_id is None

    @property
    def is_superseded(self) -> bool:
        return self.successor_id is not None

    def __getitem__(self, key: str) -> Any:
        return self.data[key]

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


def to_artifact_id(value: Artifact | int) -> ArtifactId:
    """Convert an Artifact or a raw id into the id the stores accept.

    Store methods take ArtifactId only; call this once where an Artifact
    object is at hand.

    Raises:
        TypeError: If value is neither an Artifact nor an int
    """
    if isinstance(value, Artifact):
        return value.id
    if isinstance(value, int) and not isinstance(value, bool):
        return ArtifactId(value)
    raise TypeError(f"Expected an Artifact or an int id, got {type(value).__name__}")


def checked_id(artifact_id: ArtifactId) -> ArtifactId | None:
    """Check an id handed to a store method.

    Returns:
        The id, or None when it is outside 1..MAX_ARTIFACT_ID and so can
        never name a stored row

    Raises:
        TypeError: If artifact_id is not an int
    """
    if not isinstance(artifact_id, int) or isinstance(artifact_id, bool):
        raise TypeError(
            f"Expected an ArtifactId, got {type(artifact_id).__name__}; use to_artifact_id()"
        )
    if not 1 <= artifact_id <= MAX_ARTIFACT_ID:
        return None
    return ArtifactId(artifact_id)


def parse_slug(slug: str) -> tuple[str, ArtifactId] | None:
    """Split a ``{CODE}{id}`` slug into its upper-cased code and id.

    Returns None for a malformed slug or an id that cannot exist.
    """
    match = SLUG_RE.match(slug.strip()) if isinstance(slug, str) else None
    if not match:
        return None
    artifact_id = checked_id(ArtifactId(int(match.group(2))))
    if artifact_id is None:
        return None
    return match.group(1).upper(), artifact_id


def row_to_artifact(row: sqlite3.Row) -> Artifact:
    return Artifact(
        id=ArtifactId(row["id"]),
        code=row["code"],
        version=row["version"],
        data=json.loads(row["data"]),
        hash=row["hash"],
        created_at=row["created_at"],
        successor_id=row["successor_id"],
        updated_at=row["updated_at"],
    )


def _non_finite(value: Any, path: str = "") -> Iterator[str]:
    if isinstance(value, float) and not math.isfinite(value):
        yield path
    elif isinstance(value, dict):
        for key, item in value.items():
            yield from _non_finite(item, f"{path}.{key}" if path else str(key))
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            yield from _non_finite(item, f"{path}.{index}" if path else str(index))


def to_json_value(data: Any) -> Any:
    """Round-trip a value through strict JSON so stored and returned data agree.

    NaN and infinities are refused: SQLite's JSON functions reject the
    documents Python would write for them.

    Raises:
        ValidationError: If the value is not representable as JSON
    """
    bad = list(_non_finite(data))
    if bad:
        raise ValidationError(
            [FieldError(path, "number must be finite", ErrorKind.TYPE) for path in bad]
        )
    try:
        return json.loads(json.dumps(data, allow_nan=False))
    except (TypeError, ValueError) as e:
        raise ValidationError([FieldError("", f"payload is not JSON serializable: {e}")]) from e


def _normalize(data: Any) -> dict[str, Any]:
    normalized = to_json_value(data)
    if not isinstance(normalized, dict):
        raise ValidationError(
            [FieldError("", f"expected object, got {json_type_name(normalized)}", ErrorKind.TYPE)]
        )
    return normalized


class ArtifactStore:
    """Create, read and version artifacts.

    Every method accepts an optional ``scope``. Inside a scope the call runs
    on the scope's connection (writes in a savepoint); otherwise it borrows
    a pooled connection and, for writes, its own transaction.
    """

    def __init__(
        self,
        db: Database,
        registry: KindRegistry,
        validator: SchemaValidator | None = None,
    ) -> None:
        self.db = db
        self.registry = registry
        self.validator = validator or registry.validator

    # -- Create --

    async def create(
        self,
        kind_or_code: str,
        data: dict[str, Any],
        strict: bool = True,
        scope: Scope | None = None,
    ) -> Artifact:
        """Create the first version of an artifact.

        Args:
            kind_or_code: Registration code or kind name
            data: Payload
            strict: Reject fields the schema does not declare
            scope: Optional transaction scope

        Returns:
            The stored artifact (with schema defaults applied)

        Raises:
            UnknownKindError: If nothing is registered under kind_or_code
            ValidationError: If the payload violates the schema
        """
        payload = _normalize(data)
        async with self.db.write(scope) as conn:
            reg = self.registry.lookup(conn, kind_or_code)
            if reg is None:
                raise UnknownKindError(kind_or_code)
            return self._insert(conn, reg, payload, strict)

    async def create_for(
        self,
        plugin: str,
        kind: str,
        data: dict[str, Any],
        strict: bool = True,
        scope: Scope | None = None,
    ) -> Artifact:
        """Create an artifact of a kind addressed by its owning plugin."""
        payload = _normalize(data)
        async with self.db.write(scope) as conn:
            reg = self.registry.lookup_plugin_kind(conn, plugin, kind)
            if reg is None:
                raise UnknownKindError(kind, plugin=plugin)
            return self._insert(conn, reg, payload, strict)

    def _validated(
        self,
        conn: sqlite3.Connection,
        reg: Registration,
        payload: dict[str, Any],
        strict: bool,
    ) -> dict[str, Any]:
        schema = self.registry.load_schema(conn, reg.code, reg.version)
        if schema is None:
            raise UnknownKindError(reg.code)
        return self.validator.check(payload, schema.schema, strict).raise_if_invalid(reg.kind)

    def _insert(
        self,
        conn: sqlite3.Connection,
        reg: Registration,
        payload: dict[str, Any],
        strict: bool,
    ) -> Artifact:
        data = self._validated(conn, reg, payload, strict)
        data_hash = content_hash(data)

        artifact_id, created_at = Database.allocate_identity(conn)
        conn.execute(
            """
            INSERT INTO artifact (id, code, version, data, hash, successor_id, updated_at)
            VALUES (?, ?, ?, ?, ?, NULL, NULL)
            """,
            (artifact_id, reg.code, reg.version, canonical_json(data), data_hash),
        )

        logger.debug(
            "Created artifact",
            extra={"artifact_id": artifact_id, "code": reg.code, "version": reg.version},
        )

        return Artifact(
            id=ArtifactId(artifact_id),
            code=reg.code,
            version=reg.version,
            data=data,
            hash=data_hash,
            created_at=created_at,
        )

    # -- Read --

    @staticmethod
    def lookup(conn: sqlite3.Connection, artifact_id: int) -> Artifact | None:
        """Load one version on an already-open connection."""
        row = conn.execute(f"{ARTIFACT_SELECT} WHERE a.id = ?", (artifact_id,)).fetchone()
        return row_to_artifact(row) if row else None

    @classmethod
    def lookup_slug(cls, conn: sqlite3.Connection, slug: str) -> Artifact | None:
        """Resolve a slug on an already-open connection."""
        parsed = parse_slug(slug)
        if parsed is None:
            return None
        code, artifact_id = parsed
        artifact = cls.lookup(conn, artifact_id)
        if artifact is None or artifact.code.upper() != code:
            return None
        return artifact

    async def find(self, artifact_id: ArtifactId, scope: Scope | None = None) -> Artifact | None:
        """Load one version by id (None when absent)."""
        artifact_id = checked_id(artifact_id)
        if artifact_id is None:
            return None
        with self.db.connection(scope) as conn:
            return self.lookup(conn, artifact_id)

    async def find_slug(self, slug: str, scope: Scope | None = None) -> Artifact | None:
        """Load one version by its ``{CODE}{id}`` slug.

        The code part is compared case-insensitively with the stored code; a
        malformed slug, an impossible id or a code that does not match
        yields None.
        """
        with self.db.connection(scope) as conn:
            return self.lookup_slug(conn, slug)

    async def where(
        self,
        kind_or_code: str,
        include_superseded: bool = False,
        conditions: dict[str, Any] | None = None,
        scope: Scope | None = None,
    ) -> list[Artifact]:
        """List artifacts of one kind, ordered by id.

        Args:
            kind_or_code: Registration code or kind name
            include_superseded: Include old versions as well as current ones
            conditions: Equality filters on top-level payload fields
            scope: Optional transaction scope

        Returns:
            Matching artifacts (empty when the kind is unknown)

        Raises:
            SchemaDefinitionError: If a condition key is not a plain field name
        """
        conditions = conditions or {}
        bad_keys = [k for k in conditions if not FIELD_NAME_RE.match(k)]
        if bad_keys:
            raise SchemaDefinitionError(f"Invalid condition fields: {bad_keys}", errors=bad_keys)

        with self.db.connection(scope) as conn:
            reg = self.registry.lookup(conn, kind_or_code)
            if reg is None:
                return []

            # The code is inlined so per-kind partial indexes can be used.
            clauses = [f"a.code = '{reg.code}'"]
            params: list[Any] = []
            if not include_superseded:
                clauses.append("a.successor_id IS NULL")
            for key, value in conditions.items():
                expr = f"json_extract(a.data, '$.{key}')"
                if value is None:
                    clauses.append(f"{expr} IS NULL")
                elif isinstance(value, (dict, list)):
                    clauses.append(f"{expr} = ?")
                    params.append(canonical_json(value))
                else:
                    clauses.append(f"{expr} = ?")
                    params.append(value)

            rows = conn.execute(
                f"{ARTIFACT_SELECT} WHERE {' AND '.join(clauses)} ORDER BY a.id",
                params,
            ).fetchall()
            return [row_to_artifact(row) for row in rows]

    async def count(
        self,
        kind_or_code: str | None = None,
        include_superseded: bool = False,
        scope: Scope | None = None,
    ) -> int:
        """Number of artifacts, optionally of one kind."""
        with self.db.connection(scope) as conn:
            clauses = []
            params: list[Any] = []
            if kind_or_code is not None:
                reg = self.registry.lookup(conn, kind_or_code)
                if reg is None:
                    return 0
                clauses.append("code = ?")
                params.append(reg.code)
            if not include_superseded:
                clauses.append("successor_id IS NULL")
            where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
            return conn.execute(f"SELECT COUNT(*) FROM artifact{where}", params).fetchone()[0]

    async def stats(self, scope: Scope | None = None) -> dict[str, dict[str, int]]:
        """Per-code counts of current and total versions."""
        with self.db.connection(scope) as conn:
            rows = conn.execute(
                """
                SELECT code,
                       SUM(CASE WHEN successor_id IS NULL THEN 1 ELSE 0 END) AS current,
                       COUNT(*) AS total
                FROM artifact
                GROUP BY code
                ORDER BY code
                """
            ).fetchall()
            return {row["code"]: {"current": row["current"], "total": row["total"]} for row in rows}

    # -- Update --

    def _existing(self, conn: sqlite3.Connection, artifact_id: ArtifactId) -> Artifact:
        checked = checked_id(artifact_id)
        existing = self.lookup(conn, checked) if checked is not None else None
        if existing is None:
            raise ArtifactNotFoundError(artifact_id)
        return existing

    def _merged(
        self,
        conn: sqlite3.Connection,
        existing: Artifact,
        patch: dict[str, Any],
    ) -> tuple[Registration, dict[str, Any]]:
        reg = self.registry.lookup_code(conn, existing.code)
        if reg is None:
            raise UnknownKindError(existing.code)
        merged = {**existing.data, **patch}
        return reg, merged

    async def update(
        self,
        artifact_id: ArtifactId,
        data: dict[str, Any],
        strict: bool = True,
        scope: Scope | None = None,
    ) -> Artifact:
        """Copy-on-write update: store a new version and supersede this one.

        The patch is shallow-merged over the stored payload and the result is
        validated against the registration's current schema version.

        Returns:
            The new current version

        Raises:
            ArtifactNotFoundError: If the row does not exist
            SupersededConflictError: If the row already has a successor
            ValidationError: If the merged payload violates the schema
        """
        patch = _normalize(data)

        async with self.db.write(scope) as conn:
            existing = self._existing(conn, artifact_id)
            if existing.successor_id is not None:
                raise SupersededConflictError(existing.id, existing.successor_id)

            reg, merged = self._merged(conn, existing, patch)
            new = self._insert(conn, reg, merged, strict)
            conn.execute(
                "UPDATE artifact SET successor_id = ? WHERE id = ?",
                (new.id, existing.id),
            )

        logger.debug(
            "Superseded artifact",
            extra={"artifact_id": existing.id, "successor_id": new.id, "code": new.code},
        )
        return new

    async def update_in_place(
        self,
        artifact_id: ArtifactId,
        data: dict[str, Any],
        strict: bool = True,
        scope: Scope | None = None,
    ) -> Artifact:
        """Patch a version's payload without creating a new version.

        Rewrites data, version, hash and updated_at of the same row;
        successor_id and created_at are left alone. Superseded rows are not
        refused.

        Raises:
            ArtifactNotFoundError: If the row does not exist
            ValidationError: If the merged payload violates the schema
        """
        patch = _normalize(data)

        async with self.db.write(scope) as conn:
            existing = self._existing(conn, artifact_id)
            if existing.successor_id is not None:
                logger.warning(
                    f"Patching superseded artifact {existing.slug} in place "
                    f"(successor {existing.successor_id})"
                )

            reg, merged = self._merged(conn, existing, patch)
            validated = self._validated(conn, reg, merged, strict)
            data_hash = content_hash(validated)
            updated_at = max(now_ms(), (existing.updated_at or 0) + 1)
            conn.execute(
                "UPDATE artifact SET data = ?, version = ?, hash = ?, updated_at = ? WHERE id = ?",
                (canonical_json(validated), reg.version, data_hash, updated_at, existing.id),
            )

        logger.debug(
            "Patched artifact in place",
            extra={"artifact_id": existing.id, "code": existing.code, "version": reg.version},
        )

        return Artifact(
            id=existing.id,
            code=existing.code,
            version=reg.version,
            data=validated,
            hash=data_hash,
            created_at=existing.created_at,
            successor_id=existing.successor_id,
            updated_at=updated_at,
        )

    # -- Version chain --

    @staticmethod
    def _lookup_predecessor(conn: sqlite3.Connection, artifact_id: int) -> Artifact | None:
        row = conn.execute(
            f"{ARTIFACT_SELECT} WHERE a.successor_id = ?", (artifact_id,)
        ).fetchone()
        return row_to_artifact(row) if row else None

    async def successor(
        self, artifact_id: ArtifactId, scope: Scope | None = None
    ) -> Artifact | None:
        """The next version, or None for the current one."""
        artifact_id = checked_id(artifact_id)
        if artifact_id is None:
            return None
        with self.db.connection(scope) as conn:
            current = self.lookup(conn, artifact_id)
            if current is None or current.successor_id is None:
                return None
            return self.lookup(conn, current.successor_id)

    async def predecessor(
        self, artifact_id: ArtifactId, scope: Scope | None = None
    ) -> Artifact | None:
        """The previous version, or None for the root."""
        artifact_id = checked_id(artifact_id)
        if artifact_id is None:
            return None
        with self.db.connection(scope) as conn:
            return self._lookup_predecessor(conn, artifact_id)

    async def latest(
        self, artifact_id: ArtifactId, scope: Scope | None = None
    ) -> Artifact | None:
        """Follow successors to the current version (None if the row is gone)."""
        artifact_id = checked_id(artifact_id)
        if artifact_id is None:
            return None
        with self.db.connection(scope) as conn:
            current = self.lookup(conn, artifact_id)
            while current is not None and current.successor_id is not None:
                nxt = self.lookup(conn, current.successor_id)
                if nxt is None:
                    break
                current = nxt
            return current

    async def history(self, artifact_id: ArtifactId, scope: Scope | None = None) -> list[Artifact]:
        """Every version of the chain this row belongs to, oldest first."""
        artifact_id = checked_id(artifact_id)
        if artifact_id is None:
            return []
        with self.db.connection(scope) as conn:
            root = self.lookup(conn, artifact_id)
            if root is None:
                return []
            while True:
                previous = self._lookup_predecessor(conn, root.id)
                if previous is None:
                    break
                root = previous

            chain = [root]
            while chain[-1].successor_id is not None:
                nxt = self.lookup(conn, chain[-1].successor_id)
                if nxt is None:
                    break
                chain.append(nxt)
            return chain

    # -- Delete --

    async def delete(self, artifact_id: ArtifactId, scope: Scope | None = None) -> bool:
        """Hard-delete one version.

        Links and taggings touching the id go with it; other versions of the
        chain are untouched.

        Returns:
            True if deleted, False if not found
        """
        artifact_id = checked_id(artifact_id)
        if artifact_id is None:
            return False
        async with self.db.write(scope) as conn:
            conn.execute("DELETE FROM artifact WHERE id = ?", (artifact_id,))
            cursor = conn.execute("DELETE FROM identity WHERE id = ?", (artifact_id,))
            deleted = cursor.rowcount > 0

        if deleted:
            logger.debug("Deleted artifact", extra={"artifact_id": artifact_id})
        return deleted
