"""
Kind Registry for ArtDB.

The KindRegistry is the central authority for artifact kinds. It provides:
- Registration of (plugin, kind) pairs with a schema
- Shortest-unique-prefix allocation of permanent short codes
- Schema revision tracking by content hash
- Per-kind expression indexes on JSON fields

Invariants:
    - A code is allocated once and never reassigned or reused
    - Code allocation depends only on registration order and existing codes
    - A new schema revision is stored only when the normalized hash changes
    - registry.version always equals the highest schema.version for the code
    - The whole check-then-write sequence runs in one write transaction

How to change safely:
    - Never change the hashing normalization (it would bump every kind)
    - Keep index names scoped by code so kinds sharing a field don't collide
    - There is no deregistration; do not add one without revisiting codes

Example:
    >>> registry = KindRegistry(db)
    >>> await registry.register("event", "memo", {"title": "string"})
    'E'
    >>> await registry.register("entry", "blog", {"title": "string"})
    'EN'
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from collections.abc import Iterable
from typing import Any

from ..database import Database, Scope, now_ms
from ..errors import SchemaDefinitionError
from .types import Registration, SchemaVersion, canonical_json, content_hash
from .validator import SchemaValidator

logger = logging.getLogger(__name__)

_KIND_RE = re.compile(r"^[a-z]+$")
FIELD_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_REGISTRATION_COLUMNS = "code, kind, plugin, description, symbol, version"


def _row_to_registration(row: sqlite3.Row) -> Registration:
    return Registration(
        code=row["code"],
        kind=row["kind"],
        plugin=row["plugin"],
        description=row["description"],
        symbol=row["symbol"],
        version=row["version"],
    )


def _row_to_schema_version(row: sqlite3.Row) -> SchemaVersion:
    return SchemaVersion(
        code=row["code"],
        version=row["version"],
        schema=json.loads(row["json"]),
        hash=row["hash"],
        created_at=row["created_at"],
    )


def index_name(code: str, field: str) -> str:
    """Name of the expression index backing ``field`` for ``code``."""
    return f"idx_artifact_{code.lower()}_{field}"


class KindRegistry:
    """Persistent registry of artifact kinds.

    Thread-safety:
        Registration goes through Database.write(), so concurrent
        registrations are serialized and never share a code or double-bump
        a version. Lookups are plain reads.

    Attributes:
        db: Database the registry tables live in
        validator: Validator used to reject malformed schemas up front
    """

    def __init__(self, db: Database, validator: SchemaValidator | None = None) -> None:
        self.db = db
        self.validator = validator or SchemaValidator()

    async def register(
        self,
        kind: str,
        plugin: str,
        schema: Any,
        description: str | None = None,
        symbol: str | None = None,
        index: Iterable[str] = (),
        scope: Scope | None = None,
    ) -> str:
        """Register a kind, or re-register it with a possibly changed schema.

        Args:
            kind: Kind name (ASCII letters; case-insensitive)
            plugin: Owning plugin name (case-insensitive)
            schema: Flat or structured schema document
            description: Optional description (stored on first registration)
            symbol: Optional display symbol (stored on first registration)
            index: JSON field names to back with expression indexes
            scope: Optional transaction scope

        Returns:
            The kind's permanent code

        Raises:
            SchemaDefinitionError: If the kind, schema or an index field is malformed
        """
        kind = kind.strip().lower()
        plugin = plugin.strip().lower()
        index = list(index)

        if not _KIND_RE.match(kind):
            raise SchemaDefinitionError(f"Kind name must be ASCII letters only, got '{kind}'")
        if not plugin:
            raise SchemaDefinitionError("Plugin name cannot be empty")
        bad_fields = [f for f in index if not FIELD_NAME_RE.match(f)]
        if bad_fields:
            raise SchemaDefinitionError(f"Invalid index field names: {bad_fields}", errors=bad_fields)
        self.validator.check_schema(schema)

        try:
            schema_json = canonical_json(schema)
        except (TypeError, ValueError) as e:
            raise SchemaDefinitionError(f"Schema is not representable as JSON: {e}") from e
        schema_hash = content_hash(schema)

        async with self.db.write(scope) as conn:
            existing = conn.execute(
                "SELECT code, version FROM registry WHERE plugin = ? AND kind = ?",
                (plugin, kind),
            ).fetchone()

            if existing:
                code = existing["code"]
                last = conn.execute(
                    "SELECT hash FROM schema WHERE code = ? ORDER BY version DESC LIMIT 1",
                    (code,),
                ).fetchone()

                if last is None or last["hash"] != schema_hash:
                    conn.execute("UPDATE registry SET version = version + 1 WHERE code = ?", (code,))
                    new_version = conn.execute(
                        "SELECT version FROM registry WHERE code = ?", (code,)
                    ).fetchone()["version"]
                    conn.execute(
                        "INSERT INTO schema (code, version, json, hash, created_at) VALUES (?, ?, ?, ?, ?)",
                        (code, new_version, schema_json, schema_hash, now_ms()),
                    )
                    logger.info(
                        f"Schema changed for {plugin}/{kind}: {code} now at version {new_version}"
                    )
            else:
                code = self._allocate_code(conn, kind)
                conn.execute(
                    "INSERT INTO registry (code, kind, plugin, description, symbol, version) "
                    "VALUES (?, ?, ?, ?, ?, 1)",
                    (code, kind, plugin, description, symbol),
                )
                conn.execute(
                    "INSERT INTO schema (code, version, json, hash, created_at) VALUES (?, 1, ?, ?, ?)",
                    (code, schema_json, schema_hash, now_ms()),
                )
                logger.info(f"Registered kind {plugin}/{kind} as {code}")

            self._create_indexes(conn, code, index)

        return code

    @staticmethod
    def _allocate_code(conn: sqlite3.Connection, kind: str) -> str:
        """Shortest upper-case prefix of ``kind`` not yet used as a code.

        Falls back to KIND1, KIND2, ... once every prefix is taken.
        """
        kind_upper = kind.upper()

        def taken(candidate: str) -> bool:
            return (
                conn.execute("SELECT 1 FROM registry WHERE code = ?", (candidate,)).fetchone()
                is not None
            )

        for length in range(1, len(kind_upper) + 1):
            candidate = kind_upper[:length]
            if not taken(candidate):
                return candidate

        suffix = 1
        while taken(f"{kind_upper}{suffix}"):
            suffix += 1
        return f"{kind_upper}{suffix}"

    @staticmethod
    def _create_indexes(conn: sqlite3.Connection, code: str, fields: list[str]) -> None:
        # Field names are checked against FIELD_NAME_RE and codes are
        # letters and digits, so both are safe to inline.
        for field in fields:
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS {index_name(code, field)} "
                f"ON artifact(json_extract(data, '$.{field}')) WHERE code = '{code}'"
            )

    # -- Connection-level lookups (for callers already holding a connection) --

    @staticmethod
    def lookup_code(conn: sqlite3.Connection, code: str) -> Registration | None:
        row = conn.execute(
            f"SELECT {_REGISTRATION_COLUMNS} FROM registry WHERE code = ?",
            (code.upper(),),
        ).fetchone()
        return _row_to_registration(row) if row else None

    @staticmethod
    def lookup_plugin_kind(conn: sqlite3.Connection, plugin: str, kind: str) -> Registration | None:
        row = conn.execute(
            f"SELECT {_REGISTRATION_COLUMNS} FROM registry WHERE plugin = ? AND kind = ?",
            (plugin.strip().lower(), kind.strip().lower()),
        ).fetchone()
        return _row_to_registration(row) if row else None

    @staticmethod
    def lookup_kind(conn: sqlite3.Connection, kind: str) -> Registration | None:
        row = conn.execute(
            f"SELECT {_REGISTRATION_COLUMNS} FROM registry WHERE kind = ? ORDER BY rowid LIMIT 1",
            (kind.strip().lower(),),
        ).fetchone()
        return _row_to_registration(row) if row else None

    @classmethod
    def lookup(cls, conn: sqlite3.Connection, kind_or_code: str) -> Registration | None:
        """Exact code match first (case-insensitive), then kind name."""
        return cls.lookup_code(conn, kind_or_code) or cls.lookup_kind(conn, kind_or_code)

    @staticmethod
    def load_schema(
        conn: sqlite3.Connection, code: str, version: int | None = None
    ) -> SchemaVersion | None:
        if version is None:
            row = conn.execute(
                "SELECT * FROM schema WHERE code = ? ORDER BY version DESC LIMIT 1",
                (code.upper(),),
            ).fetchone()
        else:
            row = conn.execute(
                "SELECT * FROM schema WHERE code = ? AND version = ?",
                (code.upper(), version),
            ).fetchone()
        return _row_to_schema_version(row) if row else None

    # -- Lookups --

    async def find(self, code: str, scope: Scope | None = None) -> Registration | None:
        """Lookup a registration by code (case-insensitive)."""
        with self.db.connection(scope) as conn:
            return self.lookup_code(conn, code)

    async def find_plugin_kind(
        self, plugin: str, kind: str, scope: Scope | None = None
    ) -> Registration | None:
        """Lookup a registration by plugin and kind."""
        with self.db.connection(scope) as conn:
            return self.lookup_plugin_kind(conn, plugin, kind)

    async def find_by_kind(self, kind: str, scope: Scope | None = None) -> Registration | None:
        """Lookup a registration by kind name only.

        When several plugins registered the same kind name, the earliest
        registration wins. This is not treated as an error.
        """
        with self.db.connection(scope) as conn:
            return self.lookup_kind(conn, kind)

    async def resolve(self, kind_or_code: str, scope: Scope | None = None) -> Registration | None:
        """Exact code match first (case-insensitive), then kind name."""
        with self.db.connection(scope) as conn:
            return self.lookup(conn, kind_or_code)

    async def all(self, scope: Scope | None = None) -> list[Registration]:
        """List all registrations ordered by code."""
        with self.db.connection(scope) as conn:
            rows = conn.execute(
                f"SELECT {_REGISTRATION_COLUMNS} FROM registry ORDER BY code"
            ).fetchall()
            return [_row_to_registration(row) for row in rows]

    # -- Schemas --

    async def get_schema(
        self,
        code: str,
        version: int | None = None,
        scope: Scope | None = None,
    ) -> SchemaVersion | None:
        """Get one schema revision (the latest when ``version`` is None)."""
        with self.db.connection(scope) as conn:
            return self.load_schema(conn, code, version)

    async def schema_versions(self, code: str, scope: Scope | None = None) -> list[SchemaVersion]:
        """Full schema history for a code, oldest first."""
        with self.db.connection(scope) as conn:
            rows = conn.execute(
                "SELECT * FROM schema WHERE code = ? ORDER BY version",
                (code.upper(),),
            ).fetchall()
            return [_row_to_schema_version(row) for row in rows]
