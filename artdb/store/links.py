"""
Link store for ArtDB.

Links are typed, directed edges between two artifact ids. A link is keyed by
its (from_id, to_id, rel) triple and may carry a JSON payload.

Invariants:
    - At most one link per (from_id, to_id, rel); a duplicate is rejected
    - Both endpoints must exist when the link is created
    - Deleting either endpoint's identity removes the link (cascade)
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any

from ..database import Database, Scope, now_ms
from ..errors import ArtifactNotFoundError, DuplicateLinkError, InvalidSlugError
from ..schema.types import canonical_json
from .artifacts import Artifact, ArtifactId, ArtifactStore, checked_id, to_json_value

logger = logging.getLogger(__name__)


@dataclass
class Link:
    """A directed edge between two artifact versions.

    Attributes:
        from_id: Source artifact id
        to_id: Target artifact id
        rel: Relation name
        data: Optional payload
        created_at: Creation timestamp (Unix ms)
    """

    from_id: ArtifactId
    to_id: ArtifactId
    rel: str
    data: dict[str, Any] | None
    created_at: int


def _row_to_link(row: sqlite3.Row) -> Link:
    return Link(
        from_id=ArtifactId(row["from_id"]),
        to_id=ArtifactId(row["to_id"]),
        rel=row["rel"],
        data=json.loads(row["data"]) if row["data"] is not None else None,
        created_at=row["created_at"],
    )


def _check_rel(rel: str) -> str:
    if not isinstance(rel, str) or not rel.strip():
        raise ValueError("Link relation must be a non-empty string")
    return rel


class LinkStore:
    """Create, query and remove links between artifacts."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def _insert(
        self,
        conn: sqlite3.Connection,
        from_id: ArtifactId,
        to_id: ArtifactId,
        rel: str,
        payload: dict[str, Any] | None,
    ) -> Link:
        for endpoint in (from_id, to_id):
            checked = checked_id(endpoint)
            if checked is None or ArtifactStore.lookup(conn, checked) is None:
                raise ArtifactNotFoundError(endpoint)

        exists = conn.execute(
            "SELECT 1 FROM link WHERE from_id = ? AND to_id = ? AND rel = ?",
            (from_id, to_id, rel),
        ).fetchone()
        if exists:
            raise DuplicateLinkError(from_id, to_id, rel)

        created_at = now_ms()
        conn.execute(
            "INSERT INTO link (from_id, to_id, rel, data, created_at) VALUES (?, ?, ?, ?, ?)",
            (
                from_id,
                to_id,
                rel,
                canonical_json(payload) if payload is not None else None,
                created_at,
            ),
        )

        logger.debug("Created link", extra={"from_id": from_id, "to_id": to_id, "rel": rel})

        return Link(from_id=from_id, to_id=to_id, rel=rel, data=payload, created_at=created_at)

    async def create(
        self,
        from_id: ArtifactId,
        to_id: ArtifactId,
        rel: str,
        data: dict[str, Any] | None = None,
        scope: Scope | None = None,
    ) -> Link:
        """Create a link.

        Args:
            from_id: Source artifact id
            to_id: Target artifact id
            rel: Relation name
            data: Optional JSON payload
            scope: Optional transaction scope

        Returns:
            The created Link

        Raises:
            ArtifactNotFoundError: If either endpoint does not exist
            DuplicateLinkError: If the same triple already exists
            ValidationError: If data is not representable as JSON
        """
        rel = _check_rel(rel)
        payload = to_json_value(data) if data is not None else None

        async with self.db.write(scope) as conn:
            return self._insert(conn, from_id, to_id, rel, payload)

    async def create_from_slugs(
        self,
        from_slug: str,
        to_slug: str,
        rel: str,
        data: dict[str, Any] | None = None,
        scope: Scope | None = None,
    ) -> Link:
        """Create a link between two artifacts named by their slugs.

        Raises:
            InvalidSlugError: If a slug is malformed or names no artifact
            DuplicateLinkError: If the same triple already exists
        """
        rel = _check_rel(rel)
        payload = to_json_value(data) if data is not None else None

        async with self.db.write(scope) as conn:
            ends = []
            for slug in (from_slug, to_slug):
                artifact = ArtifactStore.lookup_slug(conn, slug)
                if artifact is None:
                    raise InvalidSlugError(slug)
                ends.append(artifact.id)
            return self._insert(conn, ends[0], ends[1], rel, payload)

    async def find(
        self,
        from_id: ArtifactId,
        to_id: ArtifactId,
        rel: str,
        scope: Scope | None = None,
    ) -> Link | None:
        """Lookup one link by its triple."""
        from_id, to_id = checked_id(from_id), checked_id(to_id)
        if from_id is None or to_id is None:
            return None
        with self.db.connection(scope) as conn:
            row = conn.execute(
                "SELECT * FROM link WHERE from_id = ? AND to_id = ? AND rel = ?",
                (from_id, to_id, rel),
            ).fetchone()
            return _row_to_link(row) if row else None

    async def source(self, link: Link, scope: Scope | None = None) -> Artifact | None:
        """The artifact a link starts from (None once it is gone)."""
        with self.db.connection(scope) as conn:
            return ArtifactStore.lookup(conn, link.from_id)

    async def target(self, link: Link, scope: Scope | None = None) -> Artifact | None:
        """The artifact a link points at (None once it is gone)."""
        with self.db.connection(scope) as conn:
            return ArtifactStore.lookup(conn, link.to_id)

    def _edges(
        self, column: str, artifact_id: ArtifactId, rel: str | None, scope: Scope | None
    ) -> list[Link]:
        artifact_id = checked_id(artifact_id)
        if artifact_id is None:
            return []
        if rel is None:
            sql = f"SELECT * FROM link WHERE {column} = ? ORDER BY rel, created_at, rowid"
            params: tuple = (artifact_id,)
        else:
            sql = f"SELECT * FROM link WHERE {column} = ? AND rel = ? ORDER BY created_at, rowid"
            params = (artifact_id, rel)
        with self.db.connection(scope) as conn:
            return [_row_to_link(row) for row in conn.execute(sql, params).fetchall()]

    async def outgoing(
        self,
        artifact_id: ArtifactId,
        rel: str | None = None,
        scope: Scope | None = None,
    ) -> list[Link]:
        """Links leaving an artifact.

        Ordered by rel then created_at when rel is None, else by created_at.
        """
        return self._edges("from_id", artifact_id, rel, scope)

    async def incoming(
        self,
        artifact_id: ArtifactId,
        rel: str | None = None,
        scope: Scope | None = None,
    ) -> list[Link]:
        """Links arriving at an artifact (same ordering as outgoing())."""
        return self._edges("to_id", artifact_id, rel, scope)

    async def remove(
        self,
        from_id: ArtifactId,
        to_id: ArtifactId,
        rel: str,
        scope: Scope | None = None,
    ) -> bool:
        """Delete the link with this triple.

        Returns:
            True if deleted, False if not found
        """
        from_id, to_id = checked_id(from_id), checked_id(to_id)
        if from_id is None or to_id is None:
            return False
        async with self.db.write(scope) as conn:
            cursor = conn.execute(
                "DELETE FROM link WHERE from_id = ? AND to_id = ? AND rel = ?",
                (from_id, to_id, rel),
            )
            return cursor.rowcount > 0

    async def delete(self, link: Link, scope: Scope | None = None) -> bool:
        """Delete one link."""
        return await self.remove(link.from_id, link.to_id, link.rel, scope=scope)

    async def _delete_where(
        self, column: str, artifact_id: ArtifactId, rel: str | None, scope: Scope | None
    ) -> int:
        artifact_id = checked_id(artifact_id)
        if artifact_id is None:
            return 0
        sql = f"DELETE FROM link WHERE {column} = ?"
        params: list[Any] = [artifact_id]
        if rel is not None:
            sql += " AND rel = ?"
            params.append(rel)
        async with self.db.write(scope) as conn:
            removed = conn.execute(sql, params).rowcount
        logger.debug(
            "Deleted links",
            extra={"column": column, "artifact_id": artifact_id, "rel": rel, "removed": removed},
        )
        return removed

    async def delete_from(
        self,
        artifact_id: ArtifactId,
        rel: str | None = None,
        scope: Scope | None = None,
    ) -> int:
        """Delete outgoing links (of one relation, or all when rel is None).

        Returns:
            Number of links removed
        """
        return await self._delete_where("from_id", artifact_id, rel, scope)

    async def delete_to(
        self,
        artifact_id: ArtifactId,
        rel: str | None = None,
        scope: Scope | None = None,
    ) -> int:
        """Delete incoming links (of one relation, or all when rel is None).

        Returns:
            Number of links removed
        """
        return await self._delete_where("to_id", artifact_id, rel, scope)
