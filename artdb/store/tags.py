"""
Tag store for ArtDB.

Tags are a flat vocabulary of unique names. A tagging attaches a tag to one
artifact id (one version); queries by tag return current versions only.

Invariants:
    - Tag names are unique and stored stripped of surrounding whitespace
    - Tagging the same artifact twice with a tag is a no-op
    - Deleting a tag or an artifact removes its taggings (cascade)
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass

from ..database import Database, Scope, now_ms
from ..errors import ArtifactNotFoundError
from .artifacts import ARTIFACT_SELECT, Artifact, ArtifactId, checked_id, row_to_artifact

logger = logging.getLogger(__name__)


@dataclass
class Tag:
    """A tag in the vocabulary.

    Attributes:
        id: Tag identifier
        name: Unique tag name
        created_at: Creation timestamp (Unix ms)
    """

    id: int
    name: str
    created_at: int


def _row_to_tag(row: sqlite3.Row) -> Tag:
    return Tag(id=row["id"], name=row["name"], created_at=row["created_at"])


def _clean(name: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValueError("Tag name must be a non-empty string")
    return name.strip()


def _clean_all(names: Iterable[str]) -> list[str]:
    # Order-preserving dedupe.
    return list(dict.fromkeys(_clean(n) for n in names))


class TagStore:
    """Tag vocabulary and artifact membership."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # -- Vocabulary --

    @staticmethod
    def _ensure(conn: sqlite3.Connection, name: str) -> Tag:
        conn.execute(
            "INSERT OR IGNORE INTO tag (name, created_at) VALUES (?, ?)",
            (name, now_ms()),
        )
        row = conn.execute("SELECT * FROM tag WHERE name = ?", (name,)).fetchone()
        return _row_to_tag(row)

    async def create(self, name: str, scope: Scope | None = None) -> Tag:
        """Find or create a tag by name."""
        name = _clean(name)
        async with self.db.write(scope) as conn:
            return self._ensure(conn, name)

    async def find(self, name: str, scope: Scope | None = None) -> Tag | None:
        """Lookup a tag by name."""
        with self.db.connection(scope) as conn:
            row = conn.execute("SELECT * FROM tag WHERE name = ?", (name.strip(),)).fetchone()
            return _row_to_tag(row) if row else None

    async def get(self, tag_id: int, scope: Scope | None = None) -> Tag | None:
        """Lookup a tag by id."""
        with self.db.connection(scope) as conn:
            row = conn.execute("SELECT * FROM tag WHERE id = ?", (tag_id,)).fetchone()
            return _row_to_tag(row) if row else None

    async def all(self, scope: Scope | None = None) -> list[Tag]:
        """List all tags ordered by name."""
        with self.db.connection(scope) as conn:
            rows = conn.execute("SELECT * FROM tag ORDER BY name").fetchall()
            return [_row_to_tag(row) for row in rows]

    async def delete(self, tag: Tag | str, scope: Scope | None = None) -> bool:
        """Delete a tag and every tagging that uses it.

        Returns:
            True if deleted, False if not found
        """
        async with self.db.write(scope) as conn:
            if isinstance(tag, Tag):
                cursor = conn.execute("DELETE FROM tag WHERE id = ?", (tag.id,))
            else:
                cursor = conn.execute("DELETE FROM tag WHERE name = ?", (tag.strip(),))
            return cursor.rowcount > 0

    # -- Membership --

    @staticmethod
    def _require_artifact(conn: sqlite3.Connection, artifact_id: ArtifactId) -> ArtifactId:
        checked = checked_id(artifact_id)
        if checked is None or conn.execute(
            "SELECT 1 FROM identity WHERE id = ?", (checked,)
        ).fetchone() is None:
            raise ArtifactNotFoundError(artifact_id)
        return checked

    async def tag(self, artifact_id: ArtifactId, name: str, scope: Scope | None = None) -> Tag:
        """Attach a tag (created on demand) to an artifact.

        Raises:
            ArtifactNotFoundError: If the artifact does not exist
        """
        name = _clean(name)
        async with self.db.write(scope) as conn:
            artifact_id = self._require_artifact(conn, artifact_id)
            tag = self._ensure(conn, name)
            conn.execute(
                "INSERT OR IGNORE INTO tagging (tag_id, artifact_id, created_at) VALUES (?, ?, ?)",
                (tag.id, artifact_id, now_ms()),
            )

        logger.debug("Tagged artifact", extra={"artifact_id": artifact_id, "tag": name})
        return tag

    async def untag(self, artifact_id: ArtifactId, name: str, scope: Scope | None = None) -> bool:
        """Detach a tag from an artifact.

        Returns:
            True if the artifact carried the tag
        """
        artifact_id = checked_id(artifact_id)
        if artifact_id is None:
            return False
        async with self.db.write(scope) as conn:
            cursor = conn.execute(
                """
                DELETE FROM tagging
                WHERE artifact_id = ? AND tag_id = (SELECT id FROM tag WHERE name = ?)
                """,
                (artifact_id, name.strip()),
            )
            return cursor.rowcount > 0

    async def sync(
        self,
        artifact_id: ArtifactId,
        names: Iterable[str],
        scope: Scope | None = None,
    ) -> list[Tag]:
        """Make an artifact's tags exactly ``names``.

        Every existing tagging is removed and each name is tagged afresh, so
        all memberships afterwards carry the sync time as created_at.

        Returns:
            The artifact's tags afterwards, ordered by name

        Raises:
            ArtifactNotFoundError: If the artifact does not exist
        """
        wanted = _clean_all(names)

        async with self.db.write(scope) as conn:
            artifact_id = self._require_artifact(conn, artifact_id)
            conn.execute("DELETE FROM tagging WHERE artifact_id = ?", (artifact_id,))
            tags = [self._ensure(conn, name) for name in wanted]
            now = now_ms()
            conn.executemany(
                "INSERT INTO tagging (tag_id, artifact_id, created_at) VALUES (?, ?, ?)",
                [(tag.id, artifact_id, now) for tag in tags],
            )

        logger.debug("Synced tags", extra={"artifact_id": artifact_id, "tags": wanted})
        return sorted(tags, key=lambda t: t.name)

    async def tags_for(self, artifact_id: ArtifactId, scope: Scope | None = None) -> list[Tag]:
        """Tags attached to an artifact, ordered by name."""
        artifact_id = checked_id(artifact_id)
        if artifact_id is None:
            return []
        with self.db.connection(scope) as conn:
            rows = conn.execute(
                """
                SELECT t.* FROM tag t
                JOIN tagging g ON g.tag_id = t.id
                WHERE g.artifact_id = ?
                ORDER BY t.name
                """,
                (artifact_id,),
            ).fetchall()
            return [_row_to_tag(row) for row in rows]

    # -- Queries (current versions only) --

    async def artifacts(self, name: str, scope: Scope | None = None) -> list[Artifact]:
        """Current artifacts carrying a tag, ordered by id."""
        return await self.artifacts_any([name], scope=scope)

    async def artifacts_any(
        self, names: Iterable[str], scope: Scope | None = None
    ) -> list[Artifact]:
        """Current artifacts carrying at least one of the tags, ordered by id."""
        wanted = [n.strip() for n in names]
        if not wanted:
            return []
        placeholders = ", ".join("?" for _ in wanted)
        with self.db.connection(scope) as conn:
            rows = conn.execute(
                f"""
                {ARTIFACT_SELECT}
                WHERE a.successor_id IS NULL AND a.id IN (
                    SELECT g.artifact_id FROM tagging g
                    JOIN tag t ON t.id = g.tag_id
                    WHERE t.name IN ({placeholders})
                )
                ORDER BY a.id
                """,
                wanted,
            ).fetchall()
            return [row_to_artifact(row) for row in rows]

    async def artifacts_all(
        self, names: Iterable[str], scope: Scope | None = None
    ) -> list[Artifact]:
        """Current artifacts carrying every one of the tags, ordered by id."""
        wanted = list(dict.fromkeys(n.strip() for n in names))
        if not wanted:
            return []
        placeholders = ", ".join("?" for _ in wanted)
        with self.db.connection(scope) as conn:
            rows = conn.execute(
                f"""
                {ARTIFACT_SELECT}
                WHERE a.successor_id IS NULL AND a.id IN (
                    SELECT g.artifact_id FROM tagging g
                    JOIN tag t ON t.id = g.tag_id
                    WHERE t.name IN ({placeholders})
                    GROUP BY g.artifact_id
                    HAVING COUNT(DISTINCT t.id) = ?
                )
                ORDER BY a.id
                """,
                (*wanted, len(wanted)),
            ).fetchall()
            return [row_to_artifact(row) for row in rows]
