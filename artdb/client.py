"""
ArtDB service object.

This module provides the main entry point:
- ArtifactDB: Owns the database and wires the registry and stores together
- Transaction: A unit of work whose calls all share one connection

Example:
    >>> async with ArtifactDB(StoreConfig.for_path("/tmp/art.db")) as db:
    ...     await db.registry.register("memo", "notes", {"title": "string"})
    ...     async with db.transaction() as tx:
    ...         memo = await tx.create("memo", {"title": "draft"})
    ...         await tx.tag(memo.id, "inbox")

Invariants:
    - The caller owns the lifecycle: open() before use, close() when done
    - Every call made through a Transaction runs on the transaction's
      connection; calls made through the stores directly run on their own
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Any

from .config import StoreConfig
from .database import Database, Scope
from .errors import Rollback
from .schema.registry import KindRegistry
from .schema.validator import SchemaValidator
from .store.artifacts import Artifact, ArtifactId, ArtifactStore
from .store.links import Link, LinkStore
from .store.tags import Tag, TagStore


class Transaction:
    """Store operations bound to one transaction scope.

    Obtained from ``ArtifactDB.transaction()``; never constructed directly.
    Leaving the block normally commits, raising rolls back, and
    ``rollback()`` rolls back without an error reaching the caller.
    """

    def __init__(self, db: ArtifactDB, scope: Scope) -> None:
        self._db = db
        self.scope = scope

    @property
    def depth(self) -> int:
        return self.scope.depth

    def rollback(self) -> None:
        """Abandon the transaction (or savepoint) silently."""
        raise Rollback()

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[Transaction]:
        """Nested unit of work inside this transaction."""
        async with self._db.db.transaction(parent=self.scope) as scope:
            yield Transaction(self._db, scope)

    # -- Registry --

    async def register(self, kind: str, plugin: str, schema: Any, **kwargs: Any) -> str:
        return await self._db.registry.register(kind, plugin, schema, scope=self.scope, **kwargs)

    # -- Artifacts --

    async def create(self, kind_or_code: str, data: dict[str, Any], strict: bool = True) -> Artifact:
        return await self._db.artifacts.create(kind_or_code, data, strict=strict, scope=self.scope)

    async def create_for(
        self, plugin: str, kind: str, data: dict[str, Any], strict: bool = True
    ) -> Artifact:
        return await self._db.artifacts.create_for(plugin, kind, data, strict=strict, scope=self.scope)

    async def find(self, artifact_id: ArtifactId) -> Artifact | None:
        return await self._db.artifacts.find(artifact_id, scope=self.scope)

    async def find_slug(self, slug: str) -> Artifact | None:
        return await self._db.artifacts.find_slug(slug, scope=self.scope)

    async def where(
        self,
        kind_or_code: str,
        include_superseded: bool = False,
        conditions: dict[str, Any] | None = None,
    ) -> list[Artifact]:
        return await self._db.artifacts.where(
            kind_or_code, include_superseded=include_superseded, conditions=conditions, scope=self.scope
        )

    async def update(
        self, artifact_id: ArtifactId, data: dict[str, Any], strict: bool = True
    ) -> Artifact:
        return await self._db.artifacts.update(artifact_id, data, strict=strict, scope=self.scope)

    async def update_in_place(
        self, artifact_id: ArtifactId, data: dict[str, Any], strict: bool = True
    ) -> Artifact:
        return await self._db.artifacts.update_in_place(
            artifact_id, data, strict=strict, scope=self.scope
        )

    async def latest(self, artifact_id: ArtifactId) -> Artifact | None:
        return await self._db.artifacts.latest(artifact_id, scope=self.scope)

    async def history(self, artifact_id: ArtifactId) -> list[Artifact]:
        return await self._db.artifacts.history(artifact_id, scope=self.scope)

    async def delete(self, artifact_id: ArtifactId) -> bool:
        return await self._db.artifacts.delete(artifact_id, scope=self.scope)

    # -- Links --

    async def link(
        self,
        from_id: ArtifactId,
        to_id: ArtifactId,
        rel: str,
        data: dict[str, Any] | None = None,
    ) -> Link:
        return await self._db.links.create(from_id, to_id, rel, data, scope=self.scope)

    async def link_slugs(
        self, from_slug: str, to_slug: str, rel: str, data: dict[str, Any] | None = None
    ) -> Link:
        return await self._db.links.create_from_slugs(from_slug, to_slug, rel, data, scope=self.scope)

    async def unlink(self, from_id: ArtifactId, to_id: ArtifactId, rel: str) -> bool:
        """Remove the link with this triple; False when there was none."""
        return await self._db.links.remove(from_id, to_id, rel, scope=self.scope)

    async def outgoing(self, artifact_id: ArtifactId, rel: str | None = None) -> list[Link]:
        return await self._db.links.outgoing(artifact_id, rel, scope=self.scope)

    async def incoming(self, artifact_id: ArtifactId, rel: str | None = None) -> list[Link]:
        return await self._db.links.incoming(artifact_id, rel, scope=self.scope)

    # -- Tags --

    async def tag(self, artifact_id: ArtifactId, name: str) -> Tag:
        return await self._db.tags.tag(artifact_id, name, scope=self.scope)

    async def untag(self, artifact_id: ArtifactId, name: str) -> bool:
        return await self._db.tags.untag(artifact_id, name, scope=self.scope)

    async def sync_tags(self, artifact_id: ArtifactId, names: Iterable[str]) -> list[Tag]:
        return await self._db.tags.sync(artifact_id, names, scope=self.scope)

    async def tags_for(self, artifact_id: ArtifactId) -> list[Tag]:
        return await self._db.tags.tags_for(artifact_id, scope=self.scope)


class ArtifactDB:
    """Artifact database service.

    Holds one Database and the registry and stores that share it. Several
    independent instances may coexist in one process.

    Attributes:
        config: Store configuration
        db: Underlying SQLite database
        validator: Shared payload validator
        registry: Kind registry
        artifacts: Artifact store
        links: Link store
        tags: Tag store
    """

    def __init__(self, config: StoreConfig | None = None) -> None:
        """Initialize the service.

        Args:
            config: Store configuration (loaded from env if not provided)
        """
        self.config = config or StoreConfig.from_env()
        self.db = Database(self.config.storage)
        self.validator = SchemaValidator()
        self.registry = KindRegistry(self.db, self.validator)
        self.artifacts = ArtifactStore(self.db, self.registry, self.validator)
        self.links = LinkStore(self.db)
        self.tags = TagStore(self.db)

    @classmethod
    def at(cls, path: str, **storage_overrides: Any) -> ArtifactDB:
        """Service for an explicit database path (":memory:" for a private one)."""
        return cls(StoreConfig.for_path(path, **storage_overrides))

    @property
    def is_open(self) -> bool:
        return self.db.is_open

    async def open(self) -> None:
        """Open the database, creating tables if needed."""
        if self.db.is_open:
            return
        self.config.log_config()
        await self.db.open()

    async def close(self) -> None:
        """Close the database."""
        await self.db.close()

    async def __aenter__(self) -> ArtifactDB:
        await self.open()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """Run a block as one transaction.

        Example:
            >>> async with db.transaction() as tx:
            ...     a = await tx.create("memo", {"title": "a"})
            ...     b = await tx.create("memo", {"title": "b"})
            ...     await tx.link(a.id, b.id, "next")
        """
        async with self.db.transaction() as scope:
            yield Transaction(self, scope)

    async def stats(self) -> dict[str, Any]:
        """Table row counts and per-kind artifact counts."""
        return {
            "tables": await self.db.get_stats(),
            "kinds": await self.artifacts.stats(),
        }
