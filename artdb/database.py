"""
SQLite database, connection pool and transaction scopes for ArtDB.

This module owns the single SQLite file that stores every table:
- identity: the global id counter, one row per artifact version
- registry / schema: registered kinds and their schema revisions
- artifact: versioned JSON payloads (COW chain via successor_id)
- link: typed directed edges between identities
- tag / tagging: tag vocabulary and membership

Invariants:
    - Foreign keys are enforced on every connection
    - Ids come from one AUTOINCREMENT counter and are never reused
    - Writers are serialized: one asyncio lock per Database, held for the
      lifetime of a transaction or for the duration of a single write call
    - A Scope is pinned to exactly one connection until it ends

How to change safely:
    - Table and column names are a stable interface; add columns, never rename
    - Bump LAYOUT_VERSION when the DDL changes
    - Use write() for every multi-statement mutation

Table schema:
    identity(id PK AUTOINCREMENT, created_at)
    registry(code PK, kind, plugin, description, symbol, version) UNIQUE(plugin, kind)
    schema(code, version, json, hash, created_at) PK(code, version)
    artifact(id PK -> identity.id, code, version, data, hash, successor_id, updated_at)
    link(from_id, to_id, rel, data, created_at) PK(from_id, to_id, rel)
    tag(id PK AUTOINCREMENT, name UNIQUE, created_at)
    tagging(tag_id, artifact_id, created_at) PK(tag_id, artifact_id)
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import sqlite3
import time
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path

from .config import StorageConfig
from .errors import Rollback, TransactionError

logger = logging.getLogger(__name__)

# Written to PRAGMA user_version when the tables are created.
LAYOUT_VERSION = 1

SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS identity (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        created_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS registry (
        code TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        plugin TEXT NOT NULL,
        description TEXT,
        symbol TEXT,
        version INTEGER NOT NULL DEFAULT 1,
        UNIQUE (plugin, kind)
    );

    CREATE INDEX IF NOT EXISTS idx_registry_kind ON registry(kind);

    CREATE TABLE IF NOT EXISTS schema (
        code TEXT NOT NULL REFERENCES registry(code),
        version INTEGER NOT NULL,
        json TEXT NOT NULL,
        hash TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        PRIMARY KEY (code, version)
    );

    -- successor_id is a logical reference to identity(id); it is not
    -- enforced so that deleting a successor leaves its predecessor intact.
    CREATE TABLE IF NOT EXISTS artifact (
        id INTEGER PRIMARY KEY REFERENCES identity(id) ON DELETE CASCADE,
        code TEXT NOT NULL,
        version INTEGER NOT NULL,
        data JSON NOT NULL,
        hash TEXT NOT NULL,
        successor_id INTEGER,
        updated_at INTEGER,
        FOREIGN KEY (code, version) REFERENCES schema(code, version)
    );

    CREATE INDEX IF NOT EXISTS idx_artifact_code ON artifact(code);
    CREATE INDEX IF NOT EXISTS idx_artifact_successor ON artifact(successor_id);

    CREATE TABLE IF NOT EXISTS link (
        from_id INTEGER NOT NULL REFERENCES identity(id) ON DELETE CASCADE,
        to_id INTEGER NOT NULL REFERENCES identity(id) ON DELETE CASCADE,
        rel TEXT NOT NULL,
        data JSON,
        created_at INTEGER NOT NULL,
        PRIMARY KEY (from_id, to_id, rel)
    );

    CREATE INDEX IF NOT EXISTS idx_link_to ON link(to_id, rel);

    CREATE TABLE IF NOT EXISTS tag (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE,
        created_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS tagging (
        tag_id INTEGER NOT NULL REFERENCES tag(id) ON DELETE CASCADE,
        artifact_id INTEGER NOT NULL REFERENCES identity(id) ON DELETE CASCADE,
        created_at INTEGER NOT NULL,
        PRIMARY KEY (tag_id, artifact_id)
    );

    CREATE INDEX IF NOT EXISTS idx_tagging_artifact ON tagging(artifact_id);
"""


def now_ms() -> int:
    """Current time as Unix milliseconds."""
    return int(time.time() * 1000)


class Scope:
    """A unit of work pinned to one connection.

    Scopes are created by ``Database.transaction()`` and passed explicitly
    to store methods. A nested scope shares its parent's connection and is
    backed by a SAVEPOINT.

    Attributes:
        conn: The bound connection
        parent: Enclosing scope for nested transactions
        depth: Nesting level (0 for the outermost transaction)
    """

    def __init__(self, conn: sqlite3.Connection, parent: Scope | None = None) -> None:
        self.conn = conn
        self.parent = parent
        self.depth = 0 if parent is None else parent.depth + 1
        self._closed = False
        self._savepoints = itertools.count(1) if parent is None else parent._savepoints

    @property
    def active(self) -> bool:
        return not self._closed

    def ensure_active(self) -> None:
        """Raise if the scope's transaction has already ended."""
        if self._closed:
            raise TransactionError("Transaction scope has already ended")

    def next_savepoint(self) -> str:
        return f"sp_{next(self._savepoints)}"

    def close(self) -> None:
        self._closed = True


class Database:
    """SQLite database with a small connection pool.

    Thread safety:
        Designed for a single asyncio event loop. Each engine call is
        synchronous; writers are serialized with an asyncio lock so a
        blocked writer never stalls the loop inside SQLite's busy handler.

    Example:
        >>> db = Database(StorageConfig(path="/tmp/artdb.db"))
        >>> await db.open()
        >>> async with db.transaction() as scope:
        ...     ...
        >>> await db.close()
    """

    def __init__(self, config: StorageConfig | None = None) -> None:
        """Initialize the database.

        Args:
            config: Storage configuration (defaults to StorageConfig())
        """
        self.config = config or StorageConfig()
        self._pool: list[sqlite3.Connection] = []
        self._shared: sqlite3.Connection | None = None
        self._write_lock = asyncio.Lock()
        self._opened = False

    @property
    def is_open(self) -> bool:
        return self._opened

    # -- Lifecycle --

    async def open(self) -> None:
        """Create the database file and tables if they don't exist."""
        if self._opened:
            return

        if not self.config.in_memory:
            Path(self.config.path).parent.mkdir(parents=True, exist_ok=True)

        conn = self._connect()
        try:
            conn.executescript(SCHEMA_SQL)
            conn.execute(f"PRAGMA user_version = {LAYOUT_VERSION}")
        except Exception:
            conn.close()
            raise

        if self.config.in_memory:
            self._shared = conn
        else:
            self._pool.append(conn)
        self._opened = True
        logger.info(f"Opened database: {self.config.path}")

    async def close(self) -> None:
        """Close every pooled connection."""
        for conn in self._pool:
            conn.close()
        self._pool.clear()
        if self._shared is not None:
            self._shared.close()
            self._shared = None
        if self._opened:
            logger.info(f"Closed database: {self.config.path}")
        self._opened = False

    # -- Connections --

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.config.path,
            timeout=self.config.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row

        conn.execute(f"PRAGMA busy_timeout = {self.config.busy_timeout_ms}")
        conn.execute(f"PRAGMA cache_size = {self.config.cache_size_pages}")
        if self.config.wal_mode and not self.config.in_memory:
            conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _checkout(self) -> sqlite3.Connection:
        if not self._opened:
            raise TransactionError("Database is not open")
        if self._shared is not None:
            return self._shared
        if self._pool:
            return self._pool.pop()
        return self._connect()

    def _checkin(self, conn: sqlite3.Connection) -> None:
        if conn is self._shared:
            return
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        if self._opened and len(self._pool) < self.config.pool_size:
            self._pool.append(conn)
        else:
            conn.close()

    @contextmanager
    def connection(self, scope: Scope | None = None) -> Iterator[sqlite3.Connection]:
        """Connection for a read.

        Inside a scope the scope's connection is used so uncommitted writes
        are visible; otherwise a pooled connection is borrowed for the call.
        """
        if scope is not None:
            scope.ensure_active()
            yield scope.conn
            return

        conn = self._checkout()
        try:
            yield conn
        finally:
            self._checkin(conn)

    async def _acquire_writer(self) -> bool:
        """Take the writer lock, giving up after busy_timeout_ms.

        Returns False on timeout. A lock granted while the caller is being
        cancelled is released again.
        """
        timeout = self.config.busy_timeout_ms / 1000.0 or None
        acquire = asyncio.ensure_future(self._write_lock.acquire())
        try:
            done, _ = await asyncio.wait({acquire}, timeout=timeout)
            if not done:
                acquire.cancel()
                await asyncio.wait({acquire})
        except BaseException:
            if acquire.done() and not acquire.cancelled():
                self._write_lock.release()
            else:
                acquire.cancel()
            raise
        return not acquire.cancelled()

    @asynccontextmanager
    async def _writer(self) -> AsyncIterator[None]:
        if not await self._acquire_writer():
            raise TransactionError(
                f"Timed out after {self.config.busy_timeout_ms}ms waiting for the writer lock; "
                "pass the active scope to calls made inside a transaction"
            )
        try:
            yield
        finally:
            self._write_lock.release()

    @asynccontextmanager
    async def write(self, scope: Scope | None = None) -> AsyncIterator[sqlite3.Connection]:
        """Connection for one atomic mutation.

        Without a scope: takes the writer lock and runs ``BEGIN IMMEDIATE``
        ... ``COMMIT`` on a pooled connection. With a scope: runs inside a
        SAVEPOINT on the scope's connection, so the call is atomic on its own
        and still part of the enclosing transaction.
        """
        if scope is not None:
            scope.ensure_active()
            conn = scope.conn
            name = scope.next_savepoint()
            conn.execute(f"SAVEPOINT {name}")
            try:
                yield conn
            except BaseException:
                conn.execute(f"ROLLBACK TO {name}")
                conn.execute(f"RELEASE {name}")
                raise
            conn.execute(f"RELEASE {name}")
            return

        async with self._writer():
            conn = self._checkout()
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            finally:
                self._checkin(conn)

    # -- Transactions --

    @asynccontextmanager
    async def transaction(self, parent: Scope | None = None) -> AsyncIterator[Scope]:
        """Open a unit of work bound to one connection.

        On success the work is committed. An exception rolls everything back
        and propagates; raising ``Rollback`` rolls back silently. With
        ``parent`` the block becomes a SAVEPOINT inside the parent's
        transaction.

        Example:
            >>> async with db.transaction() as scope:
            ...     art = await artifacts.create("E", {"title": "x"}, scope=scope)
            ...     raise Rollback()  # nothing is persisted, nothing raised
        """
        if parent is not None:
            parent.ensure_active()
            scope = Scope(parent.conn, parent=parent)
            name = scope.next_savepoint()
            scope.conn.execute(f"SAVEPOINT {name}")
            try:
                yield scope
            except Rollback:
                scope.conn.execute(f"ROLLBACK TO {name}")
                scope.conn.execute(f"RELEASE {name}")
                logger.debug("Nested transaction rolled back on request", extra={"depth": scope.depth})
            except BaseException:
                scope.conn.execute(f"ROLLBACK TO {name}")
                scope.conn.execute(f"RELEASE {name}")
                raise
            else:
                scope.conn.execute(f"RELEASE {name}")
            finally:
                scope.close()
            return

        async with self._writer():
            conn = self._checkout()
            scope = Scope(conn)
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield scope
                except Rollback:
                    conn.execute("ROLLBACK")
                    logger.debug("Transaction rolled back on request")
                except BaseException:
                    conn.execute("ROLLBACK")
                    logger.debug("Transaction rolled back after error")
                    raise
                else:
                    conn.execute("COMMIT")
            finally:
                scope.close()
                self._checkin(conn)

    # -- Identity --

    @staticmethod
    def allocate_identity(conn: sqlite3.Connection, created_at: int | None = None) -> tuple[int, int]:
        """Issue the next global id.

        Must be called inside a write; the id is only consumed if the
        surrounding transaction commits.

        Returns:
            Tuple of (id, created_at)
        """
        created_at = created_at or now_ms()
        cursor = conn.execute("INSERT INTO identity (created_at) VALUES (?)", (created_at,))
        return int(cursor.lastrowid), created_at

    # -- Introspection --

    async def get_stats(self) -> dict[str, int]:
        """Row counts per table."""
        with self.connection() as conn:
            stats = {}
            for table in ("identity", "registry", "schema", "artifact", "link", "tag", "tagging"):
                stats[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            stats["current_artifacts"] = conn.execute(
                "SELECT COUNT(*) FROM artifact WHERE successor_id IS NULL"
            ).fetchone()[0]
            return stats

    def index_names(self, prefix: str = "idx_") -> list[str]:
        """Names of indexes starting with ``prefix`` (sorted)."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'index' AND name GLOB ? ORDER BY name",
                (f"{prefix}*",),
            ).fetchall()
            return [row["name"] for row in rows]
