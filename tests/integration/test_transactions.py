"""
Integration tests for transactions.

Tests cover:
- Commit, rollback on error and silent rollback
- Nested savepoints
- Writer serialization and lock timeouts
- Scope lifetime
- Service lifecycle and in-memory databases
- Link operations through the transaction facade
"""

import asyncio
import os
import tempfile

import pytest
import pytest_asyncio

from artdb import ArtifactDB
from artdb.errors import InvalidSlugError, Rollback, TransactionError, ValidationError


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest_asyncio.fixture
async def db(data_dir):
    """Open an ArtifactDB with one registered kind and a short lock wait."""
    service = ArtifactDB.at(
        os.path.join(data_dir, "tx.db"), wal_mode=False, busy_timeout_ms=200
    )
    await service.open()
    await service.registry.register("memo", "notes", {"title": "string"})
    yield service
    await service.close()


class TestCommitAndRollback:
    """Tests for transaction outcomes."""

    @pytest.mark.asyncio
    async def test_commit(self, db):
        """Work in a successful block is committed as one unit."""
        async with db.transaction() as tx:
            a = await tx.create("memo", {"title": "a"})
            b = await tx.create("memo", {"title": "b"})
            await tx.link(a.id, b.id, "next")
            await tx.tag(a.id, "inbox")

        assert await db.artifacts.find(a.id) is not None
        assert len(await db.links.outgoing(a.id)) == 1
        assert [x.id for x in await db.tags.artifacts("inbox")] == [a.id]

    @pytest.mark.asyncio
    async def test_error_rolls_back_everything(self, db):
        """A failure anywhere in the block undoes every write in it."""
        with pytest.raises(ValidationError):
            async with db.transaction() as tx:
                await tx.create("memo", {"title": "a"})
                await tx.register("task", "todo", {"title": "string"})
                await tx.create("memo", {"title": 42})

        stats = await db.db.get_stats()
        assert stats["artifact"] == 0
        assert stats["identity"] == 0
        assert await db.registry.find("T") is None

    @pytest.mark.asyncio
    async def test_application_error_rolls_back(self, db):
        """Any exception aborts the transaction and propagates."""
        with pytest.raises(RuntimeError):
            async with db.transaction() as tx:
                await tx.create("memo", {"title": "a"})
                raise RuntimeError("boom")

        assert await db.artifacts.count() == 0

    @pytest.mark.asyncio
    async def test_silent_rollback(self, db):
        """rollback() discards the block without raising."""
        async with db.transaction() as tx:
            await tx.create("memo", {"title": "a"})
            tx.rollback()

        assert await db.artifacts.count() == 0

    @pytest.mark.asyncio
    async def test_reads_see_own_writes(self, db):
        """Reads through the transaction see its uncommitted writes."""
        async with db.transaction() as tx:
            a = await tx.create("memo", {"title": "a"})
            a2 = await tx.update(a.id, {"title": "b"})

            assert (await tx.find(a.id)).successor_id == a2.id
            assert [x.id for x in await tx.where("memo")] == [a2.id]
            assert [x.id for x in await tx.history(a2.id)] == [a.id, a2.id]

    @pytest.mark.asyncio
    async def test_failed_call_inside_transaction_is_atomic(self, db):
        """A caught failure undoes only that call."""
        async with db.transaction() as tx:
            a = await tx.create("memo", {"title": "a"})
            with pytest.raises(ValidationError):
                await tx.update(a.id, {"title": 1})
            b = await tx.update(a.id, {"title": "b"})

        assert [x.id for x in await db.artifacts.history(a.id)] == [a.id, b.id]


class TestSavepoints:
    """Tests for nested transactions."""

    @pytest.mark.asyncio
    async def test_nested_rollback_keeps_outer(self, db):
        """Rolling back a savepoint keeps the enclosing work."""
        async with db.transaction() as tx:
            a = await tx.create("memo", {"title": "outer"})
            async with tx.savepoint() as inner:
                assert inner.depth == 1
                await inner.create("memo", {"title": "inner"})
                inner.rollback()
            b = await tx.create("memo", {"title": "after"})

        assert [x.id for x in await db.artifacts.where("memo")] == [a.id, b.id]

    @pytest.mark.asyncio
    async def test_nested_error_propagates(self, db):
        """An error in a savepoint undoes it and reaches the caller."""
        async with db.transaction() as tx:
            a = await tx.create("memo", {"title": "outer"})
            with pytest.raises(RuntimeError):
                async with tx.savepoint() as inner:
                    await inner.create("memo", {"title": "inner"})
                    raise RuntimeError("boom")

        assert [x.id for x in await db.artifacts.where("memo")] == [a.id]

    @pytest.mark.asyncio
    async def test_outer_rollback_discards_committed_savepoint(self, db):
        """A released savepoint still rolls back with its parent."""
        async with db.transaction() as tx:
            async with tx.savepoint() as inner:
                await inner.create("memo", {"title": "inner"})
            tx.rollback()

        assert await db.artifacts.count() == 0


class TestConcurrency:
    """Tests for writer serialization."""

    @pytest.mark.asyncio
    async def test_transactions_are_serialized(self, db):
        """Concurrent transactions run one after the other."""
        events = []

        async def worker(name):
            async with db.transaction() as tx:
                events.append(f"{name}:start")
                await tx.create("memo", {"title": name})
                await asyncio.sleep(0.01)
                events.append(f"{name}:end")

        await asyncio.gather(worker("a"), worker("b"))

        assert events == ["a:start", "a:end", "b:start", "b:end"]
        assert await db.artifacts.count() == 2

    @pytest.mark.asyncio
    async def test_write_outside_scope_times_out(self, db):
        """A write that ignores the open transaction fails instead of hanging."""
        with pytest.raises(TransactionError):
            async with db.transaction():
                await db.artifacts.create("memo", {"title": "a"})

        assert await db.artifacts.count() == 0

    @pytest.mark.asyncio
    async def test_lock_usable_after_waiters_give_up(self, db):
        """Timed-out and cancelled writers leave the lock free for the next one."""
        release = asyncio.Event()

        async def holder():
            async with db.transaction() as tx:
                await tx.create("memo", {"title": "held"})
                await release.wait()

        holding = asyncio.create_task(holder())
        await asyncio.sleep(0.01)

        with pytest.raises(TransactionError):
            await db.artifacts.create("memo", {"title": "late"})

        waiter = asyncio.create_task(db.artifacts.create("memo", {"title": "cancelled"}))
        await asyncio.sleep(0.01)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        release.set()
        await holding

        await db.artifacts.create("memo", {"title": "after"})
        assert [m.data["title"] for m in await db.artifacts.where("memo")] == ["held", "after"]

    @pytest.mark.asyncio
    async def test_outside_reads_do_not_see_uncommitted(self, db):
        """Reads on other connections only see committed rows."""
        async with db.transaction() as tx:
            a = await tx.create("memo", {"title": "a"})
            assert await db.artifacts.find(a.id) is None

        assert await db.artifacts.find(a.id) is not None


class TestScopeLifetime:
    """Tests for scope misuse."""

    @pytest.mark.asyncio
    async def test_scope_unusable_after_exit(self, db):
        """A scope cannot be used once its transaction ended."""
        async with db.transaction() as tx:
            pass

        with pytest.raises(TransactionError):
            await tx.create("memo", {"title": "late"})

    @pytest.mark.asyncio
    async def test_raw_rollback_signal(self, db):
        """Raising Rollback directly behaves like rollback()."""
        async with db.db.transaction() as scope:
            await db.artifacts.create("memo", {"title": "a"}, scope=scope)
            raise Rollback()

        assert await db.artifacts.count() == 0


class TestLifecycle:
    """Tests for the service object."""

    @pytest.mark.asyncio
    async def test_context_manager(self, data_dir):
        """The service opens and closes around a block."""
        path = os.path.join(data_dir, "nested", "ctx.db")

        async with ArtifactDB.at(path, wal_mode=False) as service:
            assert service.is_open
            await service.registry.register("memo", "notes", {"title": "string"})
            memo = await service.artifacts.create("memo", {"title": "kept"})

        assert not service.is_open
        with pytest.raises(TransactionError):
            await service.artifacts.find(memo.id)

        async with ArtifactDB.at(path, wal_mode=False) as reopened:
            assert (await reopened.artifacts.find(memo.id)).data == {"title": "kept"}
            assert (await reopened.registry.find("M")).kind == "memo"

    @pytest.mark.asyncio
    async def test_in_memory(self):
        """In-memory databases support the full flow."""
        async with ArtifactDB.at(":memory:") as service:
            await service.registry.register("memo", "notes", {"title": "string"})
            async with service.transaction() as tx:
                a = await tx.create("memo", {"title": "a"})
                await tx.update(a.id, {"title": "b"})

            assert len(await service.artifacts.history(a.id)) == 2

    @pytest.mark.asyncio
    async def test_independent_instances(self):
        """Two in-memory services share nothing."""
        async with ArtifactDB.at(":memory:") as first, ArtifactDB.at(":memory:") as second:
            await first.registry.register("memo", "notes", {"title": "string"})

            assert await second.registry.all() == []

    @pytest.mark.asyncio
    async def test_stats(self, db):
        """stats() reports table and kind counts."""
        await db.artifacts.create("memo", {"title": "a"})

        stats = await db.stats()

        assert stats["tables"]["artifact"] == 1
        assert stats["tables"]["registry"] == 1
        assert stats["kinds"] == {"M": {"current": 1, "total": 1}}


class TestTransactionLinks:
    """Tests for link operations through a transaction."""

    @pytest.mark.asyncio
    async def test_link_slugs_and_unlink(self, db):
        """Links made by slug and removed by triple share the transaction."""
        async with db.transaction() as tx:
            a = await tx.create("memo", {"title": "a"})
            b = await tx.create("memo", {"title": "b"})
            await tx.link_slugs(a.slug, b.slug, "next")
            assert [l.to_id for l in await tx.outgoing(a.id)] == [b.id]

            assert await tx.unlink(a.id, b.id, "next") is True
            assert await tx.unlink(a.id, b.id, "next") is False
            await tx.link(b.id, a.id, "prev")

        assert await db.links.outgoing(a.id) == []
        assert [l.rel for l in await db.links.outgoing(b.id)] == ["prev"]

    @pytest.mark.asyncio
    async def test_bad_slug_rolls_back(self, db):
        """A slug that names nothing aborts the transaction."""
        with pytest.raises(InvalidSlugError):
            async with db.transaction() as tx:
                a = await tx.create("memo", {"title": "a"})
                await tx.link_slugs(a.slug, "M999", "next")

        assert await db.artifacts.count() == 0
