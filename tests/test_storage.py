"""Tests for memstore.storage."""

from __future__ import annotations

import sqlite3
import time
from pathlib import Path

import pytest

from memstore.errors import TransactionError
from memstore.storage import _SCHEMA_SQL, Storage

from tests.conftest import insert_memory


class TestInitialize:
    """Schema creation and idempotence."""

    async def test_creates_tables(self, storage: Storage) -> None:
        rows = await storage.execute(
            "SELECT name FROM sqlite_master WHERE type IN ('table', 'view') ORDER BY name"
        )
        names = {row["name"] for row in rows}
        assert {"memories", "memories_fts", "consolidation_log", "state_transitions", "locks"} <= names

    async def test_initialize_twice(self, storage: Storage) -> None:
        await storage.initialize()
        assert await storage.table_counts() == {
            "memories": 0,
            "consolidation_log": 0,
            "state_transitions": 0,
            "locks": 0,
        }

    async def test_wal_mode(self, storage: Storage) -> None:
        rows = await storage.execute("PRAGMA journal_mode")
        assert rows[0][0] == "wal"

    async def test_migration_adds_missing_columns(self, tmp_path: Path) -> None:
        """A database from before the extraction_timestamp and audit namespace
        columns is upgraded in place."""
        legacy_sql = _SCHEMA_SQL.replace("    extraction_timestamp TEXT,\n", "").replace(
            "    namespace TEXT NOT NULL DEFAULT 'default',\n    details TEXT,\n",
            "    details TEXT,\n",
        )
        db_path = tmp_path / "legacy.db"
        conn = sqlite3.connect(db_path)
        conn.executescript(legacy_sql)
        conn.close()

        legacy = Storage(db_path)
        legacy._backup_dir = tmp_path / "legacy-backups"
        async with legacy:
            memory_columns = {row[1] for row in await legacy.execute("PRAGMA table_info(memories)")}
            log_columns = {
                row[1] for row in await legacy.execute("PRAGMA table_info(consolidation_log)")
            }
        assert "extraction_timestamp" in memory_columns
        assert "namespace" in log_columns


class TestFullTextIndex:
    """Triggers keep memories_fts in sync."""

    async def _match(self, storage: Storage, term: str) -> list[str]:
        rows = await storage.execute(
            """
            SELECT m.id FROM memories_fts f JOIN memories m ON m.rowid = f.rowid
            WHERE memories_fts MATCH ? ORDER BY m.id
            """,
            (term,),
        )
        return [row["id"] for row in rows]

    async def test_insert_indexed(self, storage: Storage) -> None:
        await insert_memory(storage, "Kafka partitions preserve ordering", memory_id="k")
        assert await self._match(storage, "partitions") == ["k"]

    async def test_update_reindexed(self, storage: Storage) -> None:
        await insert_memory(storage, "Kafka partitions preserve ordering", memory_id="k")
        await storage.execute_write("UPDATE memories SET content = ? WHERE id = ?", ("Redis streams", "k"))
        assert await self._match(storage, "partitions") == []
        assert await self._match(storage, "streams") == ["k"]

    async def test_delete_removed(self, storage: Storage) -> None:
        await insert_memory(storage, "Kafka partitions preserve ordering", memory_id="k")
        await storage.execute_write("DELETE FROM memories WHERE id = ?", ("k",))
        assert await self._match(storage, "kafka") == []


class TestTransactions:
    async def test_commit(self, storage: Storage) -> None:
        await insert_memory(storage, "one", memory_id="a")

        def _update(conn: sqlite3.Connection) -> int:
            return conn.execute("UPDATE memories SET topic = 'x' WHERE id = 'a'").rowcount

        assert await storage.execute_transaction(_update) == 1
        rows = await storage.execute("SELECT topic FROM memories WHERE id = 'a'")
        assert rows[0]["topic"] == "x"

    async def test_rollback_on_error(self, storage: Storage) -> None:
        await insert_memory(storage, "one", memory_id="a")

        def _fail(conn: sqlite3.Connection) -> None:
            conn.execute("UPDATE memories SET topic = 'x' WHERE id = 'a'")
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError, match="abort"):
            await storage.execute_transaction(_fail)
        rows = await storage.execute("SELECT topic FROM memories WHERE id = 'a'")
        assert rows[0]["topic"] is None

    async def test_timeout_raises_transaction_error(self, storage: Storage) -> None:
        await insert_memory(storage, "one", memory_id="a")

        def _slow(conn: sqlite3.Connection) -> None:
            conn.execute("UPDATE memories SET topic = 'x' WHERE id = 'a'")
            time.sleep(0.05)

        with pytest.raises(TransactionError, match="timeout"):
            await storage.execute_transaction(_slow, timeout=0.01)
        rows = await storage.execute("SELECT topic FROM memories WHERE id = 'a'")
        assert rows[0]["topic"] is None

    async def test_write_rowcount(self, storage: Storage) -> None:
        await insert_memory(storage, "one")
        await insert_memory(storage, "two")
        assert await storage.execute_write("UPDATE memories SET topic = 'y'") == 2


class TestLocks:
    async def test_acquire_and_release(self, storage: Storage) -> None:
        def _acquire(holder: str):
            return lambda conn: Storage.try_acquire_lock(conn, "job", holder)

        assert await storage.execute_transaction(_acquire("a"))
        assert not await storage.execute_transaction(_acquire("b"))

        await storage.execute_transaction(lambda conn: Storage.release_lock(conn, "job", "b"))
        assert not await storage.execute_transaction(_acquire("b"))

        await storage.execute_transaction(lambda conn: Storage.release_lock(conn, "job", "a"))
        assert await storage.execute_transaction(_acquire("b"))

    async def test_stale_lock_reclaimed(self, storage: Storage) -> None:
        await storage.execute_write(
            "INSERT INTO locks (name, holder, acquired_at) VALUES (?, ?, datetime('now', '-1 hour'))",
            ("job", "dead-process"),
        )
        assert await storage.execute_transaction(
            lambda conn: Storage.try_acquire_lock(conn, "job", "fresh")
        )


class TestMaintenance:
    async def test_backup_pruned(self, storage: Storage, tmp_path: Path) -> None:
        storage._backup_count = 2
        for _ in range(4):
            await storage.backup()
        assert len(list((tmp_path / "backups").glob("memstore_*.db"))) == 2

    async def test_optimize(self, storage: Storage) -> None:
        await insert_memory(storage, "something to analyze")
        assert await storage.optimize() == "ok"

    async def test_db_size(self, storage: Storage) -> None:
        assert await storage.get_db_size_mb() >= 0.0

    async def test_context_manager(self, tmp_path: Path) -> None:
        s = Storage(tmp_path / "ctx.db")
        s._backup_dir = tmp_path / "ctx-backups"
        async with s as opened:
            assert opened.db_path.exists()
            assert (await opened.table_counts())["memories"] == 0
