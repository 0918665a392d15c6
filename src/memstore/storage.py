"""Core storage layer for the memstore engine.

Manages a SQLite database holding memory records, an FTS5 index over their
text, the consolidation audit log, processing-state transitions and
advisory locks.  All public methods are async-friendly, wrapping
synchronous sqlite3 calls via :func:`anyio.to_thread.run_sync`.

Connection strategy:
    - Writers queue on one ``threading.Lock`` per Storage.
    - Thread-local persistent connections, one long-lived connection per
      thread pool worker.
    - WAL journaling lets readers proceed while a write is in flight.

Usage::

    from memstore.storage import Storage

    storage = Storage(get_config().db_path)
    await storage.initialize()
    await storage.execute_write("UPDATE memories SET topic = ? WHERE id = ?", (...))
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, TypeVar

import anyio

from memstore.config import get_config
from memstore.errors import TransactionError

_T = TypeVar("_T")

log = logging.getLogger(__name__)

STALE_LOCK_MINUTES = 10
"""Age after which an advisory lock row is considered abandoned."""

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """\
-- Memory records
CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    namespace TEXT NOT NULL DEFAULT 'default',
    content TEXT NOT NULL,
    summary TEXT NOT NULL DEFAULT '',
    topic TEXT,
    classification TEXT NOT NULL DEFAULT 'contextual' CHECK(classification IN (
        'essential','contextual','conversational','reference','personal','conscious-info'
    )),
    importance TEXT NOT NULL DEFAULT 'medium' CHECK(importance IN (
        'critical','high','medium','low'
    )),
    entities TEXT NOT NULL DEFAULT '[]',
    keywords TEXT NOT NULL DEFAULT '[]',
    confidence_score REAL NOT NULL DEFAULT 0.5,
    classification_reason TEXT NOT NULL DEFAULT '',
    is_duplicate INTEGER NOT NULL DEFAULT 0,
    duplicate_of TEXT,
    is_consolidated INTEGER NOT NULL DEFAULT 0,
    consolidated_into TEXT,
    consolidated_at TEXT,
    consolidation_history TEXT NOT NULL DEFAULT '[]',
    general_relationships TEXT NOT NULL DEFAULT '[]',
    superseding_relationships TEXT NOT NULL DEFAULT '[]',
    processing_state TEXT NOT NULL DEFAULT 'PENDING',
    metadata TEXT NOT NULL DEFAULT '{}',
    extraction_timestamp TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- FTS5 index over content and summary, kept in step by the triggers below
CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts USING fts5(
    content, summary, content=memories, content_rowid=rowid
);

-- FTS sync triggers
CREATE TRIGGER IF NOT EXISTS memories_ai AFTER INSERT ON memories BEGIN
    INSERT INTO memories_fts(rowid, content, summary)
    VALUES (new.rowid, new.content, new.summary);
END;

CREATE TRIGGER IF NOT EXISTS memories_ad AFTER DELETE ON memories BEGIN
    INSERT INTO memories_fts(memories_fts, rowid, content, summary)
    VALUES ('delete', old.rowid, old.content, old.summary);
END;

CREATE TRIGGER IF NOT EXISTS memories_au AFTER UPDATE OF content, summary ON memories BEGIN
    INSERT INTO memories_fts(memories_fts, rowid, content, summary)
    VALUES ('delete', old.rowid, old.content, old.summary);
    INSERT INTO memories_fts(rowid, content, summary)
    VALUES (new.rowid, new.content, new.summary);
END;

-- One row per consolidation outcome
CREATE TABLE IF NOT EXISTS consolidation_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    action TEXT NOT NULL,
    namespace TEXT NOT NULL DEFAULT 'default',
    details TEXT,
    memories_affected TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Processing-state transition audit trail
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    memory_id TEXT NOT NULL,
    from_state TEXT NOT NULL,
    to_state TEXT NOT NULL,
    reason TEXT,
    agent_id TEXT,
    created_at TEXT NOT NULL
);

-- Named reservations shared by every process on the file
CREATE TABLE IF NOT EXISTS locks (
    name TEXT PRIMARY KEY,
    holder TEXT,
    acquired_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

# Built after migrations so indexed columns always exist.
_INDEX_SQL = """\
CREATE INDEX IF NOT EXISTS idx_memories_namespace ON memories(namespace);
CREATE INDEX IF NOT EXISTS idx_memories_classification
    ON memories(namespace, classification);
CREATE INDEX IF NOT EXISTS idx_memories_state
    ON memories(namespace, processing_state);
CREATE INDEX IF NOT EXISTS idx_memories_duplicate_of
    ON memories(duplicate_of) WHERE duplicate_of IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_memories_consolidated_into
    ON memories(consolidated_into) WHERE consolidated_into IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_state_transitions_memory
    ON state_transitions(memory_id);
CREATE INDEX IF NOT EXISTS idx_consolidation_log_created
    ON consolidation_log(created_at);
"""


# ---------------------------------------------------------------------------
# Storage class
# ---------------------------------------------------------------------------


class Storage:
    """Async-friendly SQLite storage backend for the memstore engine.

    Parameters
    ----------
    db_path:
        Filesystem path for the SQLite database file.  Parent directories
        are created automatically during :meth:`initialize`.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        cfg = get_config()
        self._db_path: Path = db_path or cfg.db_path
        self._backup_dir: Path = cfg.backup_dir
        self._backup_count: int = cfg.backup_count
        self._write_lock = threading.Lock()
        self._local = threading.local()
        self._all_connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._initialized = False

    @property
    def db_path(self) -> Path:
        """Location of the database file."""
        return self._db_path

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create or upgrade the schema, then snapshot the file.

        Safe to call repeatedly.  Missing directories are created, the
        additive migrations run before indexes are built.
        """
        await anyio.to_thread.run_sync(self._initialize_sync)
        self._initialized = True
        log.info("Storage initialised at %s", self._db_path)

    def _initialize_sync(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_dir.mkdir(parents=True, exist_ok=True)

        conn = self._open_connection()
        try:
            conn.executescript(_SCHEMA_SQL)
            self._run_migrations(conn)
            conn.executescript(_INDEX_SQL)
            conn.commit()
        finally:
            conn.close()

        self._backup_sync()

    def _run_migrations(self, conn: sqlite3.Connection) -> None:
        """Apply schema migrations for existing databases."""
        columns = {row[1] for row in conn.execute("PRAGMA table_info(memories)")}

        # Migration 1: extraction timestamp carried through consolidation backups.
        if "extraction_timestamp" not in columns:
            conn.execute("ALTER TABLE memories ADD COLUMN extraction_timestamp TEXT")
            log.info("Migration: Added 'extraction_timestamp' column to memories table")

        # Migration 2: namespace on the audit log.
        log_columns = {
            row[1] for row in conn.execute("PRAGMA table_info(consolidation_log)")
        }
        if "namespace" not in log_columns:
            conn.execute(
                "ALTER TABLE consolidation_log "
                "ADD COLUMN namespace TEXT NOT NULL DEFAULT 'default'"
            )
            log.info("Migration: Added 'namespace' column to consolidation_log")

    # ------------------------------------------------------------------
    # Connection factory
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        """Return the thread-local persistent :class:`sqlite3.Connection`."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._open_connection()
            self._local.conn = conn
            with self._connections_lock:
                self._all_connections.append(conn)
        return conn

    def _open_connection(self) -> sqlite3.Connection:
        """Open a connection tuned for one writer and many readers.

        Rows come back as :class:`sqlite3.Row`.
        """
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=30.0,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    # ------------------------------------------------------------------
    # Query execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        """Run a SELECT on this thread's connection and fetch every row.

        Parameters
        ----------
        sql:
            SQL SELECT statement.
        params:
            Positional tuple or named mapping.

        Returns
        -------
        list[sqlite3.Row]
            Rows addressable by column name.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_sync(sql, params),
        )

    def _execute_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        conn = self._get_connection()
        return conn.execute(sql, params).fetchall()

    async def execute_write(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        """Run one INSERT, UPDATE or DELETE and commit it.

        Returns
        -------
        int
            The number of rows changed by the statement.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_write_sync(sql, params),
        )

    def _execute_write_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        with self._write_lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(sql, params)
                conn.commit()
                return cursor.rowcount
            except Exception:
                conn.rollback()
                raise

    async def execute_transaction(
        self,
        fn: Callable[[sqlite3.Connection], _T],
        timeout: float | None = None,
    ) -> _T:
        """Run *fn* atomically under ``BEGIN IMMEDIATE``.

        *fn* gets the raw connection with the transaction already open and
        must not commit itself.  Any exception rolls everything back;
        otherwise the work is committed as a unit.

        Parameters
        ----------
        fn:
            Synchronous callable executed on a worker thread while the
            process write lock is held.
        timeout:
            Optional budget in seconds, measured from the moment the write
            lock is held.  SQLite work still running past the deadline is
            interrupted, and a callback that returns late is not committed.
            Either way :class:`~memstore.errors.TransactionError` is raised
            after the rollback.

        Returns
        -------
        T
            Whatever *fn* returns.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_transaction_sync(fn, timeout),
        )

    def _execute_transaction_sync(
        self,
        fn: Callable[[sqlite3.Connection], _T],
        timeout: float | None = None,
    ) -> _T:
        with self._write_lock:
            conn = self._get_connection()
            deadline = time.monotonic() + timeout if timeout is not None else None
            if deadline is not None:
                conn.set_progress_handler(
                    lambda: 1 if time.monotonic() > deadline else 0, 1000
                )
            try:
                conn.execute("BEGIN IMMEDIATE")
                result = fn(conn)
                if deadline is not None and time.monotonic() > deadline:
                    raise TransactionError(
                        f"Transaction exceeded its {timeout:g}s timeout"
                    )
                conn.commit()
                return result
            except sqlite3.OperationalError as exc:
                conn.rollback()
                if deadline is not None and time.monotonic() > deadline:
                    raise TransactionError(
                        f"Transaction exceeded its {timeout:g}s timeout"
                    ) from exc
                raise
            except Exception:
                conn.rollback()
                raise
            finally:
                if deadline is not None:
                    conn.set_progress_handler(None, 0)

    # ------------------------------------------------------------------
    # Advisory locks (rows in ``locks``)
    # ------------------------------------------------------------------

    @staticmethod
    def try_acquire_lock(conn: sqlite3.Connection, name: str, holder: str | None = None) -> bool:
        """Reserve *name* for *holder* on a connection inside a transaction.

        A reservation older than :data:`STALE_LOCK_MINUTES` is assumed to
        belong to a crashed process and is dropped first.  Returns ``False``
        when somebody else holds the name.
        """
        conn.execute(
            "DELETE FROM locks WHERE name = ? AND acquired_at < datetime('now', ?)",
            (name, f"-{STALE_LOCK_MINUTES} minutes"),
        )
        try:
            conn.execute(
                "INSERT INTO locks (name, holder) VALUES (?, ?)",
                (name, holder or uuid.uuid4().hex),
            )
        except sqlite3.IntegrityError:
            log.debug("Lock %s already held", name)
            return False
        return True

    @staticmethod
    def release_lock(conn: sqlite3.Connection, name: str, holder: str | None = None) -> None:
        """Drop the reservation on *name*; only *holder*'s when one is given."""
        sql = "DELETE FROM locks WHERE name = ?"
        params: tuple = (name,)
        if holder is not None:
            sql += " AND holder = ?"
            params = (name, holder)
        conn.execute(sql, params)

    # ------------------------------------------------------------------
    # Maintenance operations
    # ------------------------------------------------------------------

    async def backup(self) -> Path:
        """Copy the live database into ``backup_dir`` with the online backup API.

        Only the newest ``backup_count`` copies are retained.
        """
        return await anyio.to_thread.run_sync(self._backup_sync)

    def _backup_sync(self) -> Path:
        if not self._db_path.exists():
            log.debug("No database file to back up yet")
            return self._db_path

        timestamp = datetime.now(tz=timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        backup_path = self._backup_dir / f"memstore_{timestamp}.db"

        src = sqlite3.connect(str(self._db_path))
        dst = sqlite3.connect(str(backup_path))
        try:
            src.backup(dst)
            log.info("Backup created: %s", backup_path)
        finally:
            dst.close()
            src.close()

        self._prune_backups()
        return backup_path

    def _prune_backups(self) -> None:
        """Remove backup files beyond the retention count, newest first."""
        backups = sorted(
            self._backup_dir.glob("memstore_*.db"),
            key=lambda p: p.name,
            reverse=True,
        )
        for old in backups[self._backup_count :]:
            try:
                old.unlink()
                log.debug("Pruned old backup: %s", old.name)
            except OSError as exc:
                log.warning("Failed to remove old backup %s: %s", old.name, exc)

    async def optimize(self) -> str:
        """Run ``ANALYZE``, merge FTS5 segments and check integrity.

        Returns
        -------
        str
            The first line of ``PRAGMA integrity_check`` (``"ok"`` when healthy).
        """
        return await anyio.to_thread.run_sync(self._optimize_sync)

    def _optimize_sync(self) -> str:
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("ANALYZE")
                conn.execute("INSERT INTO memories_fts(memories_fts) VALUES ('optimize')")
                rows = conn.execute("PRAGMA integrity_check(1)").fetchall()
                status = rows[0][0] if rows else "unknown"
                if status != "ok":
                    log.warning("Integrity check returned: %s", status)
                conn.commit()
                return status
            except Exception:
                conn.rollback()
                raise

    # ------------------------------------------------------------------
    # Database metadata
    # ------------------------------------------------------------------

    async def get_db_size_mb(self) -> float:
        """Return the database file size (plus WAL) in megabytes."""
        return await anyio.to_thread.run_sync(self._get_db_size_mb_sync)

    def _get_db_size_mb_sync(self) -> float:
        if not self._db_path.exists():
            return 0.0
        size_bytes = self._db_path.stat().st_size
        wal_path = self._db_path.with_suffix(".db-wal")
        if wal_path.exists():
            size_bytes += wal_path.stat().st_size
        return round(size_bytes / (1024 * 1024), 2)

    async def table_counts(self) -> dict[str, int]:
        """Return row counts for the core tables in a single round-trip."""
        rows = await self.execute(
            """
            SELECT 'memories'          AS tbl, COUNT(*) AS cnt FROM memories
            UNION ALL
            SELECT 'consolidation_log',        COUNT(*)        FROM consolidation_log
            UNION ALL
            SELECT 'state_transitions',        COUNT(*)        FROM state_transitions
            UNION ALL
            SELECT 'locks',                    COUNT(*)        FROM locks
            """
        )
        return {row["tbl"]: row["cnt"] for row in rows}

    # ------------------------------------------------------------------
    # Context manager support
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close all persistent connections opened across all threads."""
        with self._connections_lock:
            conns = list(self._all_connections)
            self._all_connections.clear()

        for conn in conns:
            try:
                conn.close()
            except Exception as exc:
                log.warning("Failed to close connection: %s", exc)

        self._local.conn = None
        log.debug("Storage closed (%d connections released)", len(conns))

    async def __aenter__(self) -> Storage:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
