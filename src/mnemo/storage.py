"""Core storage layer for the mnemo engine.

Manages a SQLite database holding memory records, their outgoing
relationship edges and an audit log of refinement runs.  All public methods
are async-friendly, wrapping synchronous sqlite3 calls via
:func:`anyio.to_thread.run_sync`.

Connection strategy:
    - A single ``threading.Lock`` serialises write operations.
    - Thread-local persistent connections: each thread pool worker keeps one
      long-lived connection open.
    - WAL mode enables concurrent readers alongside a single writer.

Usage::

    from mnemo.storage import Storage

    store = Storage(config.db_path)
    await store.initialize()
    rows = await store.execute("SELECT id FROM memories WHERE index_name = ?", ("notes",))
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

import anyio

from mnemo.errors import SearchDiagnostics, StorageError

_T = TypeVar("_T")

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """\
-- Memory records, scoped by index
CREATE TABLE IF NOT EXISTS memories (
    index_name TEXT NOT NULL,
    id TEXT NOT NULL,
    text TEXT NOT NULL,
    memory_type TEXT NOT NULL DEFAULT 'semantic'
        CHECK(memory_type IN ('self','belief','pattern','episodic','semantic')),
    kind TEXT NOT NULL DEFAULT 'raw' CHECK(kind IN ('raw','summary','derived')),
    source TEXT NOT NULL DEFAULT 'user' CHECK(source IN ('user','file','system')),
    protection_class TEXT NOT NULL DEFAULT 'none' CHECK(protection_class IN ('none','system')),
    superseded_by_id TEXT,
    valid_at TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (index_name, id)
);

-- Directed edges; one row per (source, target, type)
CREATE TABLE IF NOT EXISTS relationships (
    index_name TEXT NOT NULL,
    source_id TEXT NOT NULL,
    target_id TEXT NOT NULL,
    type TEXT NOT NULL CHECK(type IN (
        'summarizes','example_of','is_generalization_of','supports',
        'contradicts','causes','similar_to','historical_version_of',
        'derived_from','leads_to','informs','consolidates','evolves_into'
    )),
    weight REAL CHECK(weight IS NULL OR (weight >= 0 AND weight <= 1)),
    valid_at TEXT,
    recorded_at TEXT,
    temporal_ok INTEGER,
    temporal_reason TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    PRIMARY KEY (index_name, source_id, target_id, type)
);

-- Audit log for refinement, consolidation and reconsolidation runs
CREATE TABLE IF NOT EXISTS refinement_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    index_name TEXT NOT NULL,
    operation TEXT NOT NULL,
    summary TEXT,
    details TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

# Created after migrations because some reference migrated columns.
_INDEX_SQL = """\
CREATE INDEX IF NOT EXISTS idx_memories_valid_at ON memories(index_name, valid_at);
CREATE INDEX IF NOT EXISTS idx_memories_superseded
    ON memories(index_name, superseded_by_id) WHERE superseded_by_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_relationships_target ON relationships(index_name, target_id);
CREATE INDEX IF NOT EXISTS idx_relationships_type ON relationships(index_name, type);
CREATE INDEX IF NOT EXISTS idx_refinement_log_index ON refinement_log(index_name, created_at);
"""

# Columns added to ``relationships`` when bitemporal validation was introduced.
_RELATIONSHIP_TEMPORAL_COLUMNS: tuple[tuple[str, str], ...] = (
    ("valid_at", "TEXT"),
    ("recorded_at", "TEXT"),
    ("temporal_ok", "INTEGER"),
    ("temporal_reason", "TEXT"),
)


# ---------------------------------------------------------------------------
# Storage class
# ---------------------------------------------------------------------------


class Storage:
    """Async-friendly SQLite storage backend.

    Parameters
    ----------
    db_path:
        Filesystem path for the SQLite database file.  Parent directories
        are created automatically during :meth:`initialize`.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path: Path = Path(db_path)
        self._write_lock = threading.Lock()
        self._local = threading.local()
        self._all_connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()  # guards _all_connections
        self._initialized = False

    @property
    def db_path(self) -> Path:
        """Filesystem path of the SQLite database."""
        return self._db_path

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Prepare the database for use.

        Idempotent.  Creates the parent directory, all tables and indexes,
        and applies column migrations to databases created by older
        releases.
        """
        await anyio.to_thread.run_sync(self._initialize_sync)
        self._initialized = True
        log.info("Storage initialised at %s", self._db_path)

    def _initialize_sync(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = self._open_connection()
        try:
            conn.executescript(_SCHEMA_SQL)
            self._run_migrations(conn)
            conn.executescript(_INDEX_SQL)
            conn.commit()
        finally:
            conn.close()

    def _run_migrations(self, conn: sqlite3.Connection) -> None:
        """Apply schema migrations for existing databases.

        Each migration checks whether it needs to run before executing.
        """
        cursor = conn.execute("PRAGMA table_info(relationships)")
        columns = {row[1] for row in cursor.fetchall()}

        for name, decl in _RELATIONSHIP_TEMPORAL_COLUMNS:
            if name not in columns:
                conn.execute(f"ALTER TABLE relationships ADD COLUMN {name} {decl}")
                log.info("Migration: Added '%s' column to relationships table", name)

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
        """Open and configure a new :class:`sqlite3.Connection`.

        Every connection uses WAL journaling, enforces foreign keys and
        returns :class:`sqlite3.Row` rows.
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
        """Execute a read-only query and return all rows."""
        return await anyio.to_thread.run_sync(
            lambda: self._execute_sync(sql, params),
        )

    def _execute_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        conn = self._get_connection()
        cursor = conn.execute(sql, params)
        return cursor.fetchall()

    async def execute_read(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        """Run a read-only callback against the thread-local connection.

        Use this when a read needs several statements (e.g. records plus
        their edges) but no write lock.
        """
        return await anyio.to_thread.run_sync(
            lambda: fn(self._get_connection()),
        )

    async def execute_write(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        """Execute a write query under the write lock.

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

    async def execute_transaction(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        """Execute a callback inside a single ``BEGIN IMMEDIATE`` transaction.

        The write lock is held for the entire duration, and the callback
        receives a raw :class:`sqlite3.Connection` that is already inside
        the transaction.  Commit happens on success and rollback on any
        exception, so a callback that replaces a record's edges either
        lands completely or not at all.

        Parameters
        ----------
        fn:
            A synchronous callable that receives a
            :class:`sqlite3.Connection` and returns a value of type *T*.

        Returns
        -------
        T
            Whatever *fn* returns.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_transaction_sync(fn),
        )

    def _execute_transaction_sync(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                result = fn(conn)
                conn.commit()
                return result
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
        wal_path = self._db_path.with_name(self._db_path.name + "-wal")
        if wal_path.exists():
            size_bytes += wal_path.stat().st_size
        return round(size_bytes / (1024 * 1024), 2)

    async def table_counts(self) -> dict[str, int]:
        """Return row counts for all core tables in one round-trip."""
        rows = await self.execute(
            """
            SELECT 'memories'       AS tbl, COUNT(*) AS cnt FROM memories
            UNION ALL
            SELECT 'relationships',          COUNT(*)        FROM relationships
            UNION ALL
            SELECT 'refinement_log',         COUNT(*)        FROM refinement_log
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
            except sqlite3.Error as exc:
                log.warning("Failed to close connection: %s", exc)

        self._local.conn = None
        log.debug("Storage closed (%d connections released)", len(conns))


# ---------------------------------------------------------------------------
# Guarded execution with structured diagnostics
# ---------------------------------------------------------------------------


def _is_busy(exc: sqlite3.Error) -> bool:
    message = str(exc).lower()
    return isinstance(exc, sqlite3.OperationalError) and (
        "locked" in message or "busy" in message
    )


async def run_guarded(
    fn: Callable[[], Awaitable[_T]],
    *,
    index: str | None,
    operation: str,
    retries: int = 3,
    backoff_ms: int = 50,
) -> _T:
    """Await ``fn()`` and convert SQLite failures into :class:`StorageError`.

    Busy/locked errors are retried up to *retries* times with linear
    backoff.  The raised error carries timing, retry count and the SQLite
    error name so callers can report it without re-deriving context.
    """
    started = time.perf_counter()
    attempt = 0
    while True:
        try:
            return await fn()
        except sqlite3.Error as exc:
            if _is_busy(exc) and attempt < retries:
                attempt += 1
                log.warning(
                    "%s on index %s hit a busy database (attempt %d/%d)",
                    operation, index, attempt, retries,
                )
                await anyio.sleep(backoff_ms * attempt / 1000)
                continue

            busy = _is_busy(exc)
            diagnostics = SearchDiagnostics(
                index=index,
                operation=operation,
                status=503 if busy else 500,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
                retry_count=attempt,
                sqlite_error=getattr(exc, "sqlite_errorname", None) or type(exc).__name__,
                hint=(
                    "Another process holds the write lock; retry later or serialise refinement runs"
                    if busy
                    else None
                ),
            )
            raise StorageError(
                f"{operation} failed for index {index}: {exc}", diagnostics, exc
            ) from exc
