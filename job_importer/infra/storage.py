"""SQLite connection management shared by the stores and the task queue."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from threading import Lock, RLock
from typing import Dict, Iterator

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        key_title TEXT NOT NULL,
        key_company TEXT NOT NULL,
        key_location TEXT NOT NULL,
        title TEXT NOT NULL,
        company TEXT NOT NULL,
        location TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        salary TEXT,
        job_type TEXT,
        category TEXT,
        url TEXT NOT NULL,
        company_url TEXT,
        posted_date TEXT,
        expiry_date TEXT,
        source TEXT NOT NULL,
        source_id TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        last_synced_at TEXT NOT NULL,
        UNIQUE (key_title, key_company, key_location)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_jobs_source ON jobs(source, source_id)",
    """
    CREATE TABLE IF NOT EXISTS import_runs (
        id TEXT PRIMARY KEY,
        feed_url TEXT NOT NULL,
        status TEXT NOT NULL,
        triggered_by TEXT NOT NULL,
        import_type TEXT NOT NULL,
        total_fetched INTEGER NOT NULL DEFAULT 0,
        total_imported INTEGER NOT NULL DEFAULT 0,
        new_count INTEGER NOT NULL DEFAULT 0,
        updated_count INTEGER NOT NULL DEFAULT 0,
        failed_count INTEGER NOT NULL DEFAULT 0,
        queued_count INTEGER NOT NULL DEFAULT 0,
        enqueue_sealed INTEGER NOT NULL DEFAULT 0,
        start_time TEXT NOT NULL,
        end_time TEXT,
        duration INTEGER,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_runs_status ON import_runs(status, created_at)",
    """
    CREATE TABLE IF NOT EXISTS run_errors (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL,
        record_id TEXT,
        reason TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        trace TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_run_errors_run ON run_errors(run_id, id)",
    """
    CREATE TABLE IF NOT EXISTS run_task_outcomes (
        run_id TEXT NOT NULL,
        task_id TEXT NOT NULL,
        outcome TEXT NOT NULL,
        PRIMARY KEY (run_id, task_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS feed_health (
        url TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        category TEXT,
        active INTEGER NOT NULL DEFAULT 1,
        last_fetched_at TEXT,
        last_successful_fetch TEXT,
        fetch_count INTEGER NOT NULL DEFAULT 0,
        failure_count INTEGER NOT NULL DEFAULT 0,
        cumulative_jobs_fetched INTEGER NOT NULL DEFAULT 0,
        average_jobs_per_fetch INTEGER NOT NULL DEFAULT 0,
        fetch_interval INTEGER NOT NULL DEFAULT 60,
        priority INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS queue_tasks (
        task_id TEXT PRIMARY KEY,
        queue_name TEXT NOT NULL,
        run_id TEXT NOT NULL,
        payload TEXT NOT NULL,
        status TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 1,
        available_at REAL NOT NULL,
        last_error TEXT,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_queue_pick ON queue_tasks(queue_name, status, available_at)",
    "CREATE INDEX IF NOT EXISTS idx_queue_run ON queue_tasks(run_id, status)",
)


class SQLiteManager:
    """Manage shared SQLite connections with basic schema guarantees.

    One connection is kept per database file and shared across threads; every
    caller serialises through :meth:`transaction`, which holds the per-file
    lock for the duration of a single commit.
    """

    def __init__(self) -> None:
        self._connections: Dict[Path, sqlite3.Connection] = {}
        self._locks: Dict[Path, RLock] = {}
        self._lock = Lock()

    def connect(self, path: Path) -> sqlite3.Connection:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            if path not in self._connections:
                conn = sqlite3.connect(path, check_same_thread=False, timeout=30)
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA journal_mode=WAL")
                self._connections[path] = conn
                self._locks[path] = RLock()
                self._ensure_schema(conn)
            return self._connections[path]

    @contextmanager
    def transaction(self, path: Path, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Yield the connection for ``path`` inside a locked transaction.

        The per-file lock only covers this process. ``immediate`` also takes
        SQLite's write lock up front (``BEGIN IMMEDIATE``), so a read followed
        by a write cannot interleave with another process using the file.
        """

        conn = self.connect(path)
        lock = self._locks[Path(path)]
        with lock:
            with conn:
                if immediate and not conn.in_transaction:
                    conn.execute("BEGIN IMMEDIATE")
                yield conn

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        for statement in SCHEMA:
            conn.execute(statement)
        conn.commit()

    def reset(self, path: Path) -> None:
        path = Path(path)
        with self._lock:
            if path in self._connections:
                self._connections[path].close()
                del self._connections[path]
                del self._locks[path]
        for candidate in (path, path.with_name(path.name + "-wal"), path.with_name(path.name + "-shm")):
            if candidate.exists():
                candidate.unlink()

    def close_all(self) -> None:
        with self._lock:
            for conn in self._connections.values():
                conn.close()
            self._connections.clear()
            self._locks.clear()


__all__ = ["SCHEMA", "SQLiteManager"]
