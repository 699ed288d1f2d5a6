from __future__ import annotations

import sqlite3
from concurrent.futures import ThreadPoolExecutor

import pytest

from job_importer.infra import SQLiteManager


def test_sqlite_manager_initialises_schema(tmp_path) -> None:
    manager = SQLiteManager()
    conn = manager.connect(tmp_path / "importer.db")
    tables = {row["name"] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
    assert {"jobs", "import_runs", "run_errors", "run_task_outcomes", "feed_health", "queue_tasks"} <= tables
    columns = {row["name"] for row in conn.execute("PRAGMA table_info(jobs)")}
    assert {"key_title", "key_company", "key_location", "last_synced_at"} <= columns
    manager.close_all()


def test_connection_is_shared_per_path(tmp_path) -> None:
    manager = SQLiteManager()
    path = tmp_path / "nested" / "importer.db"
    assert manager.connect(path) is manager.connect(path)
    assert path.exists()
    manager.close_all()


def test_sqlite_manager_reset(tmp_path) -> None:
    manager = SQLiteManager()
    path = tmp_path / "importer.db"
    with manager.transaction(path) as conn:
        conn.execute(
            "INSERT INTO feed_health(url, name) VALUES (?, ?)", ("https://example.com/feed", "example.com")
        )
    manager.reset(path)
    assert not path.exists()
    with manager.transaction(path) as conn:
        rows = conn.execute("SELECT count(*) FROM feed_health").fetchone()
    assert rows[0] == 0
    manager.close_all()


def test_transactions_serialise_across_threads(tmp_path) -> None:
    manager = SQLiteManager()
    path = tmp_path / "importer.db"

    def insert(index: int) -> None:
        with manager.transaction(path) as conn:
            conn.execute("INSERT INTO feed_health(url, name) VALUES (?, ?)", (f"https://f/{index}", "f"))

    with ThreadPoolExecutor(max_workers=8) as executor:
        list(executor.map(insert, range(40)))

    with manager.transaction(path) as conn:
        assert conn.execute("SELECT count(*) FROM feed_health").fetchone()[0] == 40
    manager.close_all()


def test_immediate_transaction_holds_the_write_lock(tmp_path) -> None:
    manager = SQLiteManager()
    path = tmp_path / "importer.db"
    with manager.transaction(path, immediate=True) as conn:
        assert conn.in_transaction
        other = sqlite3.connect(path, timeout=0)
        with pytest.raises(sqlite3.OperationalError, match="locked"):
            other.execute("BEGIN IMMEDIATE")
        other.close()
    with manager.transaction(path) as conn:
        assert not conn.in_transaction
    manager.close_all()
