"""SQLite implementations of the job, run and feed health stores."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ...infra.storage import SQLiteManager
from ...models import FeedHealth, ImportErrorEntry, ImportRun, JobRecord, Outcome, RunStatus, StoredJob
from ..dedup import IdentityKey
from .base import (
    RUN_UPDATABLE_FIELDS,
    BaseFeedHealthStore,
    BaseJobStore,
    BaseRunStore,
    CompletedTotals,
    JobFilters,
    JobPage,
    RunFilters,
    RunPage,
    UpsertResult,
)

_JOB_FIELDS = (
    "title",
    "company",
    "location",
    "description",
    "salary",
    "job_type",
    "category",
    "url",
    "company_url",
    "posted_date",
    "expiry_date",
    "source",
    "source_id",
)
_REQUIRED_JOB_FIELDS = {"title", "company", "location", "description", "url", "source"}

_COUNTER_COLUMNS = {
    Outcome.NEW: ("new_count", "total_imported"),
    Outcome.UPDATED: ("updated_count", "total_imported"),
    Outcome.FAILED: ("failed_count",),
}


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _like_pattern(text: str) -> str:
    escaped = text.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class SQLiteJobStore(BaseJobStore):
    """Persist job records keyed by their identity triple."""

    def __init__(self, manager: SQLiteManager, db_path: Path) -> None:
        self.manager = manager
        self.db_path = db_path
        self.manager.connect(db_path)

    def find_by_key(self, key: IdentityKey) -> dict[str, Any] | None:
        with self.manager.transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE key_title = ? AND key_company = ? AND key_location = ?",
                (key.title, key.company, key.location),
            ).fetchone()
        return dict(row) if row else None

    def upsert(self, key: IdentityKey, record: JobRecord, synced_at: datetime) -> UpsertResult:
        values = self._row_values(record)
        stamp = _ts(synced_at)
        columns = ("key_title", "key_company", "key_location", *_JOB_FIELDS, "created_at", "updated_at", "last_synced_at")
        params = (
            key.title,
            key.company,
            key.location,
            *(values[name] for name in _JOB_FIELDS),
            stamp,
            stamp,
            stamp,
        )
        assignments = ", ".join(
            f"{name} = ?" if name in _REQUIRED_JOB_FIELDS else f"{name} = COALESCE(?, {name})"
            for name in _JOB_FIELDS
        )
        with self.manager.transaction(self.db_path, immediate=True) as conn:
            cursor = conn.execute(
                f"INSERT INTO jobs({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)}) "
                "ON CONFLICT(key_title, key_company, key_location) DO NOTHING",
                params,
            )
            inserted = cursor.rowcount == 1
            if not inserted:
                conn.execute(
                    f"UPDATE jobs SET {assignments}, updated_at = ?, last_synced_at = ? "
                    "WHERE key_title = ? AND key_company = ? AND key_location = ?",
                    (
                        *(values[name] for name in _JOB_FIELDS),
                        stamp,
                        stamp,
                        key.title,
                        key.company,
                        key.location,
                    ),
                )
            row = conn.execute(
                "SELECT * FROM jobs WHERE key_title = ? AND key_company = ? AND key_location = ?",
                (key.title, key.company, key.location),
            ).fetchone()
        return UpsertResult(record=dict(row), was_inserted=inserted)

    def count(self) -> int:
        with self.manager.transaction(self.db_path) as conn:
            return int(conn.execute("SELECT COUNT(*) FROM jobs").fetchone()[0])

    def find_duplicates(self) -> list[list[Any]]:
        # The unique index prevents exact key collisions; duplicates can only
        # appear between keys that differ in inner whitespace.
        with self.manager.transaction(self.db_path) as conn:
            rows = conn.execute(
                "SELECT id, key_title, key_company, key_location FROM jobs ORDER BY id"
            ).fetchall()
        groups: dict[tuple[str, str, str], list[Any]] = {}
        for row in rows:
            collapsed = tuple(" ".join(row[col].split()) for col in ("key_title", "key_company", "key_location"))
            groups.setdefault(collapsed, []).append(row["id"])
        return [ids for ids in groups.values() if len(ids) > 1]

    def delete_ids(self, ids: list[Any]) -> int:
        if not ids:
            return 0
        with self.manager.transaction(self.db_path) as conn:
            cursor = conn.execute(
                f"DELETE FROM jobs WHERE id IN ({', '.join('?' for _ in ids)})", tuple(ids)
            )
            return cursor.rowcount

    def list_jobs(self, filters: JobFilters) -> JobPage:
        clauses: list[str] = []
        params: list[Any] = []
        if filters.category:
            clauses.append("category = ?")
            params.append(filters.category)
        if filters.job_type:
            clauses.append("job_type = ?")
            params.append(filters.job_type)
        if filters.search:
            pattern = _like_pattern(filters.search)
            clauses.append(
                "(LOWER(title) LIKE ? ESCAPE '\\' OR LOWER(company) LIKE ? ESCAPE '\\' "
                "OR LOWER(location) LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern] * 3)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.manager.transaction(self.db_path) as conn:
            total = int(conn.execute(f"SELECT COUNT(*) FROM jobs {where}", params).fetchone()[0])
            rows = conn.execute(
                f"SELECT * FROM jobs {where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                (*params, filters.limit, filters.skip),
            ).fetchall()
        return JobPage(
            jobs=[StoredJob.from_dict(dict(row)) for row in rows],
            page=filters.page,
            limit=filters.limit,
            total=total,
        )

    def get(self, job_id: str) -> StoredJob | None:
        try:
            row_id = int(job_id)
        except (TypeError, ValueError):
            return None
        with self.manager.transaction(self.db_path) as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (row_id,)).fetchone()
        return StoredJob.from_dict(dict(row)) if row else None

    @staticmethod
    def _row_values(record: JobRecord) -> dict[str, Any]:
        payload = record.to_dict()
        payload["posted_date"] = _ts(record.posted_date)
        payload["expiry_date"] = _ts(record.expiry_date)
        return payload


class SQLiteRunStore(BaseRunStore):
    """Import run records with server-side counter increments."""

    def __init__(self, manager: SQLiteManager, db_path: Path) -> None:
        self.manager = manager
        self.db_path = db_path
        self.manager.connect(db_path)

    def create(self, run: ImportRun) -> ImportRun:
        with self.manager.transaction(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO import_runs(
                    id, feed_url, status, triggered_by, import_type, total_fetched,
                    total_imported, new_count, updated_count, failed_count, queued_count,
                    enqueue_sealed, start_time, end_time, duration, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.id,
                    run.feed_url,
                    run.status.value,
                    run.triggered_by.value,
                    run.import_type.value,
                    run.total_fetched,
                    run.total_imported,
                    run.new_count,
                    run.updated_count,
                    run.failed_count,
                    run.queued_count,
                    int(run.enqueue_sealed),
                    _ts(run.start_time),
                    _ts(run.end_time),
                    run.duration,
                    _ts(run.created_at),
                ),
            )
            for entry in run.errors:
                self._insert_error(conn, run.id, entry)
        return run

    def get(self, run_id: str) -> ImportRun | None:
        with self.manager.transaction(self.db_path) as conn:
            row = conn.execute("SELECT * FROM import_runs WHERE id = ?", (run_id,)).fetchone()
            if row is None:
                return None
            errors = conn.execute(
                "SELECT * FROM run_errors WHERE run_id = ? ORDER BY id", (run_id,)
            ).fetchall()
        return self._to_run(row, errors)

    def update_fields(self, run_id: str, **values: Any) -> bool:
        unknown = set(values) - RUN_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated directly: {sorted(unknown)}")
        if not values:
            return False
        assignments = ", ".join(f"{name} = ?" for name in values)
        params = [int(value) if isinstance(value, bool) else value for value in values.values()]
        with self.manager.transaction(self.db_path) as conn:
            cursor = conn.execute(
                f"UPDATE import_runs SET {assignments} WHERE id = ? AND status = ?",
                (*params, run_id, RunStatus.IN_PROGRESS.value),
            )
            return cursor.rowcount == 1

    def increment(self, run_id: str, outcome: Outcome, task_id: str | None = None) -> bool:
        columns = _COUNTER_COLUMNS[outcome]
        assignments = ", ".join(f"{column} = {column} + 1" for column in columns)
        with self.manager.transaction(self.db_path, immediate=True) as conn:
            if not self._is_open(conn, run_id):
                return False
            if task_id is not None and not self._claim_outcome(conn, run_id, task_id, outcome):
                return False
            cursor = conn.execute(
                f"UPDATE import_runs SET {assignments} WHERE id = ? AND status = ?",
                (run_id, RunStatus.IN_PROGRESS.value),
            )
            return cursor.rowcount == 1

    def push_error(self, run_id: str, entry: ImportErrorEntry, task_id: str | None = None) -> bool:
        with self.manager.transaction(self.db_path, immediate=True) as conn:
            if not self._is_open(conn, run_id):
                return False
            if task_id is not None and not self._claim_outcome(conn, run_id, task_id, Outcome.FAILED):
                return False
            cursor = conn.execute(
                "UPDATE import_runs SET failed_count = failed_count + 1 WHERE id = ? AND status = ?",
                (run_id, RunStatus.IN_PROGRESS.value),
            )
            if cursor.rowcount != 1:
                return False
            self._insert_error(conn, run_id, entry)
            return True

    def transition(
        self,
        run_id: str,
        status: RunStatus,
        end_time: datetime,
        error: ImportErrorEntry | None = None,
    ) -> ImportRun | None:
        if not status.terminal:
            raise ValueError("transition requires a terminal status")
        with self.manager.transaction(self.db_path, immediate=True) as conn:
            row = conn.execute(
                "SELECT start_time FROM import_runs WHERE id = ? AND status = ?",
                (run_id, RunStatus.IN_PROGRESS.value),
            ).fetchone()
            if row is None:
                return None
            started = _parse_ts(row["start_time"])
            duration = max(0, int((end_time - started).total_seconds() * 1000))
            cursor = conn.execute(
                "UPDATE import_runs SET status = ?, end_time = ?, duration = ? WHERE id = ? AND status = ?",
                (status.value, _ts(end_time), duration, run_id, RunStatus.IN_PROGRESS.value),
            )
            if cursor.rowcount != 1:
                return None
            if error is not None:
                self._insert_error(conn, run_id, error)
        return self.get(run_id)

    def list_runs(self, filters: RunFilters) -> RunPage:
        clauses: list[str] = []
        params: list[Any] = []
        if filters.status is not None:
            clauses.append("status = ?")
            params.append(filters.status.value)
        if filters.feed:
            clauses.append("LOWER(feed_url) LIKE ?")
            params.append(f"%{filters.feed.lower()}%")
        if filters.start_date is not None:
            clauses.append("created_at >= ?")
            params.append(_ts(filters.start_date))
        if filters.end_date is not None:
            clauses.append("created_at <= ?")
            params.append(_ts(filters.end_date))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.manager.transaction(self.db_path) as conn:
            total = int(conn.execute(f"SELECT COUNT(*) FROM import_runs {where}", params).fetchone()[0])
            rows = conn.execute(
                f"SELECT * FROM import_runs {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
                (*params, filters.limit, filters.skip),
            ).fetchall()
            runs = []
            for row in rows:
                errors = conn.execute(
                    "SELECT * FROM run_errors WHERE run_id = ? ORDER BY id", (row["id"],)
                ).fetchall()
                runs.append(self._to_run(row, errors))
        return RunPage(runs=runs, page=filters.page, limit=filters.limit, total=total)

    def count_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in RunStatus}
        with self.manager.transaction(self.db_path) as conn:
            for row in conn.execute("SELECT status, COUNT(*) AS n FROM import_runs GROUP BY status"):
                counts[row["status"]] = int(row["n"])
        return counts

    def aggregate_completed(self) -> CompletedTotals:
        with self.manager.transaction(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT
                    COALESCE(SUM(total_imported), 0) AS total_imported,
                    COALESCE(SUM(new_count), 0) AS new_count,
                    COALESCE(SUM(updated_count), 0) AS updated_count,
                    COALESCE(SUM(failed_count), 0) AS failed_count,
                    COALESCE(AVG(duration), 0) AS average_duration
                FROM import_runs WHERE status = ?
                """,
                (RunStatus.COMPLETED.value,),
            ).fetchone()
        return CompletedTotals(
            total_imported=int(row["total_imported"]),
            new_count=int(row["new_count"]),
            updated_count=int(row["updated_count"]),
            failed_count=int(row["failed_count"]),
            average_duration=float(row["average_duration"]),
        )

    def in_progress_ids(self) -> list[str]:
        with self.manager.transaction(self.db_path) as conn:
            rows = conn.execute(
                "SELECT id FROM import_runs WHERE status = ? ORDER BY created_at",
                (RunStatus.IN_PROGRESS.value,),
            ).fetchall()
        return [row["id"] for row in rows]

    # ------------------------------------------------------------------
    @staticmethod
    def _is_open(conn: sqlite3.Connection, run_id: str) -> bool:
        row = conn.execute("SELECT status FROM import_runs WHERE id = ?", (run_id,)).fetchone()
        return row is not None and row["status"] == RunStatus.IN_PROGRESS.value

    @staticmethod
    def _claim_outcome(conn: sqlite3.Connection, run_id: str, task_id: str, outcome: Outcome) -> bool:
        cursor = conn.execute(
            "INSERT OR IGNORE INTO run_task_outcomes(run_id, task_id, outcome) VALUES (?, ?, ?)",
            (run_id, task_id, outcome.value),
        )
        return cursor.rowcount == 1

    @staticmethod
    def _insert_error(conn: sqlite3.Connection, run_id: str, entry: ImportErrorEntry) -> None:
        conn.execute(
            "INSERT INTO run_errors(run_id, record_id, reason, timestamp, trace) VALUES (?, ?, ?, ?, ?)",
            (run_id, entry.record_id, entry.reason, _ts(entry.timestamp), entry.trace),
        )

    @staticmethod
    def _to_run(row: sqlite3.Row, errors: list[sqlite3.Row]) -> ImportRun:
        payload = dict(row)
        payload["errors"] = [
            {
                "reason": err["reason"],
                "timestamp": err["timestamp"],
                "record_id": err["record_id"],
                "trace": err["trace"],
            }
            for err in errors
        ]
        return ImportRun.from_dict(payload)


class SQLiteFeedHealthStore(BaseFeedHealthStore):
    """Feed health rows keyed by url."""

    _COLUMNS = (
        "url",
        "name",
        "category",
        "active",
        "last_fetched_at",
        "last_successful_fetch",
        "fetch_count",
        "failure_count",
        "cumulative_jobs_fetched",
        "average_jobs_per_fetch",
        "fetch_interval",
        "priority",
    )

    def __init__(self, manager: SQLiteManager, db_path: Path) -> None:
        self.manager = manager
        self.db_path = db_path
        self.manager.connect(db_path)

    def find_by_url(self, url: str) -> FeedHealth | None:
        with self.manager.transaction(self.db_path) as conn:
            row = conn.execute("SELECT * FROM feed_health WHERE url = ?", (url,)).fetchone()
        return FeedHealth.from_dict(dict(row)) if row else None

    def upsert(self, health: FeedHealth) -> None:
        payload = health.to_dict()
        payload["active"] = int(health.active)
        payload["last_fetched_at"] = _ts(health.last_fetched_at)
        payload["last_successful_fetch"] = _ts(health.last_successful_fetch)
        with self.manager.transaction(self.db_path) as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO feed_health({', '.join(self._COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in self._COLUMNS)})",
                tuple(payload[name] for name in self._COLUMNS),
            )

    def list_all(self) -> list[FeedHealth]:
        with self.manager.transaction(self.db_path) as conn:
            rows = conn.execute("SELECT * FROM feed_health ORDER BY url").fetchall()
        return [FeedHealth.from_dict(dict(row)) for row in rows]


__all__ = ["SQLiteFeedHealthStore", "SQLiteJobStore", "SQLiteRunStore"]
