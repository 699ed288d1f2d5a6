"""Durable work queue with bounded concurrency, retry and dead-lettering."""

from __future__ import annotations

import json
import sqlite3
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future, wait
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from threading import Event
from typing import Any, Callable, Iterable

import structlog

from ..config import QueueConfig
from ..errors import PermanentTaskError, QueueError
from ..infra.storage import SQLiteManager
from ..models import JobRecord, QueueTask
from .thread_pool import ThreadPoolManager

TaskHandler = Callable[[QueueTask], Any]
CompletedCallback = Callable[[QueueTask, Any], None]
FailedCallback = Callable[[QueueTask, BaseException], None]
SettledCallback = Callable[[QueueTask], None]


class TaskStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class QueueStats:
    pending: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.active + self.completed + self.failed

    def to_dict(self) -> dict[str, int]:
        return {
            "pending": self.pending,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
            "total": self.total,
        }


def backoff_delay(attempts: int, retry_delay: float, max_backoff: float) -> float:
    """Exponential delay before the next attempt after ``attempts`` failures."""

    exponent = max(attempts - 1, 0)
    return min(retry_delay * (2**exponent), max_backoff)


class BaseTaskQueue(ABC):
    """At-least-once queue contract used by the orchestrator and worker."""

    @abstractmethod
    def add(self, task: QueueTask) -> bool:
        """Enqueue one task; ``False`` when its id is already known."""

    @abstractmethod
    def add_bulk(self, tasks: Iterable[QueueTask]) -> int:
        """Enqueue many tasks atomically, returning how many were accepted."""

    @abstractmethod
    def start(
        self,
        handler: TaskHandler,
        on_completed: CompletedCallback | None = None,
        on_failed: FailedCallback | None = None,
        on_settled: SettledCallback | None = None,
    ) -> None:
        """Run ``handler`` over queued tasks on the worker pool."""

    @abstractmethod
    def stop(self, drain: bool = True, timeout: float | None = None) -> None:
        """Stop the workers, optionally waiting for queued work first."""

    @abstractmethod
    def retry_failed(self, run_id: str | None = None) -> int:
        """Move dead-lettered tasks back to pending."""

    @abstractmethod
    def clean(self, older_than: float, status: TaskStatus = TaskStatus.COMPLETED) -> int:
        """Delete tasks in ``status`` untouched for ``older_than`` seconds."""

    @abstractmethod
    def stats(self) -> QueueStats:
        """Task counts by state."""

    @abstractmethod
    def outstanding(self, run_id: str) -> int:
        """Pending plus active tasks for ``run_id``."""

    @abstractmethod
    def pause(self) -> None:
        """Stop picking up new tasks."""

    @abstractmethod
    def resume(self) -> None:
        """Resume picking up tasks."""

    @abstractmethod
    def empty(self) -> int:
        """Drop every pending task."""

    @abstractmethod
    def join(self, timeout: float | None = None) -> bool:
        """Block until nothing is pending or active; ``False`` on timeout."""

    def close(self) -> None:
        return


class SQLiteTaskQueue(BaseTaskQueue):
    """Queue persisted in SQLite and drained by a pool of worker threads.

    Tasks are claimed one at a time under SQLite's write lock and only while
    still pending, so several processes may share the file. Tasks a crashed
    worker left active go back to pending when workers start, never when a
    producer merely opens the queue. A task is only marked completed or failed
    after its callbacks ran, which keeps :meth:`outstanding` from reaching
    zero before every outcome of a run has been recorded.
    """

    def __init__(
        self,
        config: QueueConfig,
        db_path: Path,
        manager: SQLiteManager | None = None,
        pool: ThreadPoolManager | None = None,
        logger: structlog.BoundLogger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.db_path = Path(db_path)
        self.manager = manager or SQLiteManager()
        self.pool = pool or ThreadPoolManager(default_workers=config.concurrency)
        self.logger = logger or structlog.get_logger("job_importer.queue").bind(queue=config.name)
        self.clock = clock
        self._stop = Event()
        self._resume = Event()
        self._resume.set()
        self._wakeup = Event()
        self._futures: list[Future] = []

    # ------------------------------------------------------------------
    # Producer side
    def add(self, task: QueueTask) -> bool:
        return self.add_bulk([task]) == 1

    def add_bulk(self, tasks: Iterable[QueueTask]) -> int:
        now = self.clock()
        rows = [
            (
                task.task_id,
                self.config.name,
                task.import_run_id,
                json.dumps(task.payload(), ensure_ascii=False),
                TaskStatus.PENDING.value,
                self.config.max_retries,
                now,
                now,
                now,
            )
            for task in tasks
        ]
        if not rows:
            return 0
        accepted = 0
        try:
            with self.manager.transaction(self.db_path) as conn:
                for row in rows:
                    cursor = conn.execute(
                        """
                        INSERT OR IGNORE INTO queue_tasks(
                            task_id, queue_name, run_id, payload, status, attempts,
                            max_attempts, available_at, created_at, updated_at
                        ) VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
                        """,
                        row,
                    )
                    accepted += cursor.rowcount
        except sqlite3.Error as exc:
            raise QueueError(f"Failed to enqueue tasks: {exc}") from exc
        if accepted < len(rows):
            self.logger.info("duplicate_tasks_ignored", submitted=len(rows), accepted=accepted)
        self._wakeup.set()
        return accepted

    # ------------------------------------------------------------------
    # Consumer side
    def start(
        self,
        handler: TaskHandler,
        on_completed: CompletedCallback | None = None,
        on_failed: FailedCallback | None = None,
        on_settled: SettledCallback | None = None,
    ) -> None:
        if self._futures:
            raise QueueError("Queue workers are already running")
        self._stop.clear()
        self._recover_active()
        executor = self.pool.get(f"queue-{self.config.name}", self.config.concurrency)
        for index in range(self.config.concurrency):
            self._futures.append(
                executor.submit(self._worker_loop, index, handler, on_completed, on_failed, on_settled)
            )
        self.logger.info("queue_workers_started", concurrency=self.config.concurrency)

    def stop(self, drain: bool = True, timeout: float | None = None) -> None:
        if drain:
            self.join(timeout)
        self._stop.set()
        self._resume.set()
        self._wakeup.set()
        if self._futures:
            wait(self._futures, timeout=timeout)
        self._futures = []
        self.pool.release(f"queue-{self.config.name}", wait=False)
        self.logger.info("queue_workers_stopped", drained=drain)

    def _worker_loop(
        self,
        index: int,
        handler: TaskHandler,
        on_completed: CompletedCallback | None,
        on_failed: FailedCallback | None,
        on_settled: SettledCallback | None,
    ) -> None:
        log = self.logger.bind(worker=index)
        while not self._stop.is_set():
            if not self._resume.is_set():
                self._resume.wait(self.config.poll_interval)
                continue
            try:
                task = self._claim()
            except sqlite3.Error as exc:
                log.error("task_claim_failed", error=str(exc))
                self._stop.wait(self.config.poll_interval)
                continue
            if task is None:
                self._wakeup.wait(self.config.poll_interval)
                self._wakeup.clear()
                continue
            try:
                self._run_task(task, handler, on_completed, on_failed, on_settled, log)
            except sqlite3.Error as exc:
                # The task stays active and is picked up again after a restart.
                log.error("task_state_update_failed", task_id=task.task_id, error=str(exc))

    def _run_task(
        self,
        task: QueueTask,
        handler: TaskHandler,
        on_completed: CompletedCallback | None,
        on_failed: FailedCallback | None,
        on_settled: SettledCallback | None,
        log: structlog.BoundLogger,
    ) -> None:
        try:
            result = handler(task)
        except Exception as exc:  # noqa: BLE001
            permanent = isinstance(exc, PermanentTaskError)
            if not permanent and task.attempts < task.max_attempts:
                delay = backoff_delay(task.attempts, self.config.retry_delay, self.config.max_backoff)
                self._reschedule(task, delay, exc)
                log.warning(
                    "task_retry_scheduled",
                    task_id=task.task_id,
                    attempts=task.attempts,
                    delay=delay,
                    error=str(exc),
                )
                return
            log.error(
                "task_failed",
                task_id=task.task_id,
                attempts=task.attempts,
                permanent=permanent,
                error=str(exc),
            )
            self._invoke(on_failed, log, task, exc)
            self._finish(task, TaskStatus.FAILED, str(exc))
        else:
            self._invoke(on_completed, log, task, result)
            self._finish(task, TaskStatus.COMPLETED, None)
            log.debug("task_completed", task_id=task.task_id, attempts=task.attempts)
        self._invoke(on_settled, log, task)

    def _invoke(self, callback: Callable[..., None] | None, log: structlog.BoundLogger, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as exc:  # noqa: BLE001
            log.error("task_callback_failed", callback=getattr(callback, "__name__", repr(callback)), error=str(exc))

    # ------------------------------------------------------------------
    # Task state transitions
    def _claim(self) -> QueueTask | None:
        now = self.clock()
        with self.manager.transaction(self.db_path, immediate=True) as conn:
            row = conn.execute(
                """
                SELECT * FROM queue_tasks
                WHERE queue_name = ? AND status = ? AND available_at <= ?
                ORDER BY available_at, created_at
                LIMIT 1
                """,
                (self.config.name, TaskStatus.PENDING.value, now),
            ).fetchone()
            if row is None:
                return None
            cursor = conn.execute(
                "UPDATE queue_tasks SET status = ?, attempts = attempts + 1, updated_at = ? "
                "WHERE task_id = ? AND status = ?",
                (TaskStatus.ACTIVE.value, now, row["task_id"], TaskStatus.PENDING.value),
            )
            if cursor.rowcount != 1:
                return None
        return self._to_task(row, attempts=int(row["attempts"]) + 1)

    def _reschedule(self, task: QueueTask, delay: float, exc: BaseException) -> None:
        now = self.clock()
        with self.manager.transaction(self.db_path) as conn:
            conn.execute(
                """
                UPDATE queue_tasks
                SET status = ?, available_at = ?, last_error = ?, updated_at = ?
                WHERE task_id = ?
                """,
                (TaskStatus.PENDING.value, now + delay, str(exc), now, task.task_id),
            )

    def _finish(self, task: QueueTask, status: TaskStatus, error: str | None) -> None:
        now = self.clock()
        with self.manager.transaction(self.db_path) as conn:
            if status is TaskStatus.COMPLETED and self.config.remove_on_complete:
                conn.execute("DELETE FROM queue_tasks WHERE task_id = ?", (task.task_id,))
                return
            conn.execute(
                "UPDATE queue_tasks SET status = ?, last_error = ?, updated_at = ? WHERE task_id = ?",
                (status.value, error, now, task.task_id),
            )

    def _recover_active(self) -> None:
        with self.manager.transaction(self.db_path) as conn:
            cursor = conn.execute(
                "UPDATE queue_tasks SET status = ?, updated_at = ? WHERE queue_name = ? AND status = ?",
                (TaskStatus.PENDING.value, self.clock(), self.config.name, TaskStatus.ACTIVE.value),
            )
            recovered = cursor.rowcount
        if recovered:
            self.logger.warning("stale_tasks_recovered", count=recovered)

    @staticmethod
    def _to_task(row: sqlite3.Row, attempts: int | None = None) -> QueueTask:
        payload = json.loads(row["payload"])
        payload.pop("import_run_id", None)
        return QueueTask(
            task_id=row["task_id"],
            import_run_id=row["run_id"],
            record=JobRecord.from_dict(payload),
            attempts=int(row["attempts"]) if attempts is None else attempts,
            max_attempts=int(row["max_attempts"]),
        )

    # ------------------------------------------------------------------
    # Maintenance
    def retry_failed(self, run_id: str | None = None) -> int:
        now = self.clock()
        query = (
            "UPDATE queue_tasks SET status = ?, attempts = 0, available_at = ?, last_error = NULL, updated_at = ? "
            "WHERE queue_name = ? AND status = ?"
        )
        params: list[Any] = [TaskStatus.PENDING.value, now, now, self.config.name, TaskStatus.FAILED.value]
        if run_id is not None:
            query += " AND run_id = ?"
            params.append(run_id)
        with self.manager.transaction(self.db_path) as conn:
            count = conn.execute(query, params).rowcount
        if count:
            self._wakeup.set()
        self.logger.info("failed_tasks_retried", run_id=run_id, count=count)
        return count

    def clean(self, older_than: float, status: TaskStatus = TaskStatus.COMPLETED) -> int:
        if status in (TaskStatus.PENDING, TaskStatus.ACTIVE):
            raise ValueError("Only completed or failed tasks can be cleaned")
        cutoff = self.clock() - older_than
        with self.manager.transaction(self.db_path) as conn:
            count = conn.execute(
                "DELETE FROM queue_tasks WHERE queue_name = ? AND status = ? AND updated_at < ?",
                (self.config.name, status.value, cutoff),
            ).rowcount
        self.logger.info("queue_cleaned", status=status.value, count=count)
        return count

    def stats(self) -> QueueStats:
        now = self.clock()
        stats = QueueStats()
        with self.manager.transaction(self.db_path) as conn:
            for row in conn.execute(
                "SELECT status, COUNT(*) AS n FROM queue_tasks WHERE queue_name = ? GROUP BY status",
                (self.config.name,),
            ):
                setattr(stats, row["status"], int(row["n"]))
            stats.delayed = int(
                conn.execute(
                    "SELECT COUNT(*) FROM queue_tasks WHERE queue_name = ? AND status = ? AND available_at > ?",
                    (self.config.name, TaskStatus.PENDING.value, now),
                ).fetchone()[0]
            )
        return stats

    def outstanding(self, run_id: str) -> int:
        with self.manager.transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM queue_tasks WHERE queue_name = ? AND run_id = ? AND status IN (?, ?)",
                (self.config.name, run_id, TaskStatus.PENDING.value, TaskStatus.ACTIVE.value),
            ).fetchone()
        return int(row[0])

    def failed_tasks(self, run_id: str | None = None) -> list[dict[str, Any]]:
        query = "SELECT task_id, run_id, attempts, last_error, updated_at FROM queue_tasks WHERE queue_name = ? AND status = ?"
        params: list[Any] = [self.config.name, TaskStatus.FAILED.value]
        if run_id is not None:
            query += " AND run_id = ?"
            params.append(run_id)
        with self.manager.transaction(self.db_path) as conn:
            return [dict(row) for row in conn.execute(query + " ORDER BY updated_at", params)]

    def pause(self) -> None:
        self._resume.clear()
        self.logger.info("queue_paused")

    def resume(self) -> None:
        self._resume.set()
        self._wakeup.set()
        self.logger.info("queue_resumed")

    def empty(self) -> int:
        with self.manager.transaction(self.db_path) as conn:
            count = conn.execute(
                "DELETE FROM queue_tasks WHERE queue_name = ? AND status = ?",
                (self.config.name, TaskStatus.PENDING.value),
            ).rowcount
        self.logger.info("queue_emptied", count=count)
        return count

    def join(self, timeout: float | None = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self.manager.transaction(self.db_path) as conn:
                remaining = int(
                    conn.execute(
                        "SELECT COUNT(*) FROM queue_tasks WHERE queue_name = ? AND status IN (?, ?)",
                        (self.config.name, TaskStatus.PENDING.value, TaskStatus.ACTIVE.value),
                    ).fetchone()[0]
                )
            if remaining == 0:
                return True
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(self.config.poll_interval)

    def close(self) -> None:
        if self._futures:
            self.stop(drain=False)


__all__ = [
    "BaseTaskQueue",
    "QueueStats",
    "SQLiteTaskQueue",
    "TaskStatus",
    "backoff_delay",
]
