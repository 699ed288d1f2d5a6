from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable

import pytest

from job_importer.config import QueueConfig
from job_importer.engine.queue import SQLiteTaskQueue, TaskStatus, backoff_delay
from job_importer.engine.thread_pool import ThreadPoolManager
from job_importer.errors import ValidationError
from job_importer.infra import SQLiteManager
from job_importer.models import JobRecord, QueueTask


def _task(make_record: Callable[..., JobRecord], task_id: str = "run-1-job-1", run_id: str = "run-1") -> QueueTask:
    return QueueTask(task_id=task_id, import_run_id=run_id, record=make_record())


def test_add_ignores_duplicate_task_ids(task_queue: SQLiteTaskQueue, make_record) -> None:
    assert task_queue.add(_task(make_record)) is True
    assert task_queue.add(_task(make_record)) is False
    accepted = task_queue.add_bulk([_task(make_record), _task(make_record, task_id="run-1-job-2")])
    assert accepted == 1
    assert task_queue.stats().pending == 2
    assert task_queue.outstanding("run-1") == 2
    assert task_queue.outstanding("other") == 0


def test_payload_survives_the_queue(task_queue: SQLiteTaskQueue, make_record) -> None:
    task_queue.add(_task(make_record))
    received: list[QueueTask] = []
    task_queue.start(received.append)
    assert task_queue.join(timeout=5)
    task_queue.stop()

    assert len(received) == 1
    task = received[0]
    assert task.import_run_id == "run-1"
    assert task.attempts == 1
    assert task.max_attempts == 3
    assert task.record == make_record()


def test_transient_failure_is_retried_until_success(task_queue: SQLiteTaskQueue, make_record) -> None:
    attempts: list[int] = []
    completed: list[str] = []
    failed: list[str] = []
    settled: list[str] = []

    def handler(task: QueueTask) -> str:
        attempts.append(task.attempts)
        if task.attempts < 3:
            raise RuntimeError("database unavailable")
        return "ok"

    task_queue.add(_task(make_record))
    task_queue.start(
        handler,
        on_completed=lambda task, result: completed.append(result),
        on_failed=lambda task, exc: failed.append(str(exc)),
        on_settled=lambda task: settled.append(task.task_id),
    )
    assert task_queue.join(timeout=5)
    task_queue.stop()

    assert attempts == [1, 2, 3]
    assert completed == ["ok"]
    assert failed == []
    assert settled == ["run-1-job-1"]
    assert task_queue.stats().total == 0


def test_permanent_error_fails_without_retry(task_queue: SQLiteTaskQueue, make_record) -> None:
    calls: list[int] = []
    failed: list[BaseException] = []

    def handler(task: QueueTask) -> None:
        calls.append(task.attempts)
        raise ValidationError("title")

    task_queue.add(_task(make_record))
    task_queue.start(handler, on_failed=lambda task, exc: failed.append(exc))
    assert task_queue.join(timeout=5)
    task_queue.stop()

    assert calls == [1]
    assert len(failed) == 1 and isinstance(failed[0], ValidationError)
    assert task_queue.stats().failed == 1


def test_exhausted_task_is_dead_lettered_and_can_be_retried(task_queue: SQLiteTaskQueue, make_record) -> None:
    calls: list[int] = []

    def handler(task: QueueTask) -> None:
        calls.append(task.attempts)
        raise RuntimeError("still broken")

    task_queue.add(_task(make_record))
    task_queue.start(handler)
    assert task_queue.join(timeout=5)
    task_queue.stop()

    assert calls == [1, 2, 3]
    dead = task_queue.failed_tasks("run-1")
    assert len(dead) == 1
    assert dead[0]["attempts"] == 3
    assert dead[0]["last_error"] == "still broken"

    assert task_queue.retry_failed("other-run") == 0
    assert task_queue.retry_failed("run-1") == 1
    stats = task_queue.stats()
    assert stats.pending == 1
    assert stats.failed == 0


def test_completed_tasks_are_kept_without_remove_on_complete(
    tmp_path: Path, sqlite_manager: SQLiteManager, fast_queue_config: QueueConfig, make_record
) -> None:
    config = fast_queue_config.model_copy(update={"remove_on_complete": False})
    pool = ThreadPoolManager(default_workers=1)
    queue = SQLiteTaskQueue(config, tmp_path / "keep.db", manager=sqlite_manager, pool=pool)
    queue.add(_task(make_record))
    queue.start(lambda task: None)
    assert queue.join(timeout=5)
    queue.stop()
    pool.shutdown()

    assert queue.stats().completed == 1


def test_clean_removes_old_finished_tasks(
    tmp_path: Path, sqlite_manager: SQLiteManager, fast_queue_config: QueueConfig, make_record
) -> None:
    now = [1_000.0]
    queue = SQLiteTaskQueue(fast_queue_config, tmp_path / "clean.db", manager=sqlite_manager, clock=lambda: now[0])
    queue.add(_task(make_record))
    task = queue._claim()
    queue._finish(task, TaskStatus.FAILED, "boom")

    now[0] += 30
    assert queue.clean(older_than=60, status=TaskStatus.FAILED) == 0
    now[0] += 60
    assert queue.clean(older_than=60, status=TaskStatus.FAILED) == 1
    with pytest.raises(ValueError):
        queue.clean(older_than=0, status=TaskStatus.PENDING)


def test_active_tasks_are_recovered_when_workers_start(
    tmp_path: Path, sqlite_manager: SQLiteManager, fast_queue_config: QueueConfig, make_record
) -> None:
    db_path = tmp_path / "recover.db"
    crashed = SQLiteTaskQueue(fast_queue_config, db_path, manager=sqlite_manager)
    crashed.add(_task(make_record))
    assert crashed._claim() is not None

    restarted = SQLiteTaskQueue(fast_queue_config, db_path, manager=sqlite_manager)
    assert restarted.stats().active == 1

    received: list[QueueTask] = []
    restarted.start(received.append)
    assert restarted.join(timeout=5)
    restarted.stop()

    assert [task.attempts for task in received] == [2]
    assert restarted.stats().total == 0


def test_tasks_are_claimed_once_across_processes(tmp_path: Path, fast_queue_config: QueueConfig, make_record) -> None:
    db_path = tmp_path / "shared.db"
    managers = [SQLiteManager(), SQLiteManager()]
    queues = [SQLiteTaskQueue(fast_queue_config, db_path, manager=manager) for manager in managers]
    queues[0].add_bulk(_task(make_record, task_id=f"run-1-job-{number}") for number in range(40))

    claimed: list[list[str]] = [[], []]

    def drain(index: int) -> None:
        while (task := queues[index]._claim()) is not None:
            claimed[index].append(task.task_id)

    threads = [threading.Thread(target=drain, args=(index,)) for index in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    for manager in managers:
        manager.close_all()

    everything = claimed[0] + claimed[1]
    assert len(everything) == 40
    assert len(set(everything)) == 40


def test_delayed_tasks_are_reported(
    tmp_path: Path, sqlite_manager: SQLiteManager, fast_queue_config: QueueConfig, make_record
) -> None:
    config = fast_queue_config.model_copy(update={"retry_delay": 30.0, "max_backoff": 60.0})
    queue = SQLiteTaskQueue(config, tmp_path / "delay.db", manager=sqlite_manager, clock=lambda: 500.0)
    queue.add(_task(make_record))
    task = queue._claim()
    queue._reschedule(task, backoff_delay(task.attempts, config.retry_delay, config.max_backoff), RuntimeError("x"))

    stats = queue.stats()
    assert stats.pending == 1
    assert stats.delayed == 1
    assert queue._claim() is None


def test_pause_holds_work_and_empty_drops_pending(task_queue: SQLiteTaskQueue, make_record) -> None:
    handled = threading.Event()
    task_queue.pause()
    task_queue.start(lambda task: handled.set())
    task_queue.add(_task(make_record))
    assert handled.wait(0.2) is False

    assert task_queue.empty() == 1
    task_queue.resume()
    assert task_queue.join(timeout=5)
    assert not handled.is_set()


def test_start_twice_is_rejected(task_queue: SQLiteTaskQueue) -> None:
    task_queue.start(lambda task: None)
    with pytest.raises(Exception, match="already running"):
        task_queue.start(lambda task: None)


@pytest.mark.parametrize(
    ("attempts", "expected"),
    [(1, 2.0), (2, 4.0), (3, 8.0), (6, 60.0)],
)
def test_backoff_delay_is_exponential_and_capped(attempts: int, expected: float) -> None:
    assert backoff_delay(attempts, retry_delay=2.0, max_backoff=60.0) == expected
