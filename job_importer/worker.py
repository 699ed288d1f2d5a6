"""Queue worker binding the record processor to run statistics."""

from __future__ import annotations

import traceback

import structlog

from .engine.processor import ProcessResult, RecordProcessor
from .engine.queue import BaseTaskQueue
from .events import ProgressBroadcaster
from .models import QueueTask
from .stats import StatsAggregator


class QueueWorker:
    """Process queued records and detect when a run has drained."""

    def __init__(
        self,
        queue: BaseTaskQueue,
        processor: RecordProcessor,
        stats: StatsAggregator,
        broadcaster: ProgressBroadcaster | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.queue = queue
        self.processor = processor
        self.stats = stats
        self.broadcaster = broadcaster or stats.broadcaster
        self.logger = logger or structlog.get_logger("job_importer.worker")
        self.running = False

    def start(self) -> None:
        if self.running:
            return
        self.stats.reconcile_all(self.queue)
        self.queue.start(self.handle, on_failed=self.on_failed, on_settled=self.on_settled)
        self.running = True
        self.logger.info("worker_started")

    def stop(self, drain: bool = True, timeout: float | None = None) -> None:
        if not self.running:
            return
        self.queue.stop(drain=drain, timeout=timeout)
        self.running = False
        self.logger.info("worker_stopped", drained=drain)

    def handle(self, task: QueueTask) -> ProcessResult:
        """Upsert the record, then count its outcome once per task."""

        result = self.processor.process(task.record)
        if self.stats.increment_counters(task.import_run_id, result.outcome, task_id=task.task_id):
            self.broadcaster.job_processed(task.import_run_id, task.record.title, result.is_new)
        return result

    def on_failed(self, task: QueueTask, exc: BaseException) -> None:
        trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        recorded = self.stats.record_error(
            task.import_run_id,
            str(exc) or type(exc).__name__,
            record_id=task.record.source_id,
            trace=trace,
            task_id=task.task_id,
        )
        if recorded:
            self.broadcaster.record_error(task.import_run_id, task.record.title, str(exc))

    def on_settled(self, task: QueueTask) -> None:
        run = self.stats.runs.get(task.import_run_id)
        if run is None:
            self.logger.warning("task_for_unknown_run", task_id=task.task_id, run_id=task.import_run_id)
            return
        self.broadcaster.progress(run)
        self.stats.reconcile(run.id, self.queue.outstanding(run.id))


__all__ = ["QueueWorker"]
