"""Run-level counters, lifecycle transitions and cross-run statistics."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Callable

import structlog

from .engine.store import BaseRunStore
from .events import ProgressBroadcaster
from .models import ImportErrorEntry, ImportRun, Outcome, RunStatus, utcnow

if TYPE_CHECKING:
    from .engine.queue import BaseTaskQueue


@dataclass(slots=True)
class AggregateStats:
    total_imports: int = 0
    completed_imports: int = 0
    failed_imports: int = 0
    in_progress_imports: int = 0
    total_jobs_imported: int = 0
    total_new_jobs: int = 0
    total_updated_jobs: int = 0
    total_failed_jobs: int = 0
    average_duration: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


class StatsAggregator:
    """Apply task outcomes to runs and move runs to their terminal state."""

    def __init__(
        self,
        runs: BaseRunStore,
        broadcaster: ProgressBroadcaster | None = None,
        logger: structlog.BoundLogger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.runs = runs
        self.broadcaster = broadcaster or ProgressBroadcaster()
        self.logger = logger or structlog.get_logger("job_importer.stats")
        self.clock = clock

    def increment_counters(self, run_id: str, outcome: Outcome, task_id: str | None = None) -> bool:
        applied = self.runs.increment(run_id, outcome, task_id)
        if not applied:
            self._explain_rejection(run_id, "increment", task_id, outcome=outcome.value)
        return applied

    def record_error(
        self,
        run_id: str,
        reason: str,
        record_id: str | None = None,
        trace: str | None = None,
        task_id: str | None = None,
    ) -> bool:
        entry = ImportErrorEntry(reason=reason, timestamp=self.clock(), record_id=record_id, trace=trace)
        applied = self.runs.push_error(run_id, entry, task_id)
        if not applied:
            self._explain_rejection(run_id, "record_error", task_id, reason=reason)
        return applied

    def complete_run(self, run_id: str) -> ImportRun | None:
        run = self.runs.transition(run_id, RunStatus.COMPLETED, self.clock())
        if run is None:
            self.logger.debug("run_already_terminal", run_id=run_id, target="completed")
            return None
        self.logger.info(
            "import_completed",
            run_id=run.id,
            feed=run.feed_url,
            new=run.new_count,
            updated=run.updated_count,
            failed=run.failed_count,
            duration=run.duration,
        )
        self.broadcaster.complete(run)
        return run

    def fail_run(self, run_id: str, reason: str, trace: str | None = None) -> ImportRun | None:
        error = ImportErrorEntry(reason=reason, timestamp=self.clock(), trace=trace)
        run = self.runs.transition(run_id, RunStatus.FAILED, self.clock(), error=error)
        if run is None:
            self.logger.debug("run_already_terminal", run_id=run_id, target="failed")
            return None
        self.logger.error("import_failed", run_id=run.id, feed=run.feed_url, reason=reason)
        self.broadcaster.failed(run.id, reason)
        return run

    def reconcile(self, run_id: str, outstanding: int) -> ImportRun | None:
        """Complete ``run_id`` when it is sealed and has nothing left in the queue."""

        if outstanding > 0:
            return None
        run = self.runs.get(run_id)
        if run is None or run.status is not RunStatus.IN_PROGRESS or not run.enqueue_sealed:
            return None
        return self.complete_run(run_id)

    def reconcile_all(self, queue: "BaseTaskQueue") -> list[ImportRun]:
        completed = []
        for run_id in self.runs.in_progress_ids():
            run = self.reconcile(run_id, queue.outstanding(run_id))
            if run is not None:
                completed.append(run)
        if completed:
            self.logger.info("runs_reconciled", count=len(completed))
        return completed

    def get_aggregate_stats(self) -> AggregateStats:
        counts = self.runs.count_by_status()
        totals = self.runs.aggregate_completed()
        return AggregateStats(
            total_imports=sum(counts.values()),
            completed_imports=counts.get(RunStatus.COMPLETED.value, 0),
            failed_imports=counts.get(RunStatus.FAILED.value, 0),
            in_progress_imports=counts.get(RunStatus.IN_PROGRESS.value, 0),
            total_jobs_imported=totals.total_imported,
            total_new_jobs=totals.new_count,
            total_updated_jobs=totals.updated_count,
            total_failed_jobs=totals.failed_count,
            average_duration=totals.average_duration,
        )

    # ------------------------------------------------------------------
    def _explain_rejection(self, run_id: str, operation: str, task_id: str | None, **extra: object) -> None:
        run = self.runs.get(run_id)
        if run is None:
            self.logger.warning("run_not_found", run_id=run_id, operation=operation, task_id=task_id)
        elif run.status.terminal:
            self.logger.warning(
                "run_mutation_after_terminal",
                run_id=run_id,
                status=run.status.value,
                operation=operation,
                task_id=task_id,
                **extra,
            )
        else:
            self.logger.debug("outcome_already_applied", run_id=run_id, operation=operation, task_id=task_id)


__all__ = ["AggregateStats", "StatsAggregator"]
