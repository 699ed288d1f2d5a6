"""Rich progress rendering of import events for the command line."""

from __future__ import annotations

from threading import Lock

from rich.console import Console
from rich.errors import LiveError
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from ..events import CompleteEvent, FailedEvent, ImportEvent, JobProcessedEvent, ProgressEvent, RecordErrorEvent


class RunProgressDisplay:
    """Progress sink drawing one bar per import run.

    Falls back to a silent sink outside a terminal or when another live
    display already owns the console.
    """

    def __init__(self, labels: dict[str, str] | None = None, enabled: bool = True, console: Console | None = None) -> None:
        self.console = console or Console()
        self.enabled = enabled and self.console.is_terminal
        self.labels = dict(labels or {})
        self._progress = Progress(
            SpinnerColumn(style="cyan"),
            TextColumn("[bold blue]{task.fields[label]:<28}", justify="left"),
            BarColumn(bar_width=None, complete_style="green", finished_style="green", pulse_style="cyan"),
            TaskProgressColumn(show_speed=False),
            TimeElapsedColumn(),
            TextColumn("[green]+{task.fields[new]:>4}", justify="right"),
            TextColumn("[cyan]~{task.fields[updated]:>4}", justify="right"),
            TextColumn("[red]✗{task.fields[failed]:>4}", justify="right"),
            TextColumn("[dim]{task.fields[status]}", justify="left"),
            console=self.console,
            transient=False,
            refresh_per_second=8,
            expand=True,
            disable=not self.enabled,
        )
        self._tasks: dict[str, TaskID] = {}
        self._counts: dict[str, dict[str, int]] = {}
        self._lock = Lock()
        self._entered = False

    def __enter__(self) -> "RunProgressDisplay":
        if self.enabled and not self._entered:
            try:
                self._progress.__enter__()
                self._entered = True
            except LiveError:
                self.enabled = False
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._entered:
            self._progress.__exit__(exc_type, exc, tb)
            self._entered = False

    def publish(self, event: ImportEvent) -> None:
        with self._lock:
            task_id = self._task_for(event.run_id)
            counts = self._counts[event.run_id]
            if isinstance(event, JobProcessedEvent):
                counts["new" if event.is_new else "updated"] += 1
            elif isinstance(event, RecordErrorEvent):
                counts["failed"] += 1
            update: dict[str, object] = dict(counts)
            if isinstance(event, ProgressEvent):
                update.update(total=event.total or None, completed=event.processed, status=event.status)
            elif isinstance(event, CompleteEvent):
                done = event.totals.get("total_imported", 0) + event.totals.get("failed_count", 0)
                update.update(total=done or 1, completed=done or 1, status=f"completed in {event.duration} ms")
            elif isinstance(event, FailedEvent):
                update.update(status=f"[red]failed: {event.error[:60]}")
            self._progress.update(task_id, **update)

    def _task_for(self, run_id: str) -> TaskID:
        if run_id not in self._tasks:
            self._counts[run_id] = {"new": 0, "updated": 0, "failed": 0}
            self._tasks[run_id] = self._progress.add_task(
                run_id,
                total=None,
                label=self.labels.get(run_id, run_id[:12]),
                status="queued",
                **self._counts[run_id],
            )
        return self._tasks[run_id]

    def set_label(self, run_id: str, label: str) -> None:
        with self._lock:
            self.labels[run_id] = label
            self._progress.update(self._task_for(run_id), label=label)

    def counts(self, run_id: str) -> dict[str, int]:
        with self._lock:
            return dict(self._counts.get(run_id, {}))


__all__ = ["RunProgressDisplay"]
