"""Import progress events and the best-effort broadcaster that fans them out."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from threading import Lock
from typing import Any, ClassVar, Iterable, Protocol

import structlog

from .models import ImportRun


@dataclass(slots=True)
class ImportEvent:
    kind: ClassVar[str] = "event"
    run_id: str

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["event"] = self.kind
        return payload


@dataclass(slots=True)
class ProgressEvent(ImportEvent):
    kind: ClassVar[str] = "progress"
    processed: int = 0
    total: int = 0
    status: str = "in_progress"


@dataclass(slots=True)
class CompleteEvent(ImportEvent):
    kind: ClassVar[str] = "complete"
    totals: dict[str, int] = field(default_factory=dict)
    duration: int = 0


@dataclass(slots=True)
class FailedEvent(ImportEvent):
    kind: ClassVar[str] = "failed"
    error: str = ""


@dataclass(slots=True)
class JobProcessedEvent(ImportEvent):
    kind: ClassVar[str] = "job_processed"
    job_title: str = ""
    is_new: bool = False


@dataclass(slots=True)
class RecordErrorEvent(ImportEvent):
    kind: ClassVar[str] = "record_error"
    job_title: str = ""
    error: str = ""


class ProgressSink(Protocol):
    def publish(self, event: ImportEvent) -> None:
        ...


class LoggingSink:
    """Write every event to the structured log."""

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self.logger = logger or structlog.get_logger("job_importer.events")

    def publish(self, event: ImportEvent) -> None:
        payload = event.to_dict()
        name = f"import_{payload.pop('event')}"
        if isinstance(event, (FailedEvent, RecordErrorEvent)):
            self.logger.warning(name, **payload)
        elif isinstance(event, CompleteEvent):
            self.logger.info(name, **payload)
        else:
            self.logger.debug(name, **payload)


class CollectingSink:
    """Keep published events in memory."""

    def __init__(self) -> None:
        self.events: list[ImportEvent] = []
        self._lock = Lock()

    def publish(self, event: ImportEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_kind(self, kind: str) -> list[ImportEvent]:
        with self._lock:
            return [event for event in self.events if event.kind == kind]


class ProgressBroadcaster:
    """Fan events out to every sink; a failing sink never affects the import."""

    def __init__(self, sinks: Iterable[ProgressSink] = (), logger: structlog.BoundLogger | None = None) -> None:
        self.sinks: list[ProgressSink] = list(sinks)
        self.logger = logger or structlog.get_logger("job_importer.events")

    def add_sink(self, sink: ProgressSink) -> None:
        self.sinks.append(sink)

    def remove_sink(self, sink: ProgressSink) -> None:
        if sink in self.sinks:
            self.sinks.remove(sink)

    def publish(self, event: ImportEvent) -> None:
        for sink in list(self.sinks):
            try:
                sink.publish(event)
            except Exception as exc:  # noqa: BLE001
                self.logger.warning(
                    "event_sink_failed",
                    sink=type(sink).__name__,
                    event=event.kind,
                    run_id=event.run_id,
                    error=str(exc),
                )

    # ------------------------------------------------------------------
    def progress(self, run: ImportRun) -> None:
        self.publish(
            ProgressEvent(
                run_id=run.id,
                processed=run.processed,
                total=run.queued_count or run.total_fetched,
                status=run.status.value,
            )
        )

    def complete(self, run: ImportRun) -> None:
        self.publish(
            CompleteEvent(
                run_id=run.id,
                totals={
                    "total_imported": run.total_imported,
                    "new_count": run.new_count,
                    "updated_count": run.updated_count,
                    "failed_count": run.failed_count,
                },
                duration=run.duration or 0,
            )
        )

    def failed(self, run_id: str, error: str) -> None:
        self.publish(FailedEvent(run_id=run_id, error=error))

    def job_processed(self, run_id: str, job_title: str, is_new: bool) -> None:
        self.publish(JobProcessedEvent(run_id=run_id, job_title=job_title, is_new=is_new))

    def record_error(self, run_id: str, job_title: str, error: str) -> None:
        self.publish(RecordErrorEvent(run_id=run_id, job_title=job_title, error=error))


__all__ = [
    "CollectingSink",
    "CompleteEvent",
    "FailedEvent",
    "ImportEvent",
    "JobProcessedEvent",
    "LoggingSink",
    "ProgressBroadcaster",
    "ProgressEvent",
    "ProgressSink",
    "RecordErrorEvent",
]
