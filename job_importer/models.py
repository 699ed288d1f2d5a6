"""Domain records passed between fetcher, queue, processor and stores."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dump_datetime(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _load_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class RunStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self is not RunStatus.IN_PROGRESS


class TriggeredBy(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    API = "api"


class ImportType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class Outcome(str, Enum):
    """Terminal outcome of a single queued record."""

    NEW = "new"
    UPDATED = "updated"
    FAILED = "failed"


@dataclass(slots=True)
class JobRecord:
    """Canonical job posting produced by the normalizer."""

    title: str
    company: str
    location: str
    description: str
    url: str
    source: str
    salary: str | None = None
    job_type: str | None = None
    category: str | None = None
    company_url: str | None = None
    posted_date: datetime | None = None
    expiry_date: datetime | None = None
    source_id: str | None = None

    _DATE_FIELDS = ("posted_date", "expiry_date")

    def to_dict(self) -> dict[str, Any]:
        payload = {f.name: getattr(self, f.name) for f in fields(self)}
        for name in self._DATE_FIELDS:
            payload[name] = _dump_datetime(payload[name])
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "JobRecord":
        known = {f.name for f in fields(cls)}
        data = {key: value for key, value in payload.items() if key in known}
        for name in cls._DATE_FIELDS:
            data[name] = _load_datetime(data.get(name))
        for name in ("title", "company", "location", "description", "url", "source"):
            data.setdefault(name, "")
        return cls(**data)


@dataclass(slots=True)
class StoredJob:
    """A persisted job record with its store id and bookkeeping timestamps."""

    id: str
    record: JobRecord
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_synced_at: datetime | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "StoredJob":
        return cls(
            id=str(payload["id"]),
            record=JobRecord.from_dict(payload),
            created_at=_load_datetime(payload.get("created_at")),
            updated_at=_load_datetime(payload.get("updated_at")),
            last_synced_at=_load_datetime(payload.get("last_synced_at")),
        )


@dataclass(slots=True)
class ImportErrorEntry:
    reason: str
    timestamp: datetime = field(default_factory=utcnow)
    record_id: str | None = None
    trace: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "timestamp": _dump_datetime(self.timestamp),
            "record_id": self.record_id,
            "trace": self.trace,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ImportErrorEntry":
        return cls(
            reason=payload.get("reason") or "",
            timestamp=_load_datetime(payload.get("timestamp")) or utcnow(),
            record_id=payload.get("record_id"),
            trace=payload.get("trace"),
        )


@dataclass(slots=True)
class ImportRun:
    """One fetch-and-import attempt of a single feed."""

    id: str
    feed_url: str
    status: RunStatus = RunStatus.IN_PROGRESS
    triggered_by: TriggeredBy = TriggeredBy.MANUAL
    import_type: ImportType = ImportType.FULL
    total_fetched: int = 0
    total_imported: int = 0
    new_count: int = 0
    updated_count: int = 0
    failed_count: int = 0
    queued_count: int = 0
    enqueue_sealed: bool = False
    start_time: datetime = field(default_factory=utcnow)
    end_time: datetime | None = None
    duration: int | None = None
    errors: list[ImportErrorEntry] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def processed(self) -> int:
        return self.new_count + self.updated_count + self.failed_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "feed_url": self.feed_url,
            "status": self.status.value,
            "triggered_by": self.triggered_by.value,
            "import_type": self.import_type.value,
            "total_fetched": self.total_fetched,
            "total_imported": self.total_imported,
            "new_count": self.new_count,
            "updated_count": self.updated_count,
            "failed_count": self.failed_count,
            "queued_count": self.queued_count,
            "enqueue_sealed": self.enqueue_sealed,
            "start_time": _dump_datetime(self.start_time),
            "end_time": _dump_datetime(self.end_time),
            "duration": self.duration,
            "errors": [entry.to_dict() for entry in self.errors],
            "created_at": _dump_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ImportRun":
        return cls(
            id=str(payload["id"]),
            feed_url=payload["feed_url"],
            status=RunStatus(payload.get("status", RunStatus.IN_PROGRESS.value)),
            triggered_by=TriggeredBy(payload.get("triggered_by", TriggeredBy.MANUAL.value)),
            import_type=ImportType(payload.get("import_type", ImportType.FULL.value)),
            total_fetched=int(payload.get("total_fetched") or 0),
            total_imported=int(payload.get("total_imported") or 0),
            new_count=int(payload.get("new_count") or 0),
            updated_count=int(payload.get("updated_count") or 0),
            failed_count=int(payload.get("failed_count") or 0),
            queued_count=int(payload.get("queued_count") or 0),
            enqueue_sealed=bool(payload.get("enqueue_sealed")),
            start_time=_load_datetime(payload.get("start_time")) or utcnow(),
            end_time=_load_datetime(payload.get("end_time")),
            duration=payload.get("duration"),
            errors=[ImportErrorEntry.from_dict(item) for item in payload.get("errors") or []],
            created_at=_load_datetime(payload.get("created_at")) or utcnow(),
        )


@dataclass(slots=True)
class FeedHealth:
    """Fetch statistics tracked per feed url."""

    url: str
    name: str
    category: str | None = None
    active: bool = True
    last_fetched_at: datetime | None = None
    last_successful_fetch: datetime | None = None
    fetch_count: int = 0
    failure_count: int = 0
    cumulative_jobs_fetched: int = 0
    average_jobs_per_fetch: int = 0
    fetch_interval: int = 60
    priority: int = 1

    def record_success(self, item_count: int, when: datetime) -> None:
        self.last_fetched_at = when
        self.last_successful_fetch = when
        self.fetch_count += 1
        self.cumulative_jobs_fetched += item_count
        self.average_jobs_per_fetch = round(self.cumulative_jobs_fetched / self.fetch_count)

    def record_failure(self, when: datetime) -> None:
        self.last_fetched_at = when
        self.fetch_count += 1
        self.failure_count += 1

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["last_fetched_at"] = _dump_datetime(self.last_fetched_at)
        payload["last_successful_fetch"] = _dump_datetime(self.last_successful_fetch)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "FeedHealth":
        known = {f.name for f in fields(cls)}
        data = {key: value for key, value in payload.items() if key in known}
        data["active"] = bool(data.get("active", True))
        data["last_fetched_at"] = _load_datetime(data.get("last_fetched_at"))
        data["last_successful_fetch"] = _load_datetime(data.get("last_successful_fetch"))
        return cls(**data)


@dataclass(slots=True)
class QueueTask:
    """A normalized record tagged with the run that produced it."""

    task_id: str
    import_run_id: str
    record: JobRecord
    attempts: int = 0
    max_attempts: int = 1

    @staticmethod
    def build_id(import_run_id: str, source_id: str | None, fallback: str) -> str:
        return f"{import_run_id}-{source_id or fallback}"

    def payload(self) -> dict[str, Any]:
        data = self.record.to_dict()
        data["import_run_id"] = self.import_run_id
        return data


__all__ = [
    "FeedHealth",
    "ImportErrorEntry",
    "ImportRun",
    "ImportType",
    "JobRecord",
    "Outcome",
    "QueueTask",
    "RunStatus",
    "StoredJob",
    "TriggeredBy",
    "utcnow",
]
