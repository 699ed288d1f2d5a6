"""Store Service Provider Interface for jobs, import runs and feed health."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ...models import FeedHealth, ImportErrorEntry, ImportRun, JobRecord, Outcome, RunStatus, StoredJob
from ..dedup import IdentityKey


RUN_UPDATABLE_FIELDS = frozenset({"total_fetched", "queued_count", "enqueue_sealed"})


@dataclass(slots=True)
class UpsertResult:
    record: dict[str, Any]
    was_inserted: bool


@dataclass(slots=True)
class RunFilters:
    """Filters for paginated import history listing."""

    status: RunStatus | None = None
    feed: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    page: int = 1
    limit: int = 20

    def __post_init__(self) -> None:
        if self.page < 1:
            raise ValueError("page must be >= 1")
        if self.limit < 1:
            raise ValueError("limit must be >= 1")

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit


@dataclass(slots=True)
class RunPage:
    runs: list[ImportRun]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return -(-self.total // self.limit) if self.total else 0


@dataclass(slots=True)
class JobFilters:
    """Filters for browsing stored jobs; ``search`` matches title, company or location."""

    category: str | None = None
    job_type: str | None = None
    search: str | None = None
    page: int = 1
    limit: int = 20

    def __post_init__(self) -> None:
        if self.page < 1:
            raise ValueError("page must be >= 1")
        if self.limit < 1:
            raise ValueError("limit must be >= 1")

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit


@dataclass(slots=True)
class JobPage:
    jobs: list[StoredJob]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return -(-self.total // self.limit) if self.total else 0


@dataclass(slots=True)
class CompletedTotals:
    total_imported: int = 0
    new_count: int = 0
    updated_count: int = 0
    failed_count: int = 0
    average_duration: float = 0.0


class BaseJobStore(ABC):
    """Keyed document store for canonical job records."""

    @abstractmethod
    def find_by_key(self, key: IdentityKey) -> dict[str, Any] | None:
        """Return the stored record for ``key`` if present."""

    @abstractmethod
    def upsert(self, key: IdentityKey, record: JobRecord, synced_at: datetime) -> UpsertResult:
        """Atomically insert or merge ``record`` under ``key``."""

    @abstractmethod
    def count(self) -> int:
        """Number of stored records."""

    @abstractmethod
    def find_duplicates(self) -> list[list[Any]]:
        """Groups of record ids sharing an identity key (oldest first)."""

    @abstractmethod
    def delete_ids(self, ids: list[Any]) -> int:
        """Remove records by id, returning how many were deleted."""

    @abstractmethod
    def list_jobs(self, filters: JobFilters) -> JobPage:
        """Newest-first page of records matching ``filters``."""

    @abstractmethod
    def get(self, job_id: str) -> StoredJob | None:
        """Load one record by its store id; unknown or malformed ids give ``None``."""

    def close(self) -> None:
        return


class BaseRunStore(ABC):
    """Durable store for :class:`ImportRun` with atomic counter updates.

    Every mutation is rejected (returns ``False``) once a run is terminal.
    """

    @abstractmethod
    def create(self, run: ImportRun) -> ImportRun:
        """Persist a new run."""

    @abstractmethod
    def get(self, run_id: str) -> ImportRun | None:
        """Load a run with its error list."""

    @abstractmethod
    def update_fields(self, run_id: str, **values: Any) -> bool:
        """Set plain fields on an in-progress run."""

    @abstractmethod
    def increment(self, run_id: str, outcome: Outcome, task_id: str | None = None) -> bool:
        """Atomically bump the counters matching ``outcome``.

        With ``task_id`` the increment is applied at most once per task.
        """

    @abstractmethod
    def push_error(self, run_id: str, entry: ImportErrorEntry, task_id: str | None = None) -> bool:
        """Append an error entry and increment ``failed_count``."""

    @abstractmethod
    def transition(
        self,
        run_id: str,
        status: RunStatus,
        end_time: datetime,
        error: ImportErrorEntry | None = None,
    ) -> ImportRun | None:
        """Move an in-progress run to a terminal status exactly once."""

    @abstractmethod
    def list_runs(self, filters: RunFilters) -> RunPage:
        """Newest-first page of runs matching ``filters``."""

    @abstractmethod
    def count_by_status(self) -> dict[str, int]:
        """Run counts keyed by status value."""

    @abstractmethod
    def aggregate_completed(self) -> CompletedTotals:
        """Sums and average duration over completed runs."""

    @abstractmethod
    def in_progress_ids(self) -> list[str]:
        """Ids of every run still in progress."""

    def close(self) -> None:
        return


class BaseFeedHealthStore(ABC):
    """Per-feed fetch statistics."""

    @abstractmethod
    def find_by_url(self, url: str) -> FeedHealth | None:
        """Return the health record for ``url``."""

    @abstractmethod
    def upsert(self, health: FeedHealth) -> None:
        """Insert or replace the health record."""

    @abstractmethod
    def list_all(self) -> list[FeedHealth]:
        """Every tracked feed ordered by url."""

    def close(self) -> None:
        return


__all__ = [
    "BaseFeedHealthStore",
    "BaseJobStore",
    "BaseRunStore",
    "CompletedTotals",
    "JobFilters",
    "JobPage",
    "RUN_UPDATABLE_FIELDS",
    "RunFilters",
    "RunPage",
    "UpsertResult",
]
