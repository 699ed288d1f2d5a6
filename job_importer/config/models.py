"""Pydantic models describing importer configuration."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_FEEDS = [
    "https://jobicy.com/?feed=job_feed",
    "https://jobicy.com/?feed=job_feed&job_categories=smm&job_types=full-time",
    "https://jobicy.com/?feed=job_feed&job_categories=seller&job_types=full-time&search_region=france",
    "https://jobicy.com/?feed=job_feed&job_categories=design-multimedia",
    "https://jobicy.com/?feed=job_feed&job_categories=data-science",
    "https://jobicy.com/?feed=job_feed&job_categories=copywriting",
    "https://jobicy.com/?feed=job_feed&job_categories=business",
    "https://jobicy.com/?feed=job_feed&job_categories=management",
    "https://www.higheredjobs.com/rss/articleFeed.cfm",
]


class StorageBackend(str, Enum):
    """Record/run/health store implementations."""

    SQLITE = "sqlite"
    MONGODB = "mongodb"


class FetchConfig(BaseModel):
    """HTTP settings used by the feed fetcher."""

    timeout: float = 30.0
    user_agent: str = "Job-Importer/1.0"

    @field_validator("timeout")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout must be > 0")
        return value


class QueueConfig(BaseModel):
    """Work queue sizing and retry policy."""

    name: str = "job-import-queue"
    concurrency: int = 5
    batch_size: int = 100
    max_retries: int = 3
    retry_delay: float = Field(default=2.0, description="Base backoff delay in seconds.")
    max_backoff: float = Field(default=60.0, description="Upper bound for a single backoff.")
    remove_on_complete: bool = True
    poll_interval: float = 0.5
    sqlite_path: Path = Field(default=Path("data/queue.db"))

    @field_validator("sqlite_path", mode="before")
    @classmethod
    def _coerce_path(cls, value: Any) -> Path:
        return Path(value)

    @model_validator(mode="after")
    def _validate_bounds(self) -> "QueueConfig":
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.retry_delay < 0 or self.max_backoff < 0:
            raise ValueError("backoff values must be non-negative")
        if self.max_backoff < self.retry_delay:
            raise ValueError("max_backoff must be >= retry_delay")
        return self


class StorageConfig(BaseModel):
    """Where jobs, import runs and feed health are persisted."""

    backend: StorageBackend = StorageBackend.SQLITE
    sqlite_path: Path = Field(default=Path("data/job_importer.db"))
    mongodb_uri: str = "mongodb://localhost:27017"
    database: str = "job_importer"

    @field_validator("sqlite_path", mode="before")
    @classmethod
    def _coerce_path(cls, value: Any) -> Path:
        return Path(value)


class ScheduleConfig(BaseModel):
    """Cron trigger for scheduled imports."""

    enabled: bool = False
    cron: str = "0 * * * *"

    @field_validator("cron")
    @classmethod
    def _five_fields(cls, value: str) -> str:
        if len(value.split()) != 5:
            raise ValueError("Cron schedule requires a five-field crontab expression")
        return value


class GlobalConfig(BaseModel):
    """Top-level configuration shared by every component."""

    feeds: list[str] = Field(default_factory=lambda: list(DEFAULT_FEEDS))
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    thread_pool_workers: int = 4

    @field_validator("feeds", mode="before")
    @classmethod
    def _clean_feeds(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        cleaned: list[str] = []
        for item in value:
            url = str(item).strip()
            if not url:
                continue
            if not url.startswith(("http://", "https://")):
                raise ValueError(f"Feed url must be http(s): {url}")
            if url not in cleaned:
                cleaned.append(url)
        return cleaned

    def resolve(self, base_dir: Path, path: Path) -> Path:
        """Return ``path`` anchored at ``base_dir`` when relative."""

        if not path.is_absolute():
            return (base_dir / path).resolve()
        return path


__all__ = [
    "DEFAULT_FEEDS",
    "FetchConfig",
    "GlobalConfig",
    "QueueConfig",
    "ScheduleConfig",
    "StorageBackend",
    "StorageConfig",
]
