"""Persistence backends for jobs, import runs and feed health."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pymongo import MongoClient

from ...config import StorageBackend, StorageConfig
from ...infra.storage import SQLiteManager
from .base import (
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
from .mongo_store import MongoFeedHealthStore, MongoJobStore, MongoRunStore
from .sqlite_store import SQLiteFeedHealthStore, SQLiteJobStore, SQLiteRunStore


@dataclass(slots=True)
class Stores:
    """The three stores a backend provides, plus whatever owns their connection."""

    jobs: BaseJobStore
    runs: BaseRunStore
    feeds: BaseFeedHealthStore
    owner: Any = None

    def close(self) -> None:
        for store in (self.jobs, self.runs, self.feeds):
            store.close()
        if self.owner is not None:
            self.owner.close()


def build_stores(config: StorageConfig, sqlite_path: Path, manager: SQLiteManager | None = None) -> Stores:
    """Instantiate the configured backend.

    ``sqlite_path`` is the already-resolved database file; it is ignored for MongoDB.
    """

    if config.backend is StorageBackend.MONGODB:
        client = MongoClient(config.mongodb_uri, tz_aware=True)
        database = client[config.database]
        return Stores(
            jobs=MongoJobStore(database),
            runs=MongoRunStore(database),
            feeds=MongoFeedHealthStore(database),
            owner=client,
        )
    manager = manager or SQLiteManager()
    return Stores(
        jobs=SQLiteJobStore(manager, sqlite_path),
        runs=SQLiteRunStore(manager, sqlite_path),
        feeds=SQLiteFeedHealthStore(manager, sqlite_path),
    )


__all__ = [
    "BaseFeedHealthStore",
    "BaseJobStore",
    "BaseRunStore",
    "CompletedTotals",
    "JobFilters",
    "JobPage",
    "MongoFeedHealthStore",
    "MongoJobStore",
    "MongoRunStore",
    "RunFilters",
    "RunPage",
    "SQLiteFeedHealthStore",
    "SQLiteJobStore",
    "SQLiteRunStore",
    "Stores",
    "UpsertResult",
    "build_stores",
]
