"""MongoDB implementations of the job, run and feed health stores."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from ...models import FeedHealth, ImportErrorEntry, ImportRun, JobRecord, Outcome, RunStatus, StoredJob
from ..dedup import IdentityKey
from .base import (
    RUN_UPDATABLE_FIELDS,
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

_OPTIONAL_JOB_FIELDS = (
    "salary",
    "job_type",
    "category",
    "company_url",
    "posted_date",
    "expiry_date",
    "source_id",
)

_COUNTER_FIELDS = {
    Outcome.NEW: ("new_count", "total_imported"),
    Outcome.UPDATED: ("updated_count", "total_imported"),
    Outcome.FAILED: ("failed_count",),
}


def _error_document(entry: ImportErrorEntry) -> dict[str, Any]:
    return {
        "reason": entry.reason,
        "timestamp": entry.timestamp,
        "record_id": entry.record_id,
        "trace": entry.trace,
    }


class MongoJobStore(BaseJobStore):
    """Jobs collection with a unique index over the identity fingerprint."""

    def __init__(self, database: Database, collection: str = "jobs") -> None:
        self.collection = database[collection]
        self.collection.create_index([("identity", ASCENDING)], unique=True)
        self.collection.create_index([("source", ASCENDING), ("source_id", ASCENDING)])

    def find_by_key(self, key: IdentityKey) -> dict[str, Any] | None:
        return self.collection.find_one({"identity": key.fingerprint()})

    def upsert(self, key: IdentityKey, record: JobRecord, synced_at: datetime) -> UpsertResult:
        fields: dict[str, Any] = {
            "title": record.title,
            "company": record.company,
            "location": record.location,
            "description": record.description,
            "url": record.url,
            "source": record.source,
            "updated_at": synced_at,
            "last_synced_at": synced_at,
        }
        for name in _OPTIONAL_JOB_FIELDS:
            value = getattr(record, name)
            if value is not None:
                fields[name] = value
        update = {
            "$set": fields,
            "$setOnInsert": {"created_at": synced_at, **key.as_filter()},
        }
        query = {"identity": key.fingerprint()}
        try:
            before = self.collection.find_one_and_update(
                query, update, upsert=True, return_document=ReturnDocument.BEFORE
            )
        except DuplicateKeyError:
            # Lost an insert race on the unique index; the winner's document
            # now exists, so the retry is a plain update.
            before = self.collection.find_one_and_update(
                query, update, upsert=True, return_document=ReturnDocument.BEFORE
            )
        stored = self.collection.find_one(query) or {**fields, **key.as_filter()}
        return UpsertResult(record=stored, was_inserted=before is None)

    def count(self) -> int:
        return int(self.collection.count_documents({}))

    def find_duplicates(self) -> list[list[Any]]:
        pipeline = [
            {"$sort": {"created_at": ASCENDING}},
            {
                "$group": {
                    "_id": {"title": "$key_title", "company": "$key_company", "location": "$key_location"},
                    "ids": {"$push": "$_id"},
                    "count": {"$sum": 1},
                }
            },
            {"$match": {"count": {"$gt": 1}}},
        ]
        return [list(group["ids"]) for group in self.collection.aggregate(pipeline)]

    def delete_ids(self, ids: list[Any]) -> int:
        if not ids:
            return 0
        return int(self.collection.delete_many({"_id": {"$in": list(ids)}}).deleted_count)

    def list_jobs(self, filters: JobFilters) -> JobPage:
        query: dict[str, Any] = {}
        if filters.category:
            query["category"] = filters.category
        if filters.job_type:
            query["job_type"] = filters.job_type
        if filters.search:
            pattern = {"$regex": re.escape(filters.search), "$options": "i"}
            query["$or"] = [{"title": pattern}, {"company": pattern}, {"location": pattern}]
        total = int(self.collection.count_documents(query))
        cursor = (
            self.collection.find(query)
            .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            .skip(filters.skip)
            .limit(filters.limit)
        )
        return JobPage(
            jobs=[self._to_job(document) for document in cursor],
            page=filters.page,
            limit=filters.limit,
            total=total,
        )

    def get(self, job_id: str) -> StoredJob | None:
        try:
            object_id = ObjectId(job_id)
        except (InvalidId, TypeError):
            return None
        document = self.collection.find_one({"_id": object_id})
        return self._to_job(document) if document else None

    @staticmethod
    def _to_job(document: dict[str, Any]) -> StoredJob:
        payload = dict(document)
        payload["id"] = str(payload.pop("_id"))
        return StoredJob.from_dict(payload)



class MongoRunStore(BaseRunStore):
    """Import runs with ``$inc`` counters guarded by the applied task set."""

    def __init__(self, database: Database, collection: str = "import_runs") -> None:
        self.collection = database[collection]
        self.collection.create_index([("status", ASCENDING), ("created_at", DESCENDING)])
        self.collection.create_index([("feed_url", ASCENDING)])

    def create(self, run: ImportRun) -> ImportRun:
        document = {
            "_id": run.id,
            "feed_url": run.feed_url,
            "status": run.status.value,
            "triggered_by": run.triggered_by.value,
            "import_type": run.import_type.value,
            "total_fetched": run.total_fetched,
            "total_imported": run.total_imported,
            "new_count": run.new_count,
            "updated_count": run.updated_count,
            "failed_count": run.failed_count,
            "queued_count": run.queued_count,
            "enqueue_sealed": run.enqueue_sealed,
            "start_time": run.start_time,
            "end_time": run.end_time,
            "duration": run.duration,
            "errors": [_error_document(entry) for entry in run.errors],
            "applied_tasks": [],
            "created_at": run.created_at,
        }
        self.collection.insert_one(document)
        return run

    def get(self, run_id: str) -> ImportRun | None:
        document = self.collection.find_one({"_id": run_id})
        return self._to_run(document) if document else None

    def update_fields(self, run_id: str, **values: Any) -> bool:
        unknown = set(values) - RUN_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated directly: {sorted(unknown)}")
        if not values:
            return False
        result = self.collection.update_one(
            {"_id": run_id, "status": RunStatus.IN_PROGRESS.value}, {"$set": values}
        )
        return result.modified_count == 1

    def increment(self, run_id: str, outcome: Outcome, task_id: str | None = None) -> bool:
        update: dict[str, Any] = {"$inc": {name: 1 for name in _COUNTER_FIELDS[outcome]}}
        result = self.collection.update_one(self._guard(run_id, task_id), self._with_task(update, task_id))
        return result.modified_count == 1

    def push_error(self, run_id: str, entry: ImportErrorEntry, task_id: str | None = None) -> bool:
        update: dict[str, Any] = {
            "$inc": {"failed_count": 1},
            "$push": {"errors": _error_document(entry)},
        }
        result = self.collection.update_one(self._guard(run_id, task_id), self._with_task(update, task_id))
        return result.modified_count == 1

    def transition(
        self,
        run_id: str,
        status: RunStatus,
        end_time: datetime,
        error: ImportErrorEntry | None = None,
    ) -> ImportRun | None:
        if not status.terminal:
            raise ValueError("transition requires a terminal status")
        current = self.collection.find_one({"_id": run_id, "status": RunStatus.IN_PROGRESS.value})
        if current is None:
            return None
        duration = max(0, int((end_time - current["start_time"]).total_seconds() * 1000))
        update: dict[str, Any] = {
            "$set": {"status": status.value, "end_time": end_time, "duration": duration}
        }
        if error is not None:
            update["$push"] = {"errors": _error_document(error)}
        document = self.collection.find_one_and_update(
            {"_id": run_id, "status": RunStatus.IN_PROGRESS.value},
            update,
            return_document=ReturnDocument.AFTER,
        )
        return self._to_run(document) if document else None

    def list_runs(self, filters: RunFilters) -> RunPage:
        query: dict[str, Any] = {}
        if filters.status is not None:
            query["status"] = filters.status.value
        if filters.feed:
            query["feed_url"] = {"$regex": re.escape(filters.feed), "$options": "i"}
        created: dict[str, Any] = {}
        if filters.start_date is not None:
            created["$gte"] = filters.start_date
        if filters.end_date is not None:
            created["$lte"] = filters.end_date
        if created:
            query["created_at"] = created
        total = int(self.collection.count_documents(query))
        cursor = (
            self.collection.find(query, {"applied_tasks": 0})
            .sort("created_at", DESCENDING)
            .skip(filters.skip)
            .limit(filters.limit)
        )
        return RunPage(
            runs=[self._to_run(document) for document in cursor],
            page=filters.page,
            limit=filters.limit,
            total=total,
        )

    def count_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in RunStatus}
        for row in self.collection.aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}]):
            counts[row["_id"]] = int(row["count"])
        return counts

    def aggregate_completed(self) -> CompletedTotals:
        pipeline = [
            {"$match": {"status": RunStatus.COMPLETED.value}},
            {
                "$group": {
                    "_id": None,
                    "total_imported": {"$sum": "$total_imported"},
                    "new_count": {"$sum": "$new_count"},
                    "updated_count": {"$sum": "$updated_count"},
                    "failed_count": {"$sum": "$failed_count"},
                    "average_duration": {"$avg": "$duration"},
                }
            },
        ]
        rows = list(self.collection.aggregate(pipeline))
        if not rows:
            return CompletedTotals()
        row = rows[0]
        return CompletedTotals(
            total_imported=int(row.get("total_imported") or 0),
            new_count=int(row.get("new_count") or 0),
            updated_count=int(row.get("updated_count") or 0),
            failed_count=int(row.get("failed_count") or 0),
            average_duration=float(row.get("average_duration") or 0.0),
        )

    def in_progress_ids(self) -> list[str]:
        cursor = self.collection.find({"status": RunStatus.IN_PROGRESS.value}, {"_id": 1}).sort(
            "created_at", ASCENDING
        )
        return [str(document["_id"]) for document in cursor]

    # ------------------------------------------------------------------
    @staticmethod
    def _guard(run_id: str, task_id: str | None) -> dict[str, Any]:
        query: dict[str, Any] = {"_id": run_id, "status": RunStatus.IN_PROGRESS.value}
        if task_id is not None:
            query["applied_tasks"] = {"$ne": task_id}
        return query

    @staticmethod
    def _with_task(update: dict[str, Any], task_id: str | None) -> dict[str, Any]:
        if task_id is not None:
            update["$addToSet"] = {"applied_tasks": task_id}
        return update

    @staticmethod
    def _to_run(document: dict[str, Any]) -> ImportRun:
        payload = dict(document)
        payload["id"] = payload.pop("_id")
        payload.pop("applied_tasks", None)
        return ImportRun.from_dict(payload)


class MongoFeedHealthStore(BaseFeedHealthStore):
    def __init__(self, database: Database, collection: str = "feed_health") -> None:
        self.collection = database[collection]

    def find_by_url(self, url: str) -> FeedHealth | None:
        document = self.collection.find_one({"_id": url})
        return self._to_health(document) if document else None

    def upsert(self, health: FeedHealth) -> None:
        document = {
            "url": health.url,
            "name": health.name,
            "category": health.category,
            "active": health.active,
            "last_fetched_at": health.last_fetched_at,
            "last_successful_fetch": health.last_successful_fetch,
            "fetch_count": health.fetch_count,
            "failure_count": health.failure_count,
            "cumulative_jobs_fetched": health.cumulative_jobs_fetched,
            "average_jobs_per_fetch": health.average_jobs_per_fetch,
            "fetch_interval": health.fetch_interval,
            "priority": health.priority,
        }
        self.collection.replace_one({"_id": health.url}, document, upsert=True)

    def list_all(self) -> list[FeedHealth]:
        return [self._to_health(document) for document in self.collection.find().sort("_id", ASCENDING)]

    @staticmethod
    def _to_health(document: dict[str, Any]) -> FeedHealth:
        payload = dict(document)
        payload.setdefault("url", payload.get("_id"))
        return FeedHealth.from_dict(payload)


__all__ = ["MongoFeedHealthStore", "MongoJobStore", "MongoRunStore"]
