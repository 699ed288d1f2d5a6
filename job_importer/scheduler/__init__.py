"""Cron trigger source for scheduled imports."""

from .apsched_adapter import IMPORT_JOB_ID, APSchedulerAdapter

__all__ = ["APSchedulerAdapter", "IMPORT_JOB_ID"]
