"""APScheduler wrapper running scheduled imports on a cron expression."""

from __future__ import annotations

from typing import Any, Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from ..config import ScheduleConfig
from ..logging_conf import configure_logging
from ..models import ImportType, TriggeredBy

IMPORT_JOB_ID = "import::all-feeds"


class APSchedulerAdapter:
    """Manage the cron job that triggers imports."""

    def __init__(self, scheduler: BackgroundScheduler | None = None) -> None:
        self.scheduler = scheduler or BackgroundScheduler()
        self.logger = configure_logging().bind(component="scheduler")
        self.started = False

    def start(self) -> None:
        if not self.started:
            self.scheduler.start()
            self.started = True
            self.logger.info("apscheduler_started")

    def shutdown(self) -> None:
        if self.started:
            self.scheduler.shutdown(wait=False)
            self.started = False
            self.logger.info("apscheduler_stopped")

    def schedule_cron(self, cron: str, callback: Callable[..., Any], job_id: str = IMPORT_JOB_ID, **kwargs: Any) -> None:
        trigger = CronTrigger.from_crontab(cron)
        self.scheduler.add_job(
            callback,
            trigger=trigger,
            id=job_id,
            kwargs=kwargs,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.logger.info("job_scheduled", job_id=job_id, cron=cron)

    def schedule_imports(self, schedule: ScheduleConfig, trigger_import: Callable[..., Any]) -> bool:
        """Register ``trigger_import`` as a scheduled full import; ``False`` when disabled."""

        if not schedule.enabled:
            self.logger.info("schedule_disabled")
            return False
        self.schedule_cron(
            schedule.cron,
            trigger_import,
            triggered_by=TriggeredBy.SCHEDULED,
            import_type=ImportType.FULL,
        )
        return True

    def remove(self, job_id: str = IMPORT_JOB_ID) -> bool:
        if self.scheduler.get_job(job_id) is None:
            self.logger.warning("job_remove_failed", job_id=job_id)
            return False
        self.scheduler.remove_job(job_id)
        return True

    def list_jobs(self) -> list[dict]:
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append(
                {
                    "id": job.id,
                    "next_run_time": getattr(job, "next_run_time", None),
                    "trigger": str(job.trigger),
                }
            )
        return jobs


__all__ = ["APSchedulerAdapter", "IMPORT_JOB_ID"]
