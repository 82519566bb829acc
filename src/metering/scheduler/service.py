"""APScheduler-based runner for periodic maintenance jobs."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, JobExecutionEvent
from apscheduler.executors.pool import ThreadPoolExecutor as APSThreadPoolExecutor
from apscheduler.job import Job
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


@dataclass
class JobInfo:
    """Snapshot of a scheduled job and its last outcome."""

    id: str
    interval_minutes: int | None
    next_run_time: datetime | None
    pending: bool
    last_run: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "interval_minutes": self.interval_minutes,
            "next_run_time": self.next_run_time.isoformat() if self.next_run_time else None,
            "pending": self.pending,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_error": self.last_error,
        }


class SchedulerService:
    """
    Background scheduler for maintenance jobs.

    Jobs are bound methods of live service objects, so they live in the
    in-memory job store and are registered again on every start. Jobs
    added before ``start()`` stay pending until the scheduler runs.
    """

    def __init__(self, max_workers: int = 2, timezone: str = "UTC") -> None:
        """
        Args:
            max_workers: Maximum concurrent jobs
            timezone: Scheduler timezone
        """
        self._max_workers = max_workers
        self._timezone = timezone
        self._scheduler: BackgroundScheduler | None = None
        self._outcomes: dict[str, tuple[datetime, str | None]] = {}

    @property
    def scheduler(self) -> BackgroundScheduler:
        if self._scheduler is None:
            self._scheduler = BackgroundScheduler(
                jobstores={"default": MemoryJobStore()},
                executors={"default": APSThreadPoolExecutor(max_workers=self._max_workers)},
                job_defaults={
                    "coalesce": True,
                    "max_instances": 1,
                    "misfire_grace_time": 300,
                },
                timezone=self._timezone,
            )
            self._scheduler.add_listener(self._record_outcome, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)
        return self._scheduler

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def _record_outcome(self, event: JobExecutionEvent) -> None:
        error = repr(event.exception) if event.exception else None
        self._outcomes[event.job_id] = (event.scheduled_run_time, error)
        if error:
            logger.error(f"Maintenance job '{event.job_id}' failed: {error}")

    def start(self) -> None:
        if self.is_running:
            logger.warning("Scheduler is already running")
            return
        self.scheduler.start()
        logger.info(f"Scheduler started ({self._max_workers} workers, timezone={self._timezone})")

    def shutdown(self, wait: bool = True) -> None:
        """Stop the scheduler, optionally waiting for running jobs."""
        if self.is_running:
            self._scheduler.shutdown(wait=wait)  # type: ignore[union-attr]
            logger.info("Scheduler stopped")

    def add_job(
        self,
        job_id: str,
        func: Callable[..., Any],
        interval_minutes: int,
        args: tuple[Any, ...] | None = None,
        kwargs: dict[str, Any] | None = None,
        run_immediately: bool = False,
    ) -> None:
        """
        Schedule ``func`` every ``interval_minutes``, replacing any job with the same id.

        With ``run_immediately`` the first run is due now instead of after
        one interval.
        """
        # Jobs added before start() sit in a pending list that replace_existing does not dedupe
        self.remove_job(job_id)
        self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(minutes=interval_minutes, timezone=self._timezone),
            id=job_id,
            name=job_id,
            args=args or (),
            kwargs=kwargs or {},
            replace_existing=True,
        )
        self._outcomes.pop(job_id, None)
        logger.info(f"Job '{job_id}' scheduled every {interval_minutes}m")

        if run_immediately:
            self.run_job_now(job_id)

    def remove_job(self, job_id: str) -> bool:
        """Returns False if no such job was scheduled."""
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        self._outcomes.pop(job_id, None)
        logger.info(f"Job '{job_id}' removed")
        return True

    def run_job_now(self, job_id: str) -> bool:
        """Make a job due immediately. Returns False if it does not exist."""
        job = self.scheduler.get_job(job_id)
        if job is None:
            logger.warning(f"Job '{job_id}' not found")
            return False
        job.modify(next_run_time=datetime.now(self.scheduler.timezone))
        logger.info(f"Job '{job_id}' triggered")
        return True

    def get_job_status(self, job_id: str) -> JobInfo | None:
        job = self.scheduler.get_job(job_id)
        return self._describe(job) if job else None

    def list_jobs(self) -> list[JobInfo]:
        return [self._describe(job) for job in self.scheduler.get_jobs()]

    def _describe(self, job: Job) -> JobInfo:
        interval = None
        if isinstance(job.trigger, IntervalTrigger):
            interval = int(job.trigger.interval.total_seconds() // 60)
        last_run, last_error = self._outcomes.get(job.id, (None, None))
        return JobInfo(
            id=job.id,
            interval_minutes=interval,
            # Pending jobs have no next_run_time attribute until the scheduler starts
            next_run_time=getattr(job, "next_run_time", None),
            pending=job.pending,
            last_run=last_run,
            last_error=last_error,
        )
