"""Background job scheduling."""

from metering.scheduler.service import JobInfo, SchedulerService

__all__ = ["JobInfo", "SchedulerService"]
