"""In-process priority job scheduler."""

from flowdeck.scheduler.models import (
    Job,
    JobConfig,
    JobNotFoundError,
    JobPriority,
    JobResult,
    JobStatus,
    JobWaitTimeoutError,
    PendingJobView,
    RunningJobView,
    SchedulerStats,
)
from flowdeck.scheduler.scheduler import JobScheduler

__all__ = [
    "Job",
    "JobConfig",
    "JobNotFoundError",
    "JobPriority",
    "JobResult",
    "JobScheduler",
    "JobStatus",
    "JobWaitTimeoutError",
    "PendingJobView",
    "RunningJobView",
    "SchedulerStats",
]
