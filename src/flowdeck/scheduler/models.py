"""Domain models for the in-process job scheduler."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from flowdeck.executor.base import CommandOptions, CommandResult


class JobStatus(str, Enum):
    """Job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class JobPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def weight(self) -> int:
        return _PRIORITY_WEIGHTS[self]


_PRIORITY_WEIGHTS: dict[JobPriority, int] = {
    JobPriority.CRITICAL: 4,
    JobPriority.HIGH: 3,
    JobPriority.NORMAL: 2,
    JobPriority.LOW: 1,
}


class JobNotFoundError(LookupError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class JobWaitTimeoutError(TimeoutError):
    def __init__(self, job_id: str, timeout_ms: int) -> None:
        super().__init__(f"Timeout waiting for job {job_id} after {timeout_ms}ms")
        self.job_id = job_id


@dataclass(slots=True)
class JobConfig:
    """Input payload for submitting a job."""

    command: str
    args: tuple[str, ...] = ()
    options: CommandOptions = field(default_factory=CommandOptions)
    priority: JobPriority = JobPriority.NORMAL
    job_id: str | None = None
    project_id: str | None = None
    ticket_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Job:
    """Scheduler-owned job record."""

    job_id: str
    command: str
    args: tuple[str, ...]
    options: CommandOptions
    priority: JobPriority
    created_at: datetime
    sequence: int
    status: JobStatus = JobStatus.PENDING
    project_id: str | None = None
    ticket_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: CommandResult | None = None
    error: str | None = None

    def sort_key(self) -> tuple[int, int]:
        """Heap key: highest priority first, then submission order."""

        return (-self.priority.weight, self.sequence)


@dataclass(slots=True)
class JobResult:
    """Final outcome of a finished job."""

    job_id: str
    status: JobStatus
    result: CommandResult | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None


@dataclass(slots=True)
class SchedulerStats:
    queued: int
    running: int
    completed: int
    max_concurrent: int


@dataclass(slots=True)
class PendingJobView:
    job_id: str
    priority: JobPriority
    created_at: datetime


@dataclass(slots=True)
class RunningJobView:
    job_id: str
    started_at: datetime
