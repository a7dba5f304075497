"""Priority job scheduler dispatching external commands under a concurrency cap."""

from __future__ import annotations

import asyncio
import heapq
import logging
import time
from dataclasses import replace

from flowdeck.events import (
    JOB_CHANNEL,
    Event,
    EventBus,
    JobCancelled,
    JobCompleted,
    JobFailed,
    JobProgress,
    JobQueued,
    JobStarted,
    NullEventBus,
    QueueEmpty,
)
from flowdeck.executor.base import DEFAULT_TIMEOUT_MS, CommandResult, CommandRunner, OutputCallback
from flowdeck.scheduler.models import (
    Job,
    JobConfig,
    JobNotFoundError,
    JobResult,
    JobStatus,
    JobWaitTimeoutError,
    PendingJobView,
    RunningJobView,
    SchedulerStats,
)
from flowdeck.storage.common import utc_now

logger = logging.getLogger(__name__)


class JobScheduler:
    """Accepts jobs, orders them by priority then FIFO, and runs them.

    ``submit`` never blocks: it enqueues and schedules a dispatch pass on the
    running event loop, so jobs submitted within one loop turn are ordered
    before the first of them is dispatched. Each finished job triggers a new
    dispatch pass, keeping up to ``max_concurrent`` commands in flight.
    The scheduler never retries on its own; wrap the runner with
    ``flowdeck.resilience.ResilientCommandRunner`` for that.
    """

    def __init__(
        self,
        *,
        runner: CommandRunner,
        bus: EventBus | None = None,
        max_concurrent: int = 3,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        auto_start: bool = True,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1.")
        self.runner = runner
        self.bus: EventBus = bus or NullEventBus()
        self.max_concurrent = max_concurrent
        self.default_timeout_ms = default_timeout_ms
        self._heap: list[tuple[int, int, Job]] = []
        self._pending: dict[str, Job] = {}
        self._running: dict[str, Job] = {}
        self._finished: dict[str, JobResult] = {}
        self._waiters: dict[str, list[asyncio.Future[JobResult]]] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._processing = auto_start
        self._dispatch_scheduled = False
        self._sequence = 0

    def submit(self, config: JobConfig) -> str:
        """Enqueue a job and return its id."""

        self._sequence += 1
        job_id = config.job_id or f"job-{int(time.time() * 1000)}-{self._sequence}"
        if job_id in self._pending or job_id in self._running:
            raise ValueError(f"Job {job_id} is already queued or running.")

        job = Job(
            job_id=job_id,
            command=config.command,
            args=tuple(config.args),
            options=config.options,
            priority=config.priority,
            created_at=utc_now(),
            sequence=self._sequence,
            project_id=config.project_id,
            ticket_id=config.ticket_id,
            metadata=dict(config.metadata),
        )
        self._finished.pop(job_id, None)
        self._pending[job_id] = job
        priority_key, sequence_key = job.sort_key()
        heapq.heappush(self._heap, (priority_key, sequence_key, job))

        self._publish(
            JobQueued(
                job_id=job_id,
                priority=job.priority.value,
                command=job.command,
                project_id=job.project_id,
                ticket_id=job.ticket_id,
            ),
        )
        self._schedule_dispatch()
        return job_id

    def cancel(self, job_id: str) -> bool:
        """Cancel a job that has not been dispatched yet."""

        job = self._pending.pop(job_id, None)
        if job is None:
            return False

        job.status = JobStatus.CANCELLED
        job.completed_at = utc_now()
        result = JobResult(job_id=job_id, status=JobStatus.CANCELLED, completed_at=job.completed_at)
        self._finished[job_id] = result
        logger.info("Job %s cancelled before dispatch", job_id)
        self._publish(JobCancelled(job_id=job_id))
        self._resolve_waiters(job_id, result)
        return True

    def get_status(self, job_id: str) -> JobStatus | None:
        job = self._pending.get(job_id) or self._running.get(job_id)
        if job is not None:
            return job.status
        finished = self._finished.get(job_id)
        return finished.status if finished is not None else None

    def get_result(self, job_id: str) -> JobResult | None:
        """Result of a finished job, kept until ``clear_completed``."""

        return self._finished.get(job_id)

    async def wait_for_job(self, job_id: str, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> JobResult:
        """Wait until the job completes, fails, or is cancelled.

        The timeout only bounds this wait; the job itself keeps running.
        """

        existing = self._finished.get(job_id)
        if existing is not None:
            return existing
        if job_id not in self._pending and job_id not in self._running:
            raise JobNotFoundError(job_id)

        future: asyncio.Future[JobResult] = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(job_id, []).append(future)
        try:
            return await asyncio.wait_for(future, timeout=timeout_ms / 1000.0)
        except TimeoutError as error:
            raise JobWaitTimeoutError(job_id, timeout_ms) from error
        finally:
            waiters = self._waiters.get(job_id)
            if waiters is not None and future in waiters:
                waiters.remove(future)
                if not waiters:
                    del self._waiters[job_id]

    def set_max_concurrent(self, max_concurrent: int) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1.")
        self.max_concurrent = max_concurrent
        self._schedule_dispatch()

    def start_processing(self) -> None:
        self._processing = True
        self._schedule_dispatch()

    def stop_processing(self) -> None:
        """Stop dispatching new jobs; running jobs still finish."""

        self._processing = False

    def stats(self) -> SchedulerStats:
        return SchedulerStats(
            queued=len(self._pending),
            running=len(self._running),
            completed=len(self._finished),
            max_concurrent=self.max_concurrent,
        )

    def pending_jobs(self) -> list[PendingJobView]:
        ordered = sorted(self._pending.values(), key=lambda job: job.sort_key())
        return [
            PendingJobView(job_id=job.job_id, priority=job.priority, created_at=job.created_at)
            for job in ordered
        ]

    def running_jobs(self) -> list[RunningJobView]:
        return [
            RunningJobView(job_id=job.job_id, started_at=job.started_at or job.created_at)
            for job in self._running.values()
        ]

    def clear_completed(self) -> None:
        self._finished.clear()

    async def aclose(self) -> None:
        """Stop dispatching and wait for in-flight jobs to finish."""

        self._processing = False
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _schedule_dispatch(self) -> None:
        if self._dispatch_scheduled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; jobs stay queued until start_processing()")
            return
        self._dispatch_scheduled = True
        loop.call_soon(self._run_scheduled_dispatch)

    def _run_scheduled_dispatch(self) -> None:
        self._dispatch_scheduled = False
        self._dispatch()

    def _dispatch(self) -> None:
        if not self._processing:
            return
        while len(self._running) < self.max_concurrent:
            job = self._pop_next()
            if job is None:
                return
            self._start_job(job)

    def _pop_next(self) -> Job | None:
        while self._heap:
            _, _, job = heapq.heappop(self._heap)
            if self._pending.get(job.job_id) is job:
                del self._pending[job.job_id]
                return job
        return None

    def _start_job(self, job: Job) -> None:
        job.status = JobStatus.RUNNING
        job.started_at = utc_now()
        self._running[job.job_id] = job
        logger.debug("Dispatching job %s (%s)", job.job_id, job.priority.value)
        self._publish(JobStarted(job_id=job.job_id, started_at=job.started_at))

        task = asyncio.get_running_loop().create_task(self._execute_job(job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _execute_job(self, job: Job) -> None:
        start_monotonic = time.monotonic()
        options = replace(
            job.options,
            timeout_ms=job.options.timeout_ms or self.default_timeout_ms,
            on_output=self._output_forwarder(job),
        )
        try:
            result = await self.runner.execute(job.command, job.args, options)
        except Exception as error:  # noqa: BLE001
            logger.warning("Job %s failed during dispatch: %s", job.job_id, error)
            self._finish(
                job,
                status=JobStatus.FAILED,
                result=None,
                error=str(error) or type(error).__name__,
                duration_ms=_elapsed_ms(start_monotonic),
            )
        else:
            succeeded = result.exit_code == 0 and not result.timed_out
            self._finish(
                job,
                status=JobStatus.COMPLETED if succeeded else JobStatus.FAILED,
                result=result,
                error=None if succeeded else (result.stderr or "Command failed"),
                duration_ms=_elapsed_ms(start_monotonic),
            )
        finally:
            if self._running.get(job.job_id) is job:
                # task cancelled before the runner returned
                self._abandon(job, duration_ms=_elapsed_ms(start_monotonic))

    def _abandon(self, job: Job, *, duration_ms: int) -> None:
        del self._running[job.job_id]
        job.status = JobStatus.CANCELLED
        job.completed_at = utc_now()
        job.error = "Job task cancelled while running"
        job_result = JobResult(
            job_id=job.job_id,
            status=JobStatus.CANCELLED,
            error=job.error,
            started_at=job.started_at,
            completed_at=job.completed_at,
            duration_ms=duration_ms,
        )
        self._finished[job.job_id] = job_result
        logger.warning("Job %s was cancelled while running", job.job_id)
        self._publish(JobCancelled(job_id=job.job_id))
        self._resolve_waiters(job.job_id, job_result)

    def _finish(
        self,
        job: Job,
        *,
        status: JobStatus,
        result: CommandResult | None,
        error: str | None,
        duration_ms: int,
    ) -> None:
        job.status = status
        job.completed_at = utc_now()
        job.result = result
        job.error = error
        self._running.pop(job.job_id, None)

        job_result = JobResult(
            job_id=job.job_id,
            status=status,
            result=result,
            error=error,
            started_at=job.started_at,
            completed_at=job.completed_at,
            duration_ms=duration_ms,
        )
        self._finished[job.job_id] = job_result

        if status == JobStatus.COMPLETED:
            self._publish(
                JobCompleted(
                    job_id=job.job_id,
                    duration_ms=duration_ms,
                    exit_code=result.exit_code if result is not None else None,
                ),
            )
        else:
            self._publish(
                JobFailed(job_id=job.job_id, error=error or "", duration_ms=duration_ms),
            )
        self._resolve_waiters(job.job_id, job_result)

        self._dispatch()
        if not self._pending and not self._running:
            self._publish(QueueEmpty())

    def _output_forwarder(self, job: Job) -> OutputCallback:
        user_callback = job.options.on_output

        def _on_output(line: str, is_stderr: bool) -> None:
            self._publish(JobProgress(job_id=job.job_id, output=line, is_stderr=is_stderr))
            if user_callback is not None:
                user_callback(line, is_stderr)

        return _on_output

    def _resolve_waiters(self, job_id: str, result: JobResult) -> None:
        for future in self._waiters.pop(job_id, []):
            if not future.done():
                future.set_result(result)

    def _publish(self, event: Event) -> None:
        try:
            self.bus.publish(JOB_CHANNEL, event)
        except Exception:
            logger.exception("Failed to publish %s", event.kind.value)


def _elapsed_ms(start_monotonic: float) -> int:
    return int((time.monotonic() - start_monotonic) * 1000)
