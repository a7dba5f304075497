"""Controllers for flowdeck CLI commands."""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path

from flowdeck.config import Settings
from flowdeck.executor import CommandOptions
from flowdeck.progress import (
    Checkpoint,
    CheckpointManager,
    CheckpointNotFoundError,
    CheckpointRepository,
)
from flowdeck.runtime import FlowdeckRuntime
from flowdeck.scheduler import JobConfig, JobPriority, JobResult, JobStatus


@dataclass(slots=True)
class RunJobsCommand:
    """CLI inputs for the run command."""

    db_path: Path | None
    command: str
    args: tuple[str, ...]
    priority: JobPriority
    max_concurrent: int | None
    timeout_ms: int | None
    repeat: int


@dataclass(slots=True)
class RunJobsResult:
    """Job report to render in CLI."""

    lines: list[str]
    success: bool


@dataclass(slots=True)
class ListCheckpointsCommand:
    db_path: Path | None
    ticket_id: str


@dataclass(slots=True)
class CheckpointIdCommand:
    """CLI inputs for commands addressing one checkpoint."""

    db_path: Path | None
    checkpoint_id: str


@dataclass(slots=True)
class PurgeCheckpointsCommand:
    db_path: Path | None
    ticket_id: str


class FlowdeckCliController:
    """Coordinates CLI command execution."""

    def run_jobs(self, command: RunJobsCommand) -> RunJobsResult:
        settings = Settings.from_env(db_path=command.db_path)
        if command.max_concurrent is not None:
            settings.scheduler = replace(settings.scheduler, max_concurrent=command.max_concurrent)
        if command.timeout_ms is not None:
            settings.scheduler = replace(settings.scheduler, default_timeout_ms=command.timeout_ms)
        settings.validate()

        results = asyncio.run(_run_jobs(settings, command))
        lines: list[str] = []
        for result in results:
            lines.extend(_job_lines(result))
        failed = sum(1 for result in results if result.status != JobStatus.COMPLETED)
        lines.append(f"Jobs finished: total={len(results)} failed={failed}")
        return RunJobsResult(lines=lines, success=failed == 0)

    def list_checkpoints(self, command: ListCheckpointsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _checkpoint_manager(settings) as manager:
            checkpoints = manager.list_checkpoints(command.ticket_id)

        if not checkpoints:
            return [f"No checkpoints for ticket {command.ticket_id}."]
        lines = [f"Checkpoints for ticket {command.ticket_id} (newest first):"]
        lines.extend(_checkpoint_line(checkpoint) for checkpoint in checkpoints)
        return lines

    def inspect_checkpoint(self, command: CheckpointIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _checkpoint_manager(settings) as manager:
            checkpoint = manager.get_checkpoint(command.checkpoint_id)
            if checkpoint is None:
                raise CheckpointNotFoundError(command.checkpoint_id)
            progress = manager.restore_from_checkpoint(checkpoint)

        lines = [
            _checkpoint_line(checkpoint),
            f"ticket={progress.ticket_id} project={progress.project_id} "
            f"current_stage={progress.current_stage or '-'} "
            f"percent={progress.percent_complete}",
        ]
        lines.extend(
            f"  {stage.name}: {stage.status.value} (weight={stage.weight})"
            for stage in progress.stages
        )
        context = checkpoint.data.context
        if context:
            lines.append(
                "context: " + " ".join(f"{key}={value}" for key, value in sorted(context.items())),
            )
        return lines

    def delete_checkpoint(self, command: CheckpointIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _checkpoint_manager(settings) as manager:
            manager.delete_checkpoint(command.checkpoint_id)
        return [f"Deleted checkpoint {command.checkpoint_id}."]

    def purge_checkpoints(self, command: PurgeCheckpointsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _checkpoint_manager(settings) as manager:
            deleted = manager.delete_all_checkpoints(command.ticket_id)
        return [f"Deleted {deleted} checkpoints for ticket {command.ticket_id}."]


async def _run_jobs(settings: Settings, command: RunJobsCommand) -> list[JobResult]:
    runtime = FlowdeckRuntime(settings)
    wait_ms = settings.scheduler.default_timeout_ms * command.repeat
    try:
        runtime.init()
        job_ids = [
            runtime.scheduler.submit(
                JobConfig(
                    command=command.command,
                    args=command.args,
                    options=CommandOptions(timeout_ms=command.timeout_ms),
                    priority=command.priority,
                ),
            )
            for _ in range(command.repeat)
        ]
        return [
            await runtime.scheduler.wait_for_job(job_id, timeout_ms=wait_ms) for job_id in job_ids
        ]
    finally:
        await runtime.shutdown()


def _job_lines(result: JobResult) -> list[str]:
    exit_code = result.result.exit_code if result.result is not None else None
    lines = [
        f"Job {result.job_id}: status={result.status.value} "
        f"exit_code={exit_code if exit_code is not None else '-'} "
        f"duration_ms={result.duration_ms if result.duration_ms is not None else '-'}",
    ]
    if result.result is not None:
        lines.extend(f"  {line}" for line in result.result.stdout.splitlines() if line.strip())
    if result.error:
        lines.append(f"  error: {result.error.strip()}")
    return lines


def _checkpoint_line(checkpoint: Checkpoint) -> str:
    return (
        f"{checkpoint.checkpoint_id} v{checkpoint.version} "
        f"type={checkpoint.checkpoint_type.value} "
        f"created_at={checkpoint.created_at.isoformat()} "
        f"percent={checkpoint.data.percent_complete} "
        f"stage={checkpoint.data.current_stage or '-'}"
    )


@contextmanager
def _checkpoint_manager(settings: Settings) -> Iterator[CheckpointManager]:
    repository = CheckpointRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    try:
        repository.init_schema()
        yield CheckpointManager(
            repository,
            max_checkpoints_per_ticket=settings.checkpoint.max_per_ticket,
            retention_days=settings.checkpoint.retention_days,
            max_logs=settings.progress.max_logs,
        )
    finally:
        repository.close()
