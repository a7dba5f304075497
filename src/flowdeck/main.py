"""CLI entrypoint for flowdeck."""

import logging
import os
from pathlib import Path

import rich_click as click

from flowdeck import __version__
from flowdeck.controllers import (
    CheckpointIdCommand,
    FlowdeckCliController,
    ListCheckpointsCommand,
    PurgeCheckpointsCommand,
    RunJobsCommand,
)
from flowdeck.progress import CheckpointNotFoundError
from flowdeck.scheduler import JobPriority

click.rich_click.USE_MARKDOWN = True
CONTROLLER = FlowdeckCliController()


@click.group()
@click.version_option(version=__version__, prog_name="flowdeck")
def flowdeck() -> None:
    """Priority job runner with progress checkpoints."""

    logging.basicConfig(
        level=os.getenv("FLOWDECK_LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@flowdeck.command("run", context_settings={"ignore_unknown_options": True})
@click.argument("command")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--priority",
    type=click.Choice([priority.value for priority in JobPriority]),
    default=JobPriority.NORMAL.value,
    show_default=True,
    help="Scheduling priority of the submitted jobs.",
)
@click.option(
    "--max-concurrent",
    type=click.IntRange(min=1),
    default=None,
    help="Override FLOWDECK_MAX_CONCURRENT.",
)
@click.option(
    "--timeout-ms",
    type=click.IntRange(min=1),
    default=None,
    help="Per-job execution timeout in milliseconds.",
)
@click.option(
    "--repeat",
    type=click.IntRange(min=1, max=100),
    default=1,
    show_default=True,
    help="Submit the same command this many times.",
)
def run(  # noqa: PLR0913
    command: str,
    args: tuple[str, ...],
    db_path: Path | None,
    priority: str,
    max_concurrent: int | None,
    timeout_ms: int | None,
    repeat: int,
) -> None:
    """Run an external command through the job scheduler.

    Use `--` before the command when its arguments look like options.
    """

    result = CONTROLLER.run_jobs(
        RunJobsCommand(
            db_path=db_path,
            command=command,
            args=args,
            priority=JobPriority(priority),
            max_concurrent=max_concurrent,
            timeout_ms=timeout_ms,
            repeat=repeat,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("One or more jobs failed.")


@flowdeck.group()
def checkpoints() -> None:
    """Checkpoint inspection and maintenance commands."""


@checkpoints.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--ticket-id", required=True, help="Ticket whose checkpoints to list.")
def checkpoints_list(db_path: Path | None, ticket_id: str) -> None:
    """List checkpoints of a ticket, newest first."""

    _emit_lines(
        CONTROLLER.list_checkpoints(ListCheckpointsCommand(db_path=db_path, ticket_id=ticket_id)),
    )


@checkpoints.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--checkpoint-id", required=True, help="Checkpoint id to restore and show.")
def checkpoints_inspect(db_path: Path | None, checkpoint_id: str) -> None:
    """Restore a checkpoint and show its stages."""

    try:
        lines = CONTROLLER.inspect_checkpoint(
            CheckpointIdCommand(db_path=db_path, checkpoint_id=checkpoint_id),
        )
    except CheckpointNotFoundError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@checkpoints.command("delete")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--checkpoint-id", required=True, help="Checkpoint id to delete.")
def checkpoints_delete(db_path: Path | None, checkpoint_id: str) -> None:
    """Delete one checkpoint."""

    try:
        lines = CONTROLLER.delete_checkpoint(
            CheckpointIdCommand(db_path=db_path, checkpoint_id=checkpoint_id),
        )
    except CheckpointNotFoundError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@checkpoints.command("purge")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--ticket-id", required=True, help="Ticket whose checkpoints to delete.")
def checkpoints_purge(db_path: Path | None, ticket_id: str) -> None:
    """Delete every checkpoint of a ticket."""

    _emit_lines(
        CONTROLLER.purge_checkpoints(PurgeCheckpointsCommand(db_path=db_path, ticket_id=ticket_id)),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    flowdeck()
