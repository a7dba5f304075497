from __future__ import annotations

import sqlite3
import sys
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner
from helpers import FakeClock

from flowdeck.main import flowdeck
from flowdeck.progress import (
    CheckpointManager,
    CheckpointRepository,
    CheckpointType,
    ProgressTracker,
)

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Run & Checkpoint Commands"),
]


@pytest.fixture(autouse=True)
def _plain_runner_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("FLOWDECK_COMMAND_PREFIX", "FLOWDECK_RETRY_POLICY", "FLOWDECK_BREAKER_ENABLED"):
        monkeypatch.delenv(name, raising=False)


def _seed_checkpoints(db_path: Path) -> list[str]:
    clock = FakeClock()
    repository = CheckpointRepository(db_path)
    repository.init_schema()
    try:
        tracker = ProgressTracker(clock=clock)
        tracker.initialize("T-1", "P-1")
        tracker.complete_stage("T-1", "Analyzing")
        manager = CheckpointManager(repository, clock=clock)
        first = manager.create_checkpoint(tracker.snapshot("T-1"), CheckpointType.MANUAL)
        clock.advance(seconds=1)
        second = manager.checkpoint_on_stage_complete(tracker.snapshot("T-1"), "Analyzing")
        return [first.checkpoint_id, second.checkpoint_id]
    finally:
        repository.close()


def test_run_prints_job_summary(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        flowdeck,
        [
            "run",
            "--db-path",
            str(tmp_path / "cli.db"),
            "--repeat",
            "2",
            "--",
            sys.executable,
            "-c",
            "print('hello from job')",
        ],
    )

    assert result.exit_code == 0, result.output
    assert result.output.count("status=completed") == 2
    assert "  hello from job" in result.output
    assert "Jobs finished: total=2 failed=0" in result.output
    with sqlite3.connect(tmp_path / "cli.db") as connection:
        tables = {
            name
            for (name,) in connection.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
    assert "execution_checkpoints" in tables


def test_run_exits_non_zero_when_job_fails(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        flowdeck,
        [
            "run",
            "--db-path",
            str(tmp_path / "cli.db"),
            "--",
            sys.executable,
            "-c",
            "import sys; sys.stderr.write('kaput'); sys.exit(4)",
        ],
    )

    assert result.exit_code != 0
    assert "status=failed exit_code=4" in result.output
    assert "error: kaput" in result.output
    assert "One or more jobs failed." in result.output


def test_checkpoints_list_and_inspect(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    manual_id, stage_id = _seed_checkpoints(db_path)
    runner = CliRunner()

    listed = runner.invoke(
        flowdeck,
        ["checkpoints", "list", "--db-path", str(db_path), "--ticket-id", "T-1"],
    )
    assert listed.exit_code == 0, listed.output
    lines = listed.output.splitlines()
    assert lines[0] == "Checkpoints for ticket T-1 (newest first):"
    assert lines[1].startswith(f"{stage_id} v2 type=stage")
    assert lines[2].startswith(f"{manual_id} v1 type=manual")

    inspected = runner.invoke(
        flowdeck,
        ["checkpoints", "inspect", "--db-path", str(db_path), "--checkpoint-id", stage_id],
    )
    assert inspected.exit_code == 0, inspected.output
    assert "percent=10" in inspected.output
    assert "  Analyzing: completed (weight=10)" in inspected.output
    assert "context: completed_stage=Analyzing" in inspected.output


def test_checkpoints_delete_and_purge(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    manual_id, _ = _seed_checkpoints(db_path)
    runner = CliRunner()

    deleted = runner.invoke(
        flowdeck,
        ["checkpoints", "delete", "--db-path", str(db_path), "--checkpoint-id", manual_id],
    )
    assert deleted.exit_code == 0, deleted.output
    assert f"Deleted checkpoint {manual_id}." in deleted.output

    missing = runner.invoke(
        flowdeck,
        ["checkpoints", "delete", "--db-path", str(db_path), "--checkpoint-id", manual_id],
    )
    assert missing.exit_code != 0
    assert "not found" in missing.output

    purged = runner.invoke(
        flowdeck,
        ["checkpoints", "purge", "--db-path", str(db_path), "--ticket-id", "T-1"],
    )
    assert purged.exit_code == 0, purged.output
    assert "Deleted 1 checkpoints for ticket T-1." in purged.output

    empty = runner.invoke(
        flowdeck,
        ["checkpoints", "list", "--db-path", str(db_path), "--ticket-id", "T-1"],
    )
    assert "No checkpoints for ticket T-1." in empty.output


def test_version_option() -> None:
    result = CliRunner().invoke(flowdeck, ["--version"])

    assert result.exit_code == 0
    assert "flowdeck" in result.output
