from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Iterator
from pathlib import Path

import allure
import pytest
from helpers import FakeClock

from flowdeck.progress import (
    CheckpointManager,
    CheckpointNotFoundError,
    CheckpointRepository,
    CheckpointType,
    LogLevel,
    ProgressTracker,
    StageStatus,
    TicketProgress,
)

pytestmark = [
    allure.epic("Progress Tracking"),
    allure.feature("Checkpoints & Restore"),
]


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[CheckpointRepository]:
    repo = CheckpointRepository(tmp_path / "flowdeck.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


def _progress(clock: FakeClock) -> tuple[ProgressTracker, TicketProgress]:
    tracker = ProgressTracker(clock=clock)
    tracker.initialize("T-1", "P-1")
    tracker.start_stage("T-1", "Analyzing")
    clock.advance(minutes=1)
    tracker.complete_stage("T-1", "Analyzing", output="analysis done")
    tracker.skip_stage("T-1", "Assigning Agents")
    tracker.start_stage("T-1", "Initializing Swarm")
    tracker.add_log("T-1", "swarm booting", LogLevel.INFO, {"agents": 3})
    return tracker, tracker.snapshot("T-1")


def _wait_until(predicate, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def test_schema_is_initialized_to_head(repository: CheckpointRepository) -> None:
    with sqlite3.connect(repository.db_path) as connection:
        row = connection.execute("SELECT version_num FROM alembic_version").fetchone()
        tables = {
            name
            for (name,) in connection.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }

    assert row == ("20261016_0001",)
    assert "execution_checkpoints" in tables


def test_restore_round_trip_preserves_progress(
    repository: CheckpointRepository,
    clock: FakeClock,
) -> None:
    _, progress = _progress(clock)
    manager = CheckpointManager(repository, clock=clock)

    checkpoint = manager.create_checkpoint(progress, CheckpointType.MANUAL, {"reason": "test"})
    stored = manager.get_checkpoint(checkpoint.checkpoint_id)
    assert stored is not None
    restored = manager.restore_from_checkpoint(stored)

    assert [stage.name for stage in restored.stages] == [stage.name for stage in progress.stages]
    assert [stage.status for stage in restored.stages] == [
        stage.status for stage in progress.stages
    ]
    assert [stage.weight for stage in restored.stages] == [stage.weight for stage in progress.stages]
    assert restored.percent_complete == progress.percent_complete == 20
    assert restored.current_stage == "Initializing Swarm"
    assert restored.started_at == progress.started_at
    assert restored.stages[0].started_at == progress.stages[0].started_at
    assert restored.stages[0].output == "analysis done"
    assert restored.stages[0].duration_ms == 60_000
    assert restored.estimated_remaining_minutes is None
    assert restored.logs[-1].message == "swarm booting"
    assert restored.logs[-1].metadata == {"agents": 3}
    assert stored.data.context == {"reason": "test"}
    assert stored.checkpoint_type == CheckpointType.MANUAL


def test_versions_increase_and_survive_restart(
    repository: CheckpointRepository,
    clock: FakeClock,
) -> None:
    _, progress = _progress(clock)
    manager = CheckpointManager(repository, clock=clock)

    versions = []
    for _ in range(3):
        clock.advance(seconds=1)
        versions.append(manager.create_checkpoint(progress).version)

    restarted = CheckpointManager(repository, clock=clock)
    clock.advance(seconds=1)

    assert versions == [1, 2, 3]
    assert restarted.create_checkpoint(progress).version == 4


def test_retention_keeps_latest_autos_and_manual(
    repository: CheckpointRepository,
    clock: FakeClock,
) -> None:
    _, progress = _progress(clock)
    manager = CheckpointManager(repository, max_checkpoints_per_ticket=2, clock=clock)

    created = []
    for checkpoint_type in (
        CheckpointType.AUTO,
        CheckpointType.MANUAL,
        CheckpointType.AUTO,
        CheckpointType.STAGE,
        CheckpointType.AUTO,
        CheckpointType.AUTO,
    ):
        clock.advance(seconds=1)
        created.append(manager.create_checkpoint(progress, checkpoint_type))

    remaining = manager.list_checkpoints("T-1")

    assert [checkpoint.version for checkpoint in remaining] == [6, 5, 4, 2]
    autos = [cp for cp in remaining if cp.checkpoint_type == CheckpointType.AUTO]
    assert [cp.checkpoint_id for cp in autos] == [created[5].checkpoint_id, created[4].checkpoint_id]


def test_retention_window_applies_to_every_type(
    repository: CheckpointRepository,
    clock: FakeClock,
) -> None:
    _, progress = _progress(clock)
    manager = CheckpointManager(repository, retention_days=7, clock=clock)

    old_manual = manager.create_checkpoint(progress, CheckpointType.MANUAL)
    clock.advance(days=8)
    fresh = manager.create_checkpoint(progress, CheckpointType.AUTO)

    assert manager.get_checkpoint(old_manual.checkpoint_id) is None
    assert [cp.checkpoint_id for cp in manager.list_checkpoints("T-1")] == [fresh.checkpoint_id]


def test_latest_checkpoint_and_stage_context(
    repository: CheckpointRepository,
    clock: FakeClock,
) -> None:
    _, progress = _progress(clock)
    manager = CheckpointManager(repository, clock=clock)
    assert manager.get_latest_checkpoint("T-1") is None

    manager.create_checkpoint(progress)
    clock.advance(seconds=1)
    stage_checkpoint = manager.checkpoint_on_stage_complete(progress, "Analyzing")

    latest = manager.get_latest_checkpoint("T-1")
    assert latest is not None
    assert latest.checkpoint_id == stage_checkpoint.checkpoint_id
    assert latest.checkpoint_type == CheckpointType.STAGE
    assert latest.data.context == {"completed_stage": "Analyzing"}


def test_delete_checkpoints(repository: CheckpointRepository, clock: FakeClock) -> None:
    _, progress = _progress(clock)
    manager = CheckpointManager(repository, clock=clock)
    first = manager.create_checkpoint(progress)
    clock.advance(seconds=1)
    manager.create_checkpoint(progress)

    manager.delete_checkpoint(first.checkpoint_id)
    with pytest.raises(CheckpointNotFoundError):
        manager.delete_checkpoint(first.checkpoint_id)

    assert manager.delete_all_checkpoints("T-1") == 1
    assert manager.list_checkpoints("T-1") == []
    clock.advance(seconds=1)
    assert manager.create_checkpoint(progress).version == 1


def test_auto_checkpoint_writes_until_stopped(repository: CheckpointRepository) -> None:
    tracker = ProgressTracker()
    tracker.initialize("T-1", "P-1")
    manager = CheckpointManager(repository, interval_seconds=0.05)

    manager.start_auto_checkpoint("T-1", lambda: tracker.snapshot("T-1"))
    try:
        assert manager.is_auto_checkpointing("T-1")
        assert _wait_until(lambda: len(manager.list_checkpoints("T-1")) >= 2)
    finally:
        manager.stop_auto_checkpoint("T-1")

    assert not manager.is_auto_checkpointing("T-1")
    written = manager.list_checkpoints("T-1")
    assert all(cp.checkpoint_type == CheckpointType.AUTO for cp in written)
    time.sleep(0.15)
    assert len(manager.list_checkpoints("T-1")) == len(written)


def test_auto_checkpoint_failures_are_logged(
    repository: CheckpointRepository,
    caplog: pytest.LogCaptureFixture,
) -> None:
    manager = CheckpointManager(repository, interval_seconds=0.02)

    def _broken_supplier() -> TicketProgress:
        raise RuntimeError("progress unavailable")

    caplog.set_level(logging.ERROR, logger="flowdeck.progress.checkpoint")
    manager.start_auto_checkpoint("T-1", _broken_supplier)
    try:
        assert _wait_until(
            lambda: any(
                "Failed to create auto checkpoint" in record.getMessage()
                for record in caplog.records
            ),
        )
    finally:
        manager.cleanup()

    assert not manager.is_auto_checkpointing("T-1")
    assert manager.list_checkpoints("T-1") == []


def test_supplier_returning_none_is_skipped(repository: CheckpointRepository) -> None:
    manager = CheckpointManager(repository, interval_seconds=0.02)
    calls: list[int] = []

    def _supplier() -> None:
        calls.append(1)

    manager.start_auto_checkpoint("T-1", _supplier)
    try:
        assert _wait_until(lambda: len(calls) >= 3)
    finally:
        manager.cleanup()

    assert manager.list_checkpoints("T-1") == []


def test_restore_keeps_stage_statuses_for_failed_progress(
    repository: CheckpointRepository,
    clock: FakeClock,
) -> None:
    tracker = ProgressTracker(clock=clock)
    tracker.initialize("T-9", "P-1", ["Build", "Deploy"])
    tracker.start_stage("T-9", "Build")
    tracker.fail_stage("T-9", "Build", "compiler error")
    manager = CheckpointManager(repository, clock=clock)

    checkpoint = manager.create_checkpoint(tracker.snapshot("T-9"))
    restored = manager.restore_from_checkpoint(checkpoint)

    assert restored.stages[0].status == StageStatus.FAILED
    assert restored.stages[0].error == "compiler error"
    assert restored.stages[1].status == StageStatus.PENDING
