"""Weighted, stage-based progress tracking for tickets."""

from __future__ import annotations

import copy
import logging
import math
import threading
from collections import deque
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

from flowdeck.events import (
    TICKET_CHANNEL,
    Event,
    EventBus,
    NullEventBus,
    ProgressCompleted,
    ProgressFailed,
    ProgressInitialized,
    ProgressLog,
    StageCompleted,
    StageFailed,
    StageSkipped,
    StageStarted,
)
from flowdeck.progress.models import (
    DEFAULT_MAX_LOGS,
    DEFAULT_STAGE_WEIGHT,
    DEFAULT_STAGES,
    LogEntry,
    LogLevel,
    Stage,
    StageStatus,
    TicketProgress,
)
from flowdeck.storage.common import utc_now

logger = logging.getLogger(__name__)

MESSAGE_LOG_TAIL = 20

_DEFAULT_WEIGHTS: dict[str, int] = dict(DEFAULT_STAGES)


class ProgressTrackerError(LookupError):
    """Base error for tracker lookups."""


class UnknownTicketError(ProgressTrackerError):
    def __init__(self, ticket_id: str) -> None:
        super().__init__(f"No progress tracker for ticket {ticket_id}")
        self.ticket_id = ticket_id


class UnknownStageError(ProgressTrackerError):
    def __init__(self, ticket_id: str, stage_name: str) -> None:
        super().__init__(f'Stage "{stage_name}" not found for ticket {ticket_id}')
        self.ticket_id = ticket_id
        self.stage_name = stage_name


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def stage_weight(name: str) -> int:
    return _DEFAULT_WEIGHTS.get(name, DEFAULT_STAGE_WEIGHT)


class ProgressTracker:
    """Owns the in-memory progress of every tracked ticket.

    Mutations on one ticket are serialized by a per-ticket re-entrant lock, so
    auto-checkpoint threads can take consistent ``snapshot`` copies while the
    caller keeps updating stages. Events are published after the lock is
    released.
    """

    def __init__(
        self,
        *,
        bus: EventBus | None = None,
        max_logs: int = DEFAULT_MAX_LOGS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_logs < 1:
            raise ValueError("max_logs must be >= 1.")
        self.bus: EventBus = bus or NullEventBus()
        self.max_logs = max_logs
        self._clock = clock
        self._registry_lock = threading.Lock()
        self._progress: dict[str, TicketProgress] = {}
        self._locks: dict[str, threading.RLock] = {}

    def initialize(
        self,
        ticket_id: str,
        project_id: str,
        stage_names: Sequence[str] | None = None,
    ) -> TicketProgress:
        """Start tracking a ticket, replacing any previous state for it."""

        names = list(stage_names) if stage_names is not None else [n for n, _ in DEFAULT_STAGES]
        stages = [
            Stage(stage_id=f"{ticket_id}-stage-{index}", name=name, weight=stage_weight(name))
            for index, name in enumerate(names)
        ]
        now = self._clock()
        progress = TicketProgress(
            ticket_id=ticket_id,
            project_id=project_id,
            stages=stages,
            current_stage=stages[0].name if stages else "",
            started_at=now,
            last_updated_at=now,
            logs=deque(maxlen=self.max_logs),
        )
        self._register(progress)
        logger.debug("Tracking ticket %s with %d stages", ticket_id, len(stages))
        self._publish(
            ProgressInitialized(
                ticket_id=ticket_id,
                project_id=project_id,
                progress=progress.to_dict(max_logs=MESSAGE_LOG_TAIL),
            ),
        )
        return progress

    def adopt(self, progress: TicketProgress) -> TicketProgress:
        """Register progress restored from a checkpoint and refresh derived fields."""

        if progress.logs.maxlen != self.max_logs:
            progress.logs = deque(progress.logs, maxlen=self.max_logs)
        self._update_percent_complete(progress)
        self._update_estimated_remaining(progress)
        self._register(progress)
        return progress

    def start_stage(self, ticket_id: str, stage_name: str) -> None:
        with self._ticket_lock(ticket_id):
            progress, stage = self._locate(ticket_id, stage_name)
            now = self._clock()
            stage.status = StageStatus.IN_PROGRESS
            stage.started_at = now
            progress.current_stage = stage_name
            progress.last_updated_at = now
            self._update_percent_complete(progress)
            event = StageStarted(
                ticket_id=ticket_id,
                project_id=progress.project_id,
                stage=stage.to_dict(),
                percent_complete=progress.percent_complete,
            )
        self._publish(event)

    def complete_stage(self, ticket_id: str, stage_name: str, output: str | None = None) -> None:
        with self._ticket_lock(ticket_id):
            progress, stage = self._locate(ticket_id, stage_name)
            now = self._clock()
            stage.status = StageStatus.COMPLETED
            stage.completed_at = now
            stage.output = output
            if stage.started_at is not None:
                stage.duration_ms = _duration_ms(stage.started_at, now)
            progress.last_updated_at = now
            self._update_percent_complete(progress)
            self._update_estimated_remaining(progress)
            events: list[Event] = [
                StageCompleted(
                    ticket_id=ticket_id,
                    project_id=progress.project_id,
                    stage=stage.to_dict(),
                    percent_complete=progress.percent_complete,
                    estimated_remaining_minutes=progress.estimated_remaining_minutes,
                ),
            ]
            if progress.is_finished():
                events.append(self._completed_event(progress, now))
        for event in events:
            self._publish(event)

    def fail_stage(self, ticket_id: str, stage_name: str, error: str) -> None:
        """Mark a stage failed and report the ticket as failed.

        The tracker keeps the ticket registered; callers decide whether to
        retry the stage or clean up.
        """

        with self._ticket_lock(ticket_id):
            progress, stage = self._locate(ticket_id, stage_name)
            now = self._clock()
            stage.status = StageStatus.FAILED
            stage.completed_at = now
            stage.error = error
            if stage.started_at is not None:
                stage.duration_ms = _duration_ms(stage.started_at, now)
            progress.last_updated_at = now
            self._update_percent_complete(progress)
            events: list[Event] = [
                StageFailed(
                    ticket_id=ticket_id,
                    project_id=progress.project_id,
                    stage=stage.to_dict(),
                    error=error,
                ),
                ProgressFailed(
                    ticket_id=ticket_id,
                    project_id=progress.project_id,
                    failed_stage=stage_name,
                    error=error,
                ),
            ]
        logger.warning("Ticket %s failed at stage %s: %s", ticket_id, stage_name, error)
        for event in events:
            self._publish(event)

    def skip_stage(self, ticket_id: str, stage_name: str, reason: str | None = None) -> None:
        with self._ticket_lock(ticket_id):
            progress, stage = self._locate(ticket_id, stage_name)
            now = self._clock()
            stage.status = StageStatus.SKIPPED
            stage.output = reason or "Skipped"
            progress.last_updated_at = now
            self._update_percent_complete(progress)
            self._update_estimated_remaining(progress)
            events: list[Event] = [
                StageSkipped(
                    ticket_id=ticket_id,
                    project_id=progress.project_id,
                    stage=stage.to_dict(),
                    percent_complete=progress.percent_complete,
                ),
            ]
            if progress.is_finished():
                events.append(self._completed_event(progress, now))
        for event in events:
            self._publish(event)

    def add_log(
        self,
        ticket_id: str,
        message: str,
        level: LogLevel = LogLevel.INFO,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Append a log line tagged with the current stage; unknown tickets are ignored."""

        progress = self._progress.get(ticket_id)
        if progress is None:
            return
        with self._ticket_lock(ticket_id):
            now = self._clock()
            entry = LogEntry(
                timestamp=now,
                level=LogLevel(level),
                message=message,
                stage=progress.current_stage or None,
                metadata=dict(metadata or {}),
            )
            progress.logs.append(entry)
            progress.last_updated_at = now
            event = ProgressLog(
                ticket_id=ticket_id,
                project_id=progress.project_id,
                log=entry.to_dict(),
            )
        self._publish(event)

    def get_progress(self, ticket_id: str) -> TicketProgress | None:
        return self._progress.get(ticket_id)

    def snapshot(self, ticket_id: str) -> TicketProgress:
        """Deep copy of the ticket's progress taken under its lock."""

        with self._ticket_lock(ticket_id):
            progress = self._progress.get(ticket_id)
            if progress is None:
                raise UnknownTicketError(ticket_id)
            return copy.deepcopy(progress)

    def to_message(self, ticket_id: str) -> dict[str, Any] | None:
        """JSON projection for external consumers, limited to the latest logs."""

        progress = self._progress.get(ticket_id)
        if progress is None:
            return None
        with self._ticket_lock(ticket_id):
            return progress.to_dict(max_logs=MESSAGE_LOG_TAIL)

    def active(self) -> list[TicketProgress]:
        with self._registry_lock:
            return list(self._progress.values())

    def cleanup(self, ticket_id: str) -> None:
        with self._registry_lock:
            self._progress.pop(ticket_id, None)
            self._locks.pop(ticket_id, None)

    def _register(self, progress: TicketProgress) -> None:
        with self._registry_lock:
            self._progress[progress.ticket_id] = progress
            self._locks.setdefault(progress.ticket_id, threading.RLock())

    def _ticket_lock(self, ticket_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(ticket_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[ticket_id] = lock
            return lock

    def _locate(self, ticket_id: str, stage_name: str) -> tuple[TicketProgress, Stage]:
        progress = self._progress.get(ticket_id)
        if progress is None:
            raise UnknownTicketError(ticket_id)
        stage = progress.find_stage(stage_name)
        if stage is None:
            raise UnknownStageError(ticket_id, stage_name)
        return progress, stage

    def _completed_event(self, progress: TicketProgress, now: datetime) -> ProgressCompleted:
        logger.info("Ticket %s completed all stages", progress.ticket_id)
        return ProgressCompleted(
            ticket_id=progress.ticket_id,
            project_id=progress.project_id,
            total_duration_ms=_duration_ms(progress.started_at, now),
        )

    @staticmethod
    def _update_percent_complete(progress: TicketProgress) -> None:
        total = 0
        done = 0.0
        for stage in progress.stages:
            total += stage.weight
            if stage.status in (StageStatus.COMPLETED, StageStatus.SKIPPED):
                done += stage.weight
            elif stage.status == StageStatus.IN_PROGRESS:
                done += stage.weight * 0.5
        if total > 0:
            progress.percent_complete = round_half_up(done / total * 100)

    @staticmethod
    def _update_estimated_remaining(progress: TicketProgress) -> None:
        timed = [
            stage
            for stage in progress.stages
            if stage.status == StageStatus.COMPLETED and stage.duration_ms is not None
        ]
        timed_weight = sum(stage.weight for stage in timed)
        if not timed or timed_weight == 0:
            progress.estimated_remaining_minutes = None
            return

        ms_per_weight = sum(stage.duration_ms or 0 for stage in timed) / timed_weight
        remaining_weight = 0.0
        for stage in progress.stages:
            if stage.status == StageStatus.PENDING:
                remaining_weight += stage.weight
            elif stage.status == StageStatus.IN_PROGRESS:
                remaining_weight += stage.weight * 0.5
        progress.estimated_remaining_minutes = round_half_up(
            ms_per_weight * remaining_weight / 60_000,
        )

    def _publish(self, event: Event) -> None:
        try:
            self.bus.publish(TICKET_CHANNEL, event)
        except Exception:
            logger.exception("Failed to publish %s", event.kind.value)


def _duration_ms(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() * 1000)
