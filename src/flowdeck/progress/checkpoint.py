"""Versioned checkpoints of ticket progress with retention and restore."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from flowdeck.progress.models import (
    DEFAULT_MAX_LOGS,
    Checkpoint,
    CheckpointData,
    CheckpointType,
    LogEntry,
    Stage,
    TicketProgress,
)
from flowdeck.progress.repository import CheckpointStore
from flowdeck.storage.common import from_iso, utc_now

logger = logging.getLogger(__name__)

ProgressSupplier = Callable[[], TicketProgress | None]


class CheckpointNotFoundError(LookupError):
    def __init__(self, checkpoint_id: str) -> None:
        super().__init__(f"Checkpoint {checkpoint_id} not found")
        self.checkpoint_id = checkpoint_id


class CheckpointManager:
    """Writes, prunes and restores progress checkpoints.

    Versions increase by one per checkpoint of a ticket. The counter lives in
    memory and is seeded from the highest stored version the first time a
    ticket is checkpointed, so versions keep increasing across restarts.

    Retention runs after every write: checkpoints older than the retention
    window are deleted whatever their type, and ``auto`` checkpoints beyond
    ``max_checkpoints_per_ticket`` are deleted oldest first. ``manual`` and
    ``stage`` checkpoints are only subject to the age rule.
    """

    def __init__(  # noqa: PLR0913
        self,
        store: CheckpointStore,
        *,
        interval_seconds: float = 60.0,
        max_checkpoints_per_ticket: int = 10,
        retention_days: float = 7,
        max_logs: int = DEFAULT_MAX_LOGS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.interval_seconds = interval_seconds
        self.max_checkpoints_per_ticket = max_checkpoints_per_ticket
        self.retention = timedelta(days=retention_days)
        self.max_logs = max_logs
        self._clock = clock
        self._lock = threading.Lock()
        self._versions: dict[str, int] = {}
        self._timers: dict[str, tuple[threading.Thread, threading.Event]] = {}

    def create_checkpoint(
        self,
        progress: TicketProgress,
        checkpoint_type: CheckpointType = CheckpointType.AUTO,
        context: dict[str, Any] | None = None,
    ) -> Checkpoint:
        version = self._next_version(progress.ticket_id)
        data = CheckpointData.from_progress(progress, context)
        checkpoint = self.store.create(
            progress.ticket_id,
            CheckpointType(checkpoint_type),
            version,
            data,
            created_at=self._clock(),
        )
        logger.debug(
            "Checkpoint %s v%d (%s) written for ticket %s",
            checkpoint.checkpoint_id,
            version,
            checkpoint.checkpoint_type.value,
            progress.ticket_id,
        )
        self._enforce_retention(progress.ticket_id)
        return checkpoint

    def get_latest_checkpoint(self, ticket_id: str) -> Checkpoint | None:
        return self.store.find_latest(ticket_id)

    def get_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        return self.store.find_by_id(checkpoint_id)

    def list_checkpoints(self, ticket_id: str) -> list[Checkpoint]:
        """Checkpoints of a ticket, newest first."""

        return self.store.find_all(ticket_id)

    def restore_from_checkpoint(self, checkpoint: Checkpoint) -> TicketProgress:
        """Rebuild live progress from a checkpoint.

        The ETA is left unset until the tracker recomputes it and
        ``last_updated_at`` is the restore time.
        """

        data = checkpoint.data
        return TicketProgress(
            ticket_id=data.ticket_id,
            project_id=data.project_id,
            stages=[Stage.from_dict(stage) for stage in data.stages],
            current_stage=data.current_stage,
            started_at=from_iso(data.started_at),
            last_updated_at=self._clock(),
            percent_complete=data.percent_complete,
            estimated_remaining_minutes=None,
            logs=deque(
                (LogEntry.from_dict(entry) for entry in data.logs),
                maxlen=self.max_logs,
            ),
        )

    def start_auto_checkpoint(self, ticket_id: str, progress_supplier: ProgressSupplier) -> None:
        """Checkpoint the supplied progress every ``interval_seconds`` on a daemon thread.

        An existing timer for the ticket is replaced.
        """

        self.stop_auto_checkpoint(ticket_id)
        stop = threading.Event()
        thread = threading.Thread(
            target=self._auto_checkpoint_loop,
            args=(ticket_id, progress_supplier, stop),
            daemon=True,
            name=f"checkpoint-{ticket_id}",
        )
        with self._lock:
            self._timers[ticket_id] = (thread, stop)
        thread.start()
        logger.debug("Auto-checkpoint started for ticket %s", ticket_id)

    def stop_auto_checkpoint(self, ticket_id: str) -> None:
        with self._lock:
            timer = self._timers.pop(ticket_id, None)
        if timer is None:
            return
        thread, stop = timer
        stop.set()
        if thread is not threading.current_thread():
            thread.join(timeout=5)
        logger.debug("Auto-checkpoint stopped for ticket %s", ticket_id)

    def is_auto_checkpointing(self, ticket_id: str) -> bool:
        with self._lock:
            return ticket_id in self._timers

    def checkpoint_on_stage_complete(self, progress: TicketProgress, stage_name: str) -> Checkpoint:
        return self.create_checkpoint(
            progress,
            CheckpointType.STAGE,
            {"completed_stage": stage_name},
        )

    def delete_checkpoint(self, checkpoint_id: str) -> None:
        if not self.store.delete_by_id(checkpoint_id):
            raise CheckpointNotFoundError(checkpoint_id)

    def delete_all_checkpoints(self, ticket_id: str) -> int:
        """Delete every checkpoint of a ticket and forget its version counter."""

        deleted = self.store.delete_all(ticket_id)
        with self._lock:
            self._versions.pop(ticket_id, None)
        return deleted

    def cleanup(self) -> None:
        """Stop every auto-checkpoint timer and clear version counters."""

        with self._lock:
            ticket_ids = list(self._timers)
        for ticket_id in ticket_ids:
            self.stop_auto_checkpoint(ticket_id)
        with self._lock:
            self._versions.clear()

    def _next_version(self, ticket_id: str) -> int:
        with self._lock:
            current = self._versions.get(ticket_id)
            if current is None:
                current = self.store.max_version(ticket_id)
            self._versions[ticket_id] = current + 1
            return current + 1

    def _enforce_retention(self, ticket_id: str) -> None:
        now = self._clock()
        expired: list[str] = []
        auto_seen = 0
        for checkpoint in self.store.find_all(ticket_id):
            if now - checkpoint.created_at > self.retention:
                expired.append(checkpoint.checkpoint_id)
                continue
            if checkpoint.checkpoint_type == CheckpointType.AUTO:
                auto_seen += 1
                if auto_seen > self.max_checkpoints_per_ticket:
                    expired.append(checkpoint.checkpoint_id)
        if expired:
            deleted = self.store.delete_many(expired)
            logger.debug("Pruned %d checkpoints for ticket %s", deleted, ticket_id)

    def _auto_checkpoint_loop(
        self,
        ticket_id: str,
        progress_supplier: ProgressSupplier,
        stop: threading.Event,
    ) -> None:
        while not stop.wait(timeout=self.interval_seconds):
            try:
                progress = progress_supplier()
                if progress is not None:
                    self.create_checkpoint(progress, CheckpointType.AUTO)
            except Exception:
                logger.exception("Failed to create auto checkpoint for ticket %s", ticket_id)
