"""Ticket progress tracking and checkpoint/restore."""

from flowdeck.progress.checkpoint import CheckpointManager, CheckpointNotFoundError
from flowdeck.progress.models import (
    DEFAULT_STAGES,
    Checkpoint,
    CheckpointData,
    CheckpointType,
    LogEntry,
    LogLevel,
    Stage,
    StageStatus,
    TicketProgress,
)
from flowdeck.progress.repository import CheckpointRepository, CheckpointStore
from flowdeck.progress.tracker import (
    ProgressTracker,
    ProgressTrackerError,
    UnknownStageError,
    UnknownTicketError,
)

__all__ = [
    "DEFAULT_STAGES",
    "Checkpoint",
    "CheckpointData",
    "CheckpointManager",
    "CheckpointNotFoundError",
    "CheckpointRepository",
    "CheckpointStore",
    "CheckpointType",
    "LogEntry",
    "LogLevel",
    "ProgressTracker",
    "ProgressTrackerError",
    "Stage",
    "StageStatus",
    "TicketProgress",
    "UnknownStageError",
    "UnknownTicketError",
]
