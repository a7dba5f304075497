"""Domain models for ticket progress tracking and checkpoints."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from flowdeck.storage.common import from_iso

DEFAULT_MAX_LOGS = 100
DEFAULT_STAGE_WEIGHT = 10

DEFAULT_STAGES: tuple[tuple[str, int], ...] = (
    ("Analyzing", 10),
    ("Assigning Agents", 5),
    ("Initializing Swarm", 10),
    ("Executing", 40),
    ("Testing", 20),
    ("Reviewing", 10),
    ("Completing", 5),
)


class StageStatus(str, Enum):
    """Lifecycle of one progress stage."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class CheckpointType(str, Enum):
    """Why a checkpoint was written."""

    AUTO = "auto"
    MANUAL = "manual"
    STAGE = "stage"


@dataclass(slots=True)
class Stage:
    """One named, weighted phase of a ticket's execution."""

    stage_id: str
    name: str
    weight: int = DEFAULT_STAGE_WEIGHT
    status: StageStatus = StageStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    output: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.stage_id,
            "name": self.name,
            "weight": self.weight,
            "status": self.status.value,
            "started_at": _iso_or_none(self.started_at),
            "completed_at": _iso_or_none(self.completed_at),
            "duration_ms": self.duration_ms,
            "output": self.output,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Stage:
        return cls(
            stage_id=str(payload["id"]),
            name=str(payload["name"]),
            weight=int(payload.get("weight", DEFAULT_STAGE_WEIGHT)),
            status=StageStatus(payload.get("status", StageStatus.PENDING.value)),
            started_at=_parse_or_none(payload.get("started_at")),
            completed_at=_parse_or_none(payload.get("completed_at")),
            duration_ms=payload.get("duration_ms"),
            output=payload.get("output"),
            error=payload.get("error"),
        )


@dataclass(slots=True)
class LogEntry:
    timestamp: datetime
    level: LogLevel
    message: str
    stage: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "message": self.message,
            "stage": self.stage,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> LogEntry:
        return cls(
            timestamp=from_iso(str(payload["timestamp"])),
            level=LogLevel(payload.get("level", LogLevel.INFO.value)),
            message=str(payload.get("message", "")),
            stage=payload.get("stage"),
            metadata=dict(payload.get("metadata") or {}),
        )


@dataclass(slots=True)
class TicketProgress:
    """Complete progress state for one tracked ticket.

    ``logs`` is a bounded ring buffer: once it holds ``maxlen`` entries the
    oldest entry is dropped on every append.
    """

    ticket_id: str
    project_id: str
    stages: list[Stage]
    current_stage: str
    started_at: datetime
    last_updated_at: datetime
    percent_complete: int = 0
    estimated_remaining_minutes: int | None = None
    logs: deque[LogEntry] = field(default_factory=lambda: deque(maxlen=DEFAULT_MAX_LOGS))

    def find_stage(self, name: str) -> Stage | None:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    def is_finished(self) -> bool:
        """True when every stage is completed or skipped."""

        return all(
            stage.status in (StageStatus.COMPLETED, StageStatus.SKIPPED) for stage in self.stages
        )

    def to_dict(self, *, max_logs: int | None = None) -> dict[str, Any]:
        """JSON projection used for events and API responses."""

        logs = list(self.logs)
        if max_logs is not None:
            logs = logs[-max_logs:] if max_logs > 0 else []
        return {
            "ticket_id": self.ticket_id,
            "project_id": self.project_id,
            "stages": [stage.to_dict() for stage in self.stages],
            "current_stage": self.current_stage,
            "percent_complete": self.percent_complete,
            "estimated_remaining_minutes": self.estimated_remaining_minutes,
            "logs": [entry.to_dict() for entry in logs],
            "started_at": self.started_at.isoformat(),
            "last_updated_at": self.last_updated_at.isoformat(),
        }


@dataclass(slots=True)
class CheckpointData:
    """Serializable projection of TicketProgress stored inside a checkpoint."""

    ticket_id: str
    project_id: str
    stages: list[dict[str, Any]]
    current_stage: str
    percent_complete: int
    logs: list[dict[str, Any]]
    started_at: str
    context: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_progress(
        cls,
        progress: TicketProgress,
        context: dict[str, Any] | None = None,
    ) -> CheckpointData:
        return cls(
            ticket_id=progress.ticket_id,
            project_id=progress.project_id,
            stages=[stage.to_dict() for stage in progress.stages],
            current_stage=progress.current_stage,
            percent_complete=progress.percent_complete,
            logs=[entry.to_dict() for entry in progress.logs],
            started_at=progress.started_at.isoformat(),
            context=dict(context or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticket_id": self.ticket_id,
            "project_id": self.project_id,
            "stages": self.stages,
            "current_stage": self.current_stage,
            "percent_complete": self.percent_complete,
            "logs": self.logs,
            "started_at": self.started_at,
            "context": self.context,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CheckpointData:
        return cls(
            ticket_id=str(payload["ticket_id"]),
            project_id=str(payload.get("project_id", "")),
            stages=list(payload.get("stages") or []),
            current_stage=str(payload.get("current_stage", "")),
            percent_complete=int(payload.get("percent_complete", 0)),
            logs=list(payload.get("logs") or []),
            started_at=str(payload["started_at"]),
            context=dict(payload.get("context") or {}),
        )


@dataclass(slots=True)
class Checkpoint:
    """Durable, versioned snapshot of a ticket's progress."""

    checkpoint_id: str
    ticket_id: str
    version: int
    checkpoint_type: CheckpointType
    created_at: datetime
    data: CheckpointData


def _iso_or_none(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_or_none(value: object) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return from_iso(str(value))
