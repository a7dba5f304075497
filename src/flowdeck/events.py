"""Typed lifecycle events and the in-process channel bus that carries them.

Every event kind is a member of the closed ``EventKind`` enum and has exactly
one payload dataclass. ``Event.to_message()`` flattens an event into the JSON
object published to external bridges: ``{"type": ..., "timestamp": ..., **fields}``.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Protocol

from flowdeck.storage.common import utc_now

logger = logging.getLogger(__name__)

JOB_CHANNEL = "flowdeck:jobs"
TICKET_CHANNEL = "flowdeck:tickets"


class EventKind(str, Enum):
    """Closed set of events emitted by the scheduler and the progress tracker."""

    JOB_QUEUED = "job:queued"
    JOB_STARTED = "job:started"
    JOB_PROGRESS = "job:progress"
    JOB_COMPLETED = "job:completed"
    JOB_FAILED = "job:failed"
    JOB_CANCELLED = "job:cancelled"
    QUEUE_EMPTY = "queue:empty"
    PROGRESS_INITIALIZED = "progress:initialized"
    STAGE_STARTED = "progress:stage-started"
    STAGE_COMPLETED = "progress:stage-completed"
    STAGE_FAILED = "progress:stage-failed"
    STAGE_SKIPPED = "progress:stage-skipped"
    PROGRESS_LOG = "progress:log"
    PROGRESS_COMPLETED = "progress:completed"
    PROGRESS_FAILED = "progress:failed"


@dataclass(slots=True, kw_only=True)
class Event:
    kind: ClassVar[EventKind]

    timestamp: datetime = field(default_factory=utc_now)

    def to_message(self) -> dict[str, Any]:
        message: dict[str, Any] = {"type": self.kind.value}
        for item in fields(self):
            message[item.name] = _jsonable(getattr(self, item.name))
        return message


@dataclass(slots=True, kw_only=True)
class JobQueued(Event):
    kind: ClassVar[EventKind] = EventKind.JOB_QUEUED

    job_id: str
    priority: str
    command: str
    project_id: str | None = None
    ticket_id: str | None = None


@dataclass(slots=True, kw_only=True)
class JobStarted(Event):
    kind: ClassVar[EventKind] = EventKind.JOB_STARTED

    job_id: str
    started_at: datetime


@dataclass(slots=True, kw_only=True)
class JobProgress(Event):
    kind: ClassVar[EventKind] = EventKind.JOB_PROGRESS

    job_id: str
    output: str
    is_stderr: bool = False


@dataclass(slots=True, kw_only=True)
class JobCompleted(Event):
    kind: ClassVar[EventKind] = EventKind.JOB_COMPLETED

    job_id: str
    duration_ms: int
    exit_code: int | None


@dataclass(slots=True, kw_only=True)
class JobFailed(Event):
    kind: ClassVar[EventKind] = EventKind.JOB_FAILED

    job_id: str
    error: str
    duration_ms: int


@dataclass(slots=True, kw_only=True)
class JobCancelled(Event):
    kind: ClassVar[EventKind] = EventKind.JOB_CANCELLED

    job_id: str


@dataclass(slots=True, kw_only=True)
class QueueEmpty(Event):
    kind: ClassVar[EventKind] = EventKind.QUEUE_EMPTY


@dataclass(slots=True, kw_only=True)
class ProgressInitialized(Event):
    kind: ClassVar[EventKind] = EventKind.PROGRESS_INITIALIZED

    ticket_id: str
    project_id: str
    progress: dict[str, Any]


@dataclass(slots=True, kw_only=True)
class StageStarted(Event):
    kind: ClassVar[EventKind] = EventKind.STAGE_STARTED

    ticket_id: str
    project_id: str
    stage: dict[str, Any]
    percent_complete: int


@dataclass(slots=True, kw_only=True)
class StageCompleted(Event):
    kind: ClassVar[EventKind] = EventKind.STAGE_COMPLETED

    ticket_id: str
    project_id: str
    stage: dict[str, Any]
    percent_complete: int
    estimated_remaining_minutes: int | None


@dataclass(slots=True, kw_only=True)
class StageFailed(Event):
    kind: ClassVar[EventKind] = EventKind.STAGE_FAILED

    ticket_id: str
    project_id: str
    stage: dict[str, Any]
    error: str


@dataclass(slots=True, kw_only=True)
class StageSkipped(Event):
    kind: ClassVar[EventKind] = EventKind.STAGE_SKIPPED

    ticket_id: str
    project_id: str
    stage: dict[str, Any]
    percent_complete: int


@dataclass(slots=True, kw_only=True)
class ProgressLog(Event):
    kind: ClassVar[EventKind] = EventKind.PROGRESS_LOG

    ticket_id: str
    project_id: str
    log: dict[str, Any]


@dataclass(slots=True, kw_only=True)
class ProgressCompleted(Event):
    kind: ClassVar[EventKind] = EventKind.PROGRESS_COMPLETED

    ticket_id: str
    project_id: str
    total_duration_ms: int


@dataclass(slots=True, kw_only=True)
class ProgressFailed(Event):
    kind: ClassVar[EventKind] = EventKind.PROGRESS_FAILED

    ticket_id: str
    project_id: str
    failed_stage: str
    error: str


EventHandler = Callable[[str, Event], None]


class EventBus(Protocol):
    """Fire-and-forget publisher used by the core components."""

    def publish(self, channel: str, event: Event) -> None:
        """Deliver an event to the channel's subscribers, best-effort."""


@dataclass(slots=True)
class Subscription:
    channel: str
    handler: EventHandler
    kinds: frozenset[EventKind] | None
    _bus: InProcessEventBus | None = None

    def accepts(self, event: Event) -> bool:
        return self.kinds is None or event.kind in self.kinds

    def unsubscribe(self) -> None:
        if self._bus is not None:
            self._bus.unsubscribe(self)
            self._bus = None


class InProcessEventBus:
    """Channel-based publish/subscribe inside one process.

    A failing handler is logged and skipped; it never prevents delivery to
    the remaining subscribers and never propagates to the publisher.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: dict[str, list[Subscription]] = {}

    def subscribe(
        self,
        channel: str,
        handler: EventHandler,
        *,
        kinds: tuple[EventKind, ...] | None = None,
    ) -> Subscription:
        subscription = Subscription(
            channel=channel,
            handler=handler,
            kinds=frozenset(kinds) if kinds is not None else None,
            _bus=self,
        )
        with self._lock:
            self._subscriptions.setdefault(channel, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            current = self._subscriptions.get(subscription.channel, [])
            self._subscriptions[subscription.channel] = [
                item for item in current if item is not subscription
            ]

    def publish(self, channel: str, event: Event) -> None:
        with self._lock:
            targets = list(self._subscriptions.get(channel, ()))
        for subscription in targets:
            if not subscription.accepts(event):
                continue
            try:
                subscription.handler(channel, event)
            except Exception:
                logger.exception("Event handler failed for %s on %s", event.kind.value, channel)


class NullEventBus:
    """Bus that drops every event."""

    def publish(self, channel: str, event: Event) -> None:
        return None


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [_jsonable(item) for item in value]
    return value
