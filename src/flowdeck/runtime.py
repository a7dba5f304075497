"""Process-wide wiring of scheduler, tracker and checkpoint manager."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from functools import partial

from flowdeck.config import Settings
from flowdeck.events import (
    TICKET_CHANNEL,
    Event,
    EventBus,
    EventKind,
    InProcessEventBus,
    StageCompleted,
    Subscription,
)
from flowdeck.executor import CommandRunner, SubprocessCommandRunner
from flowdeck.progress import (
    CheckpointManager,
    CheckpointRepository,
    CheckpointStore,
    ProgressTracker,
    TicketProgress,
)
from flowdeck.resilience import CircuitBreaker, ResilientCommandRunner, RetryPolicies
from flowdeck.scheduler import JobScheduler

logger = logging.getLogger(__name__)


def build_command_runner(settings: Settings) -> CommandRunner:
    """Subprocess runner, wrapped with retry and breaker when configured."""

    runner = SubprocessCommandRunner(
        command_prefix=settings.scheduler.command_prefix,
        default_timeout_ms=settings.scheduler.default_timeout_ms,
    )
    if settings.retry.policy == "none" and not settings.breaker.enabled:
        return runner

    breaker = None
    if settings.breaker.enabled:
        breaker = CircuitBreaker(
            name="command-runner",
            failure_threshold=settings.breaker.failure_threshold,
            success_threshold=settings.breaker.success_threshold,
            reset_timeout_ms=settings.breaker.reset_timeout_ms,
        )
    return ResilientCommandRunner(
        runner,
        retry_config=RetryPolicies.by_name(settings.retry.policy),
        breaker=breaker,
    )


class FlowdeckRuntime:
    """Owns one scheduler, tracker and checkpoint manager sharing an event bus.

    ``init`` prepares the checkpoint schema and hooks stage-completion
    checkpoints; ``shutdown`` waits for running jobs and stops every
    auto-checkpoint timer.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        runner: CommandRunner | None = None,
        bus: EventBus | None = None,
        store: CheckpointStore | None = None,
    ) -> None:
        settings.validate()
        self.settings = settings
        self.bus = bus or InProcessEventBus()
        self._repository: CheckpointRepository | None = None
        if store is None:
            self._repository = CheckpointRepository(
                settings.db_path,
                sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
            )
            store = self._repository

        self.scheduler = JobScheduler(
            runner=runner or build_command_runner(settings),
            bus=self.bus,
            max_concurrent=settings.scheduler.max_concurrent,
            default_timeout_ms=settings.scheduler.default_timeout_ms,
        )
        self.tracker = ProgressTracker(bus=self.bus, max_logs=settings.progress.max_logs)
        self.checkpoints = CheckpointManager(
            store,
            interval_seconds=settings.checkpoint.interval_seconds,
            max_checkpoints_per_ticket=settings.checkpoint.max_per_ticket,
            retention_days=settings.checkpoint.retention_days,
            max_logs=settings.progress.max_logs,
        )
        self._stage_subscription: Subscription | None = None

    def init(self) -> None:
        if self._repository is not None:
            self._repository.init_schema()
        if self._stage_subscription is None and isinstance(self.bus, InProcessEventBus):
            self._stage_subscription = self.bus.subscribe(
                TICKET_CHANNEL,
                self._on_stage_completed,
                kinds=(EventKind.STAGE_COMPLETED,),
            )

    async def shutdown(self) -> None:
        await self.scheduler.aclose()
        self.checkpoints.cleanup()
        if self._stage_subscription is not None:
            self._stage_subscription.unsubscribe()
            self._stage_subscription = None
        if self._repository is not None:
            self._repository.close()
        logger.debug("Runtime shut down")

    def track_ticket(
        self,
        ticket_id: str,
        project_id: str,
        stage_names: Sequence[str] | None = None,
    ) -> TicketProgress:
        """Start tracking a ticket and checkpoint it on the configured interval."""

        progress = self.tracker.initialize(ticket_id, project_id, stage_names)
        self.checkpoints.start_auto_checkpoint(ticket_id, partial(self._snapshot, ticket_id))
        return progress

    def resume_ticket(self, ticket_id: str) -> TicketProgress | None:
        """Restore a ticket from its latest checkpoint; None when it has none."""

        checkpoint = self.checkpoints.get_latest_checkpoint(ticket_id)
        if checkpoint is None:
            return None
        progress = self.tracker.adopt(self.checkpoints.restore_from_checkpoint(checkpoint))
        self.checkpoints.start_auto_checkpoint(ticket_id, partial(self._snapshot, ticket_id))
        logger.info(
            "Ticket %s resumed from checkpoint %s (v%d)",
            ticket_id,
            checkpoint.checkpoint_id,
            checkpoint.version,
        )
        return progress

    def finish_ticket(self, ticket_id: str, *, keep_checkpoints: bool = True) -> None:
        self.checkpoints.stop_auto_checkpoint(ticket_id)
        self.tracker.cleanup(ticket_id)
        if not keep_checkpoints:
            self.checkpoints.delete_all_checkpoints(ticket_id)

    def _snapshot(self, ticket_id: str) -> TicketProgress | None:
        if self.tracker.get_progress(ticket_id) is None:
            return None
        return self.tracker.snapshot(ticket_id)

    def _on_stage_completed(self, _channel: str, event: Event) -> None:
        if not isinstance(event, StageCompleted):
            return
        progress = self._snapshot(event.ticket_id)
        if progress is None:
            return
        self.checkpoints.checkpoint_on_stage_complete(progress, str(event.stage["name"]))
