"""Test doubles shared by the test modules."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

from flowdeck.executor import CommandOptions, CommandResult


def ok_result(stdout: str = "ok") -> CommandResult:
    return CommandResult(stdout=stdout, stderr="", exit_code=0, timed_out=False, duration_ms=1)


def failed_result(stderr: str = "", exit_code: int = 1) -> CommandResult:
    return CommandResult(
        stdout="",
        stderr=stderr,
        exit_code=exit_code,
        timed_out=False,
        duration_ms=1,
    )


class ScriptedRunner:
    """Command runner double.

    ``outcomes`` maps a command to a result, an exception, or a list of those
    consumed one call at a time (the last entry repeats).
    """

    def __init__(self, outcomes=None, *, delay_seconds: float = 0.0) -> None:
        self.outcomes = dict(outcomes or {})
        self.delay_seconds = delay_seconds
        self.calls: list[tuple[str, tuple[str, ...]]] = []
        self.options: list[CommandOptions | None] = []
        self.in_flight = 0
        self.peak_in_flight = 0

    async def execute(self, command, args=(), options=None) -> CommandResult:
        self.calls.append((command, tuple(args)))
        self.options.append(options)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay_seconds)
            outcome = self.outcomes.get(command, ok_result())
            if isinstance(outcome, list):
                outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
            if isinstance(outcome, Exception):
                raise outcome
            if options is not None and options.on_output is not None:
                for line in outcome.stdout.splitlines():
                    options.on_output(line, False)
            return outcome
        finally:
            self.in_flight -= 1

    @property
    def commands(self) -> list[str]:
        return [command for command, _ in self.calls]


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 16, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)
