"""Command execution interface consumed by the scheduler."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

DEFAULT_TIMEOUT_MS = 300_000

OutputCallback = Callable[[str, bool], None]


@dataclass(slots=True)
class CommandOptions:
    """Per-invocation execution options."""

    timeout_ms: int | None = None
    cwd: Path | str | None = None
    env: Mapping[str, str] | None = None
    on_output: OutputCallback | None = None


@dataclass(slots=True)
class CommandResult:
    """Execution outcome of one external command."""

    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool
    duration_ms: int


class CommandError(RuntimeError):
    """External command failed to start, timed out, or exited non-zero."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        stderr: str = "",
        timed_out: bool = False,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr
        self.timed_out = timed_out

    @classmethod
    def from_result(cls, command: str, result: CommandResult) -> CommandError:
        if result.timed_out:
            return cls(
                f"Command {command!r} timed out after {result.duration_ms}ms",
                exit_code=result.exit_code,
                stderr=result.stderr,
                timed_out=True,
            )
        return cls(
            f"Command {command!r} failed with exit code {result.exit_code}: "
            f"{result.stderr or result.stdout}",
            exit_code=result.exit_code,
            stderr=result.stderr,
        )


class CommandRunner(Protocol):
    """Protocol implemented by command execution services."""

    async def execute(
        self,
        command: str,
        args: tuple[str, ...] | list[str] = (),
        options: CommandOptions | None = None,
    ) -> CommandResult:
        """Run one command and return its captured result."""
