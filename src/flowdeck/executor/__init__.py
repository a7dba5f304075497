"""Command execution service implementations."""

from flowdeck.executor.base import (
    DEFAULT_TIMEOUT_MS,
    CommandError,
    CommandOptions,
    CommandResult,
    CommandRunner,
)
from flowdeck.executor.subprocess_runner import SubprocessCommandRunner

__all__ = [
    "DEFAULT_TIMEOUT_MS",
    "CommandError",
    "CommandOptions",
    "CommandResult",
    "CommandRunner",
    "SubprocessCommandRunner",
]
