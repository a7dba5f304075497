"""Command runner decorator that routes every call through retry and a breaker."""

from __future__ import annotations

from flowdeck.executor.base import CommandError, CommandOptions, CommandResult, CommandRunner
from flowdeck.resilience.circuit_breaker import CircuitBreaker, with_resilience
from flowdeck.resilience.retry import RetryConfig, with_retry


class ResilientCommandRunner:
    """Wrap a runner so non-zero exits and timeouts raise and get retried.

    Without a breaker only the retry loop applies. The final failure is
    re-raised as ``CommandError`` (or ``CircuitOpenError``).
    """

    def __init__(
        self,
        runner: CommandRunner,
        *,
        retry_config: RetryConfig | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self.runner = runner
        self.retry_config = retry_config
        self.breaker = breaker

    async def execute(
        self,
        command: str,
        args: tuple[str, ...] | list[str] = (),
        options: CommandOptions | None = None,
    ) -> CommandResult:
        async def _attempt() -> CommandResult:
            result = await self.runner.execute(command, args, options)
            if result.timed_out or result.exit_code != 0:
                raise CommandError.from_result(command, result)
            return result

        if self.breaker is None:
            return await with_retry(_attempt, self.retry_config)
        return await with_resilience(_attempt, self.retry_config, self.breaker)
