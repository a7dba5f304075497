from __future__ import annotations

import asyncio

import allure
import pytest
from helpers import ScriptedRunner, failed_result, ok_result

from flowdeck.executor import CommandError, CommandResult
from flowdeck.resilience import (
    CircuitBreaker,
    CircuitOpenError,
    ResilientCommandRunner,
    RetryConfig,
)

pytestmark = [
    allure.epic("Resilience"),
    allure.feature("Resilient Command Runner"),
]


def _always(_error: Exception, _attempt: int) -> bool:
    return True


def test_failed_exit_is_retried_until_success() -> None:
    inner = ScriptedRunner({"claude": [failed_result("boom"), ok_result("fine")]})
    runner = ResilientCommandRunner(
        inner,
        retry_config=RetryConfig(max_retries=2, initial_delay_ms=1, jitter=False, retry_if=_always),
    )

    result = asyncio.run(runner.execute("claude", ("status",)))

    assert result.stdout == "fine"
    assert inner.calls == [("claude", ("status",)), ("claude", ("status",))]


def test_non_retryable_failure_raises_command_error() -> None:
    inner = ScriptedRunner({"claude": failed_result("invalid argument --foo", exit_code=2)})
    runner = ResilientCommandRunner(
        inner,
        retry_config=RetryConfig(max_retries=3, initial_delay_ms=1, jitter=False),
    )

    with pytest.raises(CommandError) as excinfo:
        asyncio.run(runner.execute("claude"))

    assert excinfo.value.exit_code == 2
    assert excinfo.value.stderr == "invalid argument --foo"
    assert len(inner.calls) == 1


def test_timed_out_result_becomes_timeout_error() -> None:
    timed_out = CommandResult(stdout="", stderr="", exit_code=-1, timed_out=True, duration_ms=50)
    inner = ScriptedRunner({"claude": timed_out})
    runner = ResilientCommandRunner(inner, retry_config=RetryConfig(max_retries=0))

    with pytest.raises(CommandError) as excinfo:
        asyncio.run(runner.execute("claude"))

    assert excinfo.value.timed_out is True
    assert "timed out" in str(excinfo.value)


def test_breaker_rejects_after_threshold() -> None:
    inner = ScriptedRunner({"claude": failed_result("ECONNRESET")})
    breaker = CircuitBreaker(failure_threshold=1, reset_timeout_ms=60_000)
    runner = ResilientCommandRunner(
        inner,
        retry_config=RetryConfig(max_retries=0),
        breaker=breaker,
    )

    with pytest.raises(CommandError):
        asyncio.run(runner.execute("claude"))
    with pytest.raises(CircuitOpenError):
        asyncio.run(runner.execute("claude"))

    assert len(inner.calls) == 1
