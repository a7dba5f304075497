"""Three-state circuit breaker and its composition with retry."""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import TypeVar

from flowdeck.resilience.classifier import CircuitOpenError
from flowdeck.resilience.retry import (
    RetryConfig,
    RetryPredicate,
    default_retry_predicate,
    with_retry,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass(slots=True)
class CircuitBreakerStats:
    state: CircuitState
    consecutive_failures: int
    consecutive_successes: int
    last_failure_time: float | None


class CircuitBreaker:
    """Stops calling a failing dependency until it appears to have recovered.

    closed: calls pass; ``failure_threshold`` consecutive failures open it.
    open: calls are rejected with ``CircuitOpenError`` until
    ``reset_timeout_ms`` has elapsed since the last failure, at which point the
    next call moves it to half-open and goes through.
    half-open: ``success_threshold`` consecutive successes close it; a single
    failure opens it again.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        name: str = "default",
        failure_threshold: int = 5,
        success_threshold: int = 2,
        reset_timeout_ms: int = 30_000,
        on_open: Callable[[], None] | None = None,
        on_close: Callable[[], None] | None = None,
        on_half_open: Callable[[], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.reset_timeout_ms = reset_timeout_ms
        self._on_open = on_open
        self._on_close = on_close
        self._on_half_open = on_half_open
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._last_failure_time: float | None = None

    @property
    def state(self) -> CircuitState:
        return self._state

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` through the breaker; its own error propagates unchanged."""

        if not self.can_execute():
            raise CircuitOpenError(f"Circuit breaker {self.name!r} is open")

        try:
            result = await fn()
        except Exception:
            self._record_failure()
            raise
        self._record_success()
        return result

    def can_execute(self) -> bool:
        """Whether a call may go through now; may move open to half-open."""

        if self._state == CircuitState.OPEN:
            if self._reset_timeout_elapsed():
                self._transition_to(CircuitState.HALF_OPEN)
                return True
            return False
        return True

    def stats(self) -> CircuitBreakerStats:
        return CircuitBreakerStats(
            state=self._state,
            consecutive_failures=self._failures,
            consecutive_successes=self._successes,
            last_failure_time=self._last_failure_time,
        )

    def reset(self) -> None:
        """Force the breaker closed."""

        self._transition_to(CircuitState.CLOSED)

    def trip(self) -> None:
        """Force the breaker open as if a failure had just happened."""

        self._last_failure_time = self._clock()
        self._transition_to(CircuitState.OPEN)

    def _reset_timeout_elapsed(self) -> bool:
        if self._last_failure_time is None:
            return True
        elapsed_ms = (self._clock() - self._last_failure_time) * 1000.0
        return elapsed_ms >= self.reset_timeout_ms

    def _record_success(self) -> None:
        self._failures = 0
        if self._state == CircuitState.HALF_OPEN:
            self._successes += 1
            if self._successes >= self.success_threshold:
                self._transition_to(CircuitState.CLOSED)

    def _record_failure(self) -> None:
        self._failures += 1
        self._last_failure_time = self._clock()
        if self._state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.OPEN)
        elif self._state == CircuitState.CLOSED and self._failures >= self.failure_threshold:
            self._transition_to(CircuitState.OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        previous = self._state
        self._state = new_state
        if new_state == CircuitState.OPEN:
            self._successes = 0
            callback = self._on_open
        elif new_state == CircuitState.CLOSED:
            self._successes = 0
            self._failures = 0
            callback = self._on_close
        else:
            self._successes = 0
            callback = self._on_half_open

        if previous != new_state:
            logger.info(
                "Circuit breaker %s: %s -> %s",
                self.name,
                previous.value,
                new_state.value,
            )
        if callback is not None:
            callback()


async def with_resilience(
    fn: Callable[[], Awaitable[T]],
    retry_config: RetryConfig | None,
    breaker: CircuitBreaker,
) -> T:
    """Retry outside, breaker inside: every attempt consults the breaker.

    ``CircuitOpenError`` is never retried, whatever ``retry_if`` says, so an
    open breaker ends the remaining attempts early.
    """

    config = replace(retry_config) if retry_config is not None else RetryConfig()
    config.retry_if = _skip_open_circuit(config.retry_if or default_retry_predicate)
    return await with_retry(lambda: breaker.execute(fn), config)


def _skip_open_circuit(retry_if: RetryPredicate) -> RetryPredicate:
    def _predicate(error: Exception, attempt: int) -> bool:
        if isinstance(error, CircuitOpenError):
            return False
        return retry_if(error, attempt)

    return _predicate
