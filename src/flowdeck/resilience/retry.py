"""Exponential backoff retry with preset policies."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from flowdeck.resilience.classifier import ErrorCategory, classify_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryPredicate = Callable[[Exception, int], bool]
RetryCallback = Callable[[Exception, int, int], None]

_JITTER_FRACTION = 0.25


@dataclass(slots=True)
class RetryConfig:
    """Retry loop parameters; delays are in milliseconds."""

    max_retries: int = 3
    initial_delay_ms: int = 1_000
    max_delay_ms: int = 30_000
    multiplier: float = 2.0
    jitter: bool = True
    retry_if: RetryPredicate | None = None
    on_retry: RetryCallback | None = None


def calculate_backoff(  # noqa: PLR0913
    attempt: int,
    initial_delay_ms: int = 1_000,
    max_delay_ms: int = 30_000,
    multiplier: float = 2.0,
    jitter: bool = True,
    *,
    rng: random.Random | None = None,
) -> int:
    """Delay before the retry following 0-based ``attempt``.

    ``min(initial * multiplier ** attempt, max)``, inflated by up to 25%
    uniform jitter when enabled, floored to an integer.
    """

    safe_attempt = max(0, attempt)
    try:
        delay = float(initial_delay_ms) * (multiplier**safe_attempt)
    except OverflowError:
        delay = float(max_delay_ms)
    delay = min(delay, float(max_delay_ms))
    if jitter:
        source = rng or random
        delay += delay * _JITTER_FRACTION * source.random()
    return int(delay)


def default_retry_predicate(error: Exception, _attempt: int = 0) -> bool:
    return classify_error(error).retryable


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
) -> T:
    """Await ``fn`` until it succeeds or the retry budget is spent.

    The last error is re-raised unchanged once ``max_retries`` is reached or
    ``retry_if`` declines it.
    """

    config = config or RetryConfig()
    retry_if = config.retry_if or default_retry_predicate
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as error:
            if attempt >= config.max_retries or not retry_if(error, attempt):
                raise

            delay_ms = calculate_backoff(
                attempt,
                config.initial_delay_ms,
                config.max_delay_ms,
                config.multiplier,
                config.jitter,
            )
            logger.info(
                "Retrying after %s (attempt %d/%d, delay %dms): %s",
                type(error).__name__,
                attempt + 1,
                config.max_retries,
                delay_ms,
                classify_error(error).to_event_details(),
            )
            if config.on_retry is not None:
                config.on_retry(error, attempt + 1, delay_ms)
            await asyncio.sleep(delay_ms / 1000.0)
            attempt += 1


def _category_predicate(category: ErrorCategory) -> RetryPredicate:
    def _predicate(error: Exception, _attempt: int) -> bool:
        return classify_error(error).category == category

    return _predicate


class RetryPolicies:
    """Pre-configured retry configurations for common call sites."""

    @staticmethod
    def conservative() -> RetryConfig:
        return RetryConfig(max_retries=5, initial_delay_ms=2_000, max_delay_ms=60_000)

    @staticmethod
    def aggressive() -> RetryConfig:
        return RetryConfig(
            max_retries=3,
            initial_delay_ms=500,
            max_delay_ms=5_000,
            multiplier=1.5,
        )

    @staticmethod
    def none() -> RetryConfig:
        return RetryConfig(max_retries=0)

    @staticmethod
    def network_only() -> RetryConfig:
        return RetryConfig(
            max_retries=3,
            initial_delay_ms=1_000,
            max_delay_ms=10_000,
            retry_if=_category_predicate(ErrorCategory.NETWORK),
        )

    @staticmethod
    def transient_only() -> RetryConfig:
        return RetryConfig(
            max_retries=5,
            initial_delay_ms=5_000,
            max_delay_ms=60_000,
            retry_if=_category_predicate(ErrorCategory.TRANSIENT),
        )

    @classmethod
    def by_name(cls, name: str) -> RetryConfig:
        """Resolve a policy from its configuration name."""

        factories: dict[str, Callable[[], RetryConfig]] = {
            "conservative": cls.conservative,
            "aggressive": cls.aggressive,
            "none": cls.none,
            "network_only": cls.network_only,
            "transient_only": cls.transient_only,
        }
        try:
            return factories[name]()
        except KeyError as error:
            raise ValueError(
                f"Unknown retry policy: {name!r}. Expected one of {sorted(factories)}.",
            ) from error
