"""Retry and circuit-breaking primitives for external command calls."""

from flowdeck.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerStats,
    CircuitOpenError,
    CircuitState,
    with_resilience,
)
from flowdeck.resilience.classifier import (
    ClassifiedError,
    ClassificationRule,
    ErrorCategory,
    classify_error,
    suggest_retry_delay,
)
from flowdeck.resilience.retry import RetryConfig, RetryPolicies, calculate_backoff, with_retry
from flowdeck.resilience.runner import ResilientCommandRunner

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerStats",
    "CircuitOpenError",
    "CircuitState",
    "ClassificationRule",
    "ClassifiedError",
    "ErrorCategory",
    "ResilientCommandRunner",
    "RetryConfig",
    "RetryPolicies",
    "calculate_backoff",
    "classify_error",
    "suggest_retry_delay",
    "with_resilience",
    "with_retry",
]
