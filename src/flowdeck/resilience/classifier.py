"""Deterministic error classification for retry policy."""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from flowdeck.executor.base import CommandError

ERROR_CLASSIFIER_VERSION = 1


class ErrorCategory(str, Enum):
    """Normalized failure categories used by retry policy."""

    TRANSIENT = "transient"
    NETWORK = "network"
    TIMEOUT = "timeout"
    RESOURCE = "resource"
    AUTHENTICATION = "authentication"
    VALIDATION = "validation"
    INTERNAL = "internal"
    UNKNOWN = "unknown"


_RETRY_DELAY_MS: dict[ErrorCategory, int] = {
    ErrorCategory.TRANSIENT: 5_000,
    ErrorCategory.NETWORK: 1_000,
    ErrorCategory.TIMEOUT: 2_000,
    ErrorCategory.RESOURCE: 10_000,
    ErrorCategory.INTERNAL: 3_000,
}

class CircuitOpenError(RuntimeError):
    """Raised instead of calling the guarded function while the circuit is open."""


ErrorPredicate = Callable[[BaseException], bool]


@dataclass(frozen=True, slots=True)
class ClassificationRule:
    """One ``(matcher, category, retryable)`` entry.

    ``matcher`` is a compiled regex searched in the error text, or a
    predicate over the exception itself.
    """

    name: str
    matcher: re.Pattern[str] | ErrorPredicate
    category: ErrorCategory
    retryable: bool

    def matches(self, error: BaseException, text: str) -> bool:
        if isinstance(self.matcher, re.Pattern):
            return self.matcher.search(text) is not None
        return self.matcher(error)


@dataclass(slots=True)
class ClassifiedError:
    """Normalized classification result."""

    original: BaseException
    category: ErrorCategory
    retryable: bool
    retry_after_ms: int | None = None
    matched_rule: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for events and logs."""

        return {
            "classifier_version": ERROR_CLASSIFIER_VERSION,
            "category": self.category.value,
            "retryable": self.retryable,
            "retry_after_ms": self.retry_after_ms,
            "matched_rule": self.matched_rule,
        }


def _text(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


def _circuit_open(error: BaseException) -> bool:
    return isinstance(error, CircuitOpenError)


def _command_timed_out(error: BaseException) -> bool:
    return isinstance(error, CommandError) and error.timed_out


def _exit_code_is(code: int) -> ErrorPredicate:
    def _predicate(error: BaseException) -> bool:
        return isinstance(error, CommandError) and error.exit_code == code

    return _predicate


def _server_side_exit_code(error: BaseException) -> bool:
    return (
        isinstance(error, CommandError)
        and error.exit_code is not None
        and error.exit_code >= 500  # noqa: PLR2004
    )


ERROR_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule("circuit_open", _circuit_open, ErrorCategory.INTERNAL, False),
    ClassificationRule("timeout", _text(r"timeout"), ErrorCategory.TIMEOUT, True),
    ClassificationRule("timed_out", _text(r"timed out"), ErrorCategory.TIMEOUT, True),
    ClassificationRule("timed_out_flag", _command_timed_out, ErrorCategory.TIMEOUT, True),
    ClassificationRule("network", _text(r"network"), ErrorCategory.NETWORK, True),
    ClassificationRule("econnrefused", _text(r"ECONNREFUSED"), ErrorCategory.NETWORK, True),
    ClassificationRule("econnreset", _text(r"ECONNRESET"), ErrorCategory.NETWORK, True),
    ClassificationRule("enotfound", _text(r"ENOTFOUND"), ErrorCategory.NETWORK, True),
    ClassificationRule("socket_hang_up", _text(r"socket hang up"), ErrorCategory.NETWORK, True),
    ClassificationRule("enomem", _text(r"ENOMEM"), ErrorCategory.RESOURCE, True),
    ClassificationRule("emfile", _text(r"EMFILE"), ErrorCategory.RESOURCE, True),
    ClassificationRule(
        "too_many_open_files",
        _text(r"too many open files"),
        ErrorCategory.RESOURCE,
        True,
    ),
    ClassificationRule("out_of_memory", _text(r"out of memory"), ErrorCategory.RESOURCE, True),
    ClassificationRule(
        "temporarily_unavailable",
        _text(r"temporarily unavailable"),
        ErrorCategory.TRANSIENT,
        True,
    ),
    ClassificationRule("try_again", _text(r"try again"), ErrorCategory.TRANSIENT, True),
    ClassificationRule("rate_limit", _text(r"rate limit"), ErrorCategory.TRANSIENT, True),
    ClassificationRule("throttled", _text(r"throttl"), ErrorCategory.TRANSIENT, True),
    ClassificationRule("exit_429", _exit_code_is(429), ErrorCategory.TRANSIENT, True),
    ClassificationRule(
        "authentication",
        _text(r"authentication"),
        ErrorCategory.AUTHENTICATION,
        False,
    ),
    ClassificationRule("unauthorized", _text(r"unauthorized"), ErrorCategory.AUTHENTICATION, False),
    ClassificationRule("api_key", _text(r"api key"), ErrorCategory.AUTHENTICATION, False),
    ClassificationRule("exit_401", _exit_code_is(401), ErrorCategory.AUTHENTICATION, False),
    ClassificationRule("invalid", _text(r"invalid"), ErrorCategory.VALIDATION, False),
    ClassificationRule("validation", _text(r"validation"), ErrorCategory.VALIDATION, False),
    ClassificationRule("malformed", _text(r"malformed"), ErrorCategory.VALIDATION, False),
    ClassificationRule("exit_400", _exit_code_is(400), ErrorCategory.VALIDATION, False),
    ClassificationRule("internal_error", _text(r"internal error"), ErrorCategory.INTERNAL, True),
    ClassificationRule("exit_5xx", _server_side_exit_code, ErrorCategory.INTERNAL, True),
)


def classify_error(
    error: BaseException,
    *,
    rules: tuple[ClassificationRule, ...] = ERROR_RULES,
) -> ClassifiedError:
    """Classify an exception; the first matching rule wins."""

    text = _normalize_text(error)
    for rule in rules:
        if rule.matches(error, text):
            return ClassifiedError(
                original=error,
                category=rule.category,
                retryable=rule.retryable,
                retry_after_ms=suggest_retry_delay(rule.category) if rule.retryable else None,
                matched_rule=rule.name,
            )

    return ClassifiedError(
        original=error,
        category=ErrorCategory.UNKNOWN,
        retryable=False,
    )


def suggest_retry_delay(category: ErrorCategory) -> int:
    """Suggested wait in milliseconds before retrying an error of this category."""

    return _RETRY_DELAY_MS.get(category, 1_000)


def _normalize_text(error: BaseException) -> str:
    message = str(error)
    if isinstance(error, CommandError) and error.stderr:
        return f"{message}\n{error.stderr}"
    return message
