"""Runtime configuration for the scheduler, resilience and checkpoint layers."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

RETRY_POLICY_NAMES = ("none", "conservative", "aggressive", "network_only", "transient_only")


@dataclass(slots=True)
class SchedulerSettings:
    """Job scheduler settings."""

    max_concurrent: int = 3
    default_timeout_ms: int = 300_000
    command_prefix: tuple[str, ...] = ()


@dataclass(slots=True)
class RetrySettings:
    policy: str = "none"


@dataclass(slots=True)
class CircuitBreakerSettings:
    """Circuit breaker around command dispatch."""

    enabled: bool = False
    failure_threshold: int = 5
    success_threshold: int = 2
    reset_timeout_ms: int = 30_000


@dataclass(slots=True)
class ProgressSettings:
    max_logs: int = 100


@dataclass(slots=True)
class CheckpointSettings:
    """Auto-checkpoint cadence and retention."""

    interval_seconds: float = 60.0
    max_per_ticket: int = 10
    retention_days: float = 7


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".flowdeck.db")
    sqlite_busy_timeout_ms: int = 5_000
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    breaker: CircuitBreakerSettings = field(default_factory=CircuitBreakerSettings)
    progress: ProgressSettings = field(default_factory=ProgressSettings)
    checkpoint: CheckpointSettings = field(default_factory=CheckpointSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("FLOWDECK_DB_PATH", ".flowdeck.db")),
            sqlite_busy_timeout_ms=_env_int("FLOWDECK_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            scheduler=SchedulerSettings(
                max_concurrent=_env_int("FLOWDECK_MAX_CONCURRENT", 3),
                default_timeout_ms=_env_int("FLOWDECK_DEFAULT_TIMEOUT_MS", 300_000),
                command_prefix=tuple(shlex.split(os.getenv("FLOWDECK_COMMAND_PREFIX", ""))),
            ),
            retry=RetrySettings(
                policy=os.getenv("FLOWDECK_RETRY_POLICY", "none").strip().lower(),
            ),
            breaker=CircuitBreakerSettings(
                enabled=_env_bool("FLOWDECK_BREAKER_ENABLED", default=False),
                failure_threshold=_env_int("FLOWDECK_BREAKER_FAILURE_THRESHOLD", 5),
                success_threshold=_env_int("FLOWDECK_BREAKER_SUCCESS_THRESHOLD", 2),
                reset_timeout_ms=_env_int("FLOWDECK_BREAKER_RESET_TIMEOUT_MS", 30_000),
            ),
            progress=ProgressSettings(
                max_logs=_env_int("FLOWDECK_PROGRESS_MAX_LOGS", 100),
            ),
            checkpoint=CheckpointSettings(
                interval_seconds=_env_float("FLOWDECK_CHECKPOINT_INTERVAL_SECONDS", 60.0),
                max_per_ticket=_env_int("FLOWDECK_CHECKPOINT_MAX_PER_TICKET", 10),
                retention_days=_env_float("FLOWDECK_CHECKPOINT_RETENTION_DAYS", 7.0),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.sqlite_busy_timeout_ms < 0:
            raise ValueError("FLOWDECK_SQLITE_BUSY_TIMEOUT_MS must be >= 0.")
        if self.scheduler.max_concurrent <= 0:
            raise ValueError("FLOWDECK_MAX_CONCURRENT must be > 0.")
        if self.scheduler.default_timeout_ms <= 0:
            raise ValueError("FLOWDECK_DEFAULT_TIMEOUT_MS must be > 0.")
        if self.retry.policy not in RETRY_POLICY_NAMES:
            raise ValueError(
                f"FLOWDECK_RETRY_POLICY must be one of {', '.join(RETRY_POLICY_NAMES)}; "
                f"got {self.retry.policy!r}.",
            )
        if self.breaker.failure_threshold <= 0:
            raise ValueError("FLOWDECK_BREAKER_FAILURE_THRESHOLD must be > 0.")
        if self.breaker.success_threshold <= 0:
            raise ValueError("FLOWDECK_BREAKER_SUCCESS_THRESHOLD must be > 0.")
        if self.breaker.reset_timeout_ms < 0:
            raise ValueError("FLOWDECK_BREAKER_RESET_TIMEOUT_MS must be >= 0.")
        if self.progress.max_logs <= 0:
            raise ValueError("FLOWDECK_PROGRESS_MAX_LOGS must be > 0.")
        if self.checkpoint.interval_seconds <= 0:
            raise ValueError("FLOWDECK_CHECKPOINT_INTERVAL_SECONDS must be > 0.")
        if self.checkpoint.max_per_ticket <= 0:
            raise ValueError("FLOWDECK_CHECKPOINT_MAX_PER_TICKET must be > 0.")
        if self.checkpoint.retention_days <= 0:
            raise ValueError("FLOWDECK_CHECKPOINT_RETENTION_DAYS must be > 0.")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
