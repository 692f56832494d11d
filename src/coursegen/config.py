"""Runtime configuration for the generation engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

GENERATOR_KINDS = ("echo", "http")


@dataclass(slots=True)
class SchedulerSettings:
    """Batch selection, concurrency and deadline settings."""

    batch_size: int = 15
    max_concurrency: int = 5
    poll_interval_seconds: float = 2.0
    batch_pause_seconds: float = 0.5
    task_deadline_seconds: float = 300.0
    max_consecutive_errors: int = 10
    max_idle_polls: int = 10
    write_attempts: int = 3
    write_backoff_seconds: float = 0.5


@dataclass(slots=True)
class RetrySettings:
    """Backoff for failed tasks."""

    base_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float = 30.0


@dataclass(slots=True)
class BreakerSettings:
    """Circuit breaker thresholds per dependency."""

    failure_threshold: int = 5
    reset_timeout_seconds: float = 60.0
    half_open_max_calls: int = 3
    store_failure_threshold: int = 3
    store_half_open_max_calls: int = 2


@dataclass(slots=True)
class MonitorSettings:
    """Job health thresholds."""

    stall_after_seconds: int = 300
    stuck_after_seconds: int = 600
    abandon_after_seconds: int = 1_800
    task_timeout_seconds: int = 300
    max_recovery_attempts: int = 3


@dataclass(slots=True)
class RateLimitSettings:
    """System-wide admission ceilings; per-role ceilings live in the rate limiter."""

    max_concurrent_jobs: int = 100
    max_jobs_per_minute: int = 50


@dataclass(slots=True)
class ContentSettings:
    """Content generator selection and cache settings."""

    generator: str = "echo"
    base_url: str = ""
    api_key: str | None = None
    request_timeout_seconds: float = 120.0
    max_transport_retries: int = 1
    cache_enabled: bool = True
    cache_ttl_days: int = 7


@dataclass(slots=True)
class Settings:
    """Application settings grouped by engine component."""

    db_path: Path = Path(".coursegen.db")
    sqlite_busy_timeout_ms: int = 5_000
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    breaker: BreakerSettings = field(default_factory=BreakerSettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    content: ContentSettings = field(default_factory=ContentSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("COURSEGEN_DB_PATH", ".coursegen.db")),
            sqlite_busy_timeout_ms=_env_int("COURSEGEN_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            scheduler=SchedulerSettings(
                batch_size=_env_int("COURSEGEN_SCHEDULER_BATCH_SIZE", 15),
                max_concurrency=_env_int("COURSEGEN_SCHEDULER_MAX_CONCURRENCY", 5),
                poll_interval_seconds=_env_float("COURSEGEN_SCHEDULER_POLL_INTERVAL_SECONDS", 2.0),
                batch_pause_seconds=_env_float("COURSEGEN_SCHEDULER_BATCH_PAUSE_SECONDS", 0.5),
                task_deadline_seconds=_env_float(
                    "COURSEGEN_SCHEDULER_TASK_DEADLINE_SECONDS",
                    300.0,
                ),
                max_consecutive_errors=_env_int("COURSEGEN_SCHEDULER_MAX_CONSECUTIVE_ERRORS", 10),
                max_idle_polls=_env_int("COURSEGEN_SCHEDULER_MAX_IDLE_POLLS", 10),
                write_attempts=_env_int("COURSEGEN_SCHEDULER_WRITE_ATTEMPTS", 3),
                write_backoff_seconds=_env_float("COURSEGEN_SCHEDULER_WRITE_BACKOFF_SECONDS", 0.5),
            ),
            retry=RetrySettings(
                base_delay_seconds=_env_float("COURSEGEN_RETRY_BASE_DELAY_SECONDS", 1.0),
                multiplier=_env_float("COURSEGEN_RETRY_MULTIPLIER", 2.0),
                max_delay_seconds=_env_float("COURSEGEN_RETRY_MAX_DELAY_SECONDS", 30.0),
            ),
            breaker=BreakerSettings(
                failure_threshold=_env_int("COURSEGEN_BREAKER_FAILURE_THRESHOLD", 5),
                reset_timeout_seconds=_env_float("COURSEGEN_BREAKER_RESET_TIMEOUT_SECONDS", 60.0),
                half_open_max_calls=_env_int("COURSEGEN_BREAKER_HALF_OPEN_MAX_CALLS", 3),
                store_failure_threshold=_env_int("COURSEGEN_BREAKER_STORE_FAILURE_THRESHOLD", 3),
                store_half_open_max_calls=_env_int(
                    "COURSEGEN_BREAKER_STORE_HALF_OPEN_MAX_CALLS",
                    2,
                ),
            ),
            monitor=MonitorSettings(
                stall_after_seconds=_env_int("COURSEGEN_MONITOR_STALL_AFTER_SECONDS", 300),
                stuck_after_seconds=_env_int("COURSEGEN_MONITOR_STUCK_AFTER_SECONDS", 600),
                abandon_after_seconds=_env_int("COURSEGEN_MONITOR_ABANDON_AFTER_SECONDS", 1_800),
                task_timeout_seconds=_env_int("COURSEGEN_MONITOR_TASK_TIMEOUT_SECONDS", 300),
                max_recovery_attempts=_env_int("COURSEGEN_MONITOR_MAX_RECOVERY_ATTEMPTS", 3),
            ),
            rate_limit=RateLimitSettings(
                max_concurrent_jobs=_env_int("COURSEGEN_RATE_LIMIT_MAX_CONCURRENT_JOBS", 100),
                max_jobs_per_minute=_env_int("COURSEGEN_RATE_LIMIT_MAX_JOBS_PER_MINUTE", 50),
            ),
            content=ContentSettings(
                generator=os.getenv("COURSEGEN_CONTENT_GENERATOR", "echo").strip().lower(),
                base_url=os.getenv("COURSEGEN_CONTENT_BASE_URL", "").strip(),
                api_key=os.getenv("COURSEGEN_CONTENT_API_KEY") or None,
                request_timeout_seconds=_env_float(
                    "COURSEGEN_CONTENT_REQUEST_TIMEOUT_SECONDS",
                    120.0,
                ),
                max_transport_retries=_env_int("COURSEGEN_CONTENT_MAX_TRANSPORT_RETRIES", 1),
                cache_enabled=_env_bool("COURSEGEN_CONTENT_CACHE_ENABLED", default=True),
                cache_ttl_days=_env_int("COURSEGEN_CONTENT_CACHE_TTL_DAYS", 7),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range or inconsistent values."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("COURSEGEN_SQLITE_BUSY_TIMEOUT_MS must be > 0")

        scheduler = self.scheduler
        if not 1 <= scheduler.max_concurrency <= 15:  # noqa: PLR2004
            raise ValueError("COURSEGEN_SCHEDULER_MAX_CONCURRENCY must be between 1 and 15")
        if scheduler.batch_size < 1:
            raise ValueError("COURSEGEN_SCHEDULER_BATCH_SIZE must be > 0")
        if scheduler.task_deadline_seconds <= 0:
            raise ValueError("COURSEGEN_SCHEDULER_TASK_DEADLINE_SECONDS must be > 0")
        if scheduler.poll_interval_seconds < 0 or scheduler.batch_pause_seconds < 0:
            raise ValueError("Scheduler sleep intervals must be >= 0")
        if scheduler.max_consecutive_errors < 1 or scheduler.max_idle_polls < 1:
            raise ValueError("Scheduler failure thresholds must be > 0")
        if scheduler.write_attempts < 1:
            raise ValueError("COURSEGEN_SCHEDULER_WRITE_ATTEMPTS must be > 0")

        if self.retry.multiplier < 1:
            raise ValueError("COURSEGEN_RETRY_MULTIPLIER must be >= 1")
        if not 0 <= self.retry.base_delay_seconds <= self.retry.max_delay_seconds:
            raise ValueError(
                "COURSEGEN_RETRY_BASE_DELAY_SECONDS must be between 0 and "
                "COURSEGEN_RETRY_MAX_DELAY_SECONDS",
            )

        monitor = self.monitor
        if not 0 < monitor.stall_after_seconds < monitor.stuck_after_seconds < (
            monitor.abandon_after_seconds
        ):
            raise ValueError("Monitor thresholds must satisfy 0 < stall < stuck < abandon")
        if monitor.task_timeout_seconds <= 0:
            raise ValueError("COURSEGEN_MONITOR_TASK_TIMEOUT_SECONDS must be > 0")
        if monitor.max_recovery_attempts < 0:
            raise ValueError("COURSEGEN_MONITOR_MAX_RECOVERY_ATTEMPTS must be >= 0")

        if self.content.generator not in GENERATOR_KINDS:
            raise ValueError(
                f"Invalid COURSEGEN_CONTENT_GENERATOR: {self.content.generator!r}. "
                f"Expected one of: {', '.join(GENERATOR_KINDS)}",
            )
        if self.content.generator == "http":
            parsed = urlparse(self.content.base_url)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ValueError(
                    "COURSEGEN_CONTENT_BASE_URL must be an absolute http(s) URL "
                    "when the http generator is selected",
                )


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
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error
