"""Per-dependency circuit breakers guarding the content service and job store."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

logger = logging.getLogger(__name__)

CONTENT_SERVICE = "content-service"
JOB_STORE = "job-store"

T = TypeVar("T")


class CircuitState(str, Enum):
    """Classic breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitOpenError(RuntimeError):
    """Raised instead of calling a dependency whose breaker is open."""

    def __init__(self, name: str, retry_after_seconds: float) -> None:
        self.name = name
        self.retry_after_seconds = max(0.0, retry_after_seconds)
        super().__init__(
            f"Circuit breaker {name} is open; retry in {self.retry_after_seconds:.1f}s",
        )


@dataclass(slots=True)
class CircuitBreakerConfig:
    """Breaker thresholds."""

    failure_threshold: int = 5
    reset_timeout_seconds: float = 60.0
    half_open_max_calls: int = 3

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.reset_timeout_seconds <= 0:
            raise ValueError("reset_timeout_seconds must be > 0")
        if self.half_open_max_calls < 1:
            raise ValueError("half_open_max_calls must be >= 1")


@dataclass(slots=True)
class CircuitBreakerSnapshot:
    """Read-only view of one breaker."""

    name: str
    state: CircuitState
    failure_count: int
    last_failure_time: float | None
    next_attempt_time: float | None


class CircuitBreaker:
    """Thread-safe three-state breaker for one logical dependency.

    Times come from ``clock`` (monotonic seconds). Only failures the caller
    reports through ``record_failure`` count; ``record_neutral`` closes out a
    call that failed for reasons unrelated to the dependency's health.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: float | None = None
        self._next_attempt_time: float | None = None
        self._half_open_in_flight = 0
        self._half_open_successes = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def snapshot(self) -> CircuitBreakerSnapshot:
        with self._lock:
            return CircuitBreakerSnapshot(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                last_failure_time=self._last_failure_time,
                next_attempt_time=self._next_attempt_time,
            )

    def seconds_until_retry(self) -> float:
        """Remaining open time; 0 when calls may proceed."""

        with self._lock:
            if self._state != CircuitState.OPEN or self._next_attempt_time is None:
                return 0.0
            return max(0.0, self._next_attempt_time - self._clock())

    def before_call(self) -> None:
        """Admit one call or raise ``CircuitOpenError``."""

        with self._lock:
            now = self._clock()
            if self._state == CircuitState.OPEN:
                assert self._next_attempt_time is not None
                if now < self._next_attempt_time:
                    raise CircuitOpenError(self.name, self._next_attempt_time - now)
                self._transition(CircuitState.HALF_OPEN)
                self._half_open_in_flight = 0
                self._half_open_successes = 0
            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_in_flight >= self.config.half_open_max_calls:
                    raise CircuitOpenError(self.name, 0.0)
                self._half_open_in_flight += 1

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
                self._half_open_successes += 1
                if self._half_open_successes >= self.config.half_open_max_calls:
                    self._transition(CircuitState.CLOSED)
                    self._failure_count = 0
                    self._next_attempt_time = None
                return
            self._failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            self._last_failure_time = now
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
                self._trip(now)
                return
            self._failure_count += 1
            if self._state == CircuitState.CLOSED and (
                self._failure_count >= self.config.failure_threshold
            ):
                self._trip(now)

    def record_neutral(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)

    def call(
        self,
        operation: Callable[[], T],
        *,
        is_dependency_failure: Callable[[BaseException], bool] = lambda _: True,
    ) -> T:
        """Run ``operation`` through the breaker, recording its outcome."""

        self.before_call()
        try:
            result = operation()
        except BaseException as error:
            if is_dependency_failure(error):
                self.record_failure()
            else:
                self.record_neutral()
            raise
        self.record_success()
        return result

    def _trip(self, now: float) -> None:
        self._transition(CircuitState.OPEN)
        self._next_attempt_time = now + self.config.reset_timeout_seconds
        self._half_open_in_flight = 0
        self._half_open_successes = 0

    def _transition(self, new_state: CircuitState) -> None:
        if new_state == self._state:
            return
        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            "Circuit breaker %s: %s -> %s (failures=%d)",
            self.name,
            self._state.value,
            new_state.value,
            self._failure_count,
        )
        self._state = new_state


class CircuitBreakerRegistry:
    """Owns one breaker per dependency name; injected, never global."""

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        *,
        overrides: dict[str, CircuitBreakerConfig] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default_config = default_config or CircuitBreakerConfig()
        self._overrides = dict(overrides or {})
        self._clock = clock
        self._lock = threading.Lock()
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    self._overrides.get(name, self._default_config),
                    clock=self._clock,
                )
                self._breakers[name] = breaker
            return breaker

    def snapshots(self) -> list[CircuitBreakerSnapshot]:
        with self._lock:
            breakers = sorted(self._breakers.values(), key=lambda item: item.name)
        return [breaker.snapshot() for breaker in breakers]
