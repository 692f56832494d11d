"""Retry decisions and exponential backoff for failed generation tasks."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import NamedTuple

from coursegen.engine.circuit_breaker import CircuitState
from coursegen.engine.failure_classifier import FailureClassification
from coursegen.engine.models import TaskView


CIRCUIT_OPEN_REASON = "circuit_open"


class RetryOutcome(NamedTuple):
    should_retry: bool
    delay_seconds: float
    reason: str


@dataclass(slots=True)
class RetryPolicy:
    """Capped exponential backoff gated by attempts, error class and breaker state."""

    base_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")

    def calculate_delay(self, retry_count: int) -> float:
        """``min(base * multiplier ** retry_count, max)``; non-decreasing in ``retry_count``."""

        exponent = max(0, retry_count)
        # Grows past the cap quickly; stop exponentiating before floats overflow.
        if self.multiplier > 1 and exponent > 64:  # noqa: PLR2004
            return self.max_delay_seconds
        return min(self.base_delay_seconds * self.multiplier**exponent, self.max_delay_seconds)

    def should_retry(
        self,
        task: TaskView,
        classification: FailureClassification,
        breaker_state: CircuitState = CircuitState.CLOSED,
    ) -> bool:
        return self.decide(task, classification, breaker_state).should_retry

    def decide(
        self,
        task: TaskView,
        classification: FailureClassification,
        breaker_state: CircuitState = CircuitState.CLOSED,
    ) -> RetryOutcome:
        if task.current_retry_count >= task.max_retry_count:
            return RetryOutcome(False, 0.0, "retries_exhausted")
        if not classification.retryable:
            return RetryOutcome(False, 0.0, f"non_retryable_{classification.category.value}")
        if breaker_state == CircuitState.OPEN:
            return RetryOutcome(False, 0.0, CIRCUIT_OPEN_REASON)
        return RetryOutcome(True, self.calculate_delay(task.current_retry_count), "retry_scheduled")

    def next_run_after(self, now: datetime, retry_count: int) -> datetime:
        return now + timedelta(seconds=self.calculate_delay(retry_count))
