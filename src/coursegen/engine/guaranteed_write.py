"""Ordered-fallback write combinator for status writes that must not be lost."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class GuaranteedWriteError(RuntimeError):
    """Every strategy failed in every round."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException | None) -> None:
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"All write strategies failed for {operation} after {attempts} attempts: {last_error}",
        )


@dataclass(slots=True)
class WriteStrategy:
    """One way of persisting a write.

    ``apply`` returns True when the write landed and False when the row has
    already moved on (a lost compare-and-set). Raising means the write path
    itself failed and the next strategy should be tried.
    """

    name: str
    apply: Callable[[], bool]


@dataclass(slots=True)
class WriteOutcome:
    applied: bool
    strategy: str
    attempts: int


def guaranteed_write(
    operation: str,
    strategies: Sequence[WriteStrategy],
    *,
    rounds: int = 3,
    backoff_seconds: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
    on_failure: Callable[[BaseException], None] | None = None,
) -> WriteOutcome:
    """Try each strategy in order, repeating the chain up to ``rounds`` times.

    A strategy that returns ``False`` found the row already moved on (a lost race
    or a settled task); the write ends there without falling back.
    """

    if not strategies:
        raise ValueError("guaranteed_write requires at least one strategy")
    if rounds < 1:
        raise ValueError("rounds must be >= 1")

    attempts = 0
    last_error: BaseException | None = None
    for round_index in range(rounds):
        for strategy in strategies:
            attempts += 1
            try:
                applied = strategy.apply()
            except Exception as error:  # noqa: BLE001
                last_error = error
                if on_failure is not None:
                    on_failure(error)
                logger.warning(
                    "Write strategy %s failed for %s (attempt %d): %s",
                    strategy.name,
                    operation,
                    attempts,
                    error,
                )
                continue
            if attempts > 1:
                logger.info(
                    "Write for %s landed via %s after %d attempts",
                    operation,
                    strategy.name,
                    attempts,
                )
            return WriteOutcome(applied=applied, strategy=strategy.name, attempts=attempts)
        if round_index + 1 < rounds:
            sleep(backoff_seconds * (round_index + 1))

    logger.critical(
        "CRITICAL: write for %s exhausted %d attempts across %d strategies",
        operation,
        attempts,
        len(strategies),
    )
    raise GuaranteedWriteError(operation, attempts, last_error)
