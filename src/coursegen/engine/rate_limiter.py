"""Per-user and global admission control for generation jobs."""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

MINUTE_SECONDS = 60.0
HOUR_SECONDS = 3_600.0
DAY_SECONDS = 86_400.0
GLOBAL_CAPACITY_RETRY_SECONDS = 60

DEFAULT_ROLE = "student"


@dataclass(slots=True, frozen=True)
class RoleLimits:
    """Per-user ceilings for one role."""

    requests_per_minute: int
    requests_per_hour: int
    requests_per_day: int
    concurrent_jobs: int
    burst_limit: int


ROLE_LIMITS: dict[str, RoleLimits] = {
    "student": RoleLimits(2, 10, 50, 1, 3),
    "teacher": RoleLimits(5, 30, 200, 3, 5),
    "admin": RoleLimits(10, 100, 1_000, 10, 10),
    "super_admin": RoleLimits(20, 500, 5_000, 20, 20),
}


@dataclass(slots=True, frozen=True)
class GlobalLimits:
    """System-wide ceilings."""

    max_concurrent_jobs: int = 100
    max_jobs_per_minute: int = 50


@dataclass(slots=True)
class AdmissionDecision:
    """Result of one admission check."""

    allowed: bool
    reason: str | None = None
    retry_after_seconds: int | None = None
    usage: dict[str, int] = field(default_factory=dict)


class RateLimitExceededError(RuntimeError):
    """Raised by ``RateLimiter.admitted`` when a job may not start."""

    def __init__(self, decision: AdmissionDecision) -> None:
        self.decision = decision
        super().__init__(decision.reason or "Rate limit exceeded")


@dataclass(slots=True)
class _Window:
    length_seconds: float
    count: int = 0
    started_at: float = 0.0

    def refresh(self, now: float) -> None:
        if now - self.started_at >= self.length_seconds:
            self.count = 0
            self.started_at = now

    def retry_after(self, now: float) -> int:
        return max(1, math.ceil(self.started_at + self.length_seconds - now))


@dataclass(slots=True)
class _UserUsage:
    minute: _Window
    hour: _Window
    day: _Window
    active_jobs: int = 0


class RateLimiter:
    """In-memory, process-local admission control.

    Every check-and-record runs under one lock, so two concurrent ``admit``
    calls can never both take the last slot of a window.
    """

    def __init__(
        self,
        global_limits: GlobalLimits | None = None,
        *,
        role_limits: dict[str, RoleLimits] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.global_limits = global_limits or GlobalLimits()
        self._role_limits = dict(role_limits or ROLE_LIMITS)
        self._clock = clock
        self._lock = threading.Lock()
        self._users: dict[str, _UserUsage] = {}
        self._global_active_jobs = 0
        self._global_minute = _Window(MINUTE_SECONDS, started_at=clock())

    def limits_for(self, role: str) -> RoleLimits:
        fallback = self._role_limits.get(DEFAULT_ROLE, ROLE_LIMITS[DEFAULT_ROLE])
        return self._role_limits.get(role, fallback)

    def admit(self, user_id: str, role: str) -> AdmissionDecision:
        """Check every ceiling and, when allowed, record the job start."""

        limits = self.limits_for(role)
        with self._lock:
            now = self._clock()
            usage = self._usage_for(user_id, now)
            for window in (usage.minute, usage.hour, usage.day, self._global_minute):
                window.refresh(now)

            decision = self._check(usage, limits, now)
            if decision.allowed:
                usage.minute.count += 1
                usage.hour.count += 1
                usage.day.count += 1
                usage.active_jobs += 1
                self._global_minute.count += 1
                self._global_active_jobs += 1
            decision.usage = self._usage_dict(usage)

        if decision.allowed:
            logger.debug("Admitted job start for user %s (role=%s)", user_id, role)
        else:
            logger.warning("Denied job start for user %s: %s", user_id, decision.reason)
        return decision

    def release(self, user_id: str) -> None:
        """Record a job finishing; counters never go below zero."""

        with self._lock:
            usage = self._users.get(user_id)
            if usage is None or usage.active_jobs == 0:
                return
            usage.active_jobs -= 1
            self._global_active_jobs = max(0, self._global_active_jobs - 1)

    @contextmanager
    def admitted(self, user_id: str, role: str) -> Iterator[AdmissionDecision]:
        """Hold an admission for the duration of the block; always released."""

        decision = self.admit(user_id, role)
        if not decision.allowed:
            raise RateLimitExceededError(decision)
        try:
            yield decision
        finally:
            self.release(user_id)

    def usage(self, user_id: str, role: str) -> dict[str, Any]:
        """Usage statistics with percentages of each ceiling."""

        limits = self.limits_for(role)
        with self._lock:
            now = self._clock()
            usage = self._usage_for(user_id, now)
            for window in (usage.minute, usage.hour, usage.day):
                window.refresh(now)
            current = self._usage_dict(usage)
        ceilings = {
            "minute": limits.requests_per_minute,
            "hour": limits.requests_per_hour,
            "day": limits.requests_per_day,
            "concurrent": limits.concurrent_jobs,
        }
        return {
            "user_id": user_id,
            "role": role,
            "limits": ceilings,
            "current": current,
            "percentages": {
                key: round(current[key] / ceiling * 100) if ceiling > 0 else 100
                for key, ceiling in ceilings.items()
            },
        }

    def global_usage(self) -> dict[str, int]:
        with self._lock:
            self._global_minute.refresh(self._clock())
            return {
                "active_jobs": self._global_active_jobs,
                "jobs_this_minute": self._global_minute.count,
            }

    def reset(self, user_id: str) -> None:
        """Clear a user's request windows; jobs still running keep their slots."""

        with self._lock:
            usage = self._users.pop(user_id, None)
            if usage is not None and usage.active_jobs:
                self._usage_for(user_id, self._clock()).active_jobs = usage.active_jobs

    def _check(self, usage: _UserUsage, limits: RoleLimits, now: float) -> AdmissionDecision:
        # Concurrency first: the caller should learn to wait for a job, not for a window.
        if usage.active_jobs >= limits.concurrent_jobs:
            return AdmissionDecision(
                allowed=False,
                reason=f"Maximum concurrent jobs ({limits.concurrent_jobs}) reached",
            )
        if usage.minute.count >= limits.requests_per_minute:
            return AdmissionDecision(
                allowed=False,
                reason=f"Rate limit exceeded: {limits.requests_per_minute} requests per minute",
                retry_after_seconds=usage.minute.retry_after(now),
            )
        if usage.hour.count >= limits.requests_per_hour:
            return AdmissionDecision(
                allowed=False,
                reason=f"Rate limit exceeded: {limits.requests_per_hour} requests per hour",
                retry_after_seconds=usage.hour.retry_after(now),
            )
        if usage.day.count >= limits.requests_per_day:
            return AdmissionDecision(
                allowed=False,
                reason=f"Daily limit exceeded: {limits.requests_per_day} requests per day",
                retry_after_seconds=usage.day.retry_after(now),
            )
        if self._global_active_jobs >= self.global_limits.max_concurrent_jobs:
            return AdmissionDecision(
                allowed=False,
                reason="System at maximum capacity. Please try again later.",
                retry_after_seconds=GLOBAL_CAPACITY_RETRY_SECONDS,
            )
        if self._global_minute.count >= self.global_limits.max_jobs_per_minute:
            return AdmissionDecision(
                allowed=False,
                reason="System experiencing high load. Please try again in a minute.",
                retry_after_seconds=self._global_minute.retry_after(now),
            )
        return AdmissionDecision(allowed=True)

    def _usage_for(self, user_id: str, now: float) -> _UserUsage:
        usage = self._users.get(user_id)
        if usage is None:
            usage = _UserUsage(
                minute=_Window(MINUTE_SECONDS, started_at=now),
                hour=_Window(HOUR_SECONDS, started_at=now),
                day=_Window(DAY_SECONDS, started_at=now),
            )
            self._users[user_id] = usage
        return usage

    @staticmethod
    def _usage_dict(usage: _UserUsage) -> dict[str, int]:
        return {
            "minute": usage.minute.count,
            "hour": usage.hour.count,
            "day": usage.day.count,
            "concurrent": usage.active_jobs,
        }
