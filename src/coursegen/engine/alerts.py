"""Operational alerts: logged, and appended to the job action log."""

from __future__ import annotations

import logging
from enum import Enum

from coursegen.engine.store import JobStore, StoreUnavailableError

logger = logging.getLogger(__name__)


class AlertKind(str, Enum):
    STALL = "stall"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    CRITICAL_ERROR = "critical_error"
    RECOVERY_FAILED = "recovery_failed"


_CRITICAL_KINDS = frozenset({AlertKind.CRITICAL_ERROR, AlertKind.RECOVERY_FAILED})


def log_alert(
    store: JobStore,
    kind: AlertKind,
    job_id: str,
    message: str,
    **details: object,
) -> None:
    """Emit an alert and try to persist it next to the job."""

    level = logging.CRITICAL if kind in _CRITICAL_KINDS else logging.WARNING
    logger.log(level, "ALERT [%s] job=%s: %s", kind.value, job_id, message)
    try:
        store.record_job_action(
            job_id,
            f"alert_{kind.value}",
            {"message": message, **details},
        )
    except StoreUnavailableError as error:
        # The alert itself is already in the log stream.
        logger.error("Could not persist %s alert for job %s: %s", kind.value, job_id, error)
