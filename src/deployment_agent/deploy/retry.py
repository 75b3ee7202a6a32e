"""Bounded retry execution with fixed wait schedules."""

from __future__ import annotations

import errno
import threading
from typing import Callable, Optional, TypeVar

import structlog
from prometheus_client import Counter

from deployment_agent.core.exceptions import DeploymentCancelledError, ServiceControlError
from deployment_agent.deploy.models import RetrySchedule

logger = structlog.get_logger()

T = TypeVar("T")

RETRY_COUNT = Counter(
    "deployment_agent_retries_total",
    "Retried operations",
    ["operation"],
)

# Errnos raised while a slowly-exiting process still holds files open
IO_CONTENTION_ERRNOS = {
    errno.EBUSY,
    errno.EACCES,
    errno.EPERM,
    errno.ETXTBSY,
    errno.EAGAIN,
}


def retry_on_stop(exc: BaseException) -> bool:
    """Any controller failure: the service may still be shutting down."""
    return isinstance(exc, ServiceControlError)


def retry_on_start(exc: BaseException) -> bool:
    """Only timeout-class failures; configuration errors do not self-resolve."""
    return isinstance(exc, ServiceControlError) and exc.kind == "timeout" and exc.retryable


def retry_on_io(exc: BaseException) -> bool:
    """Locked files and permission denials during a move."""
    if isinstance(exc, FileNotFoundError):
        return False
    if isinstance(exc, PermissionError):
        return True
    return isinstance(exc, OSError) and exc.errno in IO_CONTENTION_ERRNOS


class RetryPolicy:
    """Runs an operation, waiting through a schedule between retryable failures.

    The wait is done on a cancellation event so a caller can abort a
    deployment that is sleeping between attempts.
    """

    def __init__(self, wait: Optional[Callable[[threading.Event, float], bool]] = None):
        self._wait = wait or (lambda event, delay: event.wait(delay))

    def execute(
        self,
        operation: Callable[[], T],
        is_retryable: Callable[[BaseException], bool],
        schedule: RetrySchedule,
        cancel_event: Optional[threading.Event] = None,
    ) -> T:
        event = cancel_event or threading.Event()
        remaining = list(schedule.delays)
        attempt = 0

        while True:
            if event.is_set():
                raise DeploymentCancelledError(f"{schedule.name} cancelled", code="cancelled")
            attempt += 1
            try:
                return operation()
            except Exception as exc:
                if not remaining or not is_retryable(exc):
                    if attempt > 1:
                        logger.error(
                            "Operation failed, giving up",
                            operation=schedule.name,
                            attempts=attempt,
                            max_attempts=schedule.max_attempts,
                            error=str(exc),
                        )
                    raise

                delay = remaining.pop(0)
                RETRY_COUNT.labels(operation=schedule.name).inc()
                logger.warning(
                    "Operation failed, retrying",
                    operation=schedule.name,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=str(exc),
                )
                if self._wait(event, delay):
                    raise DeploymentCancelledError(
                        f"{schedule.name} cancelled after {attempt} attempt(s)", code="cancelled"
                    ) from exc
