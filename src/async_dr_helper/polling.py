from __future__ import annotations

from dataclasses import dataclass
import threading
import time
from typing import Any, Callable, Generic, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PollResult(Generic[T]):
    done: bool
    value: T | None = None
    detail: str = ""


class PollTimeoutError(TimeoutError):
    """Raised when a polled condition never converges."""

    def __init__(self, description: str, *, attempts: int, detail: str) -> None:
        message = f"Timed out waiting for {description} after {attempts} attempt(s)"
        if detail:
            message = f"{message} (last observed: {detail})"
        super().__init__(message)
        self.description = description
        self.attempts = attempts
        self.detail = detail


class WorkflowCancelledError(RuntimeError):
    """Raised when a workflow is cancelled while waiting."""


def poll_until(
    check: Callable[[], PollResult[T]],
    *,
    description: str,
    interval_seconds: float,
    max_attempts: int | None = None,
    timeout_seconds: float | None = None,
    cancel_event: threading.Event | None = None,
    sleep: Callable[[float], Any] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T | None:
    if max_attempts is None and timeout_seconds is None:
        raise ValueError("poll_until requires max_attempts or timeout_seconds")
    if max_attempts is not None and max_attempts <= 0:
        raise ValueError("max_attempts must be positive")
    if interval_seconds < 0:
        raise ValueError("interval_seconds must not be negative")

    deadline = clock() + timeout_seconds if timeout_seconds is not None else None
    attempts = 0
    detail = ""
    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise WorkflowCancelledError(f"Cancelled while waiting for {description}")

        attempts += 1
        result = check()
        if result.done:
            return result.value
        detail = result.detail or detail
        logger.debug("condition not met yet", description=description, attempt=attempts, detail=detail)

        if max_attempts is not None and attempts >= max_attempts:
            break
        if deadline is not None and clock() + interval_seconds > deadline:
            break

        if cancel_event is not None:
            if cancel_event.wait(interval_seconds):
                raise WorkflowCancelledError(f"Cancelled while waiting for {description}")
        else:
            sleep(interval_seconds)

    raise PollTimeoutError(description, attempts=attempts, detail=detail)
