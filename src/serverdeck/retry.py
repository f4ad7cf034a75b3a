"""Backoff schedule for network calls that may fail transiently."""

from __future__ import annotations

import logging as py_logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

T = TypeVar("T")

logger = py_logging.getLogger(__name__)


class RecoverableError(Exception):
    """Raised by an attempt that is worth repeating after a pause."""


class FatalError(Exception):
    """Raised by an attempt that no amount of waiting will fix."""


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_backoff_seconds: float = 2.0
    multiplier: float = 2.0
    max_backoff_seconds: float = 30.0

    def delays(self) -> list[float]:
        """Sleep durations between consecutive attempts."""
        delays: list[float] = []
        backoff = self.initial_backoff_seconds
        for _ in range(max(self.max_attempts - 1, 0)):
            delays.append(min(backoff, self.max_backoff_seconds))
            backoff *= self.multiplier
        return delays


def run_with_retry(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Callable[[int, Exception], None] | None = None,
    label: str = "operation",
) -> T:
    """Call ``operation`` until it returns, raises a non-recoverable error or attempts run out.

    ``sleep`` receives each backoff delay; callers that support cancellation
    pass a wait that returns early and let the next attempt raise.
    """
    if policy.max_attempts < 1:
        raise ValueError("RetryPolicy.max_attempts must be at least 1")
    pauses = policy.delays()
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return operation()
        except FatalError:
            raise
        except RecoverableError as exc:
            if attempt == policy.max_attempts:
                logger.error("%s failed after %s attempt(s) error=%s", label, attempt, exc)
                raise
            delay = pauses[attempt - 1]
            logger.warning("%s retry attempt=%s/%s delay=%.1fs error=%s", label, attempt, policy.max_attempts, delay, exc)
            if on_retry is not None:
                on_retry(attempt, exc)
            sleep(delay)
    raise AssertionError("unreachable")
