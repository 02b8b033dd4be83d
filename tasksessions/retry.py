"""Wholesale retry of operations that failed with a recoverable error."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from .errors import TaskSessionsError
from .models import StoreSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 0.1
    multiplier: float = 2.0
    max_total_seconds: float = 5.0

    @classmethod
    def from_settings(cls, settings: StoreSettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay,
            multiplier=settings.retry_multiplier,
            max_total_seconds=settings.retry_max_total_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return self.initial_delay * (self.multiplier ** (attempt - 1))


def run_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``operation`` until it succeeds or a limit is hit.

    Only errors flagged ``recoverable`` are retried; anything else, and the
    last recoverable error once attempts or wall time run out, propagates.
    """
    policy = policy or RetryPolicy()
    started = time.monotonic()
    attempt = 1
    while True:
        try:
            return operation()
        except TaskSessionsError as exc:
            if not exc.recoverable or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            if time.monotonic() - started + delay > policy.max_total_seconds:
                raise
            logger.warning(
                "Attempt %d/%d failed with %s, retrying in %.2fs",
                attempt, policy.max_attempts, exc.code, delay,
            )
            sleep(delay)
            attempt += 1
