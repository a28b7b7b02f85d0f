"""Shared exponential backoff used by every network backend.

Each adapter classifies provider errors with its own predicate and runs its
data-plane calls through RetryPolicy.call(). Provider SDK retries are turned
off where the SDK allows it so that attempts are not stacked.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """Bounded exponential backoff.

    Attributes:
        max_attempts: Total attempts including the first one.
        initial_delay: Delay before the second attempt, in seconds.
        max_delay: Upper bound for any single delay, in seconds.
        multiplier: Growth factor between consecutive delays.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(default=5, ge=1)
    initial_delay: float = Field(default=0.1, ge=0)
    max_delay: float = Field(default=5.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)

    def backoff(self, attempt: int) -> float:
        """Return the delay after a failed zero-based attempt."""
        return min(self.initial_delay * (self.multiplier**attempt), self.max_delay)

    def call(
        self,
        fn: Callable[[], T],
        *,
        retryable: Callable[[BaseException], bool],
        operation: str = "",
    ) -> T:
        """Run fn until it succeeds or the attempt budget is spent.

        Args:
            fn: Zero-argument callable performing one attempt. It must be
                safe to call again (rewind streams inside it).
            retryable: Predicate deciding whether an error is transient.
            operation: Label used in log messages.

        Returns:
            Whatever fn returns.

        Raises:
            Exception: The first non-retryable error, or the last error once
                all attempts have failed.
        """
        for attempt in range(self.max_attempts):
            try:
                return fn()
            except Exception as exc:
                is_last = attempt + 1 >= self.max_attempts
                if is_last or not retryable(exc):
                    raise
                delay = self.backoff(attempt)
                logger.warning(
                    "%s failed with %s (attempt %d/%d), retrying in %.2fs",
                    operation or "storage call",
                    type(exc).__name__,
                    attempt + 1,
                    self.max_attempts,
                    delay,
                )
                time.sleep(delay)

        raise AssertionError("unreachable")  # pragma: no cover
