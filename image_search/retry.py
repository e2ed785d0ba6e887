from __future__ import annotations

"""
Bounded retry policy used by the model ports.

A policy only answers two questions: how many attempts are allowed, and how
long to wait after a failed attempt ``n`` (1-based). The sleep function is
injectable so tests can run without real timers.

Deadlines are absolute ``time.monotonic()`` timestamps. A port that is handed
one must not start a call or a wait that would end past it.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from .errors import ProviderError, ProviderErrorCode


def deadline_after(ms: float) -> float:
    return time.monotonic() + ms / 1000.0


def remaining_ms(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return (deadline - time.monotonic()) * 1000.0


def call_timeout_ms(timeout_ms: Optional[float], deadline: Optional[float], operation: str) -> Optional[int]:
    """
    Timeout for the next model call: the configured one, capped by what is
    left before ``deadline``. Raises PROVIDER_TIMEOUT once the deadline passed.
    """
    left = remaining_ms(deadline)
    if left is None:
        return None if timeout_ms is None else int(timeout_ms)
    if left <= 0:
        raise ProviderError(ProviderErrorCode.PROVIDER_TIMEOUT, f"{operation} deadline exceeded")
    if timeout_ms is not None:
        left = min(left, float(timeout_ms))
    return max(1, int(left))


def exponential_backoff(base_s: float = 1.0, cap_s: float = 5.0) -> Callable[[int], float]:
    """``min(2**n * base, cap)`` seconds after attempt ``n``."""

    def _delay(attempt: int) -> float:
        return min((2 ** attempt) * base_s, cap_s)

    return _delay


def fixed_delay(seconds: float) -> Callable[[int], float]:
    def _delay(attempt: int) -> float:
        return seconds

    return _delay


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    backoff: Callable[[int], float] = field(default_factory=exponential_backoff)
    sleep: Callable[[float], None] = time.sleep

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def attempts(self) -> range:
        return range(1, self.max_attempts + 1)

    def is_last(self, attempt: int) -> bool:
        return attempt >= self.max_attempts

    def delay_for(self, attempt: int) -> float:
        return max(0.0, float(self.backoff(attempt)))

    def wait(self, attempt: int, deadline: Optional[float] = None) -> float:
        """Sleep after failed attempt ``attempt``; returns the delay used."""
        delay = self.delay_for(attempt)
        left = remaining_ms(deadline)
        if left is not None and delay * 1000.0 >= left:
            raise ProviderError(
                ProviderErrorCode.PROVIDER_TIMEOUT,
                f"No budget left to retry after attempt {attempt} ({delay}s backoff, {max(0, int(left))}ms left)",
            )
        if delay > 0:
            self.sleep(delay)
        return delay

