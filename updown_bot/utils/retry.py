"""
Bounded retry policy with multiplicative backoff.
"""

from dataclasses import dataclass
from typing import Iterator


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded attempts with a growing wait before each one.

    The wait before attempt n (0-based) is initial_interval * multiplier**n,
    capped at max_interval.
    """
    max_attempts: int = 30
    initial_interval: float = 0.5
    multiplier: float = 1.5
    max_interval: float = 3.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_interval < 0 or self.max_interval < 0:
            raise ValueError("intervals must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    def delays(self) -> Iterator[float]:
        """Yield the wait preceding each of the max_attempts attempts."""
        interval = self.initial_interval
        for _ in range(self.max_attempts):
            yield min(interval, self.max_interval)
            interval *= self.multiplier

    def total_wait(self) -> float:
        """Upper bound on time spent sleeping across all attempts."""
        return sum(self.delays())
