"""Backoff strategies for bounded export retries."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


class BackoffStrategy(ABC):
    """Abstract base class for backoff strategies."""

    @abstractmethod
    def get_delay(self, attempt: int) -> float:
        """Calculate delay in seconds for given attempt (0-indexed)."""
        ...


@dataclass(frozen=True)
class ExponentialBackoff(BackoffStrategy):
    """Exponential backoff strategy.

    Delay = base_delay * (multiplier ^ attempt)

    Example:
        backoff = ExponentialBackoff(base_delay=0.1, multiplier=2.0)
        # Attempt 0: 0.1s
        # Attempt 1: 0.2s
        # Attempt 2: 0.4s
    """

    base_delay: float = 0.1
    multiplier: float = 2.0
    max_delay: float = 30.0

    def get_delay(self, attempt: int) -> float:
        delay = self.base_delay * (self.multiplier ** attempt)
        return min(delay, self.max_delay)
