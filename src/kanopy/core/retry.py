"""Backoff strategies for bounded local retries.

Used by the status updater to bound and space out compare-and-swap
attempts after a lost version race, and by the controller loop to bound
event redelivery.

Example:
    >>> from kanopy.core.retry import ExponentialBackoff
    >>>
    >>> strategy = ExponentialBackoff(max_retries=5, base_delay=0.01, max_delay=0.5)
    >>> for attempt in range(5):
    ...     delay = strategy.next_delay(attempt)
"""

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Calculate delay before next retry attempt.

        Args:
            attempt: Zero-based attempt number (0 = first retry)

        Returns:
            Delay in seconds before next attempt
        """
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        """Determine if another retry should be attempted."""
        ...


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) + jitter
    """

    max_retries: int = 3
    base_delay: float = 0.01
    max_delay: float = 1.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25

    def next_delay(self, attempt: int) -> float:
        delay = min(
            self.base_delay * (self.multiplier ** attempt),
            self.max_delay,
        )

        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(0, delay)

        return delay

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        return attempt < self.max_retries


