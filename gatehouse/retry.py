"""
Retry policy for outbox delivery.

Delays grow exponentially from ``base_seconds`` and are capped at
``max_seconds``; a uniform jitter is added so that events failing together do
not come back together.
"""

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff with jitter.

    Attributes:
        max_attempts: Delivery attempts before an event is marked FAILED
        base_seconds: Delay after the first failed attempt
        max_seconds: Upper bound for the exponential part of the delay
        jitter_seconds: Upper bound of the uniform random delay added on top

    Example:
        >>> policy = RetryPolicy(max_attempts=5, base_seconds=1.0, max_seconds=30.0)
        >>> policy.backoff_seconds(1)  # ~1s
        >>> policy.backoff_seconds(3)  # ~4s
    """

    max_attempts: int = 3
    base_seconds: float = 5.0
    max_seconds: float = 120.0
    jitter_seconds: float = 0.5

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_seconds < 0 or self.max_seconds < 0 or self.jitter_seconds < 0:
            raise ValueError("retry delays must be non-negative")

    def is_exhausted(self, attempts: int) -> bool:
        """True when ``attempts`` failed deliveries leave no retry."""
        return attempts >= self.max_attempts

    def backoff_seconds(self, attempts: int) -> float:
        """
        Delay before the next delivery after ``attempts`` failures (1-based).

        ``min(base * 2^(attempts-1), max) + uniform(0, jitter)``
        """
        exponent = min(max(0, attempts - 1), 62)
        delay = min(self.max_seconds, self.base_seconds * (2**exponent))
        if self.jitter_seconds > 0:
            delay += random.uniform(0, self.jitter_seconds)
        return delay
