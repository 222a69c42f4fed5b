"""Per-request retry budget and pre-attempt delay."""

from __future__ import annotations

import random
from dataclasses import dataclass, field

from ..errors import RETRYABLE_ERRORS


@dataclass
class RetryPolicy:
    """Decide whether a failed request gets another attempt.

    ``retry_limit`` counts additional attempts after the first one. The delay
    applies before every attempt, the first included:
    ``delay + uniform(0, jitter_fraction) * delay``.
    """

    retry_limit: int = 2
    delay: float = 0.0
    jitter_fraction: float = 0.5
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.retry_limit < 0:
            raise ValueError("retry_limit must be >= 0")
        if self.delay < 0:
            raise ValueError("delay must be >= 0")
        if self.jitter_fraction < 0:
            raise ValueError("jitter_fraction must be >= 0")

    @property
    def max_attempts(self) -> int:
        return self.retry_limit + 1

    def next_delay(self) -> float:
        if self.delay <= 0:
            return 0.0
        return self.delay + self.rng.uniform(0, self.jitter_fraction) * self.delay

    def should_retry(self, failures: int) -> bool:
        """``failures`` is the number of failed attempts observed so far."""

        return failures <= self.retry_limit

    @staticmethod
    def is_retryable(error: BaseException) -> bool:
        return isinstance(error, RETRYABLE_ERRORS)


__all__ = ["RetryPolicy"]
