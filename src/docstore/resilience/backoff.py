"""Retry policy and backoff calculation."""
from dataclasses import dataclass
from typing import Callable
import random


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retrying a backend call. Times are in seconds."""
    enabled: bool = True
    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_backoff: float = 30.0
    jitter_factor: float = 0.1
    attempt_timeout: float = 30.0
    total_timeout: float = 60.0

    @property
    def attempts(self) -> int:
        return self.max_attempts if self.enabled else 1


def compute_backoff(attempt: int, policy: RetryPolicy,
                    rand: Callable[[], float] = random.random) -> float:
    """Delay before the retry that follows ``attempt`` (1-based).

    Exponential in the attempt number, capped at ``max_backoff``, with a
    symmetric jitter of ``jitter_factor`` times the delay.
    """
    delay = min(
        policy.base_delay * policy.backoff_multiplier ** (attempt - 1),
        policy.max_backoff
    )
    jitter = (rand() - 0.5) * policy.jitter_factor * delay
    return max(0.0, delay + jitter)
