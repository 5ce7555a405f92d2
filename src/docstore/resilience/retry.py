"""Retry with exponential backoff around storage calls."""
from typing import Awaitable, Callable, Optional
import asyncio
import logging
import random
import time

from ..errors import CircuitOpenError, StorageError, TransientError
from ..types import StorageResult
from .backoff import RetryPolicy, compute_backoff
from .circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)


class RetryExecutor:
    """Runs a storage call with retries, deadlines and an optional breaker.

    Only transient failures are retried. Each attempt is bounded by
    ``attempt_timeout`` and the whole sequence by ``total_timeout``; when the
    next backoff would cross the total deadline the sequence stops and the
    last observed error is returned. A whole sequence counts once towards the
    breaker.
    """

    def __init__(self, name: str, policy: Optional[RetryPolicy] = None,
                 breaker: Optional[CircuitBreaker] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 rand: Callable[[], float] = random.random,
                 clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.policy = policy or RetryPolicy()
        self.breaker = breaker
        self._sleep = sleep
        self._rand = rand
        self._clock = clock

    async def execute(self, operation: Callable[[], Awaitable[StorageResult]],
                      description: str = "operation") -> StorageResult:
        if self.breaker is not None and not self.breaker.allow_request():
            error = CircuitOpenError(
                f"Circuit breaker for {self.name} is open", backend=self.name
            )
            return StorageResult.failure(error, backend=self.name)

        try:
            result = await self._run(operation, description)
        except asyncio.CancelledError:
            if self.breaker is not None:
                self.breaker.release()
            raise

        if self.breaker is not None:
            if not result.ok and result.error.kind.trips_breaker:
                self.breaker.record_failure()
            else:
                self.breaker.record_success()
        return result

    async def _attempt(self, operation: Callable[[], Awaitable[StorageResult]],
                       description: str, timeout: float) -> StorageResult:
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)
        except asyncio.TimeoutError:
            error = TransientError(
                f"{description} on {self.name} timed out after {timeout:.2f}s",
                backend=self.name
            )
        except StorageError as e:
            error = e
        except Exception as e:
            error = TransientError(f"{description} on {self.name} failed: {str(e)}", backend=self.name)
        return StorageResult.failure(error, backend=self.name)

    async def _run(self, operation: Callable[[], Awaitable[StorageResult]],
                   description: str) -> StorageResult:
        policy = self.policy
        attempts = policy.attempts
        deadline = self._clock() + policy.total_timeout
        last_result: Optional[StorageResult] = None

        for attempt in range(1, attempts + 1):
            remaining = deadline - self._clock()
            if remaining <= 0:
                break

            result = await self._attempt(operation, description, min(policy.attempt_timeout, remaining))
            if result.ok or not result.error.kind.retryable:
                return result
            last_result = result

            if attempt == attempts:
                break

            delay = compute_backoff(attempt, policy, self._rand)
            if self._clock() + delay >= deadline:
                logger.warning(
                    f"{self.name} {description}: next retry would exceed the "
                    f"{policy.total_timeout}s total timeout, giving up after {attempt} attempt(s)"
                )
                break

            logger.warning(
                f"{self.name} {description} attempt {attempt}/{attempts} failed: "
                f"{result.error.message}. Retrying in {delay:.2f}s"
            )
            await self._sleep(delay)

        if last_result is None:
            error = TransientError(
                f"{description} on {self.name} exceeded the total timeout of {policy.total_timeout}s",
                backend=self.name
            )
            last_result = StorageResult.failure(error, backend=self.name)
        return last_result
