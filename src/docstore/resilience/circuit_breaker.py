"""Per-backend circuit breaker."""
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional
import logging
import threading
import time

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerPolicy:
    failure_threshold: int = 5
    recovery_timeout: float = 30.0  # seconds
    half_open_max_calls: int = 1
    success_threshold: int = 1


class CircuitBreaker:
    """Stops calls to a backend after repeated failures.

    CLOSED counts consecutive failures and opens at ``failure_threshold``.
    OPEN rejects every call until ``recovery_timeout`` has passed, then moves
    to HALF_OPEN, which admits at most ``half_open_max_calls`` probes at a
    time. A probe failure re-opens the breaker; ``success_threshold`` probe
    successes close it again with all counters reset.

    All state changes happen under one lock so health probes and user calls
    can report concurrently.
    """

    def __init__(self, name: str, policy: Optional[CircuitBreakerPolicy] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.policy = policy or CircuitBreakerPolicy()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._half_open_calls = 0
        self._opened_at: Optional[float] = None
        self._transitions: Deque[Dict[str, Any]] = deque(maxlen=50)

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh()
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    def allow_request(self) -> bool:
        """Admit a call, reserving a probe slot when half-open."""
        with self._lock:
            self._refresh()
            if self._state is CircuitState.CLOSED:
                return True
            if self._state is CircuitState.OPEN:
                return False
            if self._half_open_calls < self.policy.half_open_max_calls:
                self._half_open_calls += 1
                return True
            return False

    def record_success(self):
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._half_open_calls = max(0, self._half_open_calls - 1)
                self._success_count += 1
                if self._success_count >= self.policy.success_threshold:
                    self._transition(CircuitState.CLOSED)
            elif self._state is CircuitState.CLOSED:
                self._failure_count = 0

    def record_failure(self):
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
            elif self._state is CircuitState.CLOSED:
                self._failure_count += 1
                if self._failure_count >= self.policy.failure_threshold:
                    self._transition(CircuitState.OPEN)

    def release(self):
        """Give back a half-open probe slot whose call never finished."""
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._half_open_calls = max(0, self._half_open_calls - 1)

    def force_open(self):
        with self._lock:
            self._transition(CircuitState.OPEN)

    def force_close(self):
        with self._lock:
            self._transition(CircuitState.CLOSED)

    def reset(self):
        with self._lock:
            self._transition(CircuitState.CLOSED)
            self._transitions.clear()

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            self._refresh()
            return {
                'name': self.name,
                'state': self._state.value,
                'failure_count': self._failure_count,
                'success_count': self._success_count,
                'half_open_calls': self._half_open_calls,
                'opened_at': self._opened_at,
                'transitions': list(self._transitions),
            }

    def _refresh(self):
        if (self._state is CircuitState.OPEN and self._opened_at is not None
                and self._clock() - self._opened_at >= self.policy.recovery_timeout):
            self._transition(CircuitState.HALF_OPEN)

    def _transition(self, new_state: CircuitState):
        old_state = self._state
        self._state = new_state
        if new_state is CircuitState.CLOSED:
            self._failure_count = 0
            self._success_count = 0
            self._half_open_calls = 0
            self._opened_at = None
        elif new_state is CircuitState.OPEN:
            self._success_count = 0
            self._half_open_calls = 0
            self._opened_at = self._clock()
        else:
            self._success_count = 0
            self._half_open_calls = 0

        if old_state is not new_state:
            self._transitions.append({
                'from': old_state.value,
                'to': new_state.value,
                'timestamp': datetime.now().isoformat(),
            })
            logger.info(f"Circuit breaker {self.name}: {old_state.value} -> {new_state.value}")
