"""Operation outcome recording for storage backends."""
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple
import logging
import threading
import time

from prometheus_client import Counter, Histogram

from ..types import OperationOutcome, StorageResult

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 1000

# Prometheus metrics
STORAGE_OPERATIONS = Counter(
    'docstore_operations_total',
    'Number of storage operations',
    ['backend', 'operation', 'status']  # status: success, failure
)

STORAGE_OPERATION_ERRORS = Counter(
    'docstore_operation_errors_total',
    'Number of failed storage operations by error kind',
    ['backend', 'operation', 'error_kind']
)

STORAGE_OPERATION_LATENCY = Histogram(
    'docstore_operation_duration_seconds',
    'Storage operation duration in seconds',
    ['backend', 'operation'],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0)
)


class MetricsSink(ABC):
    """Destination for operation outcomes."""

    @abstractmethod
    def record(self, outcome: OperationOutcome) -> None:
        pass

    @abstractmethod
    def get_outcomes(self, operation: str, backend: Optional[str] = None) -> List[OperationOutcome]:
        pass

    def success_rate(self, backend: str, operation: Optional[str] = None) -> float:
        """Percentage of successful outcomes, 100 when nothing was recorded."""
        return 100.0

    def availability(self, backend: str) -> float:
        """Percentage of outcomes free of backend faults, 100 when nothing was recorded."""
        return 100.0

    def close(self) -> None:
        pass


class NullMetricsSink(MetricsSink):
    """Discards every outcome."""

    def record(self, outcome: OperationOutcome) -> None:
        pass

    def get_outcomes(self, operation: str, backend: Optional[str] = None) -> List[OperationOutcome]:
        return []


class InMemoryMetricsSink(MetricsSink):
    """Keeps a bounded history per (backend, operation), oldest evicted first."""

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE):
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self.buffer_size = buffer_size
        self._buffers: Dict[Tuple[str, str], Deque[OperationOutcome]] = {}
        self._lock = threading.Lock()

    def record(self, outcome: OperationOutcome) -> None:
        key = (outcome.backend, outcome.operation)
        with self._lock:
            buffer = self._buffers.get(key)
            if buffer is None:
                buffer = deque(maxlen=self.buffer_size)
                self._buffers[key] = buffer
            buffer.append(outcome)

    def get_outcomes(self, operation: str, backend: Optional[str] = None) -> List[OperationOutcome]:
        with self._lock:
            outcomes = [
                outcome
                for (name, op), buffer in self._buffers.items()
                if op == operation and (backend is None or name == backend)
                for outcome in buffer
            ]
        return sorted(outcomes, key=lambda outcome: outcome.timestamp)

    def _outcomes_for_backend(self, backend: str, operation: Optional[str] = None) -> List[OperationOutcome]:
        with self._lock:
            return [
                outcome
                for (name, op), buffer in self._buffers.items()
                if name == backend and (operation is None or op == operation)
                for outcome in buffer
            ]

    def success_rate(self, backend: str, operation: Optional[str] = None) -> float:
        outcomes = self._outcomes_for_backend(backend, operation)
        if not outcomes:
            return 100.0
        succeeded = sum(1 for outcome in outcomes if outcome.success)
        return succeeded / len(outcomes) * 100

    def availability(self, backend: str) -> float:
        # Caller mistakes such as missing files or bad input do not count against the backend
        outcomes = self._outcomes_for_backend(backend)
        if not outcomes:
            return 100.0
        faults = sum(
            1 for outcome in outcomes
            if outcome.error_kind is not None and outcome.error_kind.trips_breaker
        )
        return (len(outcomes) - faults) / len(outcomes) * 100

    def summary(self, backend: str) -> Dict[str, Dict[str, Any]]:
        """Per-operation counts and average duration for one backend."""
        by_operation: Dict[str, List[OperationOutcome]] = {}
        for outcome in self._outcomes_for_backend(backend):
            by_operation.setdefault(outcome.operation, []).append(outcome)

        return {
            operation: {
                'count': len(outcomes),
                'success_count': sum(1 for o in outcomes if o.success),
                'error_count': sum(1 for o in outcomes if not o.success),
                'average_duration_ms': sum(o.duration_ms for o in outcomes) / len(outcomes),
            }
            for operation, outcomes in by_operation.items()
        }

    def clear(self) -> None:
        with self._lock:
            self._buffers.clear()

    def close(self) -> None:
        self.clear()


class PrometheusMetricsSink(InMemoryMetricsSink):
    """In-memory history plus Prometheus counters and latency histogram."""

    def record(self, outcome: OperationOutcome) -> None:
        super().record(outcome)
        status = 'success' if outcome.success else 'failure'
        STORAGE_OPERATIONS.labels(outcome.backend, outcome.operation, status).inc()
        STORAGE_OPERATION_LATENCY.labels(outcome.backend, outcome.operation).observe(
            outcome.duration_ms / 1000
        )
        if outcome.error_kind is not None:
            STORAGE_OPERATION_ERRORS.labels(
                outcome.backend, outcome.operation, outcome.error_kind.value
            ).inc()


class OperationRecorder:
    """Binds a backend name to a metrics sink."""

    def __init__(self, backend: str, sink: Optional[MetricsSink] = None):
        self.backend = backend
        self.sink = sink or NullMetricsSink()

    def record(self, operation: str, started: float, result: StorageResult) -> OperationOutcome:
        """Turn a result into an outcome and hand it to the sink.

        ``started`` is a ``time.perf_counter()`` reading taken before the call.
        """
        outcome = OperationOutcome(
            operation=operation,
            backend=self.backend,
            success=result.ok,
            duration_ms=(time.perf_counter() - started) * 1000,
            # Payload bytes are not kept in the history
            data=None if not result.ok or isinstance(result.value, bytes) else result.value,
            error=result.error.message if result.error is not None else None,
            error_kind=result.kind,
        )
        try:
            self.sink.record(outcome)
        except Exception as e:
            logger.error(f"Failed to record {operation} outcome for {self.backend}: {str(e)}")
        return outcome

    def success_rate(self, operation: Optional[str] = None) -> float:
        return self.sink.success_rate(self.backend, operation)

    def availability(self) -> float:
        return self.sink.availability(self.backend)
