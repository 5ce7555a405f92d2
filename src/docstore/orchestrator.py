"""Fallback orchestration and health monitoring across storage backends."""
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Sequence, Tuple
import asyncio
import functools
import logging
import time

from .backends import StorageBackend, create_backend
from .config import BackendConfig, StorageSettings, load_storage_settings
from .errors import (
    AggregateStorageError,
    CircuitOpenError,
    ConfigurationError,
    StorageError,
    TransientError,
)
from .health import (
    DEFAULT_TREND_WINDOW,
    HEALTH_HISTORY_SIZE,
    AggregatedHealthStats,
    HealthRecord,
    HealthTrend,
    Trend,
    aggregate_health,
    health_trend,
)
from .metrics.recorder import InMemoryMetricsSink, MetricsSink, PrometheusMetricsSink
from .resilience.circuit_breaker import CircuitBreaker, CircuitState
from .resilience.retry import RetryExecutor
from .types import (
    DownloadOptions,
    FileInfo,
    HealthStatus,
    OperationOutcome,
    StorageHealth,
    StorageResult,
    StorageStats,
    UploadOptions,
)

logger = logging.getLogger(__name__)

BackendCall = Callable[[StorageBackend], Awaitable[StorageResult]]


@dataclass
class BackendSlot:
    """A configured backend with its breaker, retry executor and health history."""
    config: BackendConfig
    backend: StorageBackend
    breaker: CircuitBreaker
    executor: RetryExecutor
    health: Optional[StorageHealth] = None
    health_failures: int = 0
    history: Deque[HealthRecord] = field(default_factory=lambda: deque(maxlen=HEALTH_HISTORY_SIZE))

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def routable(self) -> bool:
        return self.health_failures < self.config.health_check.failure_threshold


class HealthMonitor:
    """Runs one periodic health probe task per backend."""

    def __init__(self, orchestrator: 'FallbackOrchestrator'):
        self.orchestrator = orchestrator
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    def start(self):
        for slot in self.orchestrator.slots:
            if slot.config.health_check.enabled and slot.id not in self._tasks:
                self._tasks[slot.id] = asyncio.create_task(self._monitor(slot))
                logger.info(
                    f"Health monitor started for {slot.id} "
                    f"(every {slot.config.health_check.interval}s)"
                )

    async def _monitor(self, slot: BackendSlot):
        while True:
            try:
                await self.orchestrator.probe(slot)
            except Exception as e:
                logger.error(f"Health monitor for {slot.id} failed: {str(e)}")
            await asyncio.sleep(slot.config.health_check.interval)

    async def stop(self):
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.info("Health monitor stopped")


class FallbackOrchestrator:
    """Routes storage operations across backends in priority order.

    Each operation goes to the first backend whose circuit breaker is not open
    and whose recent health probes have not failed, through that backend's
    RetryExecutor. A failure moves on to the next backend when the failing
    backend allows fallback and the error kind permits it. Path-based calls
    try the backend named in the locator first.

    The metrics sink is created with the orchestrator (unless injected) and
    closed with it.
    """

    def __init__(self, backends: Sequence[Tuple[BackendConfig, StorageBackend]],
                 metrics_sink: Optional[MetricsSink] = None):
        self.metrics_sink = metrics_sink if metrics_sink is not None else InMemoryMetricsSink()
        enabled = sorted(
            (pair for pair in backends if pair[0].enabled),
            key=lambda pair: (pair[0].priority, pair[0].id)
        )
        if not enabled:
            raise ConfigurationError("At least one enabled storage backend is required")

        self.slots: List[BackendSlot] = []
        for config, backend in enabled:
            backend.bind_metrics(self.metrics_sink)
            breaker = CircuitBreaker(config.id, config.circuit_breaker)
            self.slots.append(BackendSlot(
                config=config,
                backend=backend,
                breaker=breaker,
                executor=RetryExecutor(config.id, config.retry, breaker)
            ))
            logger.info(
                f"Registered storage backend {config.id} ({config.kind.value}) "
                f"with priority {config.priority}"
            )
        self.health_monitor = HealthMonitor(self)

    @classmethod
    def from_settings(cls, settings: Optional[StorageSettings] = None,
                      metrics_sink: Optional[MetricsSink] = None) -> 'FallbackOrchestrator':
        """Build the orchestrator and its backends from environment settings."""
        settings = settings or load_storage_settings()
        settings.validate()
        backends = [(config, create_backend(config)) for config in settings.backend_configs()]
        if metrics_sink is None:
            metrics_sink = PrometheusMetricsSink(settings.metrics_buffer_size)
        return cls(backends, metrics_sink=metrics_sink)

    @property
    def backends(self) -> Dict[str, StorageBackend]:
        return {slot.id: slot.backend for slot in self.slots}

    def get_slot(self, backend_id: str) -> BackendSlot:
        for slot in self.slots:
            if slot.id == backend_id:
                return slot
        raise KeyError(f"Unknown storage backend: {backend_id}")

    async def start(self):
        for slot in self.slots:
            try:
                await slot.backend.prepare()
            except Exception as e:
                logger.warning(f"Could not prepare backend {slot.id}: {str(e)}")
        self.health_monitor.start()

    async def close(self):
        await self.health_monitor.stop()
        self.metrics_sink.close()

    async def __aenter__(self) -> 'FallbackOrchestrator':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _candidates(self, path: Optional[str] = None) -> List[BackendSlot]:
        if not path:
            return list(self.slots)
        # Stable sort keeps priority order behind the owning backend
        return sorted(self.slots, key=lambda slot: not slot.backend.owns(path))

    async def _execute(self, operation: str, call: BackendCall,
                       path: Optional[str] = None) -> StorageResult:
        failures: List[Tuple[str, StorageError]] = []
        last_result: Optional[StorageResult] = None
        candidates = self._candidates(path)

        for index, slot in enumerate(candidates):
            if slot.breaker.state is CircuitState.OPEN:
                logger.info(f"Skipping {slot.id} for {operation}: circuit breaker open")
                failures.append((slot.id, CircuitOpenError(
                    f"Circuit breaker for {slot.id} is open", backend=slot.id
                )))
                continue
            if not slot.routable:
                logger.info(f"Skipping {slot.id} for {operation}: backend unhealthy")
                failures.append((slot.id, TransientError(f"{slot.id} is unhealthy", backend=slot.id)))
                continue

            result = await slot.executor.execute(functools.partial(call, slot.backend), operation)
            if result.ok:
                if failures:
                    logger.warning(
                        f"{operation} served by {slot.id} after fallback from "
                        f"{', '.join(name for name, _ in failures)}"
                    )
                return result

            last_result = result
            failures.append((slot.id, result.error))
            if not (slot.config.allow_fallback and result.error.kind.allows_fallback):
                return result
            if index < len(candidates) - 1:
                logger.warning(f"{operation} failed on {slot.id}: {result.error.message}; falling back")

        if len(failures) == 1 and last_result is not None:
            return last_result
        error = AggregateStorageError(operation, failures)
        logger.error(error.message)
        return StorageResult.failure(error)

    # Storage contract

    async def upload(self, file: FileInfo, options: Optional[UploadOptions] = None) -> StorageResult[str]:
        return await self._execute('upload', lambda backend: backend.upload(file, options), file.path)

    async def download(self, path: str, options: Optional[DownloadOptions] = None) -> StorageResult[bytes]:
        return await self._execute('download', lambda backend: backend.download(path, options), path)

    async def delete(self, path: str) -> StorageResult[bool]:
        return await self._execute('delete', lambda backend: backend.delete(path), path)

    async def exists(self, path: str) -> StorageResult[bool]:
        return await self._execute('exists', lambda backend: backend.exists(path), path)

    async def list_files(self, prefix: Optional[str] = None) -> StorageResult[List[FileInfo]]:
        return await self._execute('list', lambda backend: backend.list_files(prefix), prefix)

    async def copy_file(self, source_path: str, destination_path: str) -> StorageResult[bool]:
        return await self._execute(
            'copy', lambda backend: backend.copy_file(source_path, destination_path), source_path
        )

    async def move_file(self, source_path: str, destination_path: str) -> StorageResult[bool]:
        return await self._execute(
            'move', lambda backend: backend.move_file(source_path, destination_path), source_path
        )

    async def get_file_info(self, path: str) -> StorageResult[FileInfo]:
        return await self._execute('info', lambda backend: backend.get_file_info(path), path)

    async def create_directory(self, path: str) -> StorageResult[bool]:
        return await self._execute('create_directory', lambda backend: backend.create_directory(path), path)

    async def generate_download_url(self, path: str, expiry_seconds: int = 3600) -> StorageResult[str]:
        return await self._execute(
            'download_url', lambda backend: backend.generate_download_url(path, expiry_seconds), path
        )

    async def get_storage_stats(self, backend_id: Optional[str] = None) -> StorageResult[StorageStats]:
        if backend_id is not None:
            return await self.get_slot(backend_id).backend.get_storage_stats()
        return await self._execute('stats', lambda backend: backend.get_storage_stats())

    async def get_all_storage_stats(self) -> Dict[str, StorageResult]:
        results = await asyncio.gather(*(slot.backend.get_storage_stats() for slot in self.slots))
        return {slot.id: result for slot, result in zip(self.slots, results)}

    # Health and metrics

    async def probe(self, slot: BackendSlot) -> StorageHealth:
        """Run one bounded health probe and update the backend's health record."""
        policy = slot.config.health_check
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(slot.backend.get_health(), timeout=policy.timeout)
        except asyncio.TimeoutError:
            result = StorageResult.failure(TransientError(
                f"{slot.backend.label} health check timed out after {policy.timeout}s", backend=slot.id
            ))

        if result.ok:
            if not slot.routable:
                logger.info(f"Backend {slot.id} is healthy again")
            slot.health_failures = 0
            health = result.value
        else:
            slot.health_failures += 1
            health = StorageHealth(
                status=HealthStatus.UNHEALTHY,
                response_time_ms=(time.perf_counter() - started) * 1000,
                success_rate=slot.backend.recorder.availability(),
                metrics=slot.backend.health_metrics(),
                error=result.error.message
            )
            logger.warning(
                f"Health check failed for {slot.id} "
                f"({slot.health_failures} consecutive): {result.error.message}"
            )
        slot.health = health
        slot.history.append(HealthRecord(
            health=health,
            duration_ms=(time.perf_counter() - started) * 1000,
            error=health.error
        ))
        return health

    async def check_health(self) -> Dict[str, StorageHealth]:
        """Probe every backend now."""
        results = await asyncio.gather(*(self.probe(slot) for slot in self.slots))
        return {slot.id: health for slot, health in zip(self.slots, results)}

    def get_health_history(self, backend_id: str) -> List[HealthRecord]:
        return list(self.get_slot(backend_id).history)

    def get_aggregated_health_stats(self) -> AggregatedHealthStats:
        """Counts by status, averages and summed capacity over the latest probe of each backend."""
        return aggregate_health(slot.health for slot in self.slots if slot.health is not None)

    def get_health_trends(self, backend_id: str, window: float = DEFAULT_TREND_WINDOW) -> HealthTrend:
        """Trend of a backend's probes over the last ``window`` seconds."""
        try:
            slot = self.get_slot(backend_id)
        except KeyError:
            return HealthTrend(backend_id, Trend.UNKNOWN)
        return health_trend(backend_id, slot.history, window)

    def get_outcomes(self, operation: str, backend: Optional[str] = None) -> List[OperationOutcome]:
        return self.metrics_sink.get_outcomes(operation, backend)

    def status(self) -> Dict[str, Any]:
        return {
            'health_monitor_running': self.health_monitor.running,
            'backends': [
                {
                    'id': slot.id,
                    'name': slot.config.name,
                    'kind': slot.config.kind.value,
                    'priority': slot.config.priority,
                    'allow_fallback': slot.config.allow_fallback,
                    'routable': slot.routable,
                    'circuit_breaker': slot.breaker.snapshot(),
                    'health': slot.health.to_dict() if slot.health else None,
                    'health_checks': len(slot.history),
                }
                for slot in self.slots
            ],
        }
