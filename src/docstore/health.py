"""Health history, aggregate statistics and trend analysis for storage backends."""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .types import HealthStatus, StorageHealth

HEALTH_HISTORY_SIZE = 100
DEFAULT_TREND_WINDOW = 3600.0  # seconds
TREND_THRESHOLD = 0.1


class Trend(Enum):
    """Direction of a backend's recent health."""
    IMPROVING = "improving"
    STABLE = "stable"
    DEGRADING = "degrading"
    INSUFFICIENT_DATA = "insufficient_data"
    UNKNOWN = "unknown"


@dataclass
class HealthRecord:
    """One health probe result kept in a backend's history."""
    health: StorageHealth
    duration_ms: float
    timestamp: datetime = field(default_factory=datetime.now)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'health': self.health.to_dict(),
            'duration_ms': self.duration_ms,
            'timestamp': self.timestamp.isoformat(),
            'error': self.error,
        }


@dataclass
class HealthTrend:
    backend: str
    trend: Trend
    change_rate: float = 0.0
    data_points: List[HealthRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'backend': self.backend,
            'trend': self.trend.value,
            'change_rate': self.change_rate,
            'data_points': [record.to_dict() for record in self.data_points],
        }


@dataclass
class AggregatedHealthStats:
    total_backends: int = 0
    healthy_backends: int = 0
    degraded_backends: int = 0
    unhealthy_backends: int = 0
    average_response_time_ms: float = 0.0
    average_success_rate: float = 0.0
    total_capacity: int = 0
    available_capacity: int = 0
    last_updated: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_backends': self.total_backends,
            'healthy_backends': self.healthy_backends,
            'degraded_backends': self.degraded_backends,
            'unhealthy_backends': self.unhealthy_backends,
            'average_response_time_ms': self.average_response_time_ms,
            'average_success_rate': self.average_success_rate,
            'total_capacity': self.total_capacity,
            'available_capacity': self.available_capacity,
            'last_updated': self.last_updated.isoformat(),
        }


def calculate_trend(values: Sequence[float]) -> float:
    """Least-squares slope of values over their index, 0 for fewer than two points."""
    n = len(values)
    if n < 2:
        return 0.0
    sum_x = sum(range(n))
    sum_y = sum(values)
    sum_xy = sum(x * y for x, y in enumerate(values))
    sum_x2 = sum(x * x for x in range(n))
    return (n * sum_xy - sum_x * sum_y) / (n * sum_x2 - sum_x * sum_x)


def health_trend(backend: str, history: Iterable[HealthRecord],
                 window: float = DEFAULT_TREND_WINDOW,
                 now: Optional[datetime] = None) -> HealthTrend:
    """Classify the records of the last ``window`` seconds.

    Falling response times together with a rising success rate is improving;
    rising response times or a falling success rate is degrading.
    """
    cutoff = (now or datetime.now()) - timedelta(seconds=window)
    recent = [record for record in history if record.timestamp > cutoff]
    if len(recent) < 2:
        return HealthTrend(backend, Trend.INSUFFICIENT_DATA, data_points=recent)

    response_slope = calculate_trend([record.health.response_time_ms for record in recent])
    success_slope = calculate_trend([record.health.success_rate for record in recent])

    trend = Trend.STABLE
    if response_slope < -TREND_THRESHOLD and success_slope > TREND_THRESHOLD:
        trend = Trend.IMPROVING
    elif response_slope > TREND_THRESHOLD or success_slope < -TREND_THRESHOLD:
        trend = Trend.DEGRADING

    return HealthTrend(backend, trend, (response_slope + success_slope) / 2, recent)


def aggregate_health(latest: Iterable[StorageHealth]) -> AggregatedHealthStats:
    """Summarize the latest health of each backend; unknown capacities are skipped."""
    stats = AggregatedHealthStats()
    response_times = []
    success_rates = []
    for health in latest:
        stats.total_backends += 1
        if health.status is HealthStatus.HEALTHY:
            stats.healthy_backends += 1
        elif health.status is HealthStatus.DEGRADED:
            stats.degraded_backends += 1
        else:
            stats.unhealthy_backends += 1
        response_times.append(health.response_time_ms)
        success_rates.append(health.success_rate)
        if health.total_capacity >= 0:
            stats.total_capacity += health.total_capacity
        if health.available_capacity >= 0:
            stats.available_capacity += health.available_capacity

    if stats.total_backends:
        stats.average_response_time_ms = sum(response_times) / stats.total_backends
        stats.average_success_rate = sum(success_rates) / stats.total_backends
    return stats
