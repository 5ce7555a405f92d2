from .recorder import (
    MetricsSink,
    NullMetricsSink,
    InMemoryMetricsSink,
    PrometheusMetricsSink,
    OperationRecorder,
)

__all__ = [
    "MetricsSink",
    "NullMetricsSink",
    "InMemoryMetricsSink",
    "PrometheusMetricsSink",
    "OperationRecorder",
]
