"""Resilient document storage across S3, Azure Blob and local disk."""
from .config import (
    BackendConfig,
    BackendKind,
    StorageSettings,
    configure_logging,
    load_storage_settings,
)
from .errors import ErrorKind, StorageError
from .health import AggregatedHealthStats, HealthRecord, HealthTrend, Trend
from .orchestrator import FallbackOrchestrator
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

__version__ = "0.1.0"

__all__ = [
    "BackendConfig",
    "BackendKind",
    "StorageSettings",
    "configure_logging",
    "load_storage_settings",
    "ErrorKind",
    "StorageError",
    "AggregatedHealthStats",
    "HealthRecord",
    "HealthTrend",
    "Trend",
    "FallbackOrchestrator",
    "DownloadOptions",
    "FileInfo",
    "HealthStatus",
    "OperationOutcome",
    "StorageHealth",
    "StorageResult",
    "StorageStats",
    "UploadOptions",
]
