"""Common types for the storage layer."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

from .errors import ErrorKind, StorageError

T = TypeVar('T')

DIRECTORY_MIME_TYPE = 'application/x-directory'


class HealthStatus(Enum):
    """Health status of a storage backend."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class FileInfo:
    """A stored payload and what is known about it.

    Listings and info lookups leave ``content`` empty and only carry size and
    metadata. When content is given without a size, the size is filled in.
    """
    name: str
    path: str = ""
    content: bytes = b""
    mime_type: str = "application/octet-stream"
    size: int = 0
    modified_at: datetime = field(default_factory=datetime.now)
    created_at: Optional[datetime] = None
    checksum: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    is_directory: bool = False

    def __post_init__(self):
        if self.content and not self.size:
            self.size = len(self.content)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'path': self.path,
            'mime_type': self.mime_type,
            'size': self.size,
            'modified_at': self.modified_at.isoformat(),
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'checksum': self.checksum,
            'metadata': dict(self.metadata),
            'is_directory': self.is_directory,
        }


@dataclass(frozen=True)
class UploadOptions:
    custom_metadata: Dict[str, str] = field(default_factory=dict)
    generate_checksum: bool = False
    overwrite: bool = True


@dataclass(frozen=True)
class DownloadOptions:
    verify_integrity: bool = False
    # Used when the backend has no checksum of its own for the object
    expected_checksum: Optional[str] = None


@dataclass
class OperationOutcome:
    """Record of a single backend call."""
    operation: str
    backend: str
    success: bool
    duration_ms: float
    timestamp: datetime = field(default_factory=datetime.now)
    data: Any = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation': self.operation,
            'backend': self.backend,
            'success': self.success,
            'duration_ms': self.duration_ms,
            'timestamp': self.timestamp.isoformat(),
            'error': self.error,
            'error_kind': self.error_kind.value if self.error_kind else None,
        }


@dataclass
class StorageHealth:
    status: HealthStatus
    response_time_ms: float
    success_rate: float
    last_checked: datetime = field(default_factory=datetime.now)
    metrics: Dict[str, Any] = field(default_factory=dict)
    available_capacity: int = -1
    total_capacity: int = -1
    error: Optional[str] = None

    @property
    def is_healthy(self) -> bool:
        return self.status is not HealthStatus.UNHEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'response_time_ms': self.response_time_ms,
            'success_rate': self.success_rate,
            'last_checked': self.last_checked.isoformat(),
            'metrics': dict(self.metrics),
            'available_capacity': self.available_capacity,
            'total_capacity': self.total_capacity,
            'error': self.error,
        }


@dataclass
class StorageStats:
    storage_type: str
    used_capacity: int = 0
    total_files: int = 0
    total_directories: int = 0
    average_file_size: float = 0.0
    largest_file_size: int = 0
    total_capacity: int = -1
    available_capacity: int = -1
    last_updated: datetime = field(default_factory=datetime.now)

    @property
    def utilization_percentage(self) -> float:
        if self.total_capacity <= 0:
            return 0.0
        return self.used_capacity / self.total_capacity * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            'storage_type': self.storage_type,
            'used_capacity': self.used_capacity,
            'total_files': self.total_files,
            'total_directories': self.total_directories,
            'average_file_size': self.average_file_size,
            'largest_file_size': self.largest_file_size,
            'total_capacity': self.total_capacity,
            'available_capacity': self.available_capacity,
            'utilization_percentage': self.utilization_percentage,
            'last_updated': self.last_updated.isoformat(),
        }


@dataclass
class StorageResult(Generic[T]):
    """Outcome of a storage call: a value on success, a StorageError otherwise."""
    ok: bool
    value: Optional[T] = None
    error: Optional[StorageError] = None
    backend: Optional[str] = None

    @classmethod
    def success(cls, value: T, backend: Optional[str] = None) -> 'StorageResult[T]':
        return cls(ok=True, value=value, backend=backend)

    @classmethod
    def failure(cls, error: StorageError, backend: Optional[str] = None) -> 'StorageResult[T]':
        return cls(ok=False, error=error, backend=backend or error.backend)

    @property
    def kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error is not None else None

    def unwrap(self) -> T:
        """Return the value or raise the stored error."""
        if not self.ok:
            raise self.error
        return self.value
