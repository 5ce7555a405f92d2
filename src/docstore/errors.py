"""Error taxonomy for the storage layer."""
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ErrorKind(Enum):
    """Category of a storage failure, drives retry and fallback decisions."""
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    INTEGRITY = "integrity"
    CONFLICT = "conflict"
    UNSUPPORTED = "unsupported"
    INSUFFICIENT_STORAGE = "insufficient_storage"
    CIRCUIT_OPEN = "circuit_open"
    CONFIGURATION = "configuration"

    @property
    def retryable(self) -> bool:
        return self is ErrorKind.TRANSIENT

    @property
    def allows_fallback(self) -> bool:
        return self in _FALLBACK_KINDS

    @property
    def trips_breaker(self) -> bool:
        return self is ErrorKind.TRANSIENT


_FALLBACK_KINDS = frozenset({
    ErrorKind.NOT_FOUND,
    ErrorKind.TRANSIENT,
    ErrorKind.UNSUPPORTED,
    ErrorKind.INSUFFICIENT_STORAGE,
    ErrorKind.CIRCUIT_OPEN,
    ErrorKind.CONFIGURATION,
})


class StorageError(Exception):
    """Base class for every failure reported by a storage backend."""

    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str, kind: Optional[ErrorKind] = None,
                 backend: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.backend = backend
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'message': self.message,
            'kind': self.kind.value,
            'backend': self.backend,
            'details': self.details,
        }


class ValidationError(StorageError):
    kind = ErrorKind.VALIDATION


class NotFoundError(StorageError):
    kind = ErrorKind.NOT_FOUND


class TransientError(StorageError):
    kind = ErrorKind.TRANSIENT


class IntegrityError(StorageError):
    kind = ErrorKind.INTEGRITY


class ConflictError(StorageError):
    kind = ErrorKind.CONFLICT


class UnsupportedOperationError(StorageError):
    kind = ErrorKind.UNSUPPORTED


class InsufficientStorageError(StorageError):
    kind = ErrorKind.INSUFFICIENT_STORAGE


class CircuitOpenError(StorageError):
    kind = ErrorKind.CIRCUIT_OPEN


class ConfigurationError(StorageError):
    """Missing or invalid settings at startup, or access denied at runtime."""
    kind = ErrorKind.CONFIGURATION


class AggregateStorageError(StorageError):
    """Every candidate backend failed; carries each backend's error."""

    def __init__(self, operation: str, failures: List[Tuple[str, StorageError]]):
        summary = "; ".join(f"{name}: {error.message}" for name, error in failures)
        kinds = {error.kind for _, error in failures}
        kind = ErrorKind.NOT_FOUND if kinds == {ErrorKind.NOT_FOUND} else ErrorKind.TRANSIENT
        super().__init__(
            f"All storage backends failed for {operation}: {summary}",
            kind=kind,
            details={'failures': [error.to_dict() for _, error in failures]},
        )
        self.operation = operation
        self.failures = failures
