"""
Storage backend initialization module.
"""

from typing import Dict, Type

from ..config import BackendConfig, BackendKind
from .base import StorageBackend
from .local_backend import LocalStorageBackend
from .s3_backend import S3StorageBackend
from .azure_backend import AzureBlobStorageBackend

BACKEND_CLASSES: Dict[BackendKind, Type[StorageBackend]] = {
    BackendKind.S3: S3StorageBackend,
    BackendKind.AZURE: AzureBlobStorageBackend,
    BackendKind.LOCAL: LocalStorageBackend,
}


def create_backend(config: BackendConfig) -> StorageBackend:
    """Factory function to build the adapter for a backend configuration"""
    backend_class = BACKEND_CLASSES.get(config.kind)
    if backend_class is None:
        raise ValueError(f"Unsupported backend kind: {config.kind}")
    return backend_class(name=config.id, **config.params)


__all__ = [
    "create_backend",
    "StorageBackend",
    "LocalStorageBackend",
    "S3StorageBackend",
    "AzureBlobStorageBackend",
]
