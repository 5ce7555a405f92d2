"""
Base class for storage backend implementations.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple
import asyncio
import functools
import hashlib
import logging
import mimetypes
import time
import uuid

from ..errors import (
    ErrorKind,
    IntegrityError,
    NotFoundError,
    ConflictError,
    StorageError,
    TransientError,
    UnsupportedOperationError,
    ValidationError,
)
from ..metrics.recorder import MetricsSink, OperationRecorder
from ..types import (
    DownloadOptions,
    FileInfo,
    HealthStatus,
    StorageHealth,
    StorageResult,
    StorageStats,
    UploadOptions,
)

logger = logging.getLogger(__name__)

CHUNK_THRESHOLD = 5 * 1024 * 1024  # 5MB
CHUNK_SIZE = 5 * 1024 * 1024
DEFAULT_MAX_FILE_SIZE = 100 * 1024 * 1024  # 100MB
DEFAULT_ALLOWED_MIME_TYPES = ('*/*',)
CHECKSUM_METADATA_KEY = 'checksum_sha256'
HEALTHY_SUCCESS_RATE = 95.0
HEALTH_PROBE_CONTENT = b'health-check'

_QUIET_KINDS = (ErrorKind.VALIDATION, ErrorKind.NOT_FOUND, ErrorKind.CONFLICT)


def compute_checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def detect_mime_type(filename: str) -> str:
    mime_type, _ = mimetypes.guess_type(filename)
    return mime_type or 'application/octet-stream'


def mime_type_allowed(mime_type: str, allowed: Sequence[str]) -> bool:
    """Match against an allow-list where '*/*' and 'type/*' are wildcards."""
    for pattern in allowed:
        if pattern == '*/*' or pattern == mime_type:
            return True
        if pattern.endswith('/*') and mime_type.startswith(pattern[:-1]):
            return True
    return False


def iter_chunks(content: bytes, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    for offset in range(0, len(content), chunk_size):
        yield content[offset:offset + chunk_size]


def split_locator(path: str) -> Tuple[Optional[str], Optional[str], str]:
    """Split 'scheme://container/key' into its parts; bare keys have no scheme."""
    if '://' not in path:
        return None, None, path
    scheme, rest = path.split('://', 1)
    container, _, key = rest.partition('/')
    return scheme, container, key


def recorded(operation: str):
    """Turn a backend method into one returning a StorageResult.

    StorageErrors and SDK exceptions raised by the method become failed
    results, and every call leaves exactly one outcome with the backend's
    recorder. A call cancelled by a deadline is recorded as a transient
    failure before the cancellation propagates.
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(self: 'StorageBackend', *args, **kwargs) -> StorageResult:
            started = time.perf_counter()
            try:
                value = await func(self, *args, **kwargs)
                result = StorageResult.success(value, backend=self.name)
            except asyncio.CancelledError:
                error = TransientError(
                    f"{self.label} {operation} cancelled or deadline exceeded", backend=self.name
                )
                self.recorder.record(operation, started, StorageResult.failure(error, backend=self.name))
                logger.warning(f"{self.name} {operation} cancelled after {time.perf_counter() - started:.2f}s")
                raise
            except Exception as e:
                error = self.translate_error(e)
                if error.backend is None:
                    error.backend = self.name
                result = StorageResult.failure(error, backend=self.name)
                log = logger.warning if error.kind in _QUIET_KINDS else logger.error
                log(f"{self.name} {operation} failed: {error.message}")
            self.recorder.record(operation, started, result)
            return result
        return wrapper
    return decorator


class StorageBackend(ABC):
    """Uniform contract over one storage destination.

    Public methods never raise; each returns a StorageResult. Subclasses
    implement the underscored hooks, which work on bare keys and raise
    StorageError (or their SDK's exceptions, mapped by ``translate_error``).
    Paths accepted by the public methods may be bare keys or locators such
    as ``s3://bucket/key``.
    """

    scheme = ""
    storage_type = ""
    label = "Storage"

    def __init__(self, name: str, max_file_size: int = DEFAULT_MAX_FILE_SIZE,
                 allowed_mime_types: Optional[Sequence[str]] = None,
                 recorder: Optional[OperationRecorder] = None):
        self.name = name
        self.max_file_size = max_file_size
        self.allowed_mime_types = tuple(allowed_mime_types or DEFAULT_ALLOWED_MIME_TYPES)
        self.recorder = recorder or OperationRecorder(name)

    @property
    @abstractmethod
    def container(self) -> str:
        """Bucket, container or root directory name used in locators."""
        pass

    def bind_metrics(self, sink: MetricsSink):
        self.recorder = OperationRecorder(self.name, sink)

    async def prepare(self):
        """Create whatever the backend needs before serving requests."""
        pass

    def locator(self, key: str) -> str:
        return f"{self.scheme}://{self.container}/{key}"

    def owns(self, path: Optional[str]) -> bool:
        if not path:
            return False
        scheme, container, _ = split_locator(path)
        return scheme == self.scheme and container == self.container

    def key_for(self, path: Optional[str]) -> str:
        if not path or not path.strip():
            raise ValidationError("File path is required", backend=self.name)
        _, _, key = split_locator(path.strip())
        key = key.lstrip('/')
        if not key:
            raise ValidationError("File path is required", backend=self.name)
        return key

    def translate_error(self, exc: Exception) -> StorageError:
        """Map an exception raised by a hook onto the error taxonomy."""
        if isinstance(exc, StorageError):
            return exc
        if isinstance(exc, asyncio.TimeoutError):
            return TransientError(f"{self.label} operation timed out", backend=self.name)
        return TransientError(f"{self.label} error: {str(exc)}", backend=self.name)

    def validate_file(self, file: FileInfo):
        if not file.name or not file.name.strip():
            raise ValidationError("File name is required", backend=self.name)
        if not file.content:
            raise ValidationError("File content is required", backend=self.name)
        if file.size != len(file.content):
            raise ValidationError(
                f"Declared size {file.size} does not match content length {len(file.content)}",
                backend=self.name
            )
        if len(file.content) > self.max_file_size:
            raise ValidationError(
                f"File size {len(file.content)} exceeds maximum allowed size {self.max_file_size}",
                backend=self.name
            )
        if not mime_type_allowed(file.mime_type, self.allowed_mime_types):
            raise ValidationError(f"File type {file.mime_type} is not allowed", backend=self.name)

    def build_metadata(self, file: FileInfo, options: UploadOptions) -> Dict[str, str]:
        metadata = dict(options.custom_metadata)
        if options.generate_checksum:
            metadata[CHECKSUM_METADATA_KEY] = compute_checksum(file.content)
        return metadata

    async def _run_blocking(self, func: Callable, *args, **kwargs) -> Any:
        """Run a blocking SDK or filesystem call on the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    # Storage contract

    @recorded("upload")
    async def upload(self, file: FileInfo, options: Optional[UploadOptions] = None) -> str:
        options = options or UploadOptions()
        self.validate_file(file)
        key = self.key_for(file.path or file.name)
        if not options.overwrite and await self._exists(key):
            raise ConflictError("File already exists", backend=self.name, details={'path': key})
        await self._upload(key, file, options)
        logger.info(f"Uploaded {key} ({len(file.content)} bytes) to {self.name}")
        return self.locator(key)

    @recorded("download")
    async def download(self, path: str, options: Optional[DownloadOptions] = None) -> bytes:
        options = options or DownloadOptions()
        key = self.key_for(path)
        content, stored_checksum = await self._download(key)
        if options.verify_integrity:
            expected = stored_checksum or options.expected_checksum
            if expected and compute_checksum(content) != expected:
                raise IntegrityError(
                    "File integrity check failed", backend=self.name,
                    details={'path': key, 'expected': expected}
                )
        return content

    @recorded("delete")
    async def delete(self, path: str) -> bool:
        key = self.key_for(path)
        if not await self._exists(key):
            raise NotFoundError("File not found", backend=self.name, details={'path': key})
        await self._delete(key)
        return True

    @recorded("exists")
    async def exists(self, path: str) -> bool:
        return await self._exists(self.key_for(path))

    @recorded("list")
    async def list_files(self, prefix: Optional[str] = None) -> List[FileInfo]:
        prefix_key = split_locator(prefix)[2].lstrip('/') if prefix else ""
        return await self._list(prefix_key)

    @recorded("copy")
    async def copy_file(self, source_path: str, destination_path: str) -> bool:
        await self._copy_checked(self.key_for(source_path), self.key_for(destination_path))
        return True

    @recorded("move")
    async def move_file(self, source_path: str, destination_path: str) -> bool:
        source = self.key_for(source_path)
        destination = self.key_for(destination_path)
        await self._copy_checked(source, destination)
        try:
            await self._delete(source)
        except Exception as e:
            error = self.translate_error(e)
            logger.warning(
                f"Copied {source} to {destination} on {self.name} but could not remove the source, "
                f"cleanup pending: {error.message}"
            )
            raise StorageError(
                f"Delete source failed: {error.message}", kind=error.kind, backend=self.name,
                details={'destination': self.locator(destination), 'cleanup_pending': True}
            ) from e
        return True

    @recorded("info")
    async def get_file_info(self, path: str) -> FileInfo:
        return await self._info(self.key_for(path))

    @recorded("stats")
    async def get_storage_stats(self) -> StorageStats:
        listing = await self._list("")
        files = [f for f in listing if not f.is_directory]
        used = sum(f.size for f in files)
        available, total = await self._capacity()
        return StorageStats(
            storage_type=self.storage_type,
            used_capacity=used,
            total_files=len(files),
            total_directories=len(listing) - len(files),
            average_file_size=used / len(files) if files else 0.0,
            largest_file_size=max((f.size for f in files), default=0),
            total_capacity=total,
            available_capacity=available,
        )

    @recorded("create_directory")
    async def create_directory(self, path: str) -> bool:
        key = self.key_for(path).rstrip('/') + '/'
        if await self._exists(key):
            raise ConflictError("Directory already exists", backend=self.name, details={'path': key})
        await self._create_directory(key)
        return True

    @recorded("download_url")
    async def generate_download_url(self, path: str, expiry_seconds: int = 3600) -> str:
        if expiry_seconds <= 0:
            raise ValidationError("Expiry must be a positive number of seconds", backend=self.name)
        return await self._presign(self.key_for(path), expiry_seconds)

    @recorded("health")
    async def get_health(self) -> StorageHealth:
        """Write, read back and delete a uniquely named probe object.

        The probe object is removed even when a later leg fails or the probe
        is cancelled.
        """
        started = time.perf_counter()
        key = f"health-check-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
        probe = FileInfo(name=key, path=key, content=HEALTH_PROBE_CONTENT, mime_type='text/plain')
        cleaned_up = False
        try:
            await self._upload(key, probe, UploadOptions())
            content, _ = await self._download(key)
            if content != HEALTH_PROBE_CONTENT:
                raise IntegrityError("probe content mismatch", backend=self.name)
            await self._delete(key)
            cleaned_up = True
        except Exception as e:
            raise TransientError(
                f"{self.label} health check failed: {self.translate_error(e).message}",
                backend=self.name
            ) from e
        finally:
            if not cleaned_up:
                await self._discard_probe(key)

        response_time_ms = (time.perf_counter() - started) * 1000
        success_rate = self.recorder.availability()
        available, total = await self._capacity()
        return StorageHealth(
            status=HealthStatus.HEALTHY if success_rate >= HEALTHY_SUCCESS_RATE else HealthStatus.DEGRADED,
            response_time_ms=response_time_ms,
            success_rate=success_rate,
            metrics=self.health_metrics(),
            available_capacity=available,
            total_capacity=total,
        )

    async def _discard_probe(self, key: str):
        try:
            await self._delete(key)
        except Exception as e:
            logger.warning(f"Could not remove health probe {key} from {self.name}: {str(e)}")

    async def _copy_checked(self, source: str, destination: str):
        if not await self._exists(source):
            raise NotFoundError("Source file not found", backend=self.name, details={'path': source})
        try:
            await self._copy(source, destination)
        except Exception as e:
            error = self.translate_error(e)
            raise StorageError(f"Copy failed: {error.message}", kind=error.kind, backend=self.name) from e

    # Backend hooks

    @abstractmethod
    async def _upload(self, key: str, file: FileInfo, options: UploadOptions):
        """Store the file content under key."""
        pass

    @abstractmethod
    async def _download(self, key: str) -> Tuple[bytes, Optional[str]]:
        """Return the content and the checksum stored with it, if any."""
        pass

    @abstractmethod
    async def _exists(self, key: str) -> bool:
        """Check whether an object or directory marker exists."""
        pass

    @abstractmethod
    async def _delete(self, key: str):
        """Remove an object or empty directory."""
        pass

    @abstractmethod
    async def _list(self, prefix: str) -> List[FileInfo]:
        """List objects under prefix without their content."""
        pass

    @abstractmethod
    async def _info(self, key: str) -> FileInfo:
        """Get object metadata."""
        pass

    @abstractmethod
    async def _copy(self, source: str, destination: str):
        """Copy an object within the backend."""
        pass

    @abstractmethod
    async def _create_directory(self, key: str):
        """Create a directory marker."""
        pass

    async def _presign(self, key: str, expiry_seconds: int) -> str:
        """Generate a time-limited download URL."""
        raise UnsupportedOperationError(
            f"{self.label} does not support download URLs", backend=self.name
        )

    async def _capacity(self) -> Tuple[int, int]:
        """(available, total) bytes, -1 when unknown."""
        return -1, -1

    def health_metrics(self) -> Dict[str, Any]:
        return {}
