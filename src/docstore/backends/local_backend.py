"""
Local filesystem storage backend implementation.
"""

from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
import json
import logging
import os
import shutil
import tempfile

from ..errors import (
    ConfigurationError,
    ConflictError,
    InsufficientStorageError,
    NotFoundError,
    StorageError,
    TransientError,
    ValidationError,
)
from ..types import DIRECTORY_MIME_TYPE, FileInfo, UploadOptions
from .base import CHECKSUM_METADATA_KEY, DEFAULT_MAX_FILE_SIZE, StorageBackend, detect_mime_type

logger = logging.getLogger(__name__)

METADATA_DIR = '.metadata'
TEMP_PREFIX = '.tmp-'
DEFAULT_MAX_CAPACITY = 1024 * 1024 * 1024  # 1GB


def atomic_write(path: Path, data: bytes):
    """Write to a temp file next to ``path`` and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=TEMP_PREFIX)
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except Exception:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


class LocalStorageBackend(StorageBackend):
    """Stores payloads under a root directory with JSON sidecar metadata"""

    scheme = "local"
    storage_type = "local"
    label = "Local storage"

    def __init__(self, root_path: str = './uploads', max_capacity: int = DEFAULT_MAX_CAPACITY,
                 name: str = 'local', max_file_size: int = DEFAULT_MAX_FILE_SIZE,
                 allowed_mime_types: Optional[Sequence[str]] = None):
        super().__init__(name, max_file_size=max_file_size, allowed_mime_types=allowed_mime_types)
        self.root = Path(root_path).resolve()
        self.metadata_root = self.root / METADATA_DIR
        self.max_capacity = max_capacity
        try:
            self.metadata_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(
                f"Cannot create local storage directory {self.root}: {str(e)}", backend=name
            ) from e
        logger.info(f"Local backend {name} storing files under {self.root}")

    @property
    def container(self) -> str:
        return self.root.name or 'local'

    def translate_error(self, exc: Exception) -> StorageError:
        if isinstance(exc, (FileNotFoundError, IsADirectoryError, NotADirectoryError)):
            return NotFoundError("File not found", backend=self.name)
        if isinstance(exc, FileExistsError):
            return ConflictError("Path already exists", backend=self.name)
        if isinstance(exc, PermissionError):
            return ConfigurationError(f"Local storage access denied: {str(exc)}", backend=self.name)
        if isinstance(exc, OSError):
            return TransientError(f"Local storage error: {str(exc)}", backend=self.name)
        return super().translate_error(exc)

    def _path(self, key: str) -> Path:
        relative = key.rstrip('/')
        parts = PurePosixPath(relative).parts
        if not parts or parts[0] == METADATA_DIR or '..' in parts:
            raise ValidationError(f"Invalid path: {key}", backend=self.name)
        path = (self.root / relative).resolve()
        if self.root not in path.parents:
            raise ValidationError(f"Path escapes storage root: {key}", backend=self.name)
        return path

    def _metadata_path(self, key: str) -> Path:
        return self.metadata_root / f"{key.rstrip('/')}.json"

    def _read_metadata(self, key: str) -> Dict[str, Any]:
        try:
            return json.loads(self._metadata_path(key).read_text())
        except FileNotFoundError:
            return {}
        except ValueError as e:
            logger.warning(f"Ignoring unreadable metadata for {key}: {str(e)}")
            return {}

    def _iter_entries(self) -> Iterator[Tuple[Path, bool]]:
        """Yield (path, is_directory) for everything stored under the root."""
        for dirpath, dirnames, filenames in os.walk(self.root):
            current = Path(dirpath)
            if current == self.root:
                dirnames[:] = [d for d in dirnames if d != METADATA_DIR]
            for dirname in dirnames:
                yield current / dirname, True
            for filename in filenames:
                if not filename.startswith(TEMP_PREFIX):
                    yield current / filename, False

    def _used_bytes(self) -> int:
        return sum(path.stat().st_size for path, is_dir in self._iter_entries() if not is_dir)

    def _key(self, path: Path, is_directory: bool) -> str:
        key = path.relative_to(self.root).as_posix()
        return f"{key}/" if is_directory else key

    def _file_info(self, path: Path, key: str, is_directory: bool) -> FileInfo:
        stat = path.stat()
        record = {} if is_directory else self._read_metadata(key)
        metadata = record.get('metadata', {})
        created_at = record.get('created_at')
        return FileInfo(
            name=path.name,
            path=self.locator(key),
            mime_type=DIRECTORY_MIME_TYPE if is_directory else record.get('mime_type', detect_mime_type(key)),
            size=0 if is_directory else stat.st_size,
            modified_at=datetime.fromtimestamp(stat.st_mtime),
            created_at=datetime.fromisoformat(created_at) if created_at else None,
            checksum=metadata.get(CHECKSUM_METADATA_KEY),
            metadata=metadata,
            is_directory=is_directory
        )

    def _write(self, key: str, content: bytes, mime_type: str, metadata: Dict[str, str]):
        path = self._path(key)
        existing_size = path.stat().st_size if path.is_file() else 0
        if self._used_bytes() - existing_size + len(content) > self.max_capacity:
            raise InsufficientStorageError(
                f"Local storage capacity of {self.max_capacity} bytes exceeded", backend=self.name
            )

        previous = self._read_metadata(key)
        atomic_write(path, content)
        record = {
            'mime_type': mime_type,
            'size': len(content),
            'metadata': metadata,
            'created_at': previous.get('created_at') or datetime.now().isoformat(),
        }
        atomic_write(self._metadata_path(key), json.dumps(record).encode())

    async def _upload(self, key: str, file: FileInfo, options: UploadOptions):
        """Write a file atomically with its metadata sidecar"""
        await self._run_blocking(
            self._write, key, file.content, file.mime_type, self.build_metadata(file, options)
        )

    def _read(self, key: str) -> Tuple[bytes, Optional[str]]:
        content = self._path(key).read_bytes()
        metadata = self._read_metadata(key).get('metadata', {})
        return content, metadata.get(CHECKSUM_METADATA_KEY)

    async def _download(self, key: str) -> Tuple[bytes, Optional[str]]:
        """Read a file with its stored checksum"""
        return await self._run_blocking(self._read, key)

    def _check_exists(self, key: str) -> bool:
        path = self._path(key)
        return path.is_dir() if key.endswith('/') else path.is_file()

    async def _exists(self, key: str) -> bool:
        """Check whether a file or directory exists under the root"""
        return await self._run_blocking(self._check_exists, key)

    def _remove(self, key: str):
        path = self._path(key)
        if key.endswith('/'):
            try:
                path.rmdir()
            except OSError as e:
                if path.is_dir() and any(path.iterdir()):
                    raise ConflictError("Directory is not empty", backend=self.name) from e
                raise
            return
        path.unlink()
        self._metadata_path(key).unlink(missing_ok=True)

    async def _delete(self, key: str):
        """Remove a file and its sidecar, or an empty directory"""
        await self._run_blocking(self._remove, key)

    def _list_entries(self, prefix: str) -> List[FileInfo]:
        files = []
        for path, is_directory in self._iter_entries():
            key = self._key(path, is_directory)
            if key.startswith(prefix):
                files.append(self._file_info(path, key, is_directory))
        return sorted(files, key=lambda f: f.path)

    async def _list(self, prefix: str) -> List[FileInfo]:
        """List files and directories under a prefix"""
        return await self._run_blocking(self._list_entries, prefix)

    def _stat_key(self, key: str) -> FileInfo:
        path = self._path(key)
        is_directory = path.is_dir()
        if not is_directory and not path.is_file():
            raise NotFoundError("File not found", backend=self.name, details={'path': key})
        return self._file_info(path, self._key(path, is_directory), is_directory)

    async def _info(self, key: str) -> FileInfo:
        """Get file metadata from disk and the sidecar"""
        return await self._run_blocking(self._stat_key, key)

    def _copy_file(self, source: str, destination: str):
        content = self._path(source).read_bytes()
        record = self._read_metadata(source)
        self._write(
            destination, content,
            record.get('mime_type', detect_mime_type(source)),
            record.get('metadata', {})
        )

    async def _copy(self, source: str, destination: str):
        """Copy a file with its metadata"""
        await self._run_blocking(self._copy_file, source, destination)

    async def _create_directory(self, key: str):
        """Create a directory under the root"""
        await self._run_blocking(self._path(key).mkdir, parents=True, exist_ok=False)

    def _disk_capacity(self) -> Tuple[int, int]:
        free = shutil.disk_usage(self.root).free
        available = min(self.max_capacity - self._used_bytes(), free)
        return max(0, available), self.max_capacity

    async def _capacity(self) -> Tuple[int, int]:
        return await self._run_blocking(self._disk_capacity)

    def health_metrics(self) -> Dict[str, Any]:
        return {
            'root_path': str(self.root),
            'max_capacity': self.max_capacity,
        }
