"""Test utilities and an in-memory storage backend."""
import asyncio
import os

from docstore.backends.base import StorageBackend
from docstore.config import BackendConfig, BackendKind, HealthCheckPolicy
from docstore.errors import NotFoundError
from docstore.resilience.backoff import RetryPolicy
from docstore.resilience.circuit_breaker import CircuitBreakerPolicy
from docstore.types import FileInfo

KB = 1024
MB = 1024 * KB

FAST_RETRY = RetryPolicy(
    max_attempts=2,
    base_delay=0.001,
    max_backoff=0.01,
    jitter_factor=0.0,
    attempt_timeout=1.0,
    total_timeout=5.0
)


class MemoryBackend(StorageBackend):
    """Dict-backed backend that can be told to fail or stall.

    ``fail_with`` fails every hook; ``failures`` and ``delays`` map a hook
    name (``upload``, ``delete`` ...) to an exception or a sleep in seconds.
    """

    scheme = "memory"
    storage_type = "memory"
    label = "Memory"

    def __init__(self, name='memory', fail_with=None, failures=None, delays=None, **kwargs):
        super().__init__(name, **kwargs)
        self.objects = {}
        self.fail_with = fail_with
        self.failures = dict(failures or {})
        self.delays = dict(delays or {})
        self.calls = []

    @property
    def container(self):
        return self.name

    async def _touch(self, operation):
        self.calls.append(operation)
        if operation in self.delays:
            await asyncio.sleep(self.delays[operation])
        if self.fail_with is not None:
            raise self.fail_with
        if operation in self.failures:
            raise self.failures[operation]

    async def _upload(self, key, file, options):
        await self._touch('upload')
        self.objects[key] = FileInfo(
            name=file.name,
            path=self.locator(key),
            content=file.content,
            mime_type=file.mime_type,
            metadata=self.build_metadata(file, options)
        )

    async def _download(self, key):
        await self._touch('download')
        if key not in self.objects:
            raise NotFoundError("File not found", backend=self.name)
        stored = self.objects[key]
        return stored.content, stored.metadata.get('checksum_sha256')

    async def _exists(self, key):
        await self._touch('exists')
        return key in self.objects

    async def _delete(self, key):
        await self._touch('delete')
        self.objects.pop(key, None)

    async def _list(self, prefix):
        await self._touch('list')
        return [
            FileInfo(name=f.name, path=f.path, mime_type=f.mime_type, size=f.size,
                     is_directory=key.endswith('/'))
            for key, f in self.objects.items() if key.startswith(prefix)
        ]

    async def _info(self, key):
        await self._touch('info')
        if key not in self.objects:
            raise NotFoundError("File not found", backend=self.name)
        stored = self.objects[key]
        return FileInfo(name=stored.name, path=stored.path, mime_type=stored.mime_type, size=stored.size)

    async def _copy(self, source, destination):
        await self._touch('copy')
        stored = self.objects[source]
        self.objects[destination] = FileInfo(
            name=stored.name, path=self.locator(destination), content=stored.content,
            mime_type=stored.mime_type, metadata=dict(stored.metadata)
        )

    async def _create_directory(self, key):
        await self._touch('create_directory')
        self.objects[key] = FileInfo(name=key, path=self.locator(key), is_directory=True)


def make_config(backend_id, priority, allow_fallback=True, retry=FAST_RETRY,
                failure_threshold=5, recovery_timeout=30.0, health_interval=30.0,
                health_timeout=1.0, health_failure_threshold=1, enabled=True):
    """Create a backend configuration with fast retries."""
    return BackendConfig(
        id=backend_id,
        name=backend_id.title(),
        kind=BackendKind.LOCAL,
        enabled=enabled,
        priority=priority,
        allow_fallback=allow_fallback,
        health_check=HealthCheckPolicy(
            interval=health_interval,
            timeout=health_timeout,
            failure_threshold=health_failure_threshold
        ),
        retry=retry,
        circuit_breaker=CircuitBreakerPolicy(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout
        )
    )


def make_file(name='report.pdf', size=1024, mime_type='application/pdf', path=''):
    """Create a payload of random bytes."""
    return FileInfo(name=name, path=path, content=os.urandom(size), mime_type=mime_type)
