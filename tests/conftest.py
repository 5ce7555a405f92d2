"""Global test configuration and fixtures."""
import pytest

from support import MemoryBackend, make_config, make_file


@pytest.fixture
def memory_backend():
    """Factory for in-memory backends."""
    def make(name='memory', **kwargs):
        return MemoryBackend(name=name, **kwargs)
    return make


@pytest.fixture
def backend_config():
    """Factory for backend configurations with fast retries."""
    return make_config


@pytest.fixture
def sample_file():
    """Factory for payloads of a given size."""
    return make_file
