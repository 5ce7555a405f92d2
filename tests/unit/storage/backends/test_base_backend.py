"""Unit tests for behaviour shared by every storage backend."""
import asyncio
import unittest

from docstore.errors import ErrorKind, TransientError
from docstore.metrics.recorder import InMemoryMetricsSink
from docstore.types import HealthStatus

from support import MemoryBackend, make_file


class TestStorageBackendContract(unittest.IsolatedAsyncioTestCase):
    """Test cases for the recorded contract methods"""

    def setUp(self):
        """Set up a sink to inspect outcomes"""
        self.sink = InMemoryMetricsSink()

    def make_backend(self, **kwargs):
        backend = MemoryBackend('memory', **kwargs)
        backend.bind_metrics(self.sink)
        return backend

    async def test_move_with_failed_source_delete_keeps_copy(self):
        """Test a move whose source delete fails reports cleanup pending and keeps both files"""
        backend = self.make_backend(failures={'delete': TransientError("disk busy")})
        report = make_file()
        await backend.upload(report)

        result = await backend.move_file('report.pdf', 'final/report.pdf')

        self.assertFalse(result.ok)
        self.assertEqual(result.kind, ErrorKind.TRANSIENT)
        self.assertIn('disk busy', result.error.message)
        self.assertIs(result.error.details['cleanup_pending'], True)
        self.assertEqual(result.error.details['destination'], 'memory://memory/final/report.pdf')
        self.assertEqual(backend.objects['final/report.pdf'].content, report.content)
        self.assertIn('report.pdf', backend.objects)

    async def test_cancelled_call_records_one_outcome(self):
        """Test a call cut off by a deadline still records a transient outcome"""
        backend = self.make_backend(delays={'download': 1.0})

        with self.assertRaises(asyncio.TimeoutError):
            await asyncio.wait_for(backend.download('report.pdf'), timeout=0.05)

        outcomes = self.sink.get_outcomes('download', 'memory')
        self.assertEqual(len(outcomes), 1)
        self.assertFalse(outcomes[0].success)
        self.assertEqual(outcomes[0].error_kind, ErrorKind.TRANSIENT)

    async def test_missing_files_do_not_degrade_health(self):
        """Test lookups of missing files leave a working backend healthy"""
        backend = self.make_backend()
        for _ in range(20):
            await backend.download('missing.pdf')

        health = await backend.get_health()

        self.assertEqual(health.value.status, HealthStatus.HEALTHY)
        self.assertEqual(health.value.success_rate, 100.0)

    async def test_backend_faults_degrade_health(self):
        """Test transient failures lower the health success rate"""
        backend = self.make_backend(failures={'info': TransientError("connection reset")})
        for _ in range(10):
            await backend.get_file_info('report.pdf')

        health = await backend.get_health()

        self.assertEqual(health.value.status, HealthStatus.DEGRADED)
        self.assertEqual(health.value.success_rate, 0.0)

    async def test_failed_probe_read_removes_probe_object(self):
        """Test the probe object is deleted when reading it back fails"""
        backend = self.make_backend(failures={'download': TransientError("read failed")})

        health = await backend.get_health()

        self.assertFalse(health.ok)
        self.assertIn('read failed', health.error.message)
        self.assertEqual(backend.objects, {})
        self.assertEqual(backend.calls, ['upload', 'download', 'delete'])

    async def test_cancelled_probe_removes_probe_object(self):
        """Test a probe cut off by its timeout still removes the probe object"""
        backend = self.make_backend(delays={'download': 1.0})

        with self.assertRaises(asyncio.TimeoutError):
            await asyncio.wait_for(backend.get_health(), timeout=0.05)

        self.assertEqual(backend.objects, {})
        self.assertEqual(len(self.sink.get_outcomes('health', 'memory')), 1)


if __name__ == '__main__':
    unittest.main()
