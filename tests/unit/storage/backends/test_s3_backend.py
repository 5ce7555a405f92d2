"""Unit tests for the S3 backend against a moto-mocked S3."""
import threading
import unittest
from unittest.mock import MagicMock, patch

import boto3
from botocore.exceptions import ClientError
from moto import mock_aws

from docstore.backends.s3_backend import S3StorageBackend
from docstore.errors import ErrorKind
from docstore.metrics.recorder import InMemoryMetricsSink
from docstore.resilience.backoff import RetryPolicy
from docstore.resilience.retry import RetryExecutor
from docstore.types import DownloadOptions, HealthStatus, UploadOptions

from support import MB, make_file

BUCKET = 'test-bucket'


def client_error(code, message, operation):
    return ClientError({'Error': {'Code': code, 'Message': message}}, operation)


class TestS3StorageBackend(unittest.IsolatedAsyncioTestCase):
    """Test cases for the S3 backend"""

    def setUp(self):
        """Set up a mocked bucket with fake credentials"""
        self.mock_env = {
            'AWS_ACCESS_KEY_ID': 'testing',
            'AWS_SECRET_ACCESS_KEY': 'testing',
            'AWS_SECURITY_TOKEN': 'testing',
            'AWS_SESSION_TOKEN': 'testing',
            'AWS_DEFAULT_REGION': 'us-east-1',
        }
        self.patcher = patch.dict('os.environ', self.mock_env)
        self.patcher.start()
        self.addCleanup(self.patcher.stop)

        self.aws = mock_aws()
        self.aws.start()
        self.addCleanup(self.aws.stop)

        self.s3_client = boto3.client('s3', region_name='us-east-1')
        self.s3_client.create_bucket(Bucket=BUCKET)
        self.sink = InMemoryMetricsSink()
        self.backend = S3StorageBackend(bucket=BUCKET, client=self.s3_client)
        self.backend.bind_metrics(self.sink)

    def pending_uploads(self):
        return self.s3_client.list_multipart_uploads(Bucket=BUCKET).get('Uploads', [])

    async def test_report_pdf_round_trip(self):
        """Test upload, download, delete and exists of a 3MB PDF"""
        report = make_file(name='report.pdf', size=3 * MB, mime_type='application/pdf')

        uploaded = await self.backend.upload(report)
        self.assertTrue(uploaded.ok)
        self.assertEqual(uploaded.value, f's3://{BUCKET}/report.pdf')

        downloaded = await self.backend.download(uploaded.value)
        self.assertTrue(downloaded.ok)
        self.assertEqual(downloaded.value, report.content)

        self.assertTrue((await self.backend.delete(uploaded.value)).ok)

        exists = await self.backend.exists(uploaded.value)
        self.assertTrue(exists.ok)
        self.assertIs(exists.value, False)

    async def test_exists_false_for_never_created_key(self):
        """Test exists on a key that was never written"""
        result = await self.backend.exists('never/created.txt')

        self.assertTrue(result.ok)
        self.assertIs(result.value, False)

    async def test_large_payload_uses_multipart_upload(self):
        """Test a 12MB payload is sent as three ordered parts"""
        payload = make_file(name='scan.tiff', size=12 * MB, mime_type='image/tiff')

        with patch.object(self.s3_client, 'upload_part', wraps=self.s3_client.upload_part) as upload_part, \
                patch.object(self.s3_client, 'put_object', wraps=self.s3_client.put_object) as put_object:
            uploaded = await self.backend.upload(payload)

        self.assertTrue(uploaded.ok)
        self.assertEqual(upload_part.call_count, 3)
        self.assertEqual([c.kwargs['PartNumber'] for c in upload_part.call_args_list], [1, 2, 3])
        put_object.assert_not_called()

        downloaded = await self.backend.download('scan.tiff')
        self.assertEqual(downloaded.value, payload.content)

    async def test_failed_part_aborts_multipart_session(self):
        """Test a failed part aborts the session and surfaces the part error"""
        payload = make_file(name='scan.tiff', size=12 * MB, mime_type='image/tiff')
        real_upload_part = self.s3_client.upload_part

        def flaky_upload_part(**kwargs):
            if kwargs['PartNumber'] == 2:
                raise client_error('InternalError', 'connection reset', 'UploadPart')
            return real_upload_part(**kwargs)

        with patch.object(self.s3_client, 'upload_part', side_effect=flaky_upload_part), \
                patch.object(self.s3_client, 'abort_multipart_upload',
                             wraps=self.s3_client.abort_multipart_upload) as abort:
            uploaded = await self.backend.upload(payload)

        self.assertFalse(uploaded.ok)
        self.assertEqual(uploaded.kind, ErrorKind.TRANSIENT)
        self.assertIn('connection reset', uploaded.error.message)
        abort.assert_called_once()
        self.assertEqual(self.pending_uploads(), [])
        self.assertIs((await self.backend.exists('scan.tiff')).value, False)

    async def test_attempt_timeout_aborts_multipart_session(self):
        """Test a multipart upload abandoned at its deadline is aborted"""
        payload = make_file(name='scan.tiff', size=12 * MB, mime_type='image/tiff')
        real_upload_part = self.s3_client.upload_part
        release = threading.Event()
        self.addCleanup(release.set)

        def stalled_upload_part(**kwargs):
            if kwargs['PartNumber'] == 2:
                release.wait(5)
                raise client_error('RequestTimeout', 'stalled', 'UploadPart')
            return real_upload_part(**kwargs)

        executor = RetryExecutor('s3', RetryPolicy(max_attempts=1, attempt_timeout=1.0, total_timeout=10.0))
        with patch.object(self.s3_client, 'upload_part', side_effect=stalled_upload_part), \
                patch.object(self.s3_client, 'abort_multipart_upload',
                             wraps=self.s3_client.abort_multipart_upload) as abort:
            result = await executor.execute(lambda: self.backend.upload(payload), 'upload')
        release.set()

        self.assertEqual(result.kind, ErrorKind.TRANSIENT)
        self.assertIn('timed out', result.error.message)
        abort.assert_called_once()
        self.assertEqual(self.pending_uploads(), [])
        outcomes = self.sink.get_outcomes('upload')
        self.assertEqual(len(outcomes), 1)
        self.assertEqual(outcomes[0].error_kind, ErrorKind.TRANSIENT)

    async def test_oversized_payload_is_rejected_without_sdk_calls(self):
        """Test a payload over the size limit never reaches the SDK"""
        client = MagicMock()
        backend = S3StorageBackend(bucket=BUCKET, client=client, max_file_size=1 * MB)
        backend.bind_metrics(self.sink)

        result = await backend.upload(make_file(size=2 * MB))

        self.assertEqual(result.kind, ErrorKind.VALIDATION)
        self.assertEqual(client.method_calls, [])
        outcomes = self.sink.get_outcomes('upload')
        self.assertEqual(len(outcomes), 1)
        self.assertEqual(outcomes[0].error_kind, ErrorKind.VALIDATION)

    async def test_disallowed_mime_type_is_rejected(self):
        """Test the MIME allow-list with a type wildcard"""
        backend = S3StorageBackend(bucket=BUCKET, client=self.s3_client, allowed_mime_types=['image/*'])

        rejected = await backend.upload(make_file(name='report.pdf', mime_type='application/pdf'))
        accepted = await backend.upload(make_file(name='photo.png', mime_type='image/png'))

        self.assertEqual(rejected.kind, ErrorKind.VALIDATION)
        self.assertIn('application/pdf', rejected.error.message)
        self.assertTrue(accepted.ok)

    async def test_checksum_mismatch_fails_integrity_check(self):
        """Test integrity verification against the stored checksum"""
        await self.backend.upload(make_file(), UploadOptions(generate_checksum=True))

        verified = await self.backend.download('report.pdf', DownloadOptions(verify_integrity=True))
        self.assertTrue(verified.ok)

        self.s3_client.put_object(Bucket=BUCKET, Key='report.pdf', Body=b'tampered',
                                  Metadata={'checksum_sha256': 'not-the-real-checksum'})
        tampered = await self.backend.download('report.pdf', DownloadOptions(verify_integrity=True))

        self.assertEqual(tampered.kind, ErrorKind.INTEGRITY)
        self.assertEqual(tampered.error.message, 'File integrity check failed')

    async def test_missing_objects_report_not_found(self):
        """Test download, delete and info of a missing key"""
        downloaded = await self.backend.download('missing.pdf')
        deleted = await self.backend.delete('missing.pdf')
        info = await self.backend.get_file_info('missing.pdf')

        for result in (downloaded, deleted, info):
            self.assertEqual(result.kind, ErrorKind.NOT_FOUND)
        self.assertEqual(deleted.error.message, 'File not found')

    async def test_missing_bucket_is_a_configuration_error(self):
        """Test a bucket that does not exist is not mistaken for a missing file"""
        backend = S3StorageBackend(bucket='no-such-bucket', client=self.s3_client)

        result = await backend.download('report.pdf')

        self.assertEqual(result.kind, ErrorKind.CONFIGURATION)
        self.assertIn('no-such-bucket', result.error.message)
        self.assertFalse(result.kind.retryable)

    async def test_empty_path_is_a_validation_error(self):
        """Test an empty path is rejected"""
        result = await self.backend.download('')

        self.assertEqual(result.kind, ErrorKind.VALIDATION)
        self.assertEqual(result.error.message, 'File path is required')

    async def test_list_info_and_stats(self):
        """Test listing by prefix, file info and bucket statistics"""
        await self.backend.upload(make_file(name='a.pdf', path='docs/a.pdf', size=100))
        await self.backend.upload(make_file(name='b.pdf', path='docs/b.pdf', size=300))
        await self.backend.upload(make_file(name='c.pdf', path='other/c.pdf', size=200))

        listed = await self.backend.list_files('docs/')
        self.assertTrue(listed.ok)
        self.assertEqual(sorted(f.name for f in listed.value), ['a.pdf', 'b.pdf'])
        self.assertTrue(all(f.content == b'' for f in listed.value))

        info = await self.backend.get_file_info(f's3://{BUCKET}/docs/b.pdf')
        self.assertEqual(info.value.size, 300)
        self.assertEqual(info.value.mime_type, 'application/pdf')

        stats = await self.backend.get_storage_stats()
        self.assertEqual(stats.value.total_files, 3)
        self.assertEqual(stats.value.used_capacity, 600)
        self.assertEqual(stats.value.largest_file_size, 300)
        self.assertEqual(stats.value.average_file_size, 200)
        self.assertEqual(stats.value.total_capacity, -1)
        self.assertEqual(stats.value.storage_type, 's3')

    async def test_copy_and_move(self):
        """Test copy, move and copy of a missing source"""
        report = make_file()
        await self.backend.upload(report)

        copied = await self.backend.copy_file('report.pdf', 'archive/report.pdf')
        moved = await self.backend.move_file('archive/report.pdf', 'final/report.pdf')

        self.assertTrue(copied.ok and moved.ok)
        self.assertIs((await self.backend.exists('archive/report.pdf')).value, False)
        self.assertEqual((await self.backend.download('final/report.pdf')).value, report.content)

        missing = await self.backend.copy_file('nope.pdf', 'other.pdf')
        self.assertEqual(missing.kind, ErrorKind.NOT_FOUND)
        self.assertEqual(missing.error.message, 'Source file not found')

    async def test_create_directory_marker(self):
        """Test directory markers and duplicate detection"""
        created = await self.backend.create_directory('invoices')
        duplicate = await self.backend.create_directory('invoices/')

        self.assertTrue(created.ok)
        self.assertEqual(duplicate.kind, ErrorKind.CONFLICT)
        self.assertEqual(duplicate.error.message, 'Directory already exists')
        head = self.s3_client.head_object(Bucket=BUCKET, Key='invoices/')
        self.assertEqual(head['ContentType'], 'application/x-directory')

    async def test_generate_download_url(self):
        """Test presigned download URLs"""
        await self.backend.upload(make_file())

        url = await self.backend.generate_download_url('report.pdf', expiry_seconds=600)

        self.assertTrue(url.ok)
        self.assertIn(BUCKET, url.value)
        self.assertIn('report.pdf', url.value)
        self.assertIn('Expires', url.value)

    async def test_health_probe_cleans_up(self):
        """Test a healthy probe leaves the bucket empty"""
        health = await self.backend.get_health()

        self.assertTrue(health.ok)
        self.assertEqual(health.value.status, HealthStatus.HEALTHY)
        self.assertEqual(health.value.metrics['bucket'], BUCKET)
        self.assertEqual(self.s3_client.list_objects_v2(Bucket=BUCKET).get('KeyCount', 0), 0)

    async def test_failed_probe_download_still_removes_probe(self):
        """Test the probe object is deleted when reading it back fails"""
        with patch.object(self.s3_client, 'get_object',
                          side_effect=client_error('InternalError', 'read failed', 'GetObject')):
            health = await self.backend.get_health()

        self.assertFalse(health.ok)
        self.assertIn('read failed', health.error.message)
        self.assertEqual(self.s3_client.list_objects_v2(Bucket=BUCKET).get('KeyCount', 0), 0)

    async def test_health_failure_names_backend(self):
        """Test a failed probe names the backend in its message"""
        client = MagicMock()
        client.put_object.side_effect = client_error('ServiceUnavailable', 'slow down', 'PutObject')
        backend = S3StorageBackend(bucket=BUCKET, client=client)

        health = await backend.get_health()

        self.assertFalse(health.ok)
        self.assertTrue(health.error.message.startswith('S3 health check failed:'))
        self.assertIn('slow down', health.error.message)

    def test_access_denied_is_not_retryable(self):
        """Test access denied maps to a configuration error"""
        error = self.backend.translate_error(client_error('AccessDenied', 'denied', 'GetObject'))

        self.assertEqual(error.kind, ErrorKind.CONFIGURATION)
        self.assertFalse(error.kind.retryable)


if __name__ == '__main__':
    unittest.main()
