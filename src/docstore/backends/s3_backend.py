"""
AWS S3 storage backend implementation.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple
import asyncio
import logging
import os

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import ConfigurationError, NotFoundError, StorageError, TransientError
from ..types import DIRECTORY_MIME_TYPE, FileInfo, UploadOptions
from .base import (
    CHECKSUM_METADATA_KEY,
    CHUNK_SIZE,
    CHUNK_THRESHOLD,
    DEFAULT_MAX_FILE_SIZE,
    StorageBackend,
    detect_mime_type,
    iter_chunks,
)

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = ('NoSuchKey', 'NotFound', '404')
_ACCESS_DENIED_CODES = ('AccessDenied', '403', 'InvalidAccessKeyId', 'SignatureDoesNotMatch')


class S3StorageBackend(StorageBackend):
    """S3 (or S3-compatible) storage backend"""

    scheme = "s3"
    storage_type = "s3"
    label = "S3"

    def __init__(self, bucket: str, region: str = 'us-east-1',
                 access_key_id: Optional[str] = None, secret_access_key: Optional[str] = None,
                 endpoint: Optional[str] = None, force_path_style: bool = False,
                 timeout: float = 30.0, client: Any = None, name: str = 's3',
                 max_file_size: int = DEFAULT_MAX_FILE_SIZE,
                 allowed_mime_types: Optional[Sequence[str]] = None):
        super().__init__(name, max_file_size=max_file_size, allowed_mime_types=allowed_mime_types)
        if not bucket:
            raise ConfigurationError("S3 bucket name is required", backend=name)
        self.bucket = bucket
        self.region = region
        self.endpoint = endpoint
        self.force_path_style = force_path_style
        self.timeout = timeout
        self.s3 = client or self._create_client(access_key_id, secret_access_key)
        logger.info(f"S3 backend {name} using bucket {bucket} in {region}"
                    + (f" via {endpoint}" if endpoint else ""))

    def _create_client(self, access_key_id: Optional[str], secret_access_key: Optional[str]):
        """Create an S3 client; SDK-level retries are off, RetryExecutor owns them"""
        config = Config(
            signature_version='s3v4',
            retries={'total_max_attempts': 1, 'mode': 'standard'},
            connect_timeout=self.timeout,
            read_timeout=self.timeout,
            s3={'addressing_style': 'path' if self.force_path_style else 'auto'}
        )
        return boto3.client(
            's3',
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name=self.region,
            endpoint_url=self.endpoint,
            config=config
        )

    @property
    def container(self) -> str:
        return self.bucket

    def translate_error(self, exc: Exception) -> StorageError:
        if isinstance(exc, ClientError):
            error = exc.response.get('Error', {})
            code = str(error.get('Code', ''))
            message = error.get('Message') or str(exc)
            status = exc.response.get('ResponseMetadata', {}).get('HTTPStatusCode')
            details = {'code': code, 'status': status}
            if code == 'NoSuchBucket':
                return ConfigurationError(
                    f"S3 bucket {self.bucket} does not exist", backend=self.name, details=details
                )
            if code in _NOT_FOUND_CODES or status == 404:
                return NotFoundError("File not found", backend=self.name, details=details)
            if code in _ACCESS_DENIED_CODES or status == 403:
                return ConfigurationError(f"S3 access denied: {message}", backend=self.name, details=details)
            return TransientError(f"S3 error {code}: {message}", backend=self.name, details=details)
        if isinstance(exc, BotoCoreError):
            return TransientError(f"S3 client error: {str(exc)}", backend=self.name)
        return super().translate_error(exc)

    async def _upload(self, key: str, file: FileInfo, options: UploadOptions):
        """Upload an object, in parts when it is above the chunk threshold"""
        metadata = self.build_metadata(file, options)
        if len(file.content) > CHUNK_THRESHOLD:
            await self._multipart_upload(key, file.content, file.mime_type, metadata)
        else:
            await self._run_blocking(
                self.s3.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=file.content,
                ContentType=file.mime_type,
                Metadata=metadata
            )

    async def _multipart_upload(self, key: str, content: bytes, content_type: str,
                                metadata: Dict[str, str]):
        response = await self._run_blocking(
            self.s3.create_multipart_upload,
            Bucket=self.bucket,
            Key=key,
            ContentType=content_type,
            Metadata=metadata
        )
        upload_id = response['UploadId']
        parts = []

        try:
            for part_number, chunk in enumerate(iter_chunks(content, CHUNK_SIZE), start=1):
                part = await self._run_blocking(
                    self.s3.upload_part,
                    Bucket=self.bucket,
                    Key=key,
                    PartNumber=part_number,
                    UploadId=upload_id,
                    Body=chunk
                )
                parts.append({
                    'PartNumber': part_number,
                    'ETag': part['ETag']
                })

            await self._run_blocking(
                self.s3.complete_multipart_upload,
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )
        except (Exception, asyncio.CancelledError):
            await self._abort_multipart_upload(key, upload_id)
            raise

        logger.info(f"Completed multipart upload of {key} in {len(parts)} parts")

    async def _abort_multipart_upload(self, key: str, upload_id: str):
        try:
            await self._run_blocking(
                self.s3.abort_multipart_upload,
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id
            )
            logger.info(f"Aborted multipart upload {upload_id} for {key}")
        except Exception as e:
            logger.warning(f"Failed to abort multipart upload {upload_id} for {key}: {str(e)}")

    def _get_object(self, key: str) -> Tuple[bytes, Dict[str, str]]:
        response = self.s3.get_object(Bucket=self.bucket, Key=key)
        return response['Body'].read(), response.get('Metadata', {})

    async def _download(self, key: str) -> Tuple[bytes, Optional[str]]:
        """Download an object with its stored checksum"""
        content, metadata = await self._run_blocking(self._get_object, key)
        return content, metadata.get(CHECKSUM_METADATA_KEY)

    async def _exists(self, key: str) -> bool:
        """Check object existence with a HEAD request"""
        try:
            await self._run_blocking(self.s3.head_object, Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if isinstance(self.translate_error(e), NotFoundError):
                return False
            raise

    async def _delete(self, key: str):
        """Delete an object from the bucket"""
        await self._run_blocking(self.s3.delete_object, Bucket=self.bucket, Key=key)

    def _list_objects(self, prefix: str) -> List[Dict[str, Any]]:
        paginator = self.s3.get_paginator('list_objects_v2')
        objects = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            objects.extend(page.get('Contents', []))
        return objects

    async def _list(self, prefix: str) -> List[FileInfo]:
        """List objects under a prefix across all pages"""
        objects = await self._run_blocking(self._list_objects, prefix)
        return [
            FileInfo(
                name=os.path.basename(obj['Key'].rstrip('/')),
                path=self.locator(obj['Key']),
                mime_type=DIRECTORY_MIME_TYPE if obj['Key'].endswith('/') else detect_mime_type(obj['Key']),
                size=obj.get('Size', 0),
                modified_at=obj['LastModified'],
                is_directory=obj['Key'].endswith('/')
            )
            for obj in objects
        ]

    async def _info(self, key: str) -> FileInfo:
        """Get object metadata"""
        response = await self._run_blocking(self.s3.head_object, Bucket=self.bucket, Key=key)
        metadata = response.get('Metadata', {})
        return FileInfo(
            name=os.path.basename(key.rstrip('/')),
            path=self.locator(key),
            mime_type=response.get('ContentType', detect_mime_type(key)),
            size=response.get('ContentLength', 0),
            modified_at=response['LastModified'],
            checksum=metadata.get(CHECKSUM_METADATA_KEY),
            metadata=metadata,
            is_directory=key.endswith('/')
        )

    async def _copy(self, source: str, destination: str):
        """Server-side copy within the bucket"""
        await self._run_blocking(
            self.s3.copy_object,
            Bucket=self.bucket,
            Key=destination,
            CopySource={'Bucket': self.bucket, 'Key': source}
        )

    async def _create_directory(self, key: str):
        """Write an empty directory marker"""
        await self._run_blocking(
            self.s3.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=b'',
            ContentType=DIRECTORY_MIME_TYPE
        )

    async def _presign(self, key: str, expiry_seconds: int) -> str:
        """Generate a presigned GET URL"""
        return await self._run_blocking(
            self.s3.generate_presigned_url,
            'get_object',
            Params={'Bucket': self.bucket, 'Key': key},
            ExpiresIn=expiry_seconds
        )

    def health_metrics(self) -> Dict[str, Any]:
        return {
            'bucket': self.bucket,
            'region': self.region,
            'endpoint': self.endpoint or f"https://s3.{self.region}.amazonaws.com",
        }
