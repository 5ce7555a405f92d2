"""
Azure Blob storage backend implementation.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
import asyncio
import base64
import logging
import os

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
)
from azure.storage.blob import (
    BlobBlock,
    BlobSasPermissions,
    BlobServiceClient,
    ContentSettings,
    generate_blob_sas,
)

from ..errors import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    StorageError,
    TransientError,
    UnsupportedOperationError,
)
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

COPY_POLL_INTERVAL = 0.5  # seconds


def block_id(index: int) -> str:
    """Base64 block id; Azure requires equal-length ids within a blob."""
    return base64.b64encode(f"{index:06d}".encode()).decode()


class AzureBlobStorageBackend(StorageBackend):
    """Azure Blob storage backend"""

    scheme = "azure"
    storage_type = "azure"
    label = "Azure Blob"

    def __init__(self, container: str, account_name: Optional[str] = None,
                 account_key: Optional[str] = None, connection_string: Optional[str] = None,
                 endpoint: Optional[str] = None, timeout: float = 30.0,
                 service_client: Any = None, name: str = 'azure',
                 max_file_size: int = DEFAULT_MAX_FILE_SIZE,
                 allowed_mime_types: Optional[Sequence[str]] = None):
        super().__init__(name, max_file_size=max_file_size, allowed_mime_types=allowed_mime_types)
        if not container:
            raise ConfigurationError("Azure container name is required", backend=name)
        self.container_name = container
        self.account_name = account_name
        self.endpoint = endpoint
        self.timeout = timeout
        self.service_client = service_client or self._create_service_client(
            account_name, account_key, connection_string
        )
        self.container_client = self.service_client.get_container_client(container)
        logger.info(f"Azure Blob backend {name} using container {container}")

    def _create_service_client(self, account_name: Optional[str], account_key: Optional[str],
                               connection_string: Optional[str]):
        if connection_string:
            return BlobServiceClient.from_connection_string(
                connection_string, connection_timeout=self.timeout, read_timeout=self.timeout
            )
        if not all([account_name, account_key]):
            raise ConfigurationError(
                "Azure storage account and key, or a connection string, are required",
                backend=self.name
            )
        account_url = self.endpoint or f"https://{account_name}.blob.core.windows.net"
        return BlobServiceClient(
            account_url=account_url,
            credential={'account_name': account_name, 'account_key': account_key},
            connection_timeout=self.timeout,
            read_timeout=self.timeout
        )

    @property
    def container(self) -> str:
        return self.container_name

    def _blob(self, key: str):
        return self.container_client.get_blob_client(key)

    def translate_error(self, exc: Exception) -> StorageError:
        if isinstance(exc, ResourceNotFoundError):
            return NotFoundError("File not found", backend=self.name)
        if isinstance(exc, ResourceExistsError):
            return ConflictError(f"Azure Blob conflict: {exc.message}", backend=self.name)
        if isinstance(exc, ClientAuthenticationError):
            return ConfigurationError(f"Azure Blob access denied: {exc.message}", backend=self.name)
        if isinstance(exc, HttpResponseError):
            status = exc.status_code
            if status == 404:
                return NotFoundError("File not found", backend=self.name)
            if status == 403:
                return ConfigurationError(f"Azure Blob access denied: {exc.message}", backend=self.name)
            if status == 409:
                return ConflictError(f"Azure Blob conflict: {exc.message}", backend=self.name)
            prefix = f"Azure Blob error {status}" if status else "Azure Blob error"
            return TransientError(f"{prefix}: {exc.message}", backend=self.name, details={'status': status})
        if isinstance(exc, AzureError):
            return TransientError(f"Azure Blob client error: {exc.message}", backend=self.name)
        return super().translate_error(exc)

    async def prepare(self):
        """Create the container when it does not exist yet."""
        try:
            await self._run_blocking(self.container_client.create_container)
            logger.info(f"Created Azure container {self.container_name}")
        except ResourceExistsError:
            pass

    async def _upload(self, key: str, file: FileInfo, options: UploadOptions):
        """Upload a blob, staging blocks when it is above the chunk threshold"""
        metadata = self.build_metadata(file, options)
        content_settings = ContentSettings(content_type=file.mime_type)
        blob_client = self._blob(key)

        if len(file.content) > CHUNK_THRESHOLD:
            await self._block_upload(blob_client, key, file.content, content_settings, metadata)
        else:
            await self._run_blocking(
                blob_client.upload_blob,
                file.content,
                overwrite=True,
                content_settings=content_settings,
                metadata=metadata
            )

    async def _block_upload(self, blob_client, key: str, content: bytes,
                            content_settings: ContentSettings, metadata: Dict[str, str]):
        existed = await self._run_blocking(blob_client.exists)
        blocks = []

        try:
            for index, chunk in enumerate(iter_chunks(content, CHUNK_SIZE), start=1):
                current_id = block_id(index)
                await self._run_blocking(blob_client.stage_block, block_id=current_id, data=chunk)
                blocks.append(BlobBlock(block_id=current_id))

            await self._run_blocking(
                blob_client.commit_block_list,
                blocks,
                content_settings=content_settings,
                metadata=metadata
            )
        except (Exception, asyncio.CancelledError):
            await self._abort_block_upload(blob_client, key, existed)
            raise

        logger.info(f"Committed block upload of {key} in {len(blocks)} blocks")

    async def _abort_block_upload(self, blob_client, key: str, existed: bool):
        # Uncommitted blocks on a blob that already existed expire on the service side
        if existed:
            logger.warning(f"Block upload of {key} failed; uncommitted blocks left to expire")
            return
        try:
            await self._run_blocking(blob_client.delete_blob)
            logger.info(f"Discarded uncommitted blocks for {key}")
        except ResourceNotFoundError:
            pass
        except Exception as e:
            logger.warning(f"Failed to discard uncommitted blocks for {key}: {str(e)}")

    def _read_blob(self, key: str) -> Tuple[bytes, Dict[str, str]]:
        downloader = self._blob(key).download_blob()
        content = downloader.readall()
        return content, dict(downloader.properties.metadata or {})

    async def _download(self, key: str) -> Tuple[bytes, Optional[str]]:
        """Download a blob with its stored checksum"""
        content, metadata = await self._run_blocking(self._read_blob, key)
        return content, metadata.get(CHECKSUM_METADATA_KEY)

    async def _exists(self, key: str) -> bool:
        """Check blob existence"""
        return await self._run_blocking(self._blob(key).exists)

    async def _delete(self, key: str):
        """Delete a blob"""
        await self._run_blocking(self._blob(key).delete_blob)

    def _list_blobs(self, prefix: str) -> List[Any]:
        return list(self.container_client.list_blobs(
            name_starts_with=prefix or None, include=['metadata']
        ))

    def _to_file_info(self, key: str, properties: Any) -> FileInfo:
        content_type = properties.content_settings.content_type if properties.content_settings else None
        metadata = dict(properties.metadata or {})
        return FileInfo(
            name=os.path.basename(key.rstrip('/')),
            path=self.locator(key),
            mime_type=content_type or detect_mime_type(key),
            size=properties.size or 0,
            modified_at=properties.last_modified,
            created_at=properties.creation_time,
            checksum=metadata.get(CHECKSUM_METADATA_KEY),
            metadata=metadata,
            is_directory=key.endswith('/')
        )

    async def _list(self, prefix: str) -> List[FileInfo]:
        """List blobs under a prefix with their metadata"""
        blobs = await self._run_blocking(self._list_blobs, prefix)
        return [self._to_file_info(blob.name, blob) for blob in blobs]

    async def _info(self, key: str) -> FileInfo:
        """Get blob properties"""
        properties = await self._run_blocking(self._blob(key).get_blob_properties)
        return self._to_file_info(key, properties)

    async def _copy(self, source: str, destination: str):
        """Copy a blob and wait for the copy to finish"""
        source_url = self._blob(source).url
        destination_client = self._blob(destination)
        await self._run_blocking(destination_client.start_copy_from_url, source_url)

        while True:
            properties = await self._run_blocking(destination_client.get_blob_properties)
            status = properties.copy.status
            if status != 'pending':
                break
            await asyncio.sleep(COPY_POLL_INTERVAL)

        if status not in (None, 'success'):
            raise TransientError(f"Copy ended with status {status}", backend=self.name)

    async def _create_directory(self, key: str):
        """Write an empty directory marker blob"""
        await self._run_blocking(
            self._blob(key).upload_blob,
            b'',
            overwrite=False,
            content_settings=ContentSettings(content_type=DIRECTORY_MIME_TYPE)
        )

    async def _presign(self, key: str, expiry_seconds: int) -> str:
        """Generate a read-only SAS URL"""
        account_name = self.service_client.account_name
        account_key = getattr(self.service_client.credential, 'account_key', None)
        if not account_key:
            raise UnsupportedOperationError(
                "Download URLs need an account key credential", backend=self.name
            )
        blob_client = self._blob(key)
        sas_token = generate_blob_sas(
            account_name=account_name,
            container_name=self.container_name,
            blob_name=key,
            account_key=account_key,
            permission=BlobSasPermissions(read=True),
            expiry=datetime.now(timezone.utc) + timedelta(seconds=expiry_seconds)
        )
        return f"{blob_client.url}?{sas_token}"

    def health_metrics(self) -> Dict[str, Any]:
        return {
            'container': self.container_name,
            'account': self.account_name or self.service_client.account_name,
            'endpoint': self.endpoint or self.service_client.url,
        }
