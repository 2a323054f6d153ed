"""
Azure Blob Storage Provider
Block blob adapter using block-list commits for chunked uploads
"""

import base64
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any, Callable, Union
from urllib.parse import quote

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.storage.blob import (
    BlobBlock,
    BlobSasPermissions,
    BlobServiceClient,
    ContentSettings,
    generate_blob_sas,
)
from pydantic import BaseModel

from filegate.config import Settings
from filegate.exceptions import (
    StorageError,
    StorageAuthError,
    StorageAccessError,
    StorageNotFoundError,
    StorageProviderError,
    StorageValidationError,
)
from filegate.models import (
    ProviderType,
    ProviderCapabilities,
    UploadModel,
    SignedUrlOperation,
    FileMetadata,
    FileListing,
    ByteRange,
    SignedUrlOptions,
    ListOptions,
    DeleteOptions,
    FolderOptions,
    UploadOptions,
    StorageStats,
    CompletedPart,
    AzureBlobCredentials,
    parse_credentials,
)
from filegate.services.providers.base import StorageProvider, SIGNED_URL_MAX_EXPIRY_SECONDS
from filegate.services.providers.sessions import UploadSessionRegistry
from filegate.utils.keys import normalize_key, normalize_prefix, folder_key, file_name_from_key

logger = logging.getLogger(__name__)

MB = 1024 * 1024
TB = 1024 * 1024 * MB
AZURE_COST_PER_GB = 0.018
DELETE_BATCH_SIZE = 256  # Blob batch limit
LIST_PAGE_SIZE = 1000


def block_id_for(upload_id: str, part_number: int) -> str:
    """
    Deterministic, fixed-length block id for one part

    Azure requires every block id in a blob to have the same length, so the
    part number is zero padded. The SDK base64-encodes ids itself; use
    encode_block_id for the form that goes on the wire.
    """
    return f"{upload_id}-{part_number:05d}"


def encode_block_id(block_id: str) -> str:
    """Wire form of a block id, as stage_block and commit_block_list send it"""
    return base64.b64encode(block_id.encode("utf-8")).decode("ascii")


class AzureBlobProvider(StorageProvider):
    """Azure Blob Storage adapter"""

    provider_type = ProviderType.AZURE_BLOB
    capabilities = ProviderCapabilities(
        supports_multipart_upload=True,
        supports_range_requests=True,
        supports_server_side_encryption=True,
        supports_versioning=False,
        supports_folder_creation=True,
        supports_tags=True,
        supports_metadata=True,
        maximum_file_size=5 * TB,  # historical block blob cap
        maximum_part_size=4000 * MB,
        minimum_part_size=1 * MB,
        maximum_part_count=50000,
        upload_model=UploadModel.BLOCK_LIST,
    )

    def __init__(
        self,
        settings: Optional[Settings] = None,
        service_client_factory: Optional[Callable[[AzureBlobCredentials], Any]] = None
    ):
        super().__init__(settings)
        self._service_client_factory = service_client_factory or self._default_service_client
        self.service_client = None
        self.container_client = None
        self.credentials: Optional[AzureBlobCredentials] = None
        self.sessions = UploadSessionRegistry(self.provider_name, ordered=False)

    @staticmethod
    def _default_service_client(creds: AzureBlobCredentials):
        if creds.connection_string:
            return BlobServiceClient.from_connection_string(creds.connection_string)
        account_url = f"https://{creds.account_name}.blob.core.windows.net"
        return BlobServiceClient(account_url=account_url, credential=creds.account_key)

    # ===== Lifecycle =====

    async def initialize(self, credentials: Union[Dict[str, Any], BaseModel]) -> None:
        creds = parse_credentials(self.provider_type, credentials)
        if not creds.connection_string and not (creds.account_name and creds.account_key):
            raise StorageAuthError(
                self.provider_name,
                "a connection string or an account name and key is required"
            )

        try:
            self.service_client = self._service_client_factory(creds)
            self.container_client = self.service_client.get_container_client(creds.container_name)
        except (AzureError, ValueError) as e:
            raise StorageAuthError(self.provider_name, f"could not build client: {e}") from e

        self.credentials = creds
        self.initialized = True
        logger.info(f"Azure Blob storage initialized for container: {creds.container_name}")

    async def test_connection(self) -> bool:
        self._validate_initialized()
        try:
            await self._call(self.container_client.get_container_properties, operation="test_connection")
        except StorageNotFoundError as e:
            raise StorageAuthError(
                self.provider_name,
                f"container '{self.credentials.container_name}' does not exist"
            ) from e
        return True

    async def close(self) -> None:
        if self.service_client is not None and hasattr(self.service_client, "close"):
            await self._run_sync(self.service_client.close)
        self.service_client = None
        self.container_client = None
        await super().close()

    # ===== Error handling =====

    def _classify(self, error: Exception, operation: str, key: str = "") -> StorageError:
        if isinstance(error, StorageError):
            return error
        if isinstance(error, ResourceNotFoundError):
            return StorageNotFoundError(key)
        if isinstance(error, ClientAuthenticationError):
            return StorageAuthError(self.provider_name, str(error))
        if isinstance(error, ResourceExistsError):
            return StorageValidationError(f"'{key}' already exists", {"key": key})
        if isinstance(error, HttpResponseError):
            status = error.status_code or 0
            code = getattr(error, "error_code", None) or ""
            if status == 404:
                return StorageNotFoundError(key)
            if status == 401:
                return StorageAuthError(self.provider_name, code or "authentication failed")
            if status == 403:
                if code in ("AuthenticationFailed", "InvalidAuthenticationInfo"):
                    return StorageAuthError(self.provider_name, code)
                return StorageAccessError(key, operation, {"code": code})
            if code == "InvalidBlockList":
                return StorageProviderError(self.provider_name, operation, code, retryable=False)
            logger.error(f"Azure {operation} failed on '{key}': {code} ({status})")
            return StorageProviderError(
                self.provider_name, operation, code or str(error),
                retryable=status >= 500 or status in (408, 429),
                details={"code": code, "status": status}
            )
        if isinstance(error, (ServiceRequestError, ServiceResponseError)):
            return StorageProviderError(self.provider_name, operation, str(error), retryable=True)
        return self._wrap_unexpected(operation, error)

    async def _call(self, func: Callable, *args, operation: str, key: str = "", **kwargs):
        self._validate_initialized()
        try:
            return await self._run_sync(func, *args, **kwargs)
        except Exception as e:
            raise self._classify(e, operation, key) from e

    def _blob(self, key: str):
        self._validate_initialized()
        return self.container_client.get_blob_client(key)

    def _account_key_pair(self):
        account_name = self.credentials.account_name or getattr(self.service_client, "account_name", None)
        account_key = self.credentials.account_key
        if not account_key:
            credential = getattr(self.service_client, "credential", None)
            account_key = getattr(credential, "account_key", None)
        if not (account_name and account_key):
            raise self._unsupported("get_signed_url", "SAS generation needs an account key")
        return account_name, account_key

    def _sas_url(self, key: str, permission: BlobSasPermissions, expires_in: int) -> str:
        account_name, account_key = self._account_key_pair()
        token = generate_blob_sas(
            account_name=account_name,
            container_name=self.credentials.container_name,
            blob_name=key,
            account_key=account_key,
            permission=permission,
            expiry=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        )
        return f"{self._blob(key).url}?{token}"

    # ===== Signed URLs =====

    async def get_signed_url(self, key: str, options: Optional[SignedUrlOptions] = None) -> str:
        self._validate_initialized()
        options = self._signed_url_options(options)
        key = normalize_key(key)
        expires_in = self._clamp_expiry(options.expires_in, SIGNED_URL_MAX_EXPIRY_SECONDS)

        if options.operation == SignedUrlOperation.READ:
            exists = await self._call(self._blob(key).exists, operation="get_signed_url", key=key)
            if not exists:
                raise StorageNotFoundError(key)
            permission = BlobSasPermissions(read=True)
        elif options.operation == SignedUrlOperation.WRITE:
            permission = BlobSasPermissions(write=True, create=True)
        else:
            permission = BlobSasPermissions(delete=True)

        return self._sas_url(key, permission, expires_in)

    # ===== Files and folders =====

    def _to_metadata(self, item: Any) -> FileMetadata:
        name = item.name
        content_settings = getattr(item, "content_settings", None)
        return FileMetadata(
            key=name,
            name=file_name_from_key(name),
            size=getattr(item, "size", 0) or 0,
            last_modified=getattr(item, "last_modified", None),
            content_type=getattr(content_settings, "content_type", None),
            is_directory=name.endswith("/"),
            etag=(getattr(item, "etag", None) or "").strip('"') or None,
            version_id=getattr(item, "version_id", None),
            metadata=dict(getattr(item, "metadata", None) or {}),
        )

    async def create_folder(self, path: str, folder_name: str, options: Optional[FolderOptions] = None) -> FileMetadata:
        key = folder_key(path, folder_name)
        await self._call(
            self._blob(key).upload_blob, b"",
            operation="create_folder", key=key,
            overwrite=True,
            metadata=(options.metadata if options else None) or {"folder": "true"},
            content_settings=ContentSettings(content_type="application/x-directory")
        )
        logger.info(f"Created folder in Azure: {key}")
        return FileMetadata(key=key, name=folder_name.strip("/"), is_directory=True)

    async def list_files(self, path: str = "", options: Optional[ListOptions] = None) -> FileListing:
        self._validate_initialized()
        options = options or ListOptions()
        prefix = normalize_prefix(path)
        page_size = min(LIST_PAGE_SIZE, options.max_results)

        def _fetch_page(token):
            if options.recursive:
                paged = self.container_client.list_blobs(
                    name_starts_with=prefix or None, results_per_page=page_size
                )
            else:
                paged = self.container_client.walk_blobs(
                    name_starts_with=prefix or None, delimiter="/", results_per_page=page_size
                )
            pages = paged.by_page(continuation_token=token)
            items = list(next(pages, []))
            return items, pages.continuation_token

        files: List[FileMetadata] = []
        token = options.page_token
        while True:
            items, token = await self._call(_fetch_page, token, operation="list_files", key=prefix)
            for item in items:
                if item.name == prefix:
                    continue
                files.append(self._to_metadata(item))
            if not token or len(files) >= options.max_results:
                break

        return FileListing(files=files, next_page_token=token, truncated=token is not None)

    async def get_file_metadata(self, key: str) -> FileMetadata:
        key = normalize_key(key)
        properties = await self._call(self._blob(key).get_blob_properties, operation="get_file_metadata", key=key)
        metadata = self._to_metadata(properties)
        return metadata.model_copy(update={"key": key, "name": file_name_from_key(key)})

    async def delete_file(self, key: str, options: Optional[DeleteOptions] = None) -> None:
        options = options or DeleteOptions()
        key = normalize_key(key)

        if options.recursive:
            prefix = normalize_prefix(key)

            def _names():
                return [blob.name for blob in self.container_client.list_blobs(name_starts_with=prefix)]

            names = await self._call(_names, operation="delete_file", key=prefix)
            for start in range(0, len(names), DELETE_BATCH_SIZE):
                batch = names[start:start + DELETE_BATCH_SIZE]
                await self._call(self.container_client.delete_blobs, *batch, operation="delete_file", key=prefix)
            logger.info(f"Deleted {len(names)} blobs under {prefix} from Azure")
            return

        kwargs: Dict[str, Any] = {}
        if options.version_id:
            kwargs["version_id"] = options.version_id
        await self._call(self._blob(key).delete_blob, operation="delete_file", key=key, **kwargs)
        logger.info(f"Deleted from Azure: {key}")

    async def file_exists(self, key: str) -> bool:
        key = normalize_key(key)
        return bool(await self._call(self._blob(key).exists, operation="file_exists", key=key))

    async def get_file_content(self, key: str, byte_range: Optional[ByteRange] = None) -> bytes:
        key = normalize_key(key)
        kwargs: Dict[str, Any] = {}
        if byte_range is not None:
            kwargs = {"offset": byte_range.start, "length": byte_range.length}

        def _download() -> bytes:
            return self._blob(key).download_blob(**kwargs).readall()

        return await self._call(_download, operation="get_file_content", key=key)

    async def upload_file(self, key: str, content: bytes, options: Optional[UploadOptions] = None) -> FileMetadata:
        key = normalize_key(key)
        options = options or UploadOptions()
        content_type = self._content_type_for(key, options)
        response = await self._call(
            self._blob(key).upload_blob, content,
            operation="upload_file", key=key,
            overwrite=options.overwrite,
            metadata=options.metadata or None,
            content_settings=ContentSettings(
                content_type=content_type,
                cache_control=options.cache_control,
                content_disposition=options.content_disposition
            )
        )
        logger.info(f"Uploaded to Azure: {key} ({len(content)} bytes)")
        return FileMetadata(
            key=key,
            name=file_name_from_key(key),
            size=len(content),
            content_type=content_type,
            etag=((response or {}).get("etag") or "").strip('"') or None,
            metadata=options.metadata,
        )

    # ===== Block-list uploads =====

    async def create_multipart_upload(self, key: str, options: Optional[UploadOptions] = None) -> str:
        self._validate_initialized()
        key = normalize_key(key)
        options = options or UploadOptions()
        session = self.sessions.open(
            key,
            content_type=self._content_type_for(key, options),
            metadata=options.metadata
        )
        return session.upload_id

    async def get_signed_url_for_part(
        self,
        key: str,
        upload_id: str,
        part_number: int,
        content_length: Optional[int] = None
    ) -> str:
        self._validate_initialized()
        self._validate_part_number(part_number)
        key = normalize_key(key)
        self.sessions.get(upload_id, key)

        expires_in = min(self.settings.PART_URL_EXPIRY_SECONDS, SIGNED_URL_MAX_EXPIRY_SECONDS)
        url = self._sas_url(key, BlobSasPermissions(write=True), expires_in)
        block_id = quote(encode_block_id(block_id_for(upload_id, part_number)), safe="")
        return f"{url}&comp=block&blockid={block_id}"

    async def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> CompletedPart:
        self._validate_part_number(part_number)
        key = normalize_key(key)
        self.sessions.begin_part(upload_id, key, part_number)
        block_id = block_id_for(upload_id, part_number)
        try:
            await self._call(
                self._blob(key).stage_block, block_id, data,
                operation="upload_part", key=key,
                length=len(data)
            )
        except StorageError:
            self.sessions.release_part(upload_id, part_number)
            raise

        part = CompletedPart(part_number=part_number, etag=block_id, size=len(data))
        self.sessions.finish_part(upload_id, part)
        return part

    async def complete_multipart_upload(self, key: str, upload_id: str, parts: List[CompletedPart]) -> FileMetadata:
        key = normalize_key(key)
        session = self.sessions.begin_completion(upload_id, key)
        try:
            ordered = self._sorted_contiguous_parts(parts)
            # ids are recomputed, client supplied tokens are not trusted
            block_list = [BlobBlock(block_id=block_id_for(upload_id, part.part_number)) for part in ordered]
            await self._call(
                self._blob(key).commit_block_list, block_list,
                operation="complete_multipart_upload", key=key,
                content_settings=ContentSettings(content_type=session.content_type),
                metadata=session.metadata or None
            )
        except StorageError:
            self.sessions.cancel_completion(upload_id)
            raise

        self.sessions.complete(upload_id)
        logger.info(f"Committed {len(ordered)} blocks for {key} (upload {upload_id})")
        return await self.get_file_metadata(key)

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        """
        Retire an upload id

        Azure has no abort call for staged blocks; uncommitted blocks are
        garbage collected by the service after about a week, so the space is
        not reclaimed immediately.
        """
        key = normalize_key(key)
        self.sessions.abort(upload_id, key)
        logger.info(f"Aborted block upload {upload_id} for {key}, staged blocks expire server-side")

    # ===== Usage =====

    async def get_storage_stats(self) -> StorageStats:
        self._validate_initialized()
        limit = self.settings.STATS_ENUMERATION_LIMIT

        def _enumerate():
            entries = []
            truncated = False
            for blob in self.container_client.list_blobs():
                if len(entries) >= limit:
                    truncated = True
                    break
                entries.append(self._to_metadata(blob))
            return entries, truncated

        entries, truncated = await self._call(_enumerate, operation="get_storage_stats")
        return self._build_stats(
            entries,
            total_bytes=self.credentials.quota_bytes or 0,
            cost_per_gb=AZURE_COST_PER_GB,
            approximate=True,
            truncated=truncated
        )
