"""
Google Cloud Storage Provider
Flat-namespace adapter using resumable sessions for chunked uploads
"""

import logging
from datetime import timedelta
from typing import Optional, List, Dict, Any, Callable, Union

import httpx
from google.api_core import exceptions as gcs_exceptions
from google.auth.exceptions import DefaultCredentialsError, RefreshError
from google.cloud import storage
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
    GcpStorageCredentials,
    parse_credentials,
)
from filegate.services.providers.base import StorageProvider, SIGNED_URL_MAX_EXPIRY_SECONDS
from filegate.services.providers.http import ResumableSession
from filegate.services.providers.sessions import UploadSessionRegistry
from filegate.utils.keys import normalize_key, normalize_prefix, folder_key, file_name_from_key

logger = logging.getLogger(__name__)

KB = 1024
GB = 1024 * 1024 * KB
TB = 1024 * GB
GCS_COST_PER_GB = 0.02
RESUMABLE_CHUNK_MULTIPLE = 256 * KB

SIGNED_URL_METHODS = {
    SignedUrlOperation.READ: "GET",
    SignedUrlOperation.WRITE: "PUT",
    SignedUrlOperation.DELETE: "DELETE",
}


class GcsProvider(StorageProvider):
    """
    Google Cloud Storage adapter

    Chunked uploads use a resumable session: parts are appended in order at
    the tracked offset and every part except the last must be a multiple of
    256 KiB.
    """

    provider_type = ProviderType.GCP_STORAGE
    capabilities = ProviderCapabilities(
        supports_multipart_upload=True,
        supports_range_requests=True,
        supports_server_side_encryption=True,
        supports_versioning=True,
        supports_folder_creation=True,
        supports_tags=False,
        supports_metadata=True,
        maximum_file_size=5 * TB,
        maximum_part_size=5 * GB,
        minimum_part_size=RESUMABLE_CHUNK_MULTIPLE,
        maximum_part_count=10000,
        upload_model=UploadModel.SESSION,
    )

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client_factory: Optional[Callable[[GcpStorageCredentials], Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        super().__init__(settings)
        self._client_factory = client_factory or self._default_client
        self._transport = transport
        self.client = None
        self.bucket = None
        self.http: Optional[httpx.AsyncClient] = None
        self.credentials: Optional[GcpStorageCredentials] = None
        self.sessions = UploadSessionRegistry(self.provider_name, ordered=True)

    @staticmethod
    def _default_client(creds: GcpStorageCredentials):
        if creds.service_account_info:
            return storage.Client.from_service_account_info(creds.service_account_info, project=creds.project_id)
        if creds.key_filename:
            return storage.Client.from_service_account_json(creds.key_filename, project=creds.project_id)
        return storage.Client(project=creds.project_id)

    # ===== Lifecycle =====

    async def initialize(self, credentials: Union[Dict[str, Any], BaseModel]) -> None:
        creds = parse_credentials(self.provider_type, credentials)
        try:
            self.client = await self._run_sync(self._client_factory, creds)
        except (DefaultCredentialsError, ValueError, OSError) as e:
            raise StorageAuthError(self.provider_name, f"could not load credentials: {e}") from e

        self.bucket = self.client.bucket(creds.bucket)
        self.http = httpx.AsyncClient(timeout=self.settings.HTTP_TIMEOUT_SECONDS, transport=self._transport)
        self.credentials = creds
        self.initialized = True
        logger.info(f"GCS storage initialized for bucket: {creds.bucket}")

    async def test_connection(self) -> bool:
        self._validate_initialized()
        try:
            await self._call(self.client.get_bucket, self.credentials.bucket, operation="test_connection")
        except StorageNotFoundError as e:
            raise StorageAuthError(self.provider_name, f"bucket '{self.credentials.bucket}' does not exist") from e
        return True

    async def close(self) -> None:
        if self.http is not None:
            await self.http.aclose()
            self.http = None
        self.client = None
        self.bucket = None
        await super().close()

    # ===== Error handling =====

    def _classify(self, error: Exception, operation: str, key: str = "") -> StorageError:
        if isinstance(error, StorageError):
            return error
        if isinstance(error, gcs_exceptions.NotFound):
            return StorageNotFoundError(key)
        if isinstance(error, (gcs_exceptions.Unauthorized, RefreshError, DefaultCredentialsError)):
            return StorageAuthError(self.provider_name, str(error))
        if isinstance(error, gcs_exceptions.Forbidden):
            return StorageAccessError(key, operation, {"reason": str(error)})
        if isinstance(error, gcs_exceptions.PreconditionFailed):
            return StorageValidationError(f"'{key}' already exists", {"key": key})
        if isinstance(error, (gcs_exceptions.TooManyRequests, gcs_exceptions.ServerError)):
            return StorageProviderError(self.provider_name, operation, str(error), retryable=True)
        if isinstance(error, gcs_exceptions.GoogleAPICallError):
            return StorageProviderError(self.provider_name, operation, str(error), retryable=False)
        if isinstance(error, (ConnectionError, TimeoutError)):
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
        return self.bucket.blob(key)

    def _blob_metadata(self, blob: Any) -> FileMetadata:
        name = blob.name
        return FileMetadata(
            key=name,
            name=file_name_from_key(name),
            size=blob.size or 0,
            last_modified=blob.updated,
            content_type=blob.content_type,
            is_directory=name.endswith("/"),
            etag=blob.etag,
            version_id=str(blob.generation) if blob.generation else None,
            metadata=dict(blob.metadata or {}),
        )

    # ===== Signed URLs =====

    async def get_signed_url(self, key: str, options: Optional[SignedUrlOptions] = None) -> str:
        self._validate_initialized()
        options = self._signed_url_options(options)
        key = normalize_key(key)
        expires_in = self._clamp_expiry(options.expires_in, SIGNED_URL_MAX_EXPIRY_SECONDS)
        blob = self._blob(key)

        if options.operation == SignedUrlOperation.READ:
            exists = await self._call(blob.exists, operation="get_signed_url", key=key)
            if not exists:
                raise StorageNotFoundError(key)

        kwargs: Dict[str, Any] = {
            "version": "v4",
            "expiration": timedelta(seconds=expires_in),
            "method": SIGNED_URL_METHODS[options.operation],
        }
        if options.operation == SignedUrlOperation.WRITE and options.content_type:
            kwargs["content_type"] = options.content_type
        if options.operation == SignedUrlOperation.READ and options.content_disposition:
            kwargs["response_disposition"] = options.content_disposition

        return await self._call(blob.generate_signed_url, operation="get_signed_url", key=key, **kwargs)

    # ===== Files and folders =====

    async def create_folder(self, path: str, folder_name: str, options: Optional[FolderOptions] = None) -> FileMetadata:
        key = folder_key(path, folder_name)
        blob = self._blob(key)
        if options and options.metadata:
            blob.metadata = options.metadata
        await self._call(
            blob.upload_from_string, b"",
            operation="create_folder", key=key,
            content_type="application/x-directory"
        )
        logger.info(f"Created folder in GCS: {key}")
        return FileMetadata(key=key, name=folder_name.strip("/"), is_directory=True)

    async def list_files(self, path: str = "", options: Optional[ListOptions] = None) -> FileListing:
        self._validate_initialized()
        options = options or ListOptions()
        prefix = normalize_prefix(path)

        def _fetch_page(token):
            kwargs: Dict[str, Any] = {
                "prefix": prefix or None,
                "max_results": options.max_results,
                "page_token": token,
            }
            if not options.recursive:
                kwargs["delimiter"] = "/"
            iterator = self.client.list_blobs(self.bucket, **kwargs)
            page = next(iterator.pages, None)
            if page is None:
                return [], [], None
            blobs = list(page)
            return blobs, sorted(getattr(page, "prefixes", ()) or ()), iterator.next_page_token

        files: List[FileMetadata] = []
        token = options.page_token
        while True:
            blobs, prefixes, token = await self._call(_fetch_page, token, operation="list_files", key=prefix)
            for folder in prefixes:
                files.append(FileMetadata(key=folder, name=file_name_from_key(folder), is_directory=True))
            for blob in blobs:
                if blob.name == prefix:
                    continue
                files.append(self._blob_metadata(blob))
            if not token or len(files) >= options.max_results:
                break

        return FileListing(files=files, next_page_token=token, truncated=token is not None)

    async def get_file_metadata(self, key: str) -> FileMetadata:
        key = normalize_key(key)
        self._validate_initialized()
        blob = await self._call(self.bucket.get_blob, key, operation="get_file_metadata", key=key)
        if blob is None:
            raise StorageNotFoundError(key)
        return self._blob_metadata(blob)

    async def delete_file(self, key: str, options: Optional[DeleteOptions] = None) -> None:
        options = options or DeleteOptions()
        key = normalize_key(key)

        if options.recursive:
            prefix = normalize_prefix(key)

            def _delete_prefix() -> int:
                blobs = list(self.client.list_blobs(self.bucket, prefix=prefix))
                if blobs:
                    self.bucket.delete_blobs(blobs)
                return len(blobs)

            deleted = await self._call(_delete_prefix, operation="delete_file", key=prefix)
            logger.info(f"Deleted {deleted} objects under {prefix} from GCS")
            return

        blob = self._blob(key)
        if options.version_id:
            blob = self.bucket.blob(key, generation=int(options.version_id))
        await self._call(blob.delete, operation="delete_file", key=key)
        logger.info(f"Deleted from GCS: {key}")

    async def file_exists(self, key: str) -> bool:
        key = normalize_key(key)
        return bool(await self._call(self._blob(key).exists, operation="file_exists", key=key))

    async def get_file_content(self, key: str, byte_range: Optional[ByteRange] = None) -> bytes:
        key = normalize_key(key)
        kwargs: Dict[str, Any] = {}
        if byte_range is not None:
            kwargs = {"start": byte_range.start, "end": byte_range.end}
        return await self._call(self._blob(key).download_as_bytes, operation="get_file_content", key=key, **kwargs)

    async def upload_file(self, key: str, content: bytes, options: Optional[UploadOptions] = None) -> FileMetadata:
        key = normalize_key(key)
        options = options or UploadOptions()
        blob = self._blob(key)
        if options.metadata:
            blob.metadata = options.metadata
        if options.cache_control:
            blob.cache_control = options.cache_control
        if options.content_disposition:
            blob.content_disposition = options.content_disposition

        content_type = self._content_type_for(key, options)
        # generation 0 only matches an object that does not exist yet
        condition = {} if options.overwrite else {"if_generation_match": 0}
        await self._call(
            blob.upload_from_string, content,
            operation="upload_file", key=key, content_type=content_type, **condition
        )


        logger.info(f"Uploaded to GCS: {key} ({len(content)} bytes)")
        return FileMetadata(
            key=key,
            name=file_name_from_key(key),
            size=len(content),
            content_type=content_type,
            etag=blob.etag,
            metadata=options.metadata,
        )

    # ===== Resumable sessions =====

    async def create_multipart_upload(self, key: str, options: Optional[UploadOptions] = None) -> str:
        key = normalize_key(key)
        options = options or UploadOptions()
        content_type = self._content_type_for(key, options)
        blob = self._blob(key)
        if options.metadata:
            blob.metadata = options.metadata

        session_url = await self._call(
            blob.create_resumable_upload_session,
            operation="create_multipart_upload", key=key,
            content_type=content_type,
            size=options.expected_size
        )
        session = self.sessions.open(key, backend_ref=session_url, content_type=content_type, metadata=options.metadata)
        return session.upload_id

    async def get_signed_url_for_part(
        self,
        key: str,
        upload_id: str,
        part_number: int,
        content_length: Optional[int] = None
    ) -> str:
        """The session URL itself; the caller PUTs with a Content-Range"""
        self._validate_initialized()
        self._validate_part_number(part_number)
        session = self.sessions.get(upload_id, normalize_key(key))
        return session.backend_ref

    async def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> CompletedPart:
        self._validate_initialized()
        self._validate_part_number(part_number)
        if not data:
            raise StorageValidationError("Upload parts must not be empty")
        key = normalize_key(key)
        session = self.sessions.begin_part(upload_id, key, part_number)
        if session.parts and session.parts[-1].size % RESUMABLE_CHUNK_MULTIPLE:
            self.sessions.release_part(upload_id, part_number)
            raise StorageValidationError(
                f"Only the final part may be smaller than a multiple of {RESUMABLE_CHUNK_MULTIPLE} bytes"
            )

        resumable = ResumableSession(self.http, self.provider_name)
        try:
            committed = await resumable.put_chunk(session.backend_ref, data, session.offset, key)
        except StorageError:
            self.sessions.release_part(upload_id, part_number)
            raise

        part = CompletedPart(part_number=part_number, etag=str(committed), size=len(data))
        self.sessions.finish_part(upload_id, part)
        return part

    async def complete_multipart_upload(self, key: str, upload_id: str, parts: List[CompletedPart]) -> FileMetadata:
        self._validate_initialized()
        key = normalize_key(key)
        session = self.sessions.begin_completion(upload_id, key)
        try:
            self._sorted_contiguous_parts(parts)
            if len(parts) != len(session.parts):
                raise StorageValidationError(
                    f"Upload {upload_id} received {len(session.parts)} parts, completion lists {len(parts)}"
                )
            resumable = ResumableSession(self.http, self.provider_name)
            await resumable.finalize(session.backend_ref, session.offset, key)
        except StorageError:
            self.sessions.cancel_completion(upload_id)
            raise

        self.sessions.complete(upload_id)
        logger.info(f"Completed resumable upload {upload_id} for {key} ({session.offset} bytes)")
        return await self.get_file_metadata(key)

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        self._validate_initialized()
        session = self.sessions.abort(upload_id, normalize_key(key))
        await ResumableSession(self.http, self.provider_name).cancel(session.backend_ref)

    # ===== Usage =====

    async def get_storage_stats(self) -> StorageStats:
        self._validate_initialized()
        limit = self.settings.STATS_ENUMERATION_LIMIT

        def _enumerate():
            entries = []
            truncated = False
            for blob in self.client.list_blobs(self.bucket):
                if len(entries) >= limit:
                    truncated = True
                    break
                entries.append(self._blob_metadata(blob))
            return entries, truncated

        entries, truncated = await self._call(_enumerate, operation="get_storage_stats")
        return self._build_stats(
            entries,
            total_bytes=self.credentials.quota_bytes or 0,
            cost_per_gb=GCS_COST_PER_GB,
            approximate=True,
            truncated=truncated
        )
