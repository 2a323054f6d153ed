"""
S3 Storage Provider
One parameterized adapter for AWS S3, the vault and generic S3-compatible
endpoints
"""

import logging
from dataclasses import dataclass
from typing import Optional, List, Dict, Any, Callable, Union

import boto3
from botocore.client import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
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
    S3Credentials,
    parse_credentials,
)
from filegate.services.providers.base import StorageProvider, SIGNED_URL_MAX_EXPIRY_SECONDS
from filegate.utils.keys import (
    normalize_key,
    normalize_prefix,
    folder_key,
    file_name_from_key,
)

logger = logging.getLogger(__name__)

KB = 1024
MB = 1024 * KB
GB = 1024 * MB
TB = 1024 * GB

NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404", "NoSuchBucket", "NoSuchVersion"}
AUTH_CODES = {
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "ExpiredToken",
    "InvalidToken",
    "TokenRefreshRequired",
    "AuthorizationHeaderMalformed",
}
ACCESS_CODES = {"AccessDenied", "Forbidden", "403", "AllAccessDisabled", "AccountProblem"}
THROTTLE_CODES = {"SlowDown", "Throttling", "ThrottlingException", "RequestTimeout", "InternalError", "ServiceUnavailable"}
PRECONDITION_CODES = {"PreconditionFailed", "ConditionalRequestConflict"}

DELETE_BATCH_SIZE = 1000
LIST_PAGE_SIZE = 1000

PRESIGN_METHODS = {
    SignedUrlOperation.READ: "get_object",
    SignedUrlOperation.WRITE: "put_object",
    SignedUrlOperation.DELETE: "delete_object",
}


@dataclass(frozen=True)
class S3Policy:
    """Per-backend knobs for the shared S3 adapter"""
    provider_type: ProviderType
    display_name: str
    capabilities: ProviderCapabilities
    force_path_style: bool = False
    default_region: str = "us-east-1"
    requires_endpoint: bool = False
    endpoint_setting: Optional[str] = None
    region_setting: Optional[str] = None
    max_signed_url_expiry: int = SIGNED_URL_MAX_EXPIRY_SECONDS
    cost_per_gb: Optional[float] = None


FULL_S3_CAPABILITIES = ProviderCapabilities(
    supports_multipart_upload=True,
    supports_range_requests=True,
    supports_server_side_encryption=True,
    supports_versioning=True,
    supports_folder_creation=True,
    supports_tags=True,
    supports_metadata=True,
    maximum_file_size=5 * TB,
    maximum_part_size=5 * GB,
    minimum_part_size=5 * MB,
    maximum_part_count=10000,
    upload_model=UploadModel.MULTIPART,
)

AWS_S3_POLICY = S3Policy(
    provider_type=ProviderType.S3,
    display_name="AWS S3",
    capabilities=FULL_S3_CAPABILITIES,
    force_path_style=False,
    default_region="us-east-1",
    cost_per_gb=0.023,
)

VAULT_POLICY = S3Policy(
    provider_type=ProviderType.VAULT,
    display_name="Vault",
    capabilities=FULL_S3_CAPABILITIES,
    force_path_style=True,
    requires_endpoint=True,
    endpoint_setting="VAULT_ENDPOINT",
    region_setting="VAULT_REGION",
    cost_per_gb=0.0069,
)

S3_COMPATIBLE_POLICY = S3Policy(
    provider_type=ProviderType.S3_COMPATIBLE,
    display_name="S3-compatible",
    capabilities=ProviderCapabilities(
        supports_multipart_upload=True,
        supports_range_requests=True,
        supports_server_side_encryption=False,
        supports_versioning=False,
        supports_folder_creation=True,
        supports_tags=False,
        supports_metadata=True,
        maximum_file_size=5 * GB,
        maximum_part_size=5 * GB,
        minimum_part_size=5 * MB,
        maximum_part_count=10000,
        upload_model=UploadModel.MULTIPART,
    ),
    force_path_style=True,
    requires_endpoint=True,
)


class S3Provider(StorageProvider):
    """
    Adapter for any backend speaking the S3 API

    Folders are zero-length objects whose key ends in '/'. Multipart uploads
    map one-to-one onto S3 multipart uploads.
    """

    def __init__(
        self,
        policy: S3Policy = AWS_S3_POLICY,
        settings: Optional[Settings] = None,
        client_factory: Optional[Callable[..., Any]] = None
    ):
        """
        Initialize S3 provider

        Args:
            policy: Backend policy (path style, region, expiry, capabilities)
            settings: Settings override
            client_factory: Replacement for boto3.client (tests)
        """
        super().__init__(settings)
        self.policy = policy
        self.provider_type = policy.provider_type
        self.capabilities = policy.capabilities
        self._client_factory = client_factory or boto3.client
        self.client = None
        self.credentials: Optional[S3Credentials] = None
        self.bucket_name: Optional[str] = None

    # ===== Lifecycle =====

    async def initialize(self, credentials: Union[Dict[str, Any], BaseModel]) -> None:
        creds = parse_credentials(self.provider_type, credentials)

        endpoint = creds.endpoint
        if not endpoint and self.policy.endpoint_setting:
            endpoint = getattr(self.settings, self.policy.endpoint_setting, None)
        if self.policy.requires_endpoint and not endpoint:
            raise StorageAuthError(self.provider_name, "an endpoint is required for this storage type")

        region = creds.region
        if not region and self.policy.region_setting:
            region = getattr(self.settings, self.policy.region_setting, None)
        region = region or self.policy.default_region

        path_style = self.policy.force_path_style
        if creds.force_path_style is not None:
            path_style = creds.force_path_style

        try:
            self.client = self._client_factory(
                's3',
                endpoint_url=endpoint,
                aws_access_key_id=creds.access_key_id,
                aws_secret_access_key=creds.secret_access_key,
                config=Config(
                    signature_version='s3v4',
                    s3={'addressing_style': 'path' if path_style else 'auto'}
                ),
                region_name=region
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageAuthError(self.provider_name, f"could not build client: {e}") from e

        self.credentials = creds
        self.bucket_name = creds.bucket
        self.initialized = True
        logger.info(f"{self.policy.display_name} storage initialized for bucket: {self.bucket_name}")

    async def test_connection(self) -> bool:
        """
        One-key listing of the bucket

        HEAD answers bad keys with a bare 403, so a listing is used instead
        and any access or missing-bucket failure is reported as an auth error.
        """
        self._validate_initialized()
        try:
            await self._call("list_objects_v2", "", Bucket=self.bucket_name, MaxKeys=1)
        except StorageNotFoundError as e:
            raise StorageAuthError(self.provider_name, f"bucket '{self.bucket_name}' does not exist") from e
        except StorageAccessError as e:
            raise StorageAuthError(
                self.provider_name, f"access to bucket '{self.bucket_name}' denied ({e.details.get('code')})"
            ) from e
        return True


    async def close(self) -> None:
        self.client = None
        await super().close()

    # ===== Error handling =====

    def _classify(self, error: Exception, operation: str, key: str = "") -> StorageError:
        """Map a boto3/botocore failure onto the storage taxonomy"""
        if isinstance(error, StorageError):
            return error

        if isinstance(error, ClientError):
            code = str(error.response.get("Error", {}).get("Code", ""))
            status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0

            if code == "NoSuchUpload":
                return StorageNotFoundError(key, {"reason": "upload id is no longer active"})
            if code in NOT_FOUND_CODES or status == 404:
                return StorageNotFoundError(key)
            if code in AUTH_CODES or status == 401:
                return StorageAuthError(self.provider_name, code or "authentication failed")
            if code in ACCESS_CODES or status == 403:
                return StorageAccessError(key, operation, {"code": code})
            if code in PRECONDITION_CODES or status == 412:
                # only conditional puts (overwrite=False) send preconditions
                return StorageValidationError(f"'{key}' already exists", {"key": key, "code": code})

            retryable = status >= 500 or status == 429 or code in THROTTLE_CODES
            logger.error(f"{self.policy.display_name} {operation} failed on '{key}': {code} ({status})")
            return StorageProviderError(
                self.provider_name, operation, code or str(error),
                retryable=retryable, details={"code": code, "status": status}
            )

        if isinstance(error, NoCredentialsError):
            return StorageAuthError(self.provider_name, "no credentials available")
        if isinstance(error, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)):
            return StorageProviderError(self.provider_name, operation, str(error), retryable=True)
        if isinstance(error, BotoCoreError):
            return StorageProviderError(self.provider_name, operation, str(error), retryable=False)

        return self._wrap_unexpected(operation, error)

    async def _call(self, method: str, key: str = "", **kwargs) -> Dict[str, Any]:
        """Invoke a client method off the event loop with classified errors"""
        self._validate_initialized()
        try:
            return await self._run_sync(getattr(self.client, method), **kwargs)
        except Exception as e:
            raise self._classify(e, method, key) from e

    def _presign(self, method: str, params: Dict[str, Any], expires_in: int, key: str) -> str:
        try:
            return self.client.generate_presigned_url(
                ClientMethod=method,
                Params=params,
                ExpiresIn=expires_in
            )
        except Exception as e:
            raise self._classify(e, "get_signed_url", key) from e

    # ===== Signed URLs =====

    async def get_signed_url(self, key: str, options: Optional[SignedUrlOptions] = None) -> str:
        self._validate_initialized()
        options = self._signed_url_options(options)
        key = normalize_key(key)
        expires_in = self._clamp_expiry(options.expires_in, self.policy.max_signed_url_expiry)

        params: Dict[str, Any] = {"Bucket": self.bucket_name, "Key": key}
        if options.operation == SignedUrlOperation.READ:
            await self._call("head_object", key, Bucket=self.bucket_name, Key=key)
            if options.content_disposition:
                params["ResponseContentDisposition"] = options.content_disposition
        elif options.operation == SignedUrlOperation.WRITE and options.content_type:
            params["ContentType"] = options.content_type

        return self._presign(PRESIGN_METHODS[options.operation], params, expires_in, key)

    # ===== Files and folders =====

    def _to_metadata(self, item: Dict[str, Any]) -> FileMetadata:
        key = item["Key"]
        return FileMetadata(
            key=key,
            name=file_name_from_key(key),
            size=item.get("Size", 0),
            last_modified=item.get("LastModified"),
            is_directory=key.endswith("/"),
            etag=(item.get("ETag") or "").strip('"') or None,
        )

    async def create_folder(self, path: str, folder_name: str, options: Optional[FolderOptions] = None) -> FileMetadata:
        self._validate_initialized()
        key = folder_key(path, folder_name)
        kwargs: Dict[str, Any] = {
            "Bucket": self.bucket_name,
            "Key": key,
            "Body": b"",
            "ContentType": "application/x-directory",
        }
        if options and options.metadata:
            kwargs["Metadata"] = options.metadata

        await self._call("put_object", key, **kwargs)
        logger.info(f"Created folder in {self.policy.display_name}: {key}")
        return FileMetadata(key=key, name=folder_name.strip("/"), is_directory=True)

    async def list_files(self, path: str = "", options: Optional[ListOptions] = None) -> FileListing:
        self._validate_initialized()
        options = options or ListOptions()
        prefix = normalize_prefix(path)

        files: List[FileMetadata] = []
        token = options.page_token
        while True:
            kwargs: Dict[str, Any] = {
                "Bucket": self.bucket_name,
                "Prefix": prefix,
                "MaxKeys": min(LIST_PAGE_SIZE, options.max_results - len(files)),
            }
            if not options.recursive:
                kwargs["Delimiter"] = "/"
            if token:
                kwargs["ContinuationToken"] = token

            response = await self._call("list_objects_v2", prefix, **kwargs)

            for common in response.get("CommonPrefixes", []):
                folder = common["Prefix"]
                files.append(FileMetadata(key=folder, name=file_name_from_key(folder), is_directory=True))
            for item in response.get("Contents", []):
                if item["Key"] == prefix:
                    continue
                files.append(self._to_metadata(item))

            token = response.get("NextContinuationToken") if response.get("IsTruncated") else None
            if not token or len(files) >= options.max_results:
                break

        return FileListing(files=files, next_page_token=token, truncated=token is not None)

    async def get_file_metadata(self, key: str) -> FileMetadata:
        key = normalize_key(key)
        response = await self._call("head_object", key, Bucket=self.bucket_name, Key=key)
        return FileMetadata(
            key=key,
            name=file_name_from_key(key),
            size=response.get("ContentLength", 0),
            last_modified=response.get("LastModified"),
            content_type=response.get("ContentType"),
            is_directory=key.endswith("/"),
            etag=(response.get("ETag") or "").strip('"') or None,
            version_id=response.get("VersionId"),
            metadata=response.get("Metadata", {}),
        )

    async def delete_file(self, key: str, options: Optional[DeleteOptions] = None) -> None:
        self._validate_initialized()
        options = options or DeleteOptions()
        key = normalize_key(key)

        if options.recursive:
            prefix = normalize_prefix(key)
            deleted = 0
            token = None
            while True:
                kwargs: Dict[str, Any] = {"Bucket": self.bucket_name, "Prefix": prefix, "MaxKeys": DELETE_BATCH_SIZE}
                if token:
                    kwargs["ContinuationToken"] = token
                response = await self._call("list_objects_v2", prefix, **kwargs)
                objects = [{"Key": item["Key"]} for item in response.get("Contents", [])]
                if objects:
                    await self._call(
                        "delete_objects", prefix,
                        Bucket=self.bucket_name,
                        Delete={"Objects": objects, "Quiet": True}
                    )
                    deleted += len(objects)
                token = response.get("NextContinuationToken") if response.get("IsTruncated") else None
                if not token:
                    break
            logger.info(f"Deleted {deleted} objects under {prefix} from {self.policy.display_name}")
            return

        kwargs = {"Bucket": self.bucket_name, "Key": key}
        if options.version_id:
            kwargs["VersionId"] = options.version_id
        await self._call("delete_object", key, **kwargs)
        logger.info(f"Deleted from {self.policy.display_name}: {key}")

    async def file_exists(self, key: str) -> bool:
        key = normalize_key(key)
        try:
            await self._call("head_object", key, Bucket=self.bucket_name, Key=key)
            return True
        except StorageNotFoundError:
            return False

    async def get_file_content(self, key: str, byte_range: Optional[ByteRange] = None) -> bytes:
        self._validate_initialized()
        key = normalize_key(key)
        kwargs: Dict[str, Any] = {"Bucket": self.bucket_name, "Key": key}
        if byte_range is not None:
            kwargs["Range"] = byte_range.header()

        def _download() -> bytes:
            response = self.client.get_object(**kwargs)
            return response["Body"].read()

        try:
            return await self._run_sync(_download)
        except Exception as e:
            raise self._classify(e, "get_object", key) from e

    async def upload_file(self, key: str, content: bytes, options: Optional[UploadOptions] = None) -> FileMetadata:
        key = normalize_key(key)
        options = options or UploadOptions()
        kwargs: Dict[str, Any] = {
            "Bucket": self.bucket_name,
            "Key": key,
            "Body": content,
            "ContentType": self._content_type_for(key, options),
        }
        if options.metadata:
            kwargs["Metadata"] = options.metadata
        if options.cache_control:
            kwargs["CacheControl"] = options.cache_control
        if options.content_disposition:
            kwargs["ContentDisposition"] = options.content_disposition
        if not options.overwrite:
            kwargs["IfNoneMatch"] = "*"

        response = await self._call("put_object", key, **kwargs)

        logger.info(f"Uploaded to {self.policy.display_name}: {key} ({len(content)} bytes)")
        return FileMetadata(
            key=key,
            name=file_name_from_key(key),
            size=len(content),
            content_type=kwargs["ContentType"],
            etag=(response.get("ETag") or "").strip('"') or None,
            version_id=response.get("VersionId"),
            metadata=options.metadata,
        )

    # ===== Multipart =====

    async def create_multipart_upload(self, key: str, options: Optional[UploadOptions] = None) -> str:
        key = normalize_key(key)
        options = options or UploadOptions()
        kwargs: Dict[str, Any] = {
            "Bucket": self.bucket_name,
            "Key": key,
            "ContentType": self._content_type_for(key, options),
        }
        if options.metadata:
            kwargs["Metadata"] = options.metadata

        response = await self._call("create_multipart_upload", key, **kwargs)
        upload_id = response["UploadId"]
        logger.info(f"Started multipart upload {upload_id} for {key}")
        return upload_id

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
        params: Dict[str, Any] = {
            "Bucket": self.bucket_name,
            "Key": key,
            "UploadId": upload_id,
            "PartNumber": part_number,
        }
        if content_length is not None:
            params["ContentLength"] = content_length

        expires_in = min(self.settings.PART_URL_EXPIRY_SECONDS, self.policy.max_signed_url_expiry)
        return self._presign("upload_part", params, expires_in, key)

    async def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> CompletedPart:
        self._validate_part_number(part_number)
        key = normalize_key(key)
        response = await self._call(
            "upload_part", key,
            Bucket=self.bucket_name,
            Key=key,
            UploadId=upload_id,
            PartNumber=part_number,
            Body=data
        )
        return CompletedPart(
            part_number=part_number,
            etag=(response.get("ETag") or "").strip('"'),
            size=len(data)
        )

    async def complete_multipart_upload(self, key: str, upload_id: str, parts: List[CompletedPart]) -> FileMetadata:
        self._validate_initialized()
        key = normalize_key(key)
        ordered = self._sorted_contiguous_parts(parts)

        await self._call(
            "complete_multipart_upload", key,
            Bucket=self.bucket_name,
            Key=key,
            UploadId=upload_id,
            MultipartUpload={
                "Parts": [{"PartNumber": part.part_number, "ETag": part.etag} for part in ordered]
            }
        )
        logger.info(f"Completed multipart upload {upload_id} for {key} ({len(ordered)} parts)")
        return await self.get_file_metadata(key)

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        key = normalize_key(key)
        await self._call(
            "abort_multipart_upload", key,
            Bucket=self.bucket_name,
            Key=key,
            UploadId=upload_id
        )
        logger.info(f"Aborted multipart upload {upload_id} for {key}")

    # ===== Usage =====

    async def get_storage_stats(self) -> StorageStats:
        """
        Usage by enumeration (no accounting API on S3)

        Walks the bucket up to STATS_ENUMERATION_LIMIT objects. The result is
        always flagged approximate and `truncated` when the cap was hit.
        """
        self._validate_initialized()
        limit = self.settings.STATS_ENUMERATION_LIMIT
        entries: List[FileMetadata] = []
        token = None
        truncated = False

        while True:
            kwargs: Dict[str, Any] = {"Bucket": self.bucket_name, "MaxKeys": min(LIST_PAGE_SIZE, limit - len(entries))}
            if token:
                kwargs["ContinuationToken"] = token
            response = await self._call("list_objects_v2", "", **kwargs)
            for item in response.get("Contents", []):
                entries.append(self._to_metadata(item))

            token = response.get("NextContinuationToken") if response.get("IsTruncated") else None
            if not token:
                break
            if len(entries) >= limit:
                truncated = True
                break

        return self._build_stats(
            entries,
            total_bytes=self.credentials.quota_bytes or 0,
            cost_per_gb=self.policy.cost_per_gb,
            approximate=True,
            truncated=truncated
        )
