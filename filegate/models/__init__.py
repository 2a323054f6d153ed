from filegate.models.storage_models import (
    ProviderType,
    UploadModel,
    SignedUrlOperation,
    StorageAccount,
    StorageAccountCreate,
    StorageAccountUpdate,
    StorageAccountWithUsage,
    ProviderCapabilities,
    FileMetadata,
    FileListing,
    ByteRange,
    SignedUrlOptions,
    ListOptions,
    DeleteOptions,
    FolderOptions,
    UploadOptions,
    StorageStats,
    StorageUsage,
    QuotaWarning,
    OperationResult,
)
from filegate.models.upload_models import UploadState, CompletedPart, MultipartUploadSession
from filegate.models.credential_models import (
    S3Credentials,
    AzureBlobCredentials,
    GcpStorageCredentials,
    GoogleDriveCredentials,
    DropboxCredentials,
    ProviderCredentials,
    parse_credentials,
)

__all__ = [
    "ProviderType",
    "UploadModel",
    "SignedUrlOperation",
    "StorageAccount",
    "StorageAccountCreate",
    "StorageAccountUpdate",
    "StorageAccountWithUsage",
    "ProviderCapabilities",
    "FileMetadata",
    "FileListing",
    "ByteRange",
    "SignedUrlOptions",
    "ListOptions",
    "DeleteOptions",
    "FolderOptions",
    "UploadOptions",
    "StorageStats",
    "StorageUsage",
    "QuotaWarning",
    "OperationResult",
    "UploadState",
    "CompletedPart",
    "MultipartUploadSession",
    "S3Credentials",
    "AzureBlobCredentials",
    "GcpStorageCredentials",
    "GoogleDriveCredentials",
    "DropboxCredentials",
    "ProviderCredentials",
    "parse_credentials",
]
