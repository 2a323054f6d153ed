from filegate.services.providers.base import StorageProvider
from filegate.services.providers.s3_provider import (
    S3Provider,
    S3Policy,
    AWS_S3_POLICY,
    VAULT_POLICY,
    S3_COMPATIBLE_POLICY,
)
from filegate.services.providers.azure_blob_provider import AzureBlobProvider
from filegate.services.providers.gcs_provider import GcsProvider
from filegate.services.providers.google_drive_provider import (
    GoogleDriveProvider,
    DrivePathResolver,
    CachingDrivePathResolver,
)
from filegate.services.providers.dropbox_provider import DropboxProvider
from filegate.services.providers.oauth import OAuthTokenManager
from filegate.services.providers.sessions import UploadSessionRegistry

__all__ = [
    "StorageProvider",
    "S3Provider",
    "S3Policy",
    "AWS_S3_POLICY",
    "VAULT_POLICY",
    "S3_COMPATIBLE_POLICY",
    "AzureBlobProvider",
    "GcsProvider",
    "GoogleDriveProvider",
    "DrivePathResolver",
    "CachingDrivePathResolver",
    "DropboxProvider",
    "OAuthTokenManager",
    "UploadSessionRegistry",
]
