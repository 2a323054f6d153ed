"""
filegate - Multi-backend storage gateway
One storage contract over S3-family, Azure Blob, Google Cloud Storage,
Google Drive and Dropbox backends
"""

__version__ = "1.0.0"

from .exceptions import (
    StorageError,
    StorageAuthError,
    StorageAccessError,
    StorageNotFoundError,
    StorageQuotaExceededError,
    StorageProviderError,
    UnsupportedOperationError,
    StorageValidationError,
)
from .models import ProviderType, ProviderCapabilities, UploadModel
from .services import StorageGateway, StorageProviderFactory

__all__ = [
    "StorageGateway",
    "StorageProviderFactory",
    "ProviderType",
    "ProviderCapabilities",
    "UploadModel",
    "StorageError",
    "StorageAuthError",
    "StorageAccessError",
    "StorageNotFoundError",
    "StorageQuotaExceededError",
    "StorageProviderError",
    "UnsupportedOperationError",
    "StorageValidationError",
]
