"""
Storage Provider Base
Uniform adapter contract every storage backend implements
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List, Dict, Any, Iterable, Union

from pydantic import BaseModel

from filegate.config import Settings, settings as default_settings
from filegate.exceptions import (
    StorageError,
    StorageProviderError,
    StorageValidationError,
    UnsupportedOperationError,
)
from filegate.models import (
    ProviderType,
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
    CompletedPart,
)
from filegate.utils.keys import categorize_content_type, determine_content_type

logger = logging.getLogger(__name__)

GB = 1024 * 1024 * 1024
SIGNED_URL_MAX_EXPIRY_SECONDS = 7 * 24 * 3600  # SigV4 / V4 limit


class StorageProvider(ABC):
    """
    Base class for storage backend adapters

    Adapters translate the uniform contract into one backend's native calls
    and classify every backend failure into the filegate error taxonomy.
    """

    provider_type: ProviderType
    capabilities: ProviderCapabilities

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self.initialized = False

    @property
    def provider_name(self) -> str:
        return self.provider_type.value

    # ===== Lifecycle =====

    @abstractmethod
    async def initialize(self, credentials: Union[Dict[str, Any], BaseModel]) -> None:
        """Build the backend client; validates credentials structurally"""

    @abstractmethod
    async def test_connection(self) -> bool:
        """One cheap network call proving reachability and credential validity"""

    async def close(self) -> None:
        """Release network clients (best effort)"""
        self.initialized = False

    def get_capabilities(self) -> ProviderCapabilities:
        return self.capabilities

    # ===== Signed URLs =====

    @abstractmethod
    async def get_signed_url(self, key: str, options: Optional[SignedUrlOptions] = None) -> str:
        """Time-boxed direct-access URL for one operation"""

    # ===== Files and folders =====

    @abstractmethod
    async def create_folder(self, path: str, folder_name: str, options: Optional[FolderOptions] = None) -> FileMetadata:
        pass

    @abstractmethod
    async def list_files(self, path: str = "", options: Optional[ListOptions] = None) -> FileListing:
        pass

    @abstractmethod
    async def get_file_metadata(self, key: str) -> FileMetadata:
        pass

    @abstractmethod
    async def delete_file(self, key: str, options: Optional[DeleteOptions] = None) -> None:
        pass

    @abstractmethod
    async def file_exists(self, key: str) -> bool:
        pass

    @abstractmethod
    async def get_file_content(self, key: str, byte_range: Optional[ByteRange] = None) -> bytes:
        pass

    @abstractmethod
    async def upload_file(self, key: str, content: bytes, options: Optional[UploadOptions] = None) -> FileMetadata:
        pass

    # ===== Multipart / resumable =====

    @abstractmethod
    async def create_multipart_upload(self, key: str, options: Optional[UploadOptions] = None) -> str:
        """Start a chunked upload, returns an opaque upload id"""

    @abstractmethod
    async def get_signed_url_for_part(
        self,
        key: str,
        upload_id: str,
        part_number: int,
        content_length: Optional[int] = None
    ) -> str:
        pass

    @abstractmethod
    async def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> CompletedPart:
        pass

    @abstractmethod
    async def complete_multipart_upload(self, key: str, upload_id: str, parts: List[CompletedPart]) -> FileMetadata:
        pass

    @abstractmethod
    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        pass

    # ===== Usage =====

    @abstractmethod
    async def get_storage_stats(self) -> StorageStats:
        pass

    # ===== Shared helpers =====

    def _validate_initialized(self):
        if not self.initialized:
            raise StorageProviderError(
                self.provider_name,
                "operation",
                "provider is not initialized",
                retryable=False
            )

    def _signed_url_options(self, options: Optional[SignedUrlOptions]) -> SignedUrlOptions:
        return options or SignedUrlOptions()

    def _clamp_expiry(self, expires_in: Optional[int], maximum: int = SIGNED_URL_MAX_EXPIRY_SECONDS) -> int:
        """Requested expiry bounded to (0, maximum]"""
        if not expires_in or expires_in <= 0:
            expires_in = self.settings.DEFAULT_SIGNED_URL_EXPIRY_SECONDS
        return min(expires_in, maximum)

    def _unsupported(self, operation: str, reason: Optional[str] = None) -> UnsupportedOperationError:
        return UnsupportedOperationError(self.provider_name, operation, reason)

    def _content_type_for(self, key: str, options: Optional[UploadOptions]) -> str:
        if options and options.content_type:
            return options.content_type
        return determine_content_type(key)

    def _validate_part_number(self, part_number: int):
        maximum = self.capabilities.maximum_part_count
        if part_number < 1 or (maximum and part_number > maximum):
            raise StorageValidationError(
                f"Part number {part_number} out of range 1..{maximum}",
                {"part_number": part_number}
            )

    def _sorted_contiguous_parts(self, parts: Iterable[CompletedPart]) -> List[CompletedPart]:
        """
        Sort a completion list and check it covers 1..n without gaps

        Raises:
            StorageValidationError: On an empty, duplicated or gapped list
        """
        ordered = sorted(parts or [], key=lambda part: part.part_number)
        if not ordered:
            raise StorageValidationError("Cannot complete an upload with no parts")

        numbers = [part.part_number for part in ordered]
        expected = list(range(1, len(ordered) + 1))
        if numbers != expected:
            raise StorageValidationError(
                f"Part list must be contiguous from 1, got {numbers}",
                {"part_numbers": numbers}
            )
        return ordered

    @staticmethod
    def _slice_range(data: bytes, byte_range: Optional[ByteRange]) -> bytes:
        """Buffer-then-slice fallback for backends without native ranges"""
        if byte_range is None:
            return data
        return data[byte_range.start:byte_range.end + 1]

    async def _run_sync(self, func, *args, **kwargs):
        """Run a blocking SDK call off the event loop"""
        return await asyncio.to_thread(func, *args, **kwargs)

    def _build_stats(
        self,
        entries: Iterable[FileMetadata],
        total_bytes: int = 0,
        cost_per_gb: Optional[float] = None,
        approximate: bool = True,
        truncated: bool = False
    ) -> StorageStats:
        """Aggregate enumerated entries into a usage snapshot"""
        used = 0
        count = 0
        usage_by_type: Dict[str, int] = {}
        for entry in entries:
            if entry.is_directory:
                continue
            used += entry.size
            count += 1
            category = categorize_content_type(entry.content_type or determine_content_type(entry.name))
            usage_by_type[category] = usage_by_type.get(category, 0) + entry.size

        cost = None
        if cost_per_gb is not None:
            cost = round(used / GB * cost_per_gb, 4)

        return StorageStats(
            total_bytes=total_bytes,
            used_bytes=used,
            available_bytes=max(0, total_bytes - used) if total_bytes else 0,
            file_count=count,
            last_updated=datetime.utcnow(),
            usage_by_type=usage_by_type,
            cost_estimate=cost,
            approximate=approximate,
            truncated=truncated
        )

    def _wrap_unexpected(self, operation: str, error: Exception) -> StorageError:
        """Classify anything the adapter did not recognise as a provider error"""
        if isinstance(error, StorageError):
            return error
        logger.error(f"{self.provider_name} {operation} failed: {error}")
        return StorageProviderError(self.provider_name, operation, str(error))
