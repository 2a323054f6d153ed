"""
Storage Models
Pydantic models for storage accounts, files, capabilities and usage
"""

from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


class ProviderType(str, Enum):
    """Supported storage backends (persisted values, do not rename)"""
    VAULT = "vault"
    S3 = "s3"
    GOOGLE_DRIVE = "google_drive"
    DROPBOX = "dropbox"
    AZURE_BLOB = "azure_blob"
    GCP_STORAGE = "gcp_storage"
    S3_COMPATIBLE = "s3-compatible"


class UploadModel(str, Enum):
    """How a backend assembles a chunked upload"""
    MULTIPART = "multipart"      # independent numbered parts
    SESSION = "session"          # append at increasing offsets
    BLOCK_LIST = "block_list"    # staged blocks committed by id list


class SignedUrlOperation(str, Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"


# ============================================================================
# Storage accounts
# ============================================================================

class StorageAccount(BaseModel):
    """One configured storage destination owned by a company"""
    id: str
    company_id: str
    provider_type: ProviderType
    name: str
    is_default: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class StorageAccountCreate(BaseModel):
    """Request to register a new storage account"""
    company_id: str = Field(..., min_length=1)
    provider_type: ProviderType
    name: str = Field(..., min_length=1, max_length=200)
    is_default: bool = False
    credentials: Dict[str, Any]


class StorageAccountUpdate(BaseModel):
    """Mutable account attributes (credentials rotate separately)"""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    is_default: Optional[bool] = None


# ============================================================================
# Capabilities
# ============================================================================

class ProviderCapabilities(BaseModel):
    """Immutable per-adapter-type feature declaration"""
    supports_multipart_upload: bool
    supports_range_requests: bool
    supports_server_side_encryption: bool
    supports_versioning: bool
    supports_folder_creation: bool
    supports_tags: bool
    supports_metadata: bool
    maximum_file_size: int
    maximum_part_size: int
    minimum_part_size: int
    maximum_part_count: int
    upload_model: UploadModel = UploadModel.MULTIPART
    supports_signed_write_urls: bool = True
    supports_signed_part_urls: bool = True
    exact_usage_stats: bool = False

    class Config:
        frozen = True


# ============================================================================
# Files
# ============================================================================

class FileMetadata(BaseModel):
    """A file or folder entry as reported by a backend"""
    key: str
    name: str
    size: int = 0
    last_modified: Optional[datetime] = None
    content_type: Optional[str] = None
    is_directory: bool = False
    etag: Optional[str] = None
    version_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _directories_have_no_content(self):
        if self.is_directory:
            self.size = 0
            self.etag = None
        return self


class FileListing(BaseModel):
    """One page of listing results"""
    files: List[FileMetadata] = Field(default_factory=list)
    next_page_token: Optional[str] = None
    truncated: bool = False


class ByteRange(BaseModel):
    """Inclusive byte range"""
    start: int = Field(..., ge=0)
    end: int = Field(..., ge=0)

    @model_validator(mode="after")
    def _check_order(self):
        if self.end < self.start:
            raise ValueError(f"Range end {self.end} is before start {self.start}")
        return self

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def header(self) -> str:
        return f"bytes={self.start}-{self.end}"


class SignedUrlOptions(BaseModel):
    operation: SignedUrlOperation = SignedUrlOperation.READ
    expires_in: Optional[int] = Field(None, gt=0, description="Seconds")
    content_type: Optional[str] = None
    content_disposition: Optional[str] = None


class ListOptions(BaseModel):
    recursive: bool = False
    max_results: int = Field(1000, gt=0)
    page_token: Optional[str] = None


class DeleteOptions(BaseModel):
    recursive: bool = False
    version_id: Optional[str] = None


class FolderOptions(BaseModel):
    metadata: Dict[str, str] = Field(default_factory=dict)


class UploadOptions(BaseModel):
    content_type: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    cache_control: Optional[str] = None
    content_disposition: Optional[str] = None
    overwrite: bool = True
    expected_size: Optional[int] = Field(None, ge=0, description="Declared total size for multipart admission")


# ============================================================================
# Usage
# ============================================================================

class StorageStats(BaseModel):
    """Usage snapshot for one account"""
    total_bytes: int = 0  # 0 = unknown / unbounded
    used_bytes: int = 0
    available_bytes: int = 0
    file_count: int = 0
    last_updated: datetime = Field(default_factory=datetime.utcnow)
    usage_by_type: Dict[str, int] = Field(default_factory=dict)
    cost_estimate: Optional[float] = None
    approximate: bool = False
    truncated: bool = False

    @field_validator("total_bytes", "used_bytes", "available_bytes", "file_count")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        return max(0, value)

    @property
    def used_percent(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return self.used_bytes / self.total_bytes * 100


class StorageUsage(BaseModel):
    """Stats as served to read-only "show usage" callers"""
    account_id: str
    stats: StorageStats
    cached_at: datetime
    possibly_stale: bool = False


class StorageAccountWithUsage(BaseModel):
    account: StorageAccount
    usage: Optional[StorageUsage] = None
    error: Optional[str] = None


class QuotaWarning(BaseModel):
    """Emitted when an account crosses the usage threshold"""
    account_id: str
    used_bytes: int
    total_bytes: int
    used_percent: float
    threshold_percent: float
    created_at: datetime = Field(default_factory=datetime.utcnow)


class OperationResult(BaseModel):
    """Outbound per-operation result shape"""
    success: bool
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[Dict[str, Any]] = None

    @classmethod
    def ok(cls, data: Any = None, message: Optional[str] = None) -> "OperationResult":
        return cls(success=True, message=message, data=data)
