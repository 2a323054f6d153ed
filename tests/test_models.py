"""Tests for storage, upload and credential models."""

import pytest
from pydantic import ValidationError

from filegate.exceptions import StorageAuthError, StorageQuotaExceededError, StorageNotFoundError
from filegate.models import (
    ProviderType,
    ByteRange,
    FileMetadata,
    StorageStats,
    S3Credentials,
    AzureBlobCredentials,
    DropboxCredentials,
    MultipartUploadSession,
    CompletedPart,
    UploadState,
    parse_credentials,
)


class TestProviderType:

    def test_persisted_values(self):
        assert [p.value for p in ProviderType] == [
            "vault", "s3", "google_drive", "dropbox", "azure_blob", "gcp_storage", "s3-compatible"
        ]
        assert ProviderType("s3-compatible") is ProviderType.S3_COMPATIBLE


class TestFileModels:
    """Tests for file metadata and ranges."""

    def test_directories_report_no_size_or_etag(self):
        folder = FileMetadata(key="docs/", name="docs", size=42, etag="abc", is_directory=True)
        assert folder.size == 0
        assert folder.etag is None

    def test_byte_range_is_inclusive(self):
        byte_range = ByteRange(start=10, end=19)
        assert byte_range.length == 10
        assert byte_range.header() == "bytes=10-19"

    def test_byte_range_rejects_reversed_bounds(self):
        with pytest.raises(ValidationError):
            ByteRange(start=5, end=4)


class TestStorageStats:

    def test_negative_values_clamped(self):
        stats = StorageStats(total_bytes=-1, used_bytes=-5)
        assert stats.total_bytes == 0
        assert stats.used_bytes == 0

    def test_used_percent(self):
        assert StorageStats(total_bytes=200, used_bytes=50).used_percent == 25.0
        assert StorageStats(total_bytes=0, used_bytes=50).used_percent == 0.0


class TestCredentials:
    """Tests for credential parsing."""

    def test_camel_case_accepted(self):
        creds = parse_credentials(ProviderType.S3, {
            "accessKeyId": "AKIA",
            "secretAccessKey": "secret",
            "bucket": "files",
            "forcePathStyle": True,
        })
        assert isinstance(creds, S3Credentials)
        assert creds.access_key_id == "AKIA"
        assert creds.force_path_style is True

    def test_s3_family_shares_model(self):
        raw = {"access_key_id": "a", "secret_access_key": "b", "bucket": "c"}
        assert isinstance(parse_credentials(ProviderType.VAULT, raw), S3Credentials)
        assert isinstance(parse_credentials("s3-compatible", raw), S3Credentials)

    def test_missing_fields_raise_auth_error(self):
        with pytest.raises(StorageAuthError) as exc_info:
            parse_credentials(ProviderType.S3, {"bucket": "files"})
        assert "access_key_id" in exc_info.value.message or "accessKeyId" in exc_info.value.message

    def test_parsed_model_passes_through(self):
        creds = AzureBlobCredentials(container_name="files", connection_string="UseDevelopmentStorage=true")
        assert parse_credentials(ProviderType.AZURE_BLOB, creds) is creds

    def test_dropbox_refresh_fields_optional(self):
        creds = parse_credentials(ProviderType.DROPBOX, {"accessToken": "t"})
        assert isinstance(creds, DropboxCredentials)
        assert creds.refresh_token is None


class TestUploadSession:

    def test_next_part_and_terminal_state(self):
        session = MultipartUploadSession(upload_id="u1", key="a.bin")
        assert session.next_part_number == 1
        session.parts.append(CompletedPart(part_number=1, etag="x", size=3))
        assert session.next_part_number == 2
        assert not session.is_terminal
        session.state = UploadState.ABORTED
        assert session.is_terminal


class TestErrorShape:
    """Tests for the outbound error shape."""

    def test_quota_error_to_dict(self):
        error = StorageQuotaExceededError("acc1", 200, 100)
        body = error.to_dict()
        assert body["success"] is False
        assert body["error"]["code"] == "STORAGE_QUOTA_EXCEEDED"
        assert body["error"]["status_code"] == 507
        assert body["error"]["details"] == {"requested_bytes": 200, "available_bytes": 100}

    def test_not_found_status(self):
        assert StorageNotFoundError("a.txt").status_code == 404
