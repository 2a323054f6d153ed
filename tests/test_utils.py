"""Tests for key helpers and the retry policy."""

import pytest

from filegate.exceptions import (
    StorageNotFoundError,
    StorageProviderError,
    StorageValidationError,
)
from filegate.utils.keys import (
    normalize_key,
    normalize_prefix,
    join_key,
    folder_key,
    parent_key,
    file_name_from_key,
    determine_content_type,
    categorize_content_type,
)
from filegate.utils.retry import with_retry, is_transient


class TestKeys:
    """Tests for storage key normalization."""

    def test_normalize_strips_leading_and_duplicate_slashes(self):
        assert normalize_key("/a//b\\c.txt") == "a/b/c.txt"

    def test_normalize_keeps_folder_marker(self):
        assert normalize_key("docs/reports/") == "docs/reports/"

    @pytest.mark.parametrize("key", ["../secret", "a/./b", "a/../../b"])
    def test_relative_segments_rejected(self, key):
        with pytest.raises(StorageValidationError):
            normalize_key(key)

    def test_empty_key_rejected_unless_allowed(self):
        with pytest.raises(StorageValidationError):
            normalize_key("")
        assert normalize_key("", allow_empty=True) == ""

    def test_prefix_for_root_and_folder(self):
        assert normalize_prefix("") == ""
        assert normalize_prefix(None) == ""
        assert normalize_prefix("docs") == "docs/"
        assert normalize_prefix("/docs/") == "docs/"

    def test_join_and_folder_keys(self):
        assert join_key("docs", "a.txt") == "docs/a.txt"
        assert join_key("", "a.txt") == "a.txt"
        assert folder_key("docs", "reports") == "docs/reports/"

        with pytest.raises(StorageValidationError):
            join_key("docs", "/")

    def test_parent_and_name(self):
        assert parent_key("docs/reports/q1.pdf") == "docs/reports"
        assert parent_key("q1.pdf") == ""
        assert file_name_from_key("docs/reports/") == "reports"
        assert file_name_from_key("docs/q1.pdf") == "q1.pdf"


class TestContentTypes:
    """Tests for content-type inference."""

    def test_known_extensions(self):
        assert determine_content_type("report.pdf") == "application/pdf"
        assert determine_content_type("photo.PNG") == "image/png"
        assert determine_content_type("sheet.xlsx").startswith("application/vnd.openxmlformats")

    def test_unknown_extension_falls_back(self):
        assert determine_content_type("blob.unknownext") == "application/octet-stream"

    def test_categories(self):
        assert categorize_content_type("image/jpeg") == "image"
        assert categorize_content_type("video/mp4") == "video"
        assert categorize_content_type("application/pdf") == "document"
        assert categorize_content_type("application/zip") == "archive"
        assert categorize_content_type(None) == "other"


class TestRetry:
    """Tests for with_retry."""

    async def test_two_transient_failures_then_success(self, sleeps, fake_sleep):
        """Three attempts, backoff delays never decrease."""
        attempts = []

        async def operation():
            attempts.append(1)
            if len(attempts) <= 2:
                raise StorageProviderError("s3", "get_object", "SlowDown", retryable=True)
            return "ok"

        result = await with_retry(operation, max_retries=3, base_delay=0.5, sleep=fake_sleep)

        assert result == "ok"
        assert len(attempts) == 3
        assert sleeps == [0.5, 1.0]
        assert sleeps == sorted(sleeps)

    async def test_non_transient_error_is_not_retried(self, sleeps, fake_sleep):
        attempts = []

        async def operation():
            attempts.append(1)
            raise StorageNotFoundError("missing.txt")

        with pytest.raises(StorageNotFoundError):
            await with_retry(operation, sleep=fake_sleep)

        assert len(attempts) == 1
        assert sleeps == []

    async def test_budget_exhausted_raises_last_error(self, sleeps, fake_sleep):
        attempts = []

        async def operation():
            attempts.append(1)
            raise StorageProviderError("gcp_storage", "list_files", f"attempt {len(attempts)}")

        with pytest.raises(StorageProviderError) as exc_info:
            await with_retry(operation, max_retries=2, base_delay=0.1, sleep=fake_sleep)

        assert len(attempts) == 3
        assert "attempt 3" in exc_info.value.message
        assert sleeps == [0.1, 0.2]

    def test_transience(self):
        assert is_transient(StorageProviderError("s3", "op", "boom"))
        assert not is_transient(StorageProviderError("s3", "op", "boom", retryable=False))
        assert not is_transient(ValueError("boom"))
