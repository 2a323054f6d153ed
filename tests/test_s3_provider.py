"""Tests for the S3-family adapter."""

import pytest

from filegate.exceptions import (
    StorageAccessError,
    StorageAuthError,
    StorageNotFoundError,
    StorageProviderError,
    StorageValidationError,
)
from filegate.models import (
    ByteRange,
    CompletedPart,
    DeleteOptions,
    ListOptions,
    SignedUrlOperation,
    SignedUrlOptions,
    UploadModel,
    UploadOptions,
)
from filegate.services.providers import S3Provider, AWS_S3_POLICY, VAULT_POLICY, S3_COMPATIBLE_POLICY
from tests.fakes import FakeS3ClientFactory, client_error

MB = 1024 * 1024


class TestInitialization:
    """Tests for client construction per policy."""

    async def test_aws_uses_credentials_region(self, s3_provider, s3_factory):
        kwargs = s3_factory.kwargs[0]
        assert kwargs["region_name"] == "eu-west-1"
        assert kwargs["endpoint_url"] is None
        assert kwargs["aws_access_key_id"] == "AKIATEST"
        assert s3_provider.get_capabilities().upload_model == UploadModel.MULTIPART

    async def test_vault_falls_back_to_configured_endpoint(self, test_settings):
        factory = FakeS3ClientFactory()
        provider = S3Provider(VAULT_POLICY, settings=test_settings, client_factory=factory)
        await provider.initialize({"accessKeyId": "a", "secretAccessKey": "b", "bucket": "files"})

        assert factory.kwargs[0]["endpoint_url"] == test_settings.VAULT_ENDPOINT
        assert factory.kwargs[0]["region_name"] == test_settings.VAULT_REGION
        assert factory.kwargs[0]["config"].s3["addressing_style"] == "path"

    async def test_s3_compatible_requires_endpoint(self, test_settings):
        provider = S3Provider(S3_COMPATIBLE_POLICY, settings=test_settings, client_factory=FakeS3ClientFactory())
        with pytest.raises(StorageAuthError):
            await provider.initialize({"accessKeyId": "a", "secretAccessKey": "b", "bucket": "files"})
        assert not provider.initialized

    async def test_missing_bucket_fails_connection_test(self, test_settings):
        provider = S3Provider(AWS_S3_POLICY, settings=test_settings, client_factory=FakeS3ClientFactory())
        await provider.initialize({"accessKeyId": "a", "secretAccessKey": "b", "bucket": "nope"})
        with pytest.raises(StorageAuthError):
            await provider.test_connection()

    async def test_rejected_keys_fail_connection_test_as_auth(self, s3_provider, s3_factory):
        # HEAD-style bare 403 and a listing 403 both surface as auth failures
        s3_factory.client.fail_next("list_objects_v2", client_error("403", 403))
        with pytest.raises(StorageAuthError):
            await s3_provider.test_connection()

        s3_factory.client.fail_next("list_objects_v2", client_error("SignatureDoesNotMatch", 403))
        with pytest.raises(StorageAuthError):
            await s3_provider.test_connection()

        assert await s3_provider.test_connection() is True

    async def test_calls_before_initialize_fail(self, test_settings):

        provider = S3Provider(AWS_S3_POLICY, settings=test_settings, client_factory=FakeS3ClientFactory())
        with pytest.raises(StorageProviderError):
            await provider.list_files("")


class TestFilesAndFolders:
    """Tests for object and folder operations."""

    async def test_folder_round_trip(self, s3_provider):
        folder = await s3_provider.create_folder("", "docs")
        assert folder.key == "docs/"
        assert folder.is_directory

        listing = await s3_provider.list_files("")
        assert [(f.key, f.is_directory) for f in listing.files] == [("docs/", True)]

        assert (await s3_provider.list_files("docs")).files == []

    async def test_listing_groups_subfolders(self, s3_provider):
        await s3_provider.upload_file("docs/a.txt", b"a")
        await s3_provider.upload_file("docs/sub/b.txt", b"bb")

        shallow = await s3_provider.list_files("docs")
        assert sorted(f.key for f in shallow.files) == ["docs/a.txt", "docs/sub/"]

        deep = await s3_provider.list_files("docs", ListOptions(recursive=True))
        assert sorted(f.key for f in deep.files) == ["docs/a.txt", "docs/sub/b.txt"]

    async def test_listing_paginates(self, s3_provider):
        for i in range(5):
            await s3_provider.upload_file(f"logs/{i}.log", b"x")

        page = await s3_provider.list_files("logs", ListOptions(max_results=2))
        assert len(page.files) == 2
        assert page.truncated
        rest = await s3_provider.list_files("logs", ListOptions(max_results=10, page_token=page.next_page_token))
        assert len(rest.files) == 3

    async def test_metadata_and_exists(self, s3_provider):
        await s3_provider.upload_file("report.pdf", b"%PDF-1.4")

        metadata = await s3_provider.get_file_metadata("/report.pdf")
        assert metadata.size == 8
        assert metadata.content_type == "application/pdf"
        assert await s3_provider.file_exists("report.pdf")
        assert not await s3_provider.file_exists("missing.pdf")

    async def test_range_reads_exact_bytes(self, s3_provider):
        data = bytes(range(256)) * 4
        await s3_provider.upload_file("blob.bin", data)

        assert await s3_provider.get_file_content("blob.bin", ByteRange(start=10, end=19)) == data[10:20]
        assert await s3_provider.get_file_content("blob.bin") == data

    async def test_adjacent_ranges_rebuild_file(self, s3_provider):
        data = bytes(range(256)) * 4
        await s3_provider.upload_file("blob.bin", data)

        bounds = [(0, 0), (1, 255), (256, 800), (801, len(data) - 1)]
        pieces = [await s3_provider.get_file_content("blob.bin", ByteRange(start=s, end=e)) for s, e in bounds]
        assert b"".join(pieces) == data

    async def test_overwrite_false_keeps_existing_object(self, s3_provider, s3_factory):
        await s3_provider.upload_file("keep.txt", b"original")

        with pytest.raises(StorageValidationError):
            await s3_provider.upload_file("keep.txt", b"replacement", UploadOptions(overwrite=False))

        assert await s3_provider.get_file_content("keep.txt") == b"original"
        await s3_provider.upload_file("fresh.txt", b"new", UploadOptions(overwrite=False))
        assert await s3_provider.file_exists("fresh.txt")

    async def test_recursive_delete(self, s3_provider, s3_factory):

        await s3_provider.upload_file("tmp/a.txt", b"a")
        await s3_provider.upload_file("tmp/b/c.txt", b"c")
        await s3_provider.upload_file("keep.txt", b"k")

        await s3_provider.delete_file("tmp", DeleteOptions(recursive=True))

        assert sorted(s3_factory.client.buckets["files"]) == ["keep.txt"]


class TestSignedUrls:
    """Tests for presigned URLs."""

    async def test_expiry_is_clamped_to_seven_days(self, s3_provider, s3_factory):
        await s3_provider.upload_file("a.txt", b"a")

        await s3_provider.get_signed_url("a.txt", SignedUrlOptions(expires_in=30 * 24 * 3600))

        assert s3_factory.client.presigned[-1]["expires_in"] == 7 * 24 * 3600

    async def test_read_url_requires_existing_object(self, s3_provider):
        with pytest.raises(StorageNotFoundError):
            await s3_provider.get_signed_url("missing.txt")

    async def test_write_url_carries_content_type(self, s3_provider, s3_factory):
        url = await s3_provider.get_signed_url(
            "new.txt",
            SignedUrlOptions(operation=SignedUrlOperation.WRITE, content_type="text/plain")
        )
        assert "op=put_object" in url
        assert s3_factory.client.presigned[-1]["params"]["ContentType"] == "text/plain"

    async def test_part_url(self, s3_provider, s3_factory):
        upload_id = await s3_provider.create_multipart_upload("big.bin")
        url = await s3_provider.get_signed_url_for_part("big.bin", upload_id, 2)
        assert "op=upload_part" in url
        assert s3_factory.client.presigned[-1]["params"]["PartNumber"] == 2


class TestMultipart:
    """Tests for multipart uploads."""

    async def test_parts_in_any_order(self, s3_provider):
        upload_id = await s3_provider.create_multipart_upload("big.bin")
        chunks = {1: b"a" * 5 * MB, 2: b"b" * 5 * MB, 3: b"c" * 1024}

        parts = [await s3_provider.upload_part("big.bin", upload_id, n, chunks[n]) for n in (3, 1, 2)]
        metadata = await s3_provider.complete_multipart_upload("big.bin", upload_id, parts)

        assert metadata.size == sum(len(c) for c in chunks.values())
        content = await s3_provider.get_file_content("big.bin", ByteRange(start=5 * MB - 1, end=5 * MB))
        assert content == b"ab"

    async def test_gapped_part_list_rejected(self, s3_provider, s3_factory):
        upload_id = await s3_provider.create_multipart_upload("big.bin")
        part1 = await s3_provider.upload_part("big.bin", upload_id, 1, b"a" * 5 * MB)
        part3 = await s3_provider.upload_part("big.bin", upload_id, 3, b"c")

        with pytest.raises(StorageValidationError):
            await s3_provider.complete_multipart_upload("big.bin", upload_id, [part1, part3])
        assert "complete_multipart_upload" not in s3_factory.client.calls

    async def test_part_number_bounds(self, s3_provider):
        upload_id = await s3_provider.create_multipart_upload("big.bin")
        with pytest.raises(StorageValidationError):
            await s3_provider.upload_part("big.bin", upload_id, 0, b"x")
        with pytest.raises(StorageValidationError):
            await s3_provider.upload_part("big.bin", upload_id, 10001, b"x")

    async def test_aborted_upload_id_is_dead(self, s3_provider):
        upload_id = await s3_provider.create_multipart_upload("big.bin")
        await s3_provider.abort_multipart_upload("big.bin", upload_id)

        with pytest.raises(StorageNotFoundError):
            await s3_provider.upload_part("big.bin", upload_id, 1, b"x")


class TestErrorClassification:
    """Tests for mapping backend failures."""

    async def test_access_denied(self, s3_provider, s3_factory):
        s3_factory.client.fail_next("head_object", client_error("AccessDenied", 403))
        with pytest.raises(StorageAccessError):
            await s3_provider.get_file_metadata("a.txt")

    async def test_invalid_key_is_auth_error(self, s3_provider, s3_factory):
        s3_factory.client.fail_next("list_objects_v2", client_error("InvalidAccessKeyId", 403))
        with pytest.raises(StorageAuthError):
            await s3_provider.list_files("")

    async def test_throttling_is_retryable(self, s3_provider, s3_factory):
        s3_factory.client.fail_next("put_object", client_error("SlowDown", 503))
        with pytest.raises(StorageProviderError) as exc_info:
            await s3_provider.upload_file("a.txt", b"a")
        assert exc_info.value.retryable

    async def test_bad_request_is_not_retryable(self, s3_provider, s3_factory):
        s3_factory.client.fail_next("put_object", client_error("InvalidArgument", 400))
        with pytest.raises(StorageProviderError) as exc_info:
            await s3_provider.upload_file("a.txt", b"a")
        assert not exc_info.value.retryable


class TestStats:
    """Tests for enumeration-based usage."""

    async def test_stats_are_approximate(self, s3_provider, s3_factory):
        await s3_provider.create_folder("", "docs")
        await s3_provider.upload_file("docs/a.pdf", b"x" * 100)
        await s3_provider.upload_file("b.png", b"y" * 50)

        stats = await s3_provider.get_storage_stats()

        assert stats.approximate
        assert not stats.truncated
        assert stats.used_bytes == 150
        assert stats.file_count == 2
        assert stats.total_bytes == 5 * 1024 ** 3
        assert stats.usage_by_type == {"document": 100, "image": 50}

    async def test_enumeration_cap_sets_truncated(self, test_settings, s3_credentials):
        factory = FakeS3ClientFactory()
        for i in range(5):
            factory.client.put_stub("files", f"f{i}", 10)
        settings = test_settings.model_copy(update={"STATS_ENUMERATION_LIMIT": 2})
        provider = S3Provider(AWS_S3_POLICY, settings=settings, client_factory=factory)
        await provider.initialize(s3_credentials)

        stats = await provider.get_storage_stats()

        assert stats.truncated
        assert stats.file_count == 2
