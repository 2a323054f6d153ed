"""Pytest fixtures for testing."""

import base64
import os

import pytest

# Set test environment
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("CREDENTIALS_MASTER_KEY", "test-master-key-with-at-least-32-chars!")

from filegate.config import Settings
from filegate.services.providers import (
    S3Provider,
    AzureBlobProvider,
    GcsProvider,
    GoogleDriveProvider,
    DropboxProvider,
    AWS_S3_POLICY,
)
from tests.fakes import (
    FakeS3ClientFactory,
    FakeBlobServiceClient,
    FakeGcsClient,
    FakeDriveServer,
    FakeDropboxServer,
)

KB = 1024
MB = 1024 * KB
GB = 1024 * MB

AZURE_ACCOUNT_KEY = base64.b64encode(b"k" * 32).decode("ascii")


@pytest.fixture
def test_settings() -> Settings:
    """Settings with fast retries and short session waits."""
    return Settings(
        ENVIRONMENT="test",
        RETRY_MAX_RETRIES=3,
        RETRY_BASE_DELAY_SECONDS=0.5,
        SESSION_PART_WAIT_SECONDS=5,
        STATS_CACHE_TTL_SECONDS=900,
        STATS_ENUMERATION_LIMIT=10000,
    )


@pytest.fixture
def sleeps():
    """Recorded backoff delays."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(delay: float):
        sleeps.append(delay)

    return _sleep


# ============================================================================
# Credentials
# ============================================================================

@pytest.fixture
def s3_credentials():
    return {
        "accessKeyId": "AKIATEST",
        "secretAccessKey": "secret",
        "bucket": "files",
        "region": "eu-west-1",
        "quotaBytes": 5 * GB,
    }


@pytest.fixture
def azure_credentials():
    return {"accountName": "fakeaccount", "accountKey": AZURE_ACCOUNT_KEY, "containerName": "files"}


@pytest.fixture
def gcs_credentials():
    return {"projectId": "test-project", "bucket": "files", "quotaBytes": 10 * GB}


@pytest.fixture
def drive_credentials():
    return {
        "clientId": "client-id",
        "clientSecret": "client-secret",
        "refreshToken": "refresh-token",
        "accessToken": "initial-token",
    }


@pytest.fixture
def dropbox_credentials():
    return {
        "accessToken": "dropbox-token",
        "refreshToken": "dropbox-refresh",
        "appKey": "app-key",
        "appSecret": "app-secret",
    }


# ============================================================================
# Backends
# ============================================================================

@pytest.fixture
def s3_factory():
    return FakeS3ClientFactory()


@pytest.fixture
def azure_service():
    return FakeBlobServiceClient()


@pytest.fixture
def gcs_client():
    return FakeGcsClient()


@pytest.fixture
def drive_server():
    return FakeDriveServer()


@pytest.fixture
def dropbox_server():
    return FakeDropboxServer()


# ============================================================================
# Initialized adapters
# ============================================================================

@pytest.fixture
async def s3_provider(test_settings, s3_factory, s3_credentials):
    provider = S3Provider(AWS_S3_POLICY, settings=test_settings, client_factory=s3_factory)
    await provider.initialize(s3_credentials)
    yield provider
    await provider.close()


@pytest.fixture
async def azure_provider(test_settings, azure_service, azure_credentials):
    provider = AzureBlobProvider(settings=test_settings, service_client_factory=lambda creds: azure_service)
    await provider.initialize(azure_credentials)
    yield provider
    await provider.close()


@pytest.fixture
async def gcs_provider(test_settings, gcs_client, gcs_credentials):
    provider = GcsProvider(
        settings=test_settings,
        client_factory=lambda creds: gcs_client,
        transport=gcs_client.transport()
    )
    await provider.initialize(gcs_credentials)
    yield provider
    await provider.close()


@pytest.fixture
async def drive_provider(test_settings, drive_server, drive_credentials):
    provider = GoogleDriveProvider(settings=test_settings, transport=drive_server.transport())
    await provider.initialize(drive_credentials)
    yield provider
    await provider.close()


@pytest.fixture
async def dropbox_provider(test_settings, dropbox_server, dropbox_credentials):
    provider = DropboxProvider(settings=test_settings, transport=dropbox_server.transport())
    await provider.initialize(dropbox_credentials)
    yield provider
    await provider.close()
