from filegate.services.storage_gateway import StorageGateway, PartSequencer
from filegate.services.provider_factory import StorageProviderFactory
from filegate.services.quota_manager import QuotaManager, StatsCache
from filegate.services.encryption_service import EncryptionService
from filegate.services.repositories import (
    StorageAccountRepository,
    CredentialStore,
    InMemoryStorageAccountRepository,
    InMemoryCredentialStore,
    MongoStorageAccountRepository,
    MongoCredentialStore,
)

__all__ = [
    "StorageGateway",
    "PartSequencer",
    "StorageProviderFactory",
    "QuotaManager",
    "StatsCache",
    "EncryptionService",
    "StorageAccountRepository",
    "CredentialStore",
    "InMemoryStorageAccountRepository",
    "InMemoryCredentialStore",
    "MongoStorageAccountRepository",
    "MongoCredentialStore",
]
