"""
Repositories
Storage-account records and their encrypted credentials
"""

import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List, Dict, Any

from filegate.exceptions import StorageAuthError
from filegate.models import StorageAccount
from filegate.services.encryption_service import EncryptionService

logger = logging.getLogger(__name__)


# ============================================================================
# Interfaces
# ============================================================================

class StorageAccountRepository(ABC):
    """Persistence for storage-account records"""

    @abstractmethod
    async def create(self, account: StorageAccount) -> StorageAccount:
        pass

    @abstractmethod
    async def get(self, account_id: str) -> Optional[StorageAccount]:
        pass

    @abstractmethod
    async def list_by_company(self, company_id: str) -> List[StorageAccount]:
        pass

    @abstractmethod
    async def list_all(self) -> List[StorageAccount]:
        pass

    @abstractmethod
    async def update(self, account_id: str, fields: Dict[str, Any]) -> Optional[StorageAccount]:
        pass

    @abstractmethod
    async def delete(self, account_id: str) -> bool:
        pass


class CredentialStore(ABC):
    """Secret storage keyed by storage-account id"""

    @abstractmethod
    async def save(self, account_id: str, credentials: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def get(self, account_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def delete(self, account_id: str) -> None:
        pass


# ============================================================================
# In-memory implementations
# ============================================================================

class InMemoryStorageAccountRepository(StorageAccountRepository):
    """Dict-backed repository for tests and single-process deployments"""

    def __init__(self):
        self._accounts: Dict[str, StorageAccount] = {}

    async def create(self, account: StorageAccount) -> StorageAccount:
        self._accounts[account.id] = account.model_copy()
        return account

    async def get(self, account_id: str) -> Optional[StorageAccount]:
        account = self._accounts.get(account_id)
        return account.model_copy() if account else None

    async def list_by_company(self, company_id: str) -> List[StorageAccount]:
        return [a.model_copy() for a in self._accounts.values() if a.company_id == company_id]

    async def list_all(self) -> List[StorageAccount]:
        return [a.model_copy() for a in self._accounts.values()]

    async def update(self, account_id: str, fields: Dict[str, Any]) -> Optional[StorageAccount]:
        account = self._accounts.get(account_id)
        if account is None:
            return None
        updated = account.model_copy(update={**fields, "updated_at": datetime.utcnow()})
        self._accounts[account_id] = updated
        return updated.model_copy()

    async def delete(self, account_id: str) -> bool:
        return self._accounts.pop(account_id, None) is not None


class InMemoryCredentialStore(CredentialStore):
    """
    Dict-backed credential store

    With an EncryptionService the records are kept encrypted, exactly as the
    Mongo store persists them.
    """

    def __init__(self, encryption: Optional[EncryptionService] = None):
        self.encryption = encryption
        self._records: Dict[str, Any] = {}

    async def save(self, account_id: str, credentials: Dict[str, Any]) -> None:
        if self.encryption:
            self._records[account_id] = self.encryption.encrypt_credentials(credentials, account_id)
        else:
            self._records[account_id] = copy.deepcopy(credentials)

    async def get(self, account_id: str) -> Optional[Dict[str, Any]]:
        record = self._records.get(account_id)
        if record is None:
            return None
        if self.encryption:
            return _decrypt_record(self.encryption, record, account_id)
        return copy.deepcopy(record)

    async def delete(self, account_id: str) -> None:
        self._records.pop(account_id, None)


# ============================================================================
# MongoDB implementations
# ============================================================================

class MongoStorageAccountRepository(StorageAccountRepository):
    """Accounts in the `storage_accounts` collection"""

    def __init__(self, db):
        self.collection = db.storage_accounts

    @staticmethod
    def _to_account(doc: Optional[Dict[str, Any]]) -> Optional[StorageAccount]:
        if not doc:
            return None
        doc.pop("_id", None)
        return StorageAccount(**doc)

    async def create(self, account: StorageAccount) -> StorageAccount:
        await self.collection.insert_one(account.model_dump(mode="json"))
        return account

    async def get(self, account_id: str) -> Optional[StorageAccount]:
        return self._to_account(await self.collection.find_one({"id": account_id}))

    async def list_by_company(self, company_id: str) -> List[StorageAccount]:
        cursor = self.collection.find({"company_id": company_id}).sort("created_at", 1)
        return [self._to_account(doc) async for doc in cursor]

    async def list_all(self) -> List[StorageAccount]:
        return [self._to_account(doc) async for doc in self.collection.find({})]

    async def update(self, account_id: str, fields: Dict[str, Any]) -> Optional[StorageAccount]:
        fields = {**fields, "updated_at": datetime.utcnow().isoformat()}
        result = await self.collection.update_one({"id": account_id}, {"$set": fields})
        if result.matched_count == 0:
            return None
        return await self.get(account_id)

    async def delete(self, account_id: str) -> bool:
        result = await self.collection.delete_one({"id": account_id})
        return result.deleted_count > 0


class MongoCredentialStore(CredentialStore):
    """Encrypted credential records in the `storage_credentials` collection"""

    def __init__(self, db, encryption: EncryptionService):
        self.collection = db.storage_credentials
        self.encryption = encryption

    async def save(self, account_id: str, credentials: Dict[str, Any]) -> None:
        await self.collection.update_one(
            {"account_id": account_id},
            {"$set": {
                "account_id": account_id,
                "credentials": self.encryption.encrypt_credentials(credentials, account_id),
                "updated_at": datetime.utcnow(),
            }},
            upsert=True
        )

    async def get(self, account_id: str) -> Optional[Dict[str, Any]]:
        doc = await self.collection.find_one({"account_id": account_id})
        if not doc:
            return None
        return _decrypt_record(self.encryption, doc["credentials"], account_id)

    async def delete(self, account_id: str) -> None:
        await self.collection.delete_one({"account_id": account_id})


def _decrypt_record(encryption: EncryptionService, record: str, account_id: str) -> Dict[str, Any]:
    try:
        return encryption.decrypt_credentials(record, account_id)
    except ValueError as e:
        logger.error(f"Stored credentials for account {account_id} could not be decrypted")
        raise StorageAuthError("credential-store", "stored credentials could not be decrypted") from e
