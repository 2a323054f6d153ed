"""Tests for the motor-backed repositories, run against an in-memory collection."""

import copy
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from filegate.exceptions import StorageAuthError
from filegate.models import ProviderType, StorageAccount
from filegate.services.encryption_service import EncryptionService
from filegate.services.repositories import MongoStorageAccountRepository, MongoCredentialStore


class FakeCursor:
    def __init__(self, docs):
        self.docs = docs

    def sort(self, field, direction):
        self.docs.sort(key=lambda doc: doc[field], reverse=direction < 0)
        return self

    def __aiter__(self):
        self._iter = iter(self.docs)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    """Just enough of a motor collection for equality filters and $set"""

    def __init__(self):
        self.docs = []

    def _matches(self, doc, query):
        return all(doc.get(key) == value for key, value in query.items())

    async def insert_one(self, doc):
        self.docs.append({"_id": len(self.docs) + 1, **copy.deepcopy(doc)})

    async def find_one(self, query):
        for doc in self.docs:
            if self._matches(doc, query):
                return copy.deepcopy(doc)
        return None

    def find(self, query):
        return FakeCursor([copy.deepcopy(doc) for doc in self.docs if self._matches(doc, query)])

    async def update_one(self, query, update, upsert=False):
        for doc in self.docs:
            if self._matches(doc, query):
                doc.update(copy.deepcopy(update["$set"]))
                return SimpleNamespace(matched_count=1)
        if upsert:
            await self.insert_one({**query, **update["$set"]})
        return SimpleNamespace(matched_count=0)

    async def delete_one(self, query):
        for index, doc in enumerate(self.docs):
            if self._matches(doc, query):
                del self.docs[index]
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)


@pytest.fixture
def db():
    return SimpleNamespace(storage_accounts=FakeCollection(), storage_credentials=FakeCollection())


def make_account(account_id, company_id="acme", age_minutes=0):
    created = datetime(2024, 1, 1, 12, 0) - timedelta(minutes=age_minutes)
    return StorageAccount(
        id=account_id,
        company_id=company_id,
        provider_type=ProviderType.S3,
        name=account_id,
        created_at=created,
        updated_at=created,
    )


class TestMongoStorageAccountRepository:

    async def test_create_and_get(self, db):
        repository = MongoStorageAccountRepository(db)
        await repository.create(make_account("acc-1"))

        account = await repository.get("acc-1")
        assert account.id == "acc-1"
        assert account.provider_type == ProviderType.S3
        assert await repository.get("missing") is None

    async def test_list_by_company_oldest_first(self, db):
        repository = MongoStorageAccountRepository(db)
        await repository.create(make_account("newer", age_minutes=1))
        await repository.create(make_account("older", age_minutes=10))
        await repository.create(make_account("other", company_id="globex"))

        accounts = await repository.list_by_company("acme")
        assert [a.id for a in accounts] == ["older", "newer"]
        assert len(await repository.list_all()) == 3

    async def test_update_and_delete(self, db):
        repository = MongoStorageAccountRepository(db)
        await repository.create(make_account("acc-1"))

        updated = await repository.update("acc-1", {"name": "Renamed", "is_default": True})
        assert updated.name == "Renamed"
        assert updated.is_default is True
        assert await repository.update("missing", {"name": "x"}) is None

        assert await repository.delete("acc-1") is True
        assert await repository.delete("acc-1") is False


class TestMongoCredentialStore:

    async def test_upsert_is_encrypted(self, db):
        store = MongoCredentialStore(db, EncryptionService("test-master-key-with-at-least-32-chars!"))
        await store.save("acc-1", {"bucket": "files"})
        await store.save("acc-1", {"bucket": "archive"})

        assert len(db.storage_credentials.docs) == 1
        assert db.storage_credentials.docs[0]["credentials"].startswith("ENC:")
        assert await store.get("acc-1") == {"bucket": "archive"}

        await store.delete("acc-1")
        assert await store.get("acc-1") is None

    async def test_record_from_another_account_is_rejected(self, db):
        encryption = EncryptionService("test-master-key-with-at-least-32-chars!")
        store = MongoCredentialStore(db, encryption)
        await store.save("acc-1", {"bucket": "files"})
        db.storage_credentials.docs[0]["account_id"] = "acc-2"

        with pytest.raises(StorageAuthError):
            await store.get("acc-2")
