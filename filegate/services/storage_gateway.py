"""
Storage Gateway
Resolves storage accounts to initialized adapters and runs every storage
operation through retry, quota admission and upload sequencing
"""

import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from typing import Optional, List, Dict, Any, Callable, Awaitable, TypeVar, Tuple, Union

from pydantic import BaseModel

from filegate.background_tasks import StatsRefreshTask
from filegate.config import Settings, settings as default_settings
from filegate.exceptions import (
    StorageError,
    StorageAuthError,
    StorageNotFoundError,
    StorageQuotaExceededError,
    StorageValidationError,
    UnsupportedOperationError,
)
from filegate.models import (
    ProviderType,
    ProviderCapabilities,
    UploadModel,
    SignedUrlOperation,
    StorageAccount,
    StorageAccountCreate,
    StorageAccountUpdate,
    StorageAccountWithUsage,
    FileMetadata,
    FileListing,
    ByteRange,
    SignedUrlOptions,
    ListOptions,
    DeleteOptions,
    FolderOptions,
    UploadOptions,
    StorageStats,
    StorageUsage,
    CompletedPart,
)
from filegate.services.provider_factory import StorageProviderFactory
from filegate.services.providers import StorageProvider
from filegate.services.quota_manager import QuotaManager, QuotaWarningListener
from filegate.services.repositories import StorageAccountRepository, CredentialStore
from filegate.utils.retry import with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PartSequencer:
    """
    Serializes part submissions for one offset-based upload session

    Part n is admitted once parts 1..n-1 have succeeded and nothing else is
    in flight. Early parts wait for their turn; a part number that already
    succeeded is rejected. The condition lock is released while the part is
    being transferred.
    """

    def __init__(self, timeout: float):
        self.timeout = timeout
        self.next_part = 1
        self.busy = False
        self._condition = asyncio.Condition()

    @asynccontextmanager
    async def turn(self, part_number: int):
        async with self._condition:
            try:
                await asyncio.wait_for(
                    self._condition.wait_for(lambda: self.next_part >= part_number and not self.busy),
                    self.timeout
                )
            except asyncio.TimeoutError as e:
                raise StorageValidationError(
                    f"Part {part_number} timed out waiting for part {self.next_part}",
                    {"part_number": part_number, "expected_part_number": self.next_part}
                ) from e
            if self.next_part > part_number:
                raise StorageValidationError(
                    f"Part {part_number} was already uploaded",
                    {"part_number": part_number, "expected_part_number": self.next_part}
                )
            self.busy = True

        succeeded = False
        try:
            yield
            succeeded = True
        finally:
            async with self._condition:
                self.busy = False
                if succeeded:
                    self.next_part += 1
                self._condition.notify_all()


class StorageGateway:
    """
    Multi-backend storage gateway

    Owns the per-account adapter cache, the stats cache and the background
    stats refresh. Adapters are cached by storage-account id and only after
    a successful initialization.
    """

    def __init__(
        self,
        account_repository: StorageAccountRepository,
        credential_store: CredentialStore,
        factory: Optional[StorageProviderFactory] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        """
        Initialize gateway

        Args:
            account_repository: Storage-account records
            credential_store: Decrypted credential lookup and persistence
            factory: Adapter factory (defaults to all built-in providers)
            settings: Settings override
            sleep: Sleep used for retry backoff and the refresh loop
        """
        self.settings = settings or default_settings
        self.accounts = account_repository
        self.credentials = credential_store
        self.factory = factory or StorageProviderFactory(self.settings)
        self.sleep = sleep

        self._providers: Dict[str, StorageProvider] = {}
        self._providers_lock = asyncio.Lock()
        self._generations: Dict[str, int] = {}
        self._sequencers: Dict[Tuple[str, str], PartSequencer] = {}

        self.quota = QuotaManager(self._load_stats, self.settings)
        self.refresh_task = StatsRefreshTask(
            self.refresh_all_storage_stats,
            self.settings.STATS_CACHE_TTL_SECONDS,
            sleep=sleep
        )

    # ===== Lifecycle =====

    async def start(self):
        await self.refresh_task.start()
        logger.info("Storage gateway started")

    async def stop(self):
        await self.refresh_task.stop()
        async with self._providers_lock:
            providers = list(self._providers.values())
            self._providers.clear()
        for provider in providers:
            await self._close_quietly(provider)
        self._sequencers.clear()
        logger.info("Storage gateway stopped")

    async def _close_quietly(self, provider: StorageProvider):
        try:
            await provider.close()
        except Exception as e:
            logger.warning(f"Error closing {provider.provider_name} adapter: {e}")

    # ===== Resolution =====

    async def _require_account(self, account_id: str) -> StorageAccount:
        account = await self.accounts.get(account_id)
        if account is None:
            raise StorageNotFoundError(f"storage-account:{account_id}", {"account_id": account_id})
        return account

    async def resolve(self, account_id: str) -> StorageProvider:
        """
        Initialized adapter for a storage account

        Raises:
            StorageNotFoundError: Unknown account
            StorageAuthError: Missing or rejected credentials
            StorageProviderError: Backend failure during initialization
        """
        async with self._providers_lock:
            provider = self._providers.get(account_id)
            generation = self._generations.get(account_id, 0)
        if provider is not None:
            return provider

        account = await self._require_account(account_id)
        credentials = await self.credentials.get(account_id)
        if credentials is None:
            raise StorageAuthError(account.provider_type.value, f"no credentials stored for account {account_id}")

        provider = await self.factory.create_initialized_provider(account.provider_type, credentials)

        async with self._providers_lock:
            existing = self._providers.get(account_id)
            stale = self._generations.get(account_id, 0) != generation
            if existing is None and not stale:
                self._providers[account_id] = provider
                logger.info(f"Resolved {account.provider_type.value} adapter for account {account_id}")
                return provider

        # lost a resolve race, or credentials rotated meanwhile
        await self._close_quietly(provider)
        if existing is not None:
            return existing
        return await self.resolve(account_id)

    async def _evict(self, account_id: str):
        async with self._providers_lock:
            provider = self._providers.pop(account_id, None)
            self._generations[account_id] = self._generations.get(account_id, 0) + 1
        if provider is not None:
            await self._close_quietly(provider)

    async def _execute(
        self,
        account_id: str,
        operation_name: str,
        operation: Callable[[StorageProvider], Awaitable[T]]
    ) -> T:
        """Resolve the account and run an adapter call under the retry policy"""
        async def attempt() -> T:
            provider = await self.resolve(account_id)
            return await operation(provider)

        return await with_retry(
            attempt,
            max_retries=self.settings.RETRY_MAX_RETRIES,
            base_delay=self.settings.RETRY_BASE_DELAY_SECONDS,
            sleep=self.sleep,
            operation_name=operation_name
        )

    # ===== Account management =====

    async def _build_validated_provider(
        self,
        provider_type: ProviderType,
        credentials: Union[Dict[str, Any], BaseModel]
    ) -> StorageProvider:
        """Initialize and test an adapter; the caller owns the result"""
        provider = await self.factory.create_initialized_provider(provider_type, credentials)
        try:
            await with_retry(
                provider.test_connection,
                max_retries=self.settings.RETRY_MAX_RETRIES,
                base_delay=self.settings.RETRY_BASE_DELAY_SECONDS,
                sleep=self.sleep,
                operation_name=f"{ProviderType(provider_type).value} test_connection"
            )
        except StorageError:
            await self._close_quietly(provider)
            raise
        return provider

    async def validate_credentials(
        self,
        provider_type: ProviderType,
        credentials: Union[Dict[str, Any], BaseModel]
    ) -> bool:
        """True if the credentials initialize and reach the backend"""
        try:
            provider = await self._build_validated_provider(provider_type, credentials)
        except StorageError as e:
            logger.info(f"Credential validation failed for {ProviderType(provider_type).value}: {e.message}")
            return False
        await self._close_quietly(provider)
        return True

    async def create_storage_account(self, data: StorageAccountCreate) -> StorageAccount:
        """
        Register a storage account after proving its credentials work

        The first account of a company becomes its default.
        """
        provider = await self._build_validated_provider(data.provider_type, data.credentials)

        existing = await self.accounts.list_by_company(data.company_id)
        account = StorageAccount(
            id=secrets.token_hex(12),
            company_id=data.company_id,
            provider_type=data.provider_type,
            name=data.name,
            is_default=data.is_default or not existing
        )

        try:
            await self.credentials.save(account.id, data.credentials)
            await self.accounts.create(account)
        except Exception:
            await self.credentials.delete(account.id)
            await self._close_quietly(provider)
            raise
        if account.is_default:
            await self._clear_defaults(data.company_id, keep=account.id)

        async with self._providers_lock:
            self._providers[account.id] = provider
        logger.info(f"Created {account.provider_type.value} storage account {account.id} for company {account.company_id}")
        return account

    async def get_storage_accounts(self, company_id: str) -> List[StorageAccount]:
        return await self.accounts.list_by_company(company_id)

    async def get_storage_account(self, account_id: str) -> StorageAccount:
        return await self._require_account(account_id)

    async def get_default_storage_account(self, company_id: str) -> Optional[StorageAccount]:
        for account in await self.accounts.list_by_company(company_id):
            if account.is_default:
                return account
        return None

    async def _clear_defaults(self, company_id: str, keep: Optional[str] = None):
        for account in await self.accounts.list_by_company(company_id):
            if account.is_default and account.id != keep:
                await self.accounts.update(account.id, {"is_default": False})

    async def set_default_storage_account(self, company_id: str, account_id: str) -> StorageAccount:
        account = await self._require_account(account_id)
        if account.company_id != company_id:
            raise StorageNotFoundError(f"storage-account:{account_id}", {"company_id": company_id})
        await self._clear_defaults(company_id, keep=account_id)
        return await self.accounts.update(account_id, {"is_default": True})

    async def update_storage_account(self, account_id: str, update: StorageAccountUpdate) -> StorageAccount:
        account = await self._require_account(account_id)
        fields = update.model_dump(exclude_unset=True, exclude_none=True)
        if fields.pop("is_default", None):
            await self._clear_defaults(account.company_id, keep=account_id)
            fields["is_default"] = True
        if not fields:
            return account
        return await self.accounts.update(account_id, fields)

    async def delete_storage_account(self, account_id: str) -> bool:
        """Remove an account, its credentials, cached adapter and stats"""
        account = await self._require_account(account_id)
        await self.accounts.delete(account_id)
        await self.credentials.delete(account_id)
        await self._evict(account_id)
        await self.quota.forget(account_id)
        for session_key in [k for k in self._sequencers if k[0] == account_id]:
            del self._sequencers[session_key]

        if account.is_default:
            remaining = await self.accounts.list_by_company(account.company_id)
            if remaining:
                promoted = min(remaining, key=lambda a: a.created_at)
                await self.accounts.update(promoted.id, {"is_default": True})
                logger.info(f"Account {promoted.id} is now the default for company {account.company_id}")

        logger.info(f"Deleted storage account {account_id}")
        return True

    async def update_credentials(self, account_id: str, credentials: Dict[str, Any]) -> StorageAccount:
        """
        Rotate credentials

        The new credentials are validated before anything is persisted; on
        failure the old adapter stays cached and working.
        """
        account = await self._require_account(account_id)
        provider = await self._build_validated_provider(account.provider_type, credentials)

        try:
            await self.credentials.save(account_id, credentials)
        except Exception:
            await self._close_quietly(provider)
            raise

        await self._evict(account_id)
        async with self._providers_lock:
            self._providers[account_id] = provider
        await self.quota.forget(account_id)
        logger.info(f"Rotated credentials for storage account {account_id}")
        return await self.accounts.update(account_id, {})

    async def test_connection(self, account_id: str) -> bool:
        return await self._execute(account_id, "test_connection", lambda p: p.test_connection())

    async def get_storage_accounts_with_usage(self, company_id: str) -> List[StorageAccountWithUsage]:
        accounts = await self.accounts.list_by_company(company_id)

        async def with_usage(account: StorageAccount) -> StorageAccountWithUsage:
            try:
                usage = await self.get_storage_usage(account.id)
            except StorageError as e:
                return StorageAccountWithUsage(account=account, error=e.message)
            return StorageAccountWithUsage(account=account, usage=usage)

        return list(await asyncio.gather(*(with_usage(a) for a in accounts)))

    # ===== File operations =====

    async def get_capabilities(self, account_id: str) -> ProviderCapabilities:
        provider = await self.resolve(account_id)
        return provider.get_capabilities()

    async def get_signed_url(self, account_id: str, key: str, options: Optional[SignedUrlOptions] = None) -> str:
        options = options or SignedUrlOptions()
        provider = await self.resolve(account_id)
        if options.operation != SignedUrlOperation.READ and not provider.get_capabilities().supports_signed_write_urls:
            raise UnsupportedOperationError(
                provider.provider_name,
                f"{options.operation.value} signed URLs"
            )
        return await self._execute(account_id, "get_signed_url", lambda p: p.get_signed_url(key, options))

    async def create_folder(
        self,
        account_id: str,
        path: str,
        folder_name: str,
        options: Optional[FolderOptions] = None
    ) -> FileMetadata:
        provider = await self.resolve(account_id)
        if not provider.get_capabilities().supports_folder_creation:
            raise UnsupportedOperationError(provider.provider_name, "folder creation")
        return await self._execute(account_id, "create_folder", lambda p: p.create_folder(path, folder_name, options))

    async def list_files(self, account_id: str, path: str = "", options: Optional[ListOptions] = None) -> FileListing:
        return await self._execute(account_id, "list_files", lambda p: p.list_files(path, options))

    async def get_file_metadata(self, account_id: str, key: str) -> FileMetadata:
        return await self._execute(account_id, "get_file_metadata", lambda p: p.get_file_metadata(key))

    async def delete_file(self, account_id: str, key: str, options: Optional[DeleteOptions] = None) -> bool:
        await self._execute(account_id, "delete_file", lambda p: p.delete_file(key, options))
        return True

    async def file_exists(self, account_id: str, key: str) -> bool:
        return await self._execute(account_id, "file_exists", lambda p: p.file_exists(key))

    async def get_file_content(self, account_id: str, key: str, byte_range: Optional[ByteRange] = None) -> bytes:
        return await self._execute(account_id, "get_file_content", lambda p: p.get_file_content(key, byte_range))

    async def _admit(self, account_id: str, provider: StorageProvider, size_bytes: int):
        """Size and quota admission, before any data reaches the backend"""
        maximum = provider.get_capabilities().maximum_file_size
        if maximum and size_bytes > maximum:
            raise StorageValidationError(
                f"File of {size_bytes} bytes exceeds the {provider.provider_name} limit of {maximum} bytes",
                {"size": size_bytes, "maximum_file_size": maximum}
            )

        if not await self.quota.check_quota(account_id, size_bytes):
            stats = await self.quota.cache.get_fresh(account_id)
            available = max(0, stats.total_bytes - stats.used_bytes) if stats else 0
            logger.warning(f"Upload of {size_bytes} bytes rejected for account {account_id}: quota exceeded")
            raise StorageQuotaExceededError(account_id, size_bytes, available)

    async def upload_file(
        self,
        account_id: str,
        key: str,
        content: bytes,
        options: Optional[UploadOptions] = None
    ) -> FileMetadata:
        provider = await self.resolve(account_id)
        await self._admit(account_id, provider, len(content))
        return await self._execute(account_id, "upload_file", lambda p: p.upload_file(key, content, options))

    # ===== Multipart protocol =====

    async def create_multipart_upload(
        self,
        account_id: str,
        key: str,
        options: Optional[UploadOptions] = None
    ) -> str:
        """
        Start a chunked upload

        With `options.expected_size` the declared size goes through quota
        admission first.
        """
        provider = await self.resolve(account_id)
        capabilities = provider.get_capabilities()
        if not capabilities.supports_multipart_upload:
            raise UnsupportedOperationError(provider.provider_name, "multipart upload")
        if options and options.expected_size is not None:
            await self._admit(account_id, provider, options.expected_size)

        upload_id = await self._execute(
            account_id, "create_multipart_upload", lambda p: p.create_multipart_upload(key, options)
        )
        if capabilities.upload_model == UploadModel.SESSION:
            self._sequencers[(account_id, upload_id)] = PartSequencer(self.settings.SESSION_PART_WAIT_SECONDS)
        logger.info(f"Started {capabilities.upload_model.value} upload {upload_id} for {key} on account {account_id}")
        return upload_id

    async def get_signed_url_for_part(
        self,
        account_id: str,
        key: str,
        upload_id: str,
        part_number: int,
        content_length: Optional[int] = None
    ) -> str:
        provider = await self.resolve(account_id)
        if not provider.get_capabilities().supports_signed_part_urls:
            raise UnsupportedOperationError(provider.provider_name, "signed part URLs")
        return await self._execute(
            account_id,
            "get_signed_url_for_part",
            lambda p: p.get_signed_url_for_part(key, upload_id, part_number, content_length)
        )

    async def upload_part(
        self,
        account_id: str,
        key: str,
        upload_id: str,
        part_number: int,
        data: bytes
    ) -> CompletedPart:
        """
        Upload one part

        Offset-based sessions take parts one at a time in part-number order;
        a part that arrives early waits for its predecessors.
        """
        provider = await self.resolve(account_id)

        async def send() -> CompletedPart:
            return await self._execute(
                account_id, "upload_part", lambda p: p.upload_part(key, upload_id, part_number, data)
            )

        if provider.get_capabilities().upload_model != UploadModel.SESSION:
            return await send()

        sequencer = self._sequencers.setdefault(
            (account_id, upload_id),
            PartSequencer(self.settings.SESSION_PART_WAIT_SECONDS)
        )
        async with sequencer.turn(part_number):
            return await send()

    async def complete_multipart_upload(
        self,
        account_id: str,
        key: str,
        upload_id: str,
        parts: List[CompletedPart]
    ) -> FileMetadata:
        ordered = sorted(parts or [], key=lambda part: part.part_number)
        metadata = await self._execute(
            account_id,
            "complete_multipart_upload",
            lambda p: p.complete_multipart_upload(key, upload_id, ordered)
        )
        self._sequencers.pop((account_id, upload_id), None)
        return metadata

    async def abort_multipart_upload(self, account_id: str, key: str, upload_id: str) -> bool:
        """
        Abandon an upload

        Space held by uploaded parts may not be reclaimed immediately on
        backends whose uncommitted data expires on its own schedule.
        """
        await self._execute(
            account_id, "abort_multipart_upload", lambda p: p.abort_multipart_upload(key, upload_id)
        )
        self._sequencers.pop((account_id, upload_id), None)
        return True

    # ===== Quota and stats =====

    async def _load_stats(self, account_id: str) -> StorageStats:
        return await self._execute(account_id, "get_storage_stats", lambda p: p.get_storage_stats())

    async def get_storage_stats(self, account_id: str, force_refresh: bool = False) -> StorageStats:
        return await self.quota.get_stats(account_id, force_refresh)

    async def get_storage_usage(self, account_id: str) -> StorageUsage:
        return await self.quota.get_usage(account_id)

    async def check_quota(self, account_id: str, size_bytes: int) -> bool:
        return await self.quota.check_quota(account_id, size_bytes)

    def add_quota_warning_listener(self, listener: QuotaWarningListener):
        self.quota.add_warning_listener(listener)

    async def refresh_all_storage_stats(self) -> Dict[str, bool]:
        """
        Force-refresh stats for every known account

        Returns:
            Account id to whether its refresh succeeded
        """
        accounts = await self.accounts.list_all()

        async def refresh(account: StorageAccount) -> bool:
            try:
                await self.quota.get_stats(account.id, force_refresh=True)
                return True
            except StorageError as e:
                logger.warning(f"Stats refresh failed for account {account.id}: {e.message}")
                return False

        results = await asyncio.gather(*(refresh(a) for a in accounts))
        refreshed = dict(zip((a.id for a in accounts), results))
        logger.info(f"Refreshed storage stats: {sum(results)}/{len(results)} accounts")
        return refreshed
