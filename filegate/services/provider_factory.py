"""
Storage Provider Factory
Maps provider types to adapter constructors
"""

import logging
from typing import Optional, Dict, Any, Callable, List, Union

from pydantic import BaseModel

from filegate.config import Settings, settings as default_settings
from filegate.exceptions import StorageError, StorageValidationError
from filegate.models import ProviderType
from filegate.services.providers import (
    StorageProvider,
    S3Provider,
    AzureBlobProvider,
    GcsProvider,
    GoogleDriveProvider,
    DropboxProvider,
    AWS_S3_POLICY,
    VAULT_POLICY,
    S3_COMPATIBLE_POLICY,
)

logger = logging.getLogger(__name__)

ProviderConstructor = Callable[[Settings], StorageProvider]


def default_registry() -> Dict[ProviderType, ProviderConstructor]:
    return {
        ProviderType.VAULT: lambda s: S3Provider(VAULT_POLICY, settings=s),
        ProviderType.S3: lambda s: S3Provider(AWS_S3_POLICY, settings=s),
        ProviderType.S3_COMPATIBLE: lambda s: S3Provider(S3_COMPATIBLE_POLICY, settings=s),
        ProviderType.AZURE_BLOB: lambda s: AzureBlobProvider(settings=s),
        ProviderType.GCP_STORAGE: lambda s: GcsProvider(settings=s),
        ProviderType.GOOGLE_DRIVE: lambda s: GoogleDriveProvider(settings=s),
        ProviderType.DROPBOX: lambda s: DropboxProvider(settings=s),
    }


class StorageProviderFactory:
    """
    Builds adapters by provider type

    The factory never caches instances; callers that want reuse cache by
    storage-account id.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self._registry: Dict[ProviderType, ProviderConstructor] = default_registry()

    def register_provider(self, provider_type: Union[ProviderType, str], constructor: ProviderConstructor) -> None:
        """Register or replace the constructor for a provider type"""
        self._registry[ProviderType(provider_type)] = constructor
        logger.info(f"Registered storage provider: {ProviderType(provider_type).value}")

    def get_available_providers(self) -> List[ProviderType]:
        return list(self._registry.keys())

    def create_provider(self, provider_type: Union[ProviderType, str]) -> Optional[StorageProvider]:
        """
        New, uninitialized adapter

        Returns:
            The adapter, or None for a type nobody registered
        """
        try:
            provider_type = ProviderType(provider_type)
        except ValueError:
            logger.warning(f"Unknown storage provider type: {provider_type}")
            return None

        constructor = self._registry.get(provider_type)
        if constructor is None:
            logger.warning(f"No adapter registered for provider type: {provider_type.value}")
            return None
        return constructor(self.settings)

    async def create_initialized_provider(
        self,
        provider_type: Union[ProviderType, str],
        credentials: Union[Dict[str, Any], BaseModel]
    ) -> StorageProvider:
        """
        Build an adapter and wait for initialization to finish

        Raises:
            StorageValidationError: Unknown provider type
            StorageAuthError: Credentials rejected during initialization
            StorageProviderError: Backend failure during initialization
        """
        provider = self.create_provider(provider_type)
        if provider is None:
            raise StorageValidationError(f"Unsupported storage provider type: {provider_type}")

        try:
            await provider.initialize(credentials)
        except StorageError:
            await provider.close()
            raise
        except Exception as e:
            await provider.close()
            raise provider._wrap_unexpected("initialize", e) from e
        return provider
