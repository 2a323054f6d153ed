"""
OAuth Token Manager
Keeps a provider access token fresh using its refresh token
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

import httpx

from filegate.exceptions import StorageAuthError, StorageProviderError

logger = logging.getLogger(__name__)

# refresh this long before the recorded expiry
EXPIRY_MARGIN = timedelta(seconds=60)
EPOCH = datetime(1970, 1, 1)


class OAuthTokenManager:
    """
    Access-token holder for one adapter instance

    Concurrent callers that hit an expired token share a single refresh
    request. The refreshed token lives only in memory; the persisted
    credential record is not updated.
    """

    def __init__(
        self,
        provider: str,
        token_url: str,
        http: httpx.AsyncClient,
        client_id: Optional[str],
        client_secret: Optional[str],
        refresh_token: Optional[str],
        access_token: Optional[str] = None,
        expires_at: Optional[datetime] = None
    ):
        """
        Initialize token manager

        Args:
            provider: Provider name for error messages
            token_url: OAuth2 token endpoint
            http: Shared async HTTP client
            client_id: OAuth client id (Dropbox app key)
            client_secret: OAuth client secret (Dropbox app secret)
            refresh_token: Long-lived refresh token, may be None
            access_token: Current access token, if any
            expires_at: Access token expiry (UTC), None if unknown
        """
        self.provider = provider
        self.token_url = token_url
        self.http = http
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.access_token = access_token
        self.expires_at = expires_at
        self._refreshing: Optional[asyncio.Task] = None

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token and self.client_id and self.client_secret)

    def is_expired(self) -> bool:
        if not self.access_token:
            return True
        if self.expires_at is None:
            return False
        return datetime.utcnow() + EXPIRY_MARGIN >= self.expires_at

    async def get_access_token(self) -> str:
        if self.is_expired():
            return await self.refresh()
        return self.access_token

    async def refresh(self) -> str:
        """Refresh the access token, joining an in-progress refresh if any"""
        if self._refreshing is None or self._refreshing.done():
            self._refreshing = asyncio.ensure_future(self._do_refresh())
        return await asyncio.shield(self._refreshing)

    async def _do_refresh(self) -> str:
        if not self.can_refresh:
            raise StorageAuthError(self.provider, "access token expired and no refresh token is available")

        try:
            response = await self.http.post(
                self.token_url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": self.refresh_token,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
                headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as e:
            raise StorageProviderError(self.provider, "token_refresh", str(e), retryable=True) from e

        if response.status_code in (400, 401, 403):
            logger.error(f"{self.provider} token refresh rejected: HTTP {response.status_code}")
            raise StorageAuthError(self.provider, "refresh token was rejected")
        if response.status_code >= 300:
            raise StorageProviderError(
                self.provider, "token_refresh", f"HTTP {response.status_code}",
                retryable=response.status_code >= 500
            )

        token_data = response.json()
        self.access_token = token_data["access_token"]
        expires_in = token_data.get("expires_in")
        self.expires_at = datetime.utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None
        if token_data.get("refresh_token"):
            self.refresh_token = token_data["refresh_token"]

        logger.info(f"{self.provider} access token refreshed")
        return self.access_token

    def snapshot(self) -> Dict[str, Any]:
        """Current token state, for callers that want to persist a rotation"""
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expiry_date": int((self.expires_at - EPOCH).total_seconds() * 1000) if self.expires_at else None,
        }


def expiry_from_millis(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return EPOCH + timedelta(milliseconds=value)
