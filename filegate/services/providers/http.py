"""
HTTP helpers for REST-based providers
Response classification and the Google resumable-upload protocol
"""

import logging
from typing import Optional, Dict, Any

import httpx

from filegate.exceptions import (
    StorageError,
    StorageAuthError,
    StorageAccessError,
    StorageNotFoundError,
    StorageQuotaExceededError,
    StorageProviderError,
)

logger = logging.getLogger(__name__)

RESUME_INCOMPLETE = 308


def _error_reason(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error.get(".tag") or error)
        if error:
            return str(body.get("error_summary") or error)
    return str(body)[:200]


def classify_response(
    response: httpx.Response,
    provider: str,
    operation: str,
    key: str = ""
) -> StorageError:
    """Map a failed HTTP response onto the storage taxonomy"""
    status = response.status_code
    reason = _error_reason(response)

    if status == 401:
        return StorageAuthError(provider, reason or "unauthorized")
    if status == 404:
        return StorageNotFoundError(key, {"reason": reason})
    if status == 403:
        lowered = reason.lower()
        if "ratelimit" in lowered.replace(" ", "") or "rate limit" in lowered:
            return StorageProviderError(provider, operation, reason, retryable=True, details={"status": status})
        if "quota" in lowered or ("storage" in lowered and "full" in lowered):
            return StorageQuotaExceededError(provider, 0, 0)
        return StorageAccessError(key, operation, {"reason": reason})
    if status == 507:
        return StorageQuotaExceededError(provider, 0, 0)

    retryable = status >= 500 or status in (408, 429)
    logger.error(f"{provider} {operation} failed on '{key}': HTTP {status} {reason}")
    return StorageProviderError(provider, operation, f"HTTP {status}: {reason}", retryable=retryable, details={"status": status})


def classify_transport_error(error: httpx.HTTPError, provider: str, operation: str) -> StorageProviderError:
    """Network level failures are always worth retrying"""
    logger.warning(f"{provider} {operation} transport error: {error}")
    return StorageProviderError(provider, operation, str(error) or error.__class__.__name__, retryable=True)


class ResumableSession:
    """
    Client side of the Google resumable upload protocol (Drive and GCS)

    Chunks are PUT to the session URL with a Content-Range at the current
    offset. The backend answers 308 until the upload is finalized with a
    zero-length PUT declaring the total size.
    """

    def __init__(self, http: httpx.AsyncClient, provider: str, headers: Optional[Dict[str, str]] = None):
        self.http = http
        self.provider = provider
        self.headers = headers or {}

    async def _put(self, session_url: str, content: bytes, content_range: str, key: str, operation: str) -> httpx.Response:
        headers = dict(self.headers)
        headers["Content-Range"] = content_range
        try:
            response = await self.http.put(session_url, content=content, headers=headers)
        except httpx.HTTPError as e:
            raise classify_transport_error(e, self.provider, operation) from e

        if response.status_code in (200, 201, RESUME_INCOMPLETE):
            return response
        if response.status_code in (404, 410):
            raise StorageNotFoundError(key, {"reason": "upload session expired or was cancelled"})
        raise classify_response(response, self.provider, operation, key)

    async def put_chunk(self, session_url: str, data: bytes, offset: int, key: str) -> int:
        """
        Append one chunk at `offset`

        Returns:
            The offset the backend has committed after this chunk
        """
        end = offset + len(data) - 1
        response = await self._put(session_url, data, f"bytes {offset}-{end}/*", key, "upload_part")
        committed = offset + len(data)
        # Range: bytes=0-N reports what the server actually persisted
        server_range = response.headers.get("Range")
        if server_range and "-" in server_range:
            committed = int(server_range.rsplit("-", 1)[1]) + 1
        if committed != offset + len(data):
            raise StorageProviderError(
                self.provider, "upload_part",
                f"backend committed {committed} bytes, expected {offset + len(data)}",
                retryable=False
            )
        return committed

    async def upload_all(self, session_url: str, data: bytes, key: str) -> Dict[str, Any]:
        """Send a whole payload in one request and return the created resource"""
        if not data:
            return await self.finalize(session_url, 0, key)
        size = len(data)
        response = await self._put(session_url, data, f"bytes 0-{size - 1}/{size}", key, "upload_file")
        if response.status_code == RESUME_INCOMPLETE:
            raise StorageProviderError(self.provider, "upload_file", "backend did not accept the full payload", retryable=True)
        try:
            return response.json()
        except ValueError:
            return {}

    async def finalize(self, session_url: str, total_size: int, key: str) -> Dict[str, Any]:
        """Close the stream at `total_size` bytes and return the created resource"""
        response = await self._put(session_url, b"", f"bytes */{total_size}", key, "complete_multipart_upload")
        if response.status_code == RESUME_INCOMPLETE:
            raise StorageProviderError(
                self.provider, "complete_multipart_upload",
                "backend reports the upload as incomplete",
                retryable=False
            )
        try:
            return response.json()
        except ValueError:
            return {}

    async def cancel(self, session_url: str) -> None:
        """Best-effort cancellation of a session (GCS answers 499)"""
        try:
            response = await self.http.delete(session_url, headers=self.headers)
            logger.info(f"{self.provider} resumable session cancelled (HTTP {response.status_code})")
        except httpx.HTTPError as e:
            logger.warning(f"{self.provider} could not cancel resumable session: {e}")
