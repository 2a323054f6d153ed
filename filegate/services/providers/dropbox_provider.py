"""
Dropbox Provider
Path-namespace adapter over the Dropbox HTTP API with upload sessions and
change notifications
"""

import hashlib
import hmac
import inspect
import json
import logging
from datetime import datetime
from typing import Optional, List, Dict, Any, Callable, Union

import httpx
from pydantic import BaseModel

from filegate.config import Settings
from filegate.exceptions import (
    StorageError,
    StorageAuthError,
    StorageNotFoundError,
    StorageProviderError,
    StorageQuotaExceededError,
    StorageValidationError,
)
from filegate.models import (
    ProviderType,
    ProviderCapabilities,
    UploadModel,
    SignedUrlOperation,
    FileMetadata,
    FileListing,
    ByteRange,
    SignedUrlOptions,
    ListOptions,
    DeleteOptions,
    FolderOptions,
    UploadOptions,
    StorageStats,
    CompletedPart,
    DropboxCredentials,
    parse_credentials,
)
from filegate.services.providers.base import StorageProvider
from filegate.services.providers.http import classify_response, classify_transport_error
from filegate.services.providers.oauth import OAuthTokenManager, expiry_from_millis
from filegate.services.providers.sessions import UploadSessionRegistry
from filegate.utils.keys import normalize_key, join_key

logger = logging.getLogger(__name__)

API_URL = "https://api.dropboxapi.com/2"
CONTENT_URL = "https://content.dropboxapi.com/2"
TOKEN_URL = "https://api.dropboxapi.com/oauth2/token"
TEMPORARY_LINK_SECONDS = 4 * 3600
FILE_CHANGED = "file:changed"
FILE_DELETED = "file:deleted"
MB = 1024 * 1024
GB = 1024 * MB


def to_dropbox_path(key: str) -> str:
    """Dropbox addresses the root as '' and everything else as '/a/b'"""
    normalized = normalize_key(key or "", allow_empty=True).rstrip("/")
    return f"/{normalized}" if normalized else ""


def from_dropbox_path(path: str) -> str:
    return path.lstrip("/")


class DropboxProvider(StorageProvider):
    """
    Dropbox adapter

    Upload ids are Dropbox session ids. Sessions append at the tracked
    offset, so parts must arrive in order.
    """

    provider_type = ProviderType.DROPBOX
    capabilities = ProviderCapabilities(
        supports_multipart_upload=True,
        supports_range_requests=False,
        supports_server_side_encryption=False,
        supports_versioning=True,
        supports_folder_creation=True,
        supports_tags=False,
        supports_metadata=False,
        maximum_file_size=350 * GB,
        maximum_part_size=150 * MB,
        minimum_part_size=1,
        maximum_part_count=10000,
        upload_model=UploadModel.SESSION,
        supports_signed_write_urls=False,
        supports_signed_part_urls=False,
        exact_usage_stats=True,
    )

    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(settings)
        self._transport = transport
        self.http: Optional[httpx.AsyncClient] = None
        self.tokens: Optional[OAuthTokenManager] = None
        self.sessions = UploadSessionRegistry(self.provider_name, ordered=True)
        self.webhook_secret: Optional[str] = None
        self.cursors: Dict[str, str] = {}
        self._listeners: Dict[str, List[Callable]] = {FILE_CHANGED: [], FILE_DELETED: []}

    # ===== Lifecycle =====

    async def initialize(self, credentials: Union[Dict[str, Any], BaseModel]) -> None:
        creds: DropboxCredentials = parse_credentials(self.provider_type, credentials)
        self.http = httpx.AsyncClient(timeout=self.settings.HTTP_TIMEOUT_SECONDS, transport=self._transport)
        self.tokens = OAuthTokenManager(
            provider=self.provider_name,
            token_url=TOKEN_URL,
            http=self.http,
            client_id=creds.app_key,
            client_secret=creds.app_secret,
            refresh_token=creds.refresh_token,
            access_token=creds.access_token,
            expires_at=expiry_from_millis(creds.expiry_date)
        )
        self.initialized = True
        logger.info("Dropbox storage initialized")

    async def test_connection(self) -> bool:
        await self._rpc("users/get_current_account", None, "test_connection")
        return True

    async def close(self) -> None:
        if self.http is not None:
            await self.http.aclose()
            self.http = None
        await super().close()

    def get_current_credentials(self) -> Dict[str, Any]:
        self._validate_initialized()
        return self.tokens.snapshot()

    # ===== HTTP =====

    def _classify(self, response: httpx.Response, operation: str, key: str) -> StorageError:
        """Dropbox reports endpoint errors as 409 with a path-like error_summary"""
        if response.status_code != 409:
            return classify_response(response, self.provider_name, operation, key)

        try:
            summary = response.json().get("error_summary", "")
        except ValueError:
            summary = response.text
        if "not_found" in summary:
            return StorageNotFoundError(key, {"reason": summary})
        if "insufficient_space" in summary:
            return StorageQuotaExceededError(self.provider_name, 0, 0)
        if "incorrect_offset" in summary or "malformed_path" in summary:
            return StorageValidationError(f"Dropbox rejected {operation} on '{key}': {summary}", {"reason": summary})
        return StorageProviderError(self.provider_name, operation, summary, retryable=False, details={"status": 409})

    async def _send(self, url: str, operation: str, key: str, **kwargs) -> httpx.Response:
        """POST with bearer auth, refreshing once on 401"""
        self._validate_initialized()
        headers = dict(kwargs.pop("headers", None) or {})

        for attempt in range(2):
            token = await self.tokens.get_access_token()
            headers["Authorization"] = f"Bearer {token}"
            try:
                response = await self.http.post(url, headers=headers, **kwargs)
            except httpx.HTTPError as e:
                raise classify_transport_error(e, self.provider_name, operation) from e

            if response.status_code == 401 and attempt == 0 and self.tokens.can_refresh:
                logger.info(f"Dropbox {operation} got 401, refreshing token")
                await self.tokens.refresh()
                continue
            if response.status_code < 300:
                return response
            raise self._classify(response, operation, key)

        raise StorageAuthError(self.provider_name, "access token rejected after refresh")

    async def _rpc(self, route: str, body: Optional[Dict[str, Any]], operation: str, key: str = "") -> Any:
        if body is None:
            response = await self._send(f"{API_URL}/{route}", operation, key)
        else:
            response = await self._send(f"{API_URL}/{route}", operation, key, json=body)
        return response.json() if response.content else None

    async def _content(
        self,
        route: str,
        arg: Dict[str, Any],
        operation: str,
        key: str = "",
        data: bytes = b"",
        headers: Optional[Dict[str, str]] = None
    ) -> httpx.Response:
        request_headers = {
            "Dropbox-API-Arg": json.dumps(arg),
            "Content-Type": "application/octet-stream",
        }
        request_headers.update(headers or {})
        return await self._send(f"{CONTENT_URL}/{route}", operation, key, content=data, headers=request_headers)

    def _to_metadata(self, entry: Dict[str, Any]) -> FileMetadata:
        is_directory = entry.get(".tag") == "folder"
        modified = entry.get("server_modified")
        return FileMetadata(
            key=from_dropbox_path(entry.get("path_display") or entry.get("path_lower") or ""),
            name=entry.get("name", ""),
            size=int(entry.get("size") or 0),
            last_modified=datetime.fromisoformat(modified.replace("Z", "+00:00")) if modified else None,
            is_directory=is_directory,
            etag=entry.get("content_hash"),
            version_id=entry.get("rev"),
            metadata={"id": entry.get("id")},
        )

    # ===== Signed URLs =====

    async def get_signed_url(self, key: str, options: Optional[SignedUrlOptions] = None) -> str:
        """Temporary download link; Dropbox fixes its validity at four hours"""
        self._validate_initialized()
        options = self._signed_url_options(options)
        if options.operation != SignedUrlOperation.READ:
            raise self._unsupported(
                f"{options.operation.value} signed URLs",
                "Dropbox only issues temporary download links"
            )
        key = normalize_key(key)
        result = await self._rpc("files/get_temporary_link", {"path": to_dropbox_path(key)}, "get_signed_url", key)
        return result["link"]

    # ===== Files and folders =====

    async def create_folder(self, path: str, folder_name: str, options: Optional[FolderOptions] = None) -> FileMetadata:
        key = join_key(path, folder_name)
        try:
            result = await self._rpc(
                "files/create_folder_v2",
                {"path": to_dropbox_path(key), "autorename": False},
                "create_folder",
                key
            )
        except StorageProviderError as e:
            # an existing folder is not an error
            if "conflict" not in e.message:
                raise
            existing = await self.get_file_metadata(key)
            if not existing.is_directory:
                raise StorageValidationError(f"A file named '{key}' already exists") from e
            return existing

        logger.info(f"Created folder in Dropbox: {key}")
        return self._to_metadata(dict(result["metadata"], **{".tag": "folder"}))

    async def list_files(self, path: str = "", options: Optional[ListOptions] = None) -> FileListing:
        options = options or ListOptions()
        dropbox_path = to_dropbox_path(path)
        if options.page_token:
            result = await self._rpc(
                "files/list_folder/continue", {"cursor": options.page_token}, "list_files", path
            )
        else:
            result = await self._rpc(
                "files/list_folder",
                {"path": dropbox_path, "recursive": options.recursive, "limit": min(options.max_results, 2000)},
                "list_files",
                path
            )

        base = from_dropbox_path(dropbox_path).lower()
        files = [
            self._to_metadata(entry)
            for entry in result.get("entries", [])
            if entry.get(".tag") != "deleted" and from_dropbox_path(entry.get("path_lower", "")) != base
        ][:options.max_results]
        token = result.get("cursor") if result.get("has_more") else None
        return FileListing(files=files, next_page_token=token, truncated=token is not None)

    async def get_file_metadata(self, key: str) -> FileMetadata:
        key = normalize_key(key)
        result = await self._rpc("files/get_metadata", {"path": to_dropbox_path(key)}, "get_file_metadata", key)
        if result.get(".tag") == "deleted":
            raise StorageNotFoundError(key)
        return self._to_metadata(result)

    async def delete_file(self, key: str, options: Optional[DeleteOptions] = None) -> None:
        options = options or DeleteOptions()
        key = normalize_key(key)
        if not options.recursive:
            metadata = await self.get_file_metadata(key)
            if metadata.is_directory:
                listing = await self.list_files(key, ListOptions(max_results=1))
                if listing.files:
                    raise StorageValidationError(f"Folder '{key}' is not empty, use a recursive delete")

        await self._rpc("files/delete_v2", {"path": to_dropbox_path(key)}, "delete_file", key)
        logger.info(f"Deleted from Dropbox: {key}")

    async def file_exists(self, key: str) -> bool:
        try:
            await self.get_file_metadata(key)
            return True
        except StorageNotFoundError:
            return False

    async def get_file_content(self, key: str, byte_range: Optional[ByteRange] = None) -> bytes:
        # no native ranges: download, then slice
        key = normalize_key(key)
        response = await self._content("files/download", {"path": to_dropbox_path(key)}, "get_file_content", key)
        return self._slice_range(response.content, byte_range)

    async def upload_file(self, key: str, content: bytes, options: Optional[UploadOptions] = None) -> FileMetadata:
        key = normalize_key(key)
        options = options or UploadOptions()
        arg = {
            "path": to_dropbox_path(key),
            "mode": "overwrite" if options.overwrite else "add",
            "autorename": False,
            "mute": True,
        }
        try:
            response = await self._content("files/upload", arg, "upload_file", key, data=content)
        except StorageProviderError as e:
            if options.overwrite or "conflict" not in e.message:
                raise
            raise StorageValidationError(f"'{key}' already exists", {"key": key}) from e
        logger.info(f"Uploaded to Dropbox: {key} ({len(content)} bytes)")
        return self._to_metadata(dict(response.json(), **{".tag": "file"}))

    # ===== Upload sessions =====

    async def create_multipart_upload(self, key: str, options: Optional[UploadOptions] = None) -> str:
        key = normalize_key(key)
        options = options or UploadOptions()
        response = await self._content(
            "files/upload_session/start", {"close": False}, "create_multipart_upload", key
        )
        session_id = response.json()["session_id"]
        self.sessions.open(
            key,
            upload_id=session_id,
            backend_ref=session_id,
            content_type=self._content_type_for(key, options),
            metadata={"mode": "overwrite" if options.overwrite else "add"}
        )
        return session_id

    async def get_signed_url_for_part(
        self,
        key: str,
        upload_id: str,
        part_number: int,
        content_length: Optional[int] = None
    ) -> str:
        raise self._unsupported("signed part URLs", "upload session parts must go through upload_part")

    async def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> CompletedPart:
        self._validate_initialized()
        self._validate_part_number(part_number)
        if not data:
            raise StorageValidationError("Upload parts must not be empty")
        key = normalize_key(key)
        session = self.sessions.begin_part(upload_id, key, part_number)
        arg = {"cursor": {"session_id": session.backend_ref, "offset": session.offset}, "close": False}
        try:
            await self._content("files/upload_session/append_v2", arg, "upload_part", key, data=data)
        except StorageError:
            self.sessions.release_part(upload_id, part_number)
            raise

        part = CompletedPart(part_number=part_number, etag=str(session.offset + len(data)), size=len(data))
        self.sessions.finish_part(upload_id, part)
        return part

    async def complete_multipart_upload(self, key: str, upload_id: str, parts: List[CompletedPart]) -> FileMetadata:
        self._validate_initialized()
        key = normalize_key(key)
        session = self.sessions.begin_completion(upload_id, key)
        try:
            self._sorted_contiguous_parts(parts)
            if len(parts) != len(session.parts):
                raise StorageValidationError(
                    f"Upload {upload_id} received {len(session.parts)} parts, completion lists {len(parts)}"
                )
            arg = {
                "cursor": {"session_id": session.backend_ref, "offset": session.offset},
                "commit": {
                    "path": to_dropbox_path(key),
                    "mode": session.metadata.get("mode", "overwrite"),
                    "autorename": False,
                    "mute": True,
                },
            }
            response = await self._content("files/upload_session/finish", arg, "complete_multipart_upload", key)
        except StorageError:
            self.sessions.cancel_completion(upload_id)
            raise

        self.sessions.complete(upload_id)
        logger.info(f"Completed Dropbox upload session {upload_id} for {key} ({session.offset} bytes)")
        return self._to_metadata(dict(response.json(), **{".tag": "file"}))

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        """
        Retire an upload id

        Dropbox has no session cancellation call; unfinished sessions expire
        after seven days.
        """
        self._validate_initialized()
        self.sessions.abort(upload_id, normalize_key(key))

    # ===== Usage =====

    async def get_storage_stats(self) -> StorageStats:
        usage = await self._rpc("users/get_space_usage", None, "get_storage_stats")
        allocation = usage.get("allocation", {})
        used = int(usage.get("used") or 0)
        total = int(allocation.get("allocated") or 0)

        return StorageStats(
            total_bytes=total,
            used_bytes=used,
            available_bytes=max(0, total - used) if total else 0,
            last_updated=datetime.utcnow(),
            approximate=False
        )

    # ===== Change notifications =====

    def on_file_change(self, event: str, callback: Callable) -> None:
        """Subscribe to 'file:changed' or 'file:deleted'"""
        if event not in self._listeners:
            raise StorageValidationError(f"Unknown change event '{event}'")
        self._listeners[event].append(callback)

    async def register_webhook(self, callback_url: str, secret: str) -> str:
        """
        Start tracking changes for webhook delivery

        The callback URL itself is configured in the Dropbox app console; this
        records the signing secret and the cursor changes are read from.

        Returns:
            The latest cursor for the whole namespace
        """
        result = await self._rpc(
            "files/list_folder/get_latest_cursor",
            {"path": "", "recursive": True, "include_deleted": True},
            "register_webhook"
        )
        self.webhook_secret = secret
        self.cursors["/"] = result["cursor"]
        logger.info(f"Registered Dropbox webhook: {callback_url}")
        return result["cursor"]

    @staticmethod
    def create_signature(body: Union[str, bytes], secret: str) -> str:
        if isinstance(body, str):
            body = body.encode("utf-8")
        return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

    def verify_webhook(self, signature: str, body: Union[str, bytes]) -> bool:
        """Check the X-Dropbox-Signature header against the raw request body"""
        if not self.webhook_secret:
            logger.warning("Webhook secret not set for verification")
            return False
        expected = self.create_signature(body, self.webhook_secret)
        return hmac.compare_digest(expected, signature or "")

    async def process_webhook(self, payload: Dict[str, Any]) -> int:
        """
        Read changes behind every tracked cursor and notify listeners

        Returns:
            Number of change events dispatched
        """
        self._validate_initialized()
        if not isinstance(payload, dict) or not payload.get("list_folder", {}).get("accounts"):
            raise StorageValidationError("Invalid webhook payload")

        dispatched = 0
        for path, cursor in list(self.cursors.items()):
            has_more = True
            while has_more:
                changes = await self._rpc("files/list_folder/continue", {"cursor": cursor}, "process_webhook")
                cursor = changes["cursor"]
                has_more = changes.get("has_more", False)
                for entry in changes.get("entries", []):
                    await self._dispatch(entry)
                    dispatched += 1
            self.cursors[path] = cursor

        logger.info(f"Processed Dropbox webhook: {dispatched} changes")
        return dispatched

    async def _dispatch(self, entry: Dict[str, Any]) -> None:
        event = FILE_DELETED if entry.get(".tag") == "deleted" else FILE_CHANGED
        info = {
            "path": entry.get("path_display"),
            "type": entry.get(".tag"),
            "file_id": entry.get("id"),
            "name": entry.get("name"),
        }
        for callback in self._listeners[event]:
            try:
                result = callback(info)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Dropbox {event} listener failed for {info['path']}: {e}")
