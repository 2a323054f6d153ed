"""
Google Drive Provider
ID-addressed hierarchy adapter with path-to-id resolution and resumable
sessions
"""

import logging
from datetime import datetime
from typing import Optional, List, Dict, Any, Callable, Awaitable, Union

import httpx
from pydantic import BaseModel

from filegate.config import Settings
from filegate.exceptions import (
    StorageError,
    StorageAuthError,
    StorageNotFoundError,
    StorageProviderError,
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
    GoogleDriveCredentials,
    parse_credentials,
)
from filegate.services.providers.base import StorageProvider
from filegate.services.providers.http import (
    ResumableSession,
    classify_response,
    classify_transport_error,
)
from filegate.services.providers.oauth import OAuthTokenManager, expiry_from_millis
from filegate.services.providers.sessions import UploadSessionRegistry
from filegate.utils.keys import normalize_key, join_key, file_name_from_key, parent_key

logger = logging.getLogger(__name__)

DRIVE_API_URL = "https://www.googleapis.com/drive/v3"
DRIVE_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3/files"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
ROOT_ID = "root"
FILE_FIELDS = "id, name, mimeType, size, modifiedTime, md5Checksum, version, parents"
LIST_PAGE_SIZE = 1000
KB = 1024
GB = 1024 * 1024 * KB
TB = 1024 * GB
# non-final resumable chunks must be multiples of this
RESUMABLE_CHUNK_MULTIPLE = 256 * KB


def escape_query_value(value: str) -> str:
    """Escape a literal for the Drive query language"""
    return value.replace("\\", "\\\\").replace("'", "\\'")


class DrivePathResolver:
    """
    Resolves 'a/b/c' to a Drive file id one segment at a time

    Each call costs one lookup per path segment, starting from the 'root'
    alias.
    """

    def __init__(self, lookup_child: Callable[[str, str], Awaitable[Optional[str]]]):
        self.lookup_child = lookup_child

    async def resolve(self, path: str) -> Optional[str]:
        path = normalize_key(path, allow_empty=True).rstrip("/")
        if not path:
            return ROOT_ID

        parent_id = ROOT_ID
        for segment in path.split("/"):
            child_id = await self.lookup_child(parent_id, segment)
            if child_id is None:
                return None
            parent_id = child_id
        return parent_id

    def remember(self, path: str, file_id: str) -> None:
        pass

    def invalidate(self, path: str) -> None:
        pass


class CachingDrivePathResolver(DrivePathResolver):
    """Path resolver that memoizes resolved ids until invalidated"""

    def __init__(self, lookup_child: Callable[[str, str], Awaitable[Optional[str]]]):
        super().__init__(lookup_child)
        self._ids: Dict[str, str] = {}

    async def resolve(self, path: str) -> Optional[str]:
        normalized = normalize_key(path, allow_empty=True).rstrip("/")
        if normalized in self._ids:
            return self._ids[normalized]
        file_id = await super().resolve(normalized)
        if file_id is not None:
            self._ids[normalized] = file_id
        return file_id

    def remember(self, path: str, file_id: str) -> None:
        self._ids[normalize_key(path).rstrip("/")] = file_id

    def invalidate(self, path: str) -> None:
        normalized = normalize_key(path, allow_empty=True).rstrip("/")
        for cached in list(self._ids):
            if cached == normalized or cached.startswith(normalized + "/"):
                del self._ids[cached]


class GoogleDriveProvider(StorageProvider):
    """
    Google Drive adapter

    Keys are logical paths; the Drive file id of every entry is reported in
    `metadata['id']`. Drive has no pre-signed uploads, so write and delete
    URLs are unsupported and chunked uploads go through resumable sessions.
    """

    provider_type = ProviderType.GOOGLE_DRIVE
    capabilities = ProviderCapabilities(
        supports_multipart_upload=True,
        supports_range_requests=True,
        supports_server_side_encryption=False,
        supports_versioning=True,
        supports_folder_creation=True,
        supports_tags=False,
        supports_metadata=True,
        maximum_file_size=5 * TB,
        maximum_part_size=5 * GB,
        minimum_part_size=RESUMABLE_CHUNK_MULTIPLE,
        maximum_part_count=10000,
        upload_model=UploadModel.SESSION,
        supports_signed_write_urls=False,
        exact_usage_stats=True,
    )

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        resolver_class: type = DrivePathResolver
    ):
        super().__init__(settings)
        self._transport = transport
        self.http: Optional[httpx.AsyncClient] = None
        self.tokens: Optional[OAuthTokenManager] = None
        self.resolver: DrivePathResolver = resolver_class(self._lookup_child)
        self.sessions = UploadSessionRegistry(self.provider_name, ordered=True)

    # ===== Lifecycle =====

    async def initialize(self, credentials: Union[Dict[str, Any], BaseModel]) -> None:
        creds: GoogleDriveCredentials = parse_credentials(self.provider_type, credentials)
        self.http = httpx.AsyncClient(timeout=self.settings.HTTP_TIMEOUT_SECONDS, transport=self._transport)
        self.tokens = OAuthTokenManager(
            provider=self.provider_name,
            token_url=GOOGLE_TOKEN_URL,
            http=self.http,
            client_id=creds.client_id,
            client_secret=creds.client_secret,
            refresh_token=creds.refresh_token,
            access_token=creds.access_token,
            expires_at=expiry_from_millis(creds.expiry_date)
        )
        self.initialized = True
        logger.info("Google Drive storage initialized")

    async def test_connection(self) -> bool:
        await self._request("GET", f"{DRIVE_API_URL}/about", "test_connection", params={"fields": "user"})
        return True

    async def close(self) -> None:
        if self.http is not None:
            await self.http.aclose()
            self.http = None
        await super().close()

    def get_current_credentials(self) -> Dict[str, Any]:
        """Token state after in-place refreshes"""
        self._validate_initialized()
        return self.tokens.snapshot()

    # ===== HTTP =====

    async def _request(
        self,
        method: str,
        url: str,
        operation: str,
        key: str = "",
        ok_statuses: tuple = (200, 201, 204),
        **kwargs
    ) -> httpx.Response:
        """Authorized request; a 401 triggers one token refresh and retry"""
        self._validate_initialized()
        headers = dict(kwargs.pop("headers", None) or {})

        for attempt in range(2):
            token = await self.tokens.get_access_token()
            headers["Authorization"] = f"Bearer {token}"
            try:
                response = await self.http.request(method, url, headers=headers, **kwargs)
            except httpx.HTTPError as e:
                raise classify_transport_error(e, self.provider_name, operation) from e

            if response.status_code == 401 and attempt == 0:
                logger.info(f"Google Drive {operation} got 401, refreshing token")
                await self.tokens.refresh()
                continue
            if response.status_code in ok_statuses:
                return response
            raise classify_response(response, self.provider_name, operation, key)

        raise StorageAuthError(self.provider_name, "access token rejected after refresh")

    async def _lookup_child(self, parent_id: str, name: str) -> Optional[str]:
        query = f"name = '{escape_query_value(name)}' and '{parent_id}' in parents and trashed = false"
        response = await self._request(
            "GET", f"{DRIVE_API_URL}/files", "resolve_path", name,
            params={"q": query, "fields": "files(id)", "pageSize": 1}
        )
        files = response.json().get("files", [])
        return files[0]["id"] if files else None

    async def _require_id(self, key: str) -> str:
        file_id = await self.resolver.resolve(key)
        if file_id is None:
            raise StorageNotFoundError(key)
        return file_id

    def _to_metadata(self, item: Dict[str, Any], key: str) -> FileMetadata:
        is_directory = item.get("mimeType") == FOLDER_MIME_TYPE
        modified = item.get("modifiedTime")
        return FileMetadata(
            key=key,
            name=item.get("name") or file_name_from_key(key),
            size=int(item.get("size") or 0),
            last_modified=datetime.fromisoformat(modified.replace("Z", "+00:00")) if modified else None,
            content_type=item.get("mimeType"),
            is_directory=is_directory,
            etag=item.get("md5Checksum"),
            version_id=str(item["version"]) if item.get("version") else None,
            metadata={"id": item.get("id")},
        )

    async def _list_children(self, folder_id: str, page_token: Optional[str], page_size: int) -> Dict[str, Any]:
        params = {
            "q": f"'{folder_id}' in parents and trashed = false",
            "fields": f"nextPageToken, files({FILE_FIELDS})",
            "pageSize": min(page_size, LIST_PAGE_SIZE),
            "orderBy": "folder, name",
        }
        if page_token:
            params["pageToken"] = page_token
        response = await self._request("GET", f"{DRIVE_API_URL}/files", "list_files", folder_id, params=params)
        return response.json()

    # ===== Signed URLs =====

    async def get_signed_url(self, key: str, options: Optional[SignedUrlOptions] = None) -> str:
        """
        Media URL authorized by the current access token

        Drive has no pre-signed URLs; the link stays valid only as long as the
        access token does (about an hour), regardless of `expires_in`.
        """
        self._validate_initialized()
        options = self._signed_url_options(options)
        if options.operation != SignedUrlOperation.READ:
            raise self._unsupported(
                f"{options.operation.value} signed URLs",
                "Drive has no direct-upload or direct-delete URLs"
            )
        file_id = await self._require_id(key)
        token = await self.tokens.get_access_token()
        return f"{DRIVE_API_URL}/files/{file_id}?alt=media&access_token={token}"

    # ===== Files and folders =====

    async def create_folder(self, path: str, folder_name: str, options: Optional[FolderOptions] = None) -> FileMetadata:
        key = join_key(path, folder_name)
        parent_id = await self._require_id(path or "")
        name = file_name_from_key(key)

        existing = await self._lookup_child(parent_id, name)
        if existing:
            metadata = await self.get_file_metadata(key)
            if metadata.is_directory:
                return metadata
            raise StorageValidationError(f"A file named '{key}' already exists")

        body: Dict[str, Any] = {"name": name, "mimeType": FOLDER_MIME_TYPE, "parents": [parent_id]}
        if options and options.metadata:
            body["appProperties"] = options.metadata
        response = await self._request(
            "POST", f"{DRIVE_API_URL}/files", "create_folder", key,
            params={"fields": FILE_FIELDS}, json=body
        )
        item = response.json()
        self.resolver.remember(key, item["id"])
        logger.info(f"Created folder in Google Drive: {key}")
        return self._to_metadata(item, key)

    async def list_files(self, path: str = "", options: Optional[ListOptions] = None) -> FileListing:
        options = options or ListOptions()
        base = normalize_key(path or "", allow_empty=True).rstrip("/")
        folder_id = await self._require_id(base)

        if not options.recursive:
            data = await self._list_children(folder_id, options.page_token, options.max_results)
            files = [self._to_metadata(item, join_key(base, item["name"])) for item in data.get("files", [])]
            token = data.get("nextPageToken")
            return FileListing(files=files, next_page_token=token, truncated=token is not None)

        # breadth-first walk, capped at max_results
        files: List[FileMetadata] = []
        pending = [(base, folder_id)]
        truncated = False
        while pending and not truncated:
            folder_path, current_id = pending.pop(0)
            token = None
            while True:
                data = await self._list_children(current_id, token, options.max_results)
                for item in data.get("files", []):
                    if len(files) >= options.max_results:
                        truncated = True
                        break
                    entry = self._to_metadata(item, join_key(folder_path, item["name"]))
                    files.append(entry)
                    if entry.is_directory:
                        pending.append((entry.key, item["id"]))
                token = data.get("nextPageToken")
                if truncated or not token:
                    break

        return FileListing(files=files, truncated=truncated)

    async def get_file_metadata(self, key: str) -> FileMetadata:
        key = normalize_key(key).rstrip("/")
        file_id = await self._require_id(key)
        response = await self._request(
            "GET", f"{DRIVE_API_URL}/files/{file_id}", "get_file_metadata", key,
            params={"fields": FILE_FIELDS}
        )
        return self._to_metadata(response.json(), key)

    async def delete_file(self, key: str, options: Optional[DeleteOptions] = None) -> None:
        options = options or DeleteOptions()
        key = normalize_key(key).rstrip("/")
        metadata = await self.get_file_metadata(key)
        file_id = metadata.metadata["id"]

        if metadata.is_directory and not options.recursive:
            children = await self._list_children(file_id, None, 1)
            if children.get("files"):
                raise StorageValidationError(f"Folder '{key}' is not empty, use a recursive delete")

        # deleting a folder removes its descendants
        await self._request("DELETE", f"{DRIVE_API_URL}/files/{file_id}", "delete_file", key)
        self.resolver.invalidate(key)
        logger.info(f"Deleted from Google Drive: {key}")

    async def file_exists(self, key: str) -> bool:
        return await self.resolver.resolve(normalize_key(key)) is not None

    async def get_file_content(self, key: str, byte_range: Optional[ByteRange] = None) -> bytes:
        key = normalize_key(key)
        file_id = await self._require_id(key)
        headers = {"Range": byte_range.header()} if byte_range is not None else None
        response = await self._request(
            "GET", f"{DRIVE_API_URL}/files/{file_id}", "get_file_content", key,
            ok_statuses=(200, 206),
            params={"alt": "media"},
            headers=headers
        )
        if byte_range is not None and response.status_code == 200:
            return self._slice_range(response.content, byte_range)
        return response.content

    async def _start_session(self, key: str, options: UploadOptions) -> str:
        parent_id = await self._require_id(parent_key(key))
        name = file_name_from_key(key)
        content_type = self._content_type_for(key, options)
        existing_id = await self._lookup_child(parent_id, name)

        body: Dict[str, Any] = {"name": name, "mimeType": content_type}
        if options.metadata:
            body["appProperties"] = options.metadata
        headers = {"X-Upload-Content-Type": content_type}
        if options.expected_size is not None:
            headers["X-Upload-Content-Length"] = str(options.expected_size)

        if existing_id:
            if not options.overwrite:
                raise StorageValidationError(f"'{key}' already exists")
            body.pop("name")
            method, url = "PATCH", f"{DRIVE_UPLOAD_URL}/{existing_id}"
        else:
            body["parents"] = [parent_id]
            method, url = "POST", DRIVE_UPLOAD_URL

        response = await self._request(
            method, url, "create_multipart_upload", key,
            params={"uploadType": "resumable", "fields": FILE_FIELDS},
            json=body,
            headers=headers
        )
        session_url = response.headers.get("Location")
        if not session_url:
            raise StorageProviderError(
                self.provider_name, "create_multipart_upload",
                f"no resumable session URL returned for '{key}'",
                retryable=False
            )
        return session_url

    async def upload_file(self, key: str, content: bytes, options: Optional[UploadOptions] = None) -> FileMetadata:
        key = normalize_key(key)
        options = options or UploadOptions()
        session_url = await self._start_session(key, options)
        item = await ResumableSession(self.http, self.provider_name).upload_all(session_url, content, key)
        self.resolver.invalidate(key)
        logger.info(f"Uploaded to Google Drive: {key} ({len(content)} bytes)")
        return self._to_metadata(item, key)

    # ===== Resumable sessions =====

    async def create_multipart_upload(self, key: str, options: Optional[UploadOptions] = None) -> str:
        key = normalize_key(key)
        options = options or UploadOptions()
        session_url = await self._start_session(key, options)
        session = self.sessions.open(
            key,
            backend_ref=session_url,
            content_type=self._content_type_for(key, options),
            metadata=options.metadata
        )
        return session.upload_id

    async def get_signed_url_for_part(
        self,
        key: str,
        upload_id: str,
        part_number: int,
        content_length: Optional[int] = None
    ) -> str:
        """The resumable session URL; the caller PUTs with a Content-Range"""
        self._validate_initialized()
        self._validate_part_number(part_number)
        return self.sessions.get(upload_id, normalize_key(key)).backend_ref

    async def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> CompletedPart:
        self._validate_initialized()
        self._validate_part_number(part_number)
        if not data:
            raise StorageValidationError("Upload parts must not be empty")
        key = normalize_key(key)
        session = self.sessions.begin_part(upload_id, key, part_number)
        if session.parts and session.parts[-1].size % RESUMABLE_CHUNK_MULTIPLE:
            self.sessions.release_part(upload_id, part_number)
            raise StorageValidationError(
                f"Only the final part may be smaller than a multiple of {RESUMABLE_CHUNK_MULTIPLE} bytes"
            )
        try:
            committed = await ResumableSession(self.http, self.provider_name).put_chunk(

                session.backend_ref, data, session.offset, key
            )
        except StorageError:
            self.sessions.release_part(upload_id, part_number)
            raise

        part = CompletedPart(part_number=part_number, etag=str(committed), size=len(data))
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
            item = await ResumableSession(self.http, self.provider_name).finalize(session.backend_ref, session.offset, key)
        except StorageError:
            self.sessions.cancel_completion(upload_id)
            raise

        self.sessions.complete(upload_id)
        self.resolver.invalidate(key)
        logger.info(f"Completed resumable upload {upload_id} for {key} ({session.offset} bytes)")
        return self._to_metadata(item, key)

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        """
        Retire an upload id and ask Drive to drop the session

        Drive discards unfinished resumable sessions on its own after about a
        week if the cancellation request is not honoured.
        """
        self._validate_initialized()
        session = self.sessions.abort(upload_id, normalize_key(key))
        await ResumableSession(self.http, self.provider_name).cancel(session.backend_ref)

    # ===== Usage =====

    async def get_storage_stats(self) -> StorageStats:
        """Exact byte usage from the Drive quota API; file count is capped"""
        response = await self._request(
            "GET", f"{DRIVE_API_URL}/about", "get_storage_stats",
            params={"fields": "storageQuota"}
        )
        quota = response.json().get("storageQuota", {})
        total = int(quota.get("limit") or 0)  # absent for unlimited plans
        used = int(quota.get("usage") or 0)

        limit = self.settings.STATS_ENUMERATION_LIMIT
        count = 0
        token = None
        truncated = False
        while True:
            params = {
                "q": f"trashed = false and mimeType != '{FOLDER_MIME_TYPE}'",
                "fields": "nextPageToken, files(id)",
                "pageSize": LIST_PAGE_SIZE,
            }
            if token:
                params["pageToken"] = token
            page = await self._request("GET", f"{DRIVE_API_URL}/files", "get_storage_stats", params=params)
            data = page.json()
            count += len(data.get("files", []))
            token = data.get("nextPageToken")
            if not token:
                break
            if count >= limit:
                truncated = True
                break

        return StorageStats(
            total_bytes=total,
            used_bytes=used,
            available_bytes=max(0, total - used) if total else 0,
            file_count=count,
            last_updated=datetime.utcnow(),
            approximate=False,
            truncated=truncated
        )
