"""In-memory stand-ins for the storage backends used by the tests."""

import base64
import hashlib
import io
import json
import re
import secrets
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qs

import httpx
from azure.core.exceptions import ResourceNotFoundError, ResourceExistsError
from botocore.exceptions import ClientError
from google.api_core import exceptions as gcs_exceptions


def client_error(code: str, status: int, operation: str = "Operation") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


def _md5(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


# ============================================================================
# S3
# ============================================================================

class FakeS3Client:
    """Subset of the boto3 S3 client backed by dicts"""

    def __init__(self, buckets: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None):
        self.buckets = buckets if buckets is not None else {"files": {}}
        self.uploads: Dict[str, Dict[str, Any]] = {}
        self.calls: List[str] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.presigned: List[Dict[str, Any]] = []

    def fail_next(self, method: str, *errors: Exception):
        self.failures.setdefault(method, []).extend(errors)

    def _record(self, method: str):
        self.calls.append(method)
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def _bucket(self, name: str) -> Dict[str, Dict[str, Any]]:
        if name not in self.buckets:
            raise client_error("NoSuchBucket", 404)
        return self.buckets[name]

    def put_stub(self, bucket: str, key: str, size: int):
        """Object that reports `size` without holding the bytes"""
        self.buckets[bucket][key] = {"Body": b"", "Size": size, "ETag": '"stub"', "ContentType": None, "Metadata": {}}

    def put_object(self, Bucket, Key, Body=b"", ContentType=None, Metadata=None, IfNoneMatch=None, **kwargs):
        self._record("put_object")
        if IfNoneMatch == "*" and Key in self._bucket(Bucket):
            raise client_error("PreconditionFailed", 412, "PutObject")
        etag = f'"{_md5(Body)}"'
        self._bucket(Bucket)[Key] = {
            "Body": Body,
            "Size": len(Body),
            "ETag": etag,
            "ContentType": ContentType,
            "Metadata": Metadata or {},
            "LastModified": datetime.now(timezone.utc),
        }
        return {"ETag": etag}

    def head_object(self, Bucket, Key):
        self._record("head_object")
        obj = self._bucket(Bucket).get(Key)
        if obj is None:
            raise client_error("404", 404, "HeadObject")
        return {
            "ContentLength": obj["Size"],
            "ContentType": obj["ContentType"],
            "ETag": obj["ETag"],
            "LastModified": obj.get("LastModified"),
            "Metadata": obj["Metadata"],
        }

    def get_object(self, Bucket, Key, Range=None):
        self._record("get_object")
        obj = self._bucket(Bucket).get(Key)
        if obj is None:
            raise client_error("NoSuchKey", 404, "GetObject")
        body = obj["Body"]
        if Range:
            start, end = Range.replace("bytes=", "").split("-")
            body = body[int(start):int(end) + 1]
        return {"Body": io.BytesIO(body)}

    def delete_object(self, Bucket, Key, **kwargs):
        self._record("delete_object")
        self._bucket(Bucket).pop(Key, None)
        return {}

    def delete_objects(self, Bucket, Delete):
        self._record("delete_objects")
        for item in Delete["Objects"]:
            self._bucket(Bucket).pop(item["Key"], None)
        return {}

    def list_objects_v2(self, Bucket, Prefix="", MaxKeys=1000, Delimiter=None, ContinuationToken=None):
        self._record("list_objects_v2")
        keys = sorted(k for k in self._bucket(Bucket) if k.startswith(Prefix))
        entries = []
        seen_prefixes = set()
        for key in keys:
            rest = key[len(Prefix):]
            if Delimiter and Delimiter in rest:
                common = Prefix + rest.split(Delimiter, 1)[0] + Delimiter
                if common not in seen_prefixes:
                    seen_prefixes.add(common)
                    entries.append(("prefix", common))
                continue
            entries.append(("object", key))

        start = int(ContinuationToken or 0)
        page = entries[start:start + MaxKeys]
        truncated = start + MaxKeys < len(entries)
        response: Dict[str, Any] = {
            "Contents": [
                {
                    "Key": key,
                    "Size": self._bucket(Bucket)[key]["Size"],
                    "ETag": self._bucket(Bucket)[key]["ETag"],
                    "LastModified": self._bucket(Bucket)[key].get("LastModified"),
                }
                for kind, key in page if kind == "object"
            ],
            "CommonPrefixes": [{"Prefix": key} for kind, key in page if kind == "prefix"],
            "IsTruncated": truncated,
        }
        if truncated:
            response["NextContinuationToken"] = str(start + MaxKeys)
        return response

    def create_multipart_upload(self, Bucket, Key, ContentType=None, Metadata=None):
        self._record("create_multipart_upload")
        upload_id = secrets.token_hex(8)
        self.uploads[upload_id] = {"Bucket": Bucket, "Key": Key, "Parts": {}, "ContentType": ContentType}
        return {"UploadId": upload_id}

    def upload_part(self, Bucket, Key, UploadId, PartNumber, Body):
        self._record("upload_part")
        upload = self.uploads.get(UploadId)
        if upload is None:
            raise client_error("NoSuchUpload", 404, "UploadPart")
        etag = f'"{_md5(Body)}"'
        upload["Parts"][PartNumber] = (etag.strip('"'), Body)
        return {"ETag": etag}

    def complete_multipart_upload(self, Bucket, Key, UploadId, MultipartUpload):
        self._record("complete_multipart_upload")
        upload = self.uploads.pop(UploadId, None)
        if upload is None:
            raise client_error("NoSuchUpload", 404, "CompleteMultipartUpload")
        body = b""
        for part in MultipartUpload["Parts"]:
            etag, data = upload["Parts"][part["PartNumber"]]
            if etag != part["ETag"]:
                raise client_error("InvalidPart", 400, "CompleteMultipartUpload")
            body += data
        self._bucket(Bucket)[Key] = {
            "Body": body,
            "Size": len(body),
            "ETag": f'"{_md5(body)}-{len(MultipartUpload["Parts"])}"',
            "ContentType": upload["ContentType"],
            "Metadata": {},
        }
        return {"Key": Key}

    def abort_multipart_upload(self, Bucket, Key, UploadId):
        self._record("abort_multipart_upload")
        if self.uploads.pop(UploadId, None) is None:
            raise client_error("NoSuchUpload", 404, "AbortMultipartUpload")
        return {}

    def generate_presigned_url(self, ClientMethod, Params, ExpiresIn):
        self.presigned.append({"method": ClientMethod, "params": Params, "expires_in": ExpiresIn})
        return f"https://fake-s3.local/{Params['Bucket']}/{Params['Key']}?op={ClientMethod}&X-Amz-Expires={ExpiresIn}"


class FakeS3ClientFactory:
    """Replacement for boto3.client that records construction arguments"""

    def __init__(self, client: Optional[FakeS3Client] = None):
        self.client = client or FakeS3Client()
        self.kwargs: List[Dict[str, Any]] = []

    def __call__(self, service, **kwargs):
        self.kwargs.append(kwargs)
        return self.client


# ============================================================================
# Azure Blob
# ============================================================================

class FakePageIterator:
    def __init__(self, items: List[Any], page_size: int, token: Optional[str]):
        self._items = items
        self._page_size = page_size
        self._start = int(token or 0)
        self._done = False
        self.continuation_token = None

    def __iter__(self):
        return self

    def __next__(self):
        if self._done:
            raise StopIteration
        self._done = True
        end = self._start + self._page_size
        page = self._items[self._start:end]
        self.continuation_token = str(end) if end < len(self._items) else None
        return iter(page)


class FakePaged:
    def __init__(self, items: List[Any], page_size: Optional[int]):
        self._items = items
        self._page_size = page_size or 5000

    def __iter__(self):
        return iter(self._items)

    def by_page(self, continuation_token=None):
        return FakePageIterator(self._items, self._page_size, continuation_token)


class FakeBlobClient:
    def __init__(self, container: "FakeContainerClient", name: str):
        self.container = container
        self.name = name
        self.url = f"https://fakeaccount.blob.core.windows.net/{container.name}/{name}"

    def exists(self):
        return self.name in self.container.blobs

    def upload_blob(self, data, overwrite=False, metadata=None, content_settings=None, **kwargs):
        if not overwrite and self.name in self.container.blobs:
            raise ResourceExistsError("BlobAlreadyExists")
        self.container.store(self.name, bytes(data), content_settings, metadata)
        return {"etag": f'"{_md5(bytes(data))}"'}

    def get_blob_properties(self):
        blob = self.container.blobs.get(self.name)
        if blob is None:
            raise ResourceNotFoundError("The specified blob does not exist.")
        return blob

    def delete_blob(self, **kwargs):
        if self.container.blobs.pop(self.name, None) is None:
            raise ResourceNotFoundError("The specified blob does not exist.")

    def download_blob(self, offset=None, length=None):
        blob = self.get_blob_properties()
        data = blob.data
        if offset is not None:
            data = data[offset:offset + length]
        return SimpleNamespace(readall=lambda: data)

    # the SDK base64-encodes block ids before they reach the service
    def stage_block(self, block_id, data, length=None):
        self.container.put_block(self.name, _b64(block_id), data)

    def commit_block_list(self, block_list, content_settings=None, metadata=None):
        staged = self.container.staged.get(self.name, {})
        wire_ids = [_b64(block.id) for block in block_list]
        data = b""
        for wire_id in wire_ids:
            if wire_id not in staged:
                raise ResourceNotFoundError("InvalidBlockList")
            data += staged[wire_id]
        self.container.staged.pop(self.name, None)
        self.container.store(self.name, data, content_settings, metadata)
        self.container.committed_orders.append(wire_ids)



class FakeContainerClient:
    def __init__(self, name: str, exists: bool = True):
        self.name = name
        self.exists = exists
        self.blobs: Dict[str, Any] = {}
        self.staged: Dict[str, Dict[str, bytes]] = {}
        self.committed_orders: List[List[str]] = []

    def put_block(self, name, wire_block_id, data):
        """Put Block as the service sees it, from the SDK or a signed part URL"""
        self.staged.setdefault(name, {})[wire_block_id] = bytes(data)

    def store(self, name, data, content_settings=None, metadata=None):

        self.blobs[name] = SimpleNamespace(
            name=name,
            size=len(data),
            data=data,
            etag=f'"{_md5(data)}"',
            last_modified=datetime.now(timezone.utc),
            content_settings=content_settings or SimpleNamespace(content_type=None),
            metadata=metadata or {},
            version_id=None,
        )

    def get_container_properties(self):
        if not self.exists:
            raise ResourceNotFoundError("The specified container does not exist.")
        return {"name": self.name}

    def get_blob_client(self, name):
        return FakeBlobClient(self, name)

    def list_blobs(self, name_starts_with=None, results_per_page=None):
        prefix = name_starts_with or ""
        items = [self.blobs[name] for name in sorted(self.blobs) if name.startswith(prefix)]
        return FakePaged(items, results_per_page)

    def walk_blobs(self, name_starts_with=None, delimiter="/", results_per_page=None):
        prefix = name_starts_with or ""
        items = []
        seen = set()
        for name in sorted(self.blobs):
            if not name.startswith(prefix):
                continue
            rest = name[len(prefix):]
            if delimiter in rest:
                folder = prefix + rest.split(delimiter, 1)[0] + delimiter
                if folder not in seen:
                    seen.add(folder)
                    items.append(SimpleNamespace(name=folder, prefix=folder))
                continue
            items.append(self.blobs[name])
        return FakePaged(items, results_per_page)

    def delete_blobs(self, *names):
        for name in names:
            self.blobs.pop(name, None)


class FakeBlobServiceClient:
    account_name = "fakeaccount"

    def __init__(self, containers: Optional[Dict[str, FakeContainerClient]] = None):
        self.containers = containers or {"files": FakeContainerClient("files")}
        self.closed = False

    def get_container_client(self, name):
        if name not in self.containers:
            self.containers[name] = FakeContainerClient(name, exists=False)
        return self.containers[name]

    def close(self):
        self.closed = True


# ============================================================================
# Resumable upload protocol (GCS and Drive)
# ============================================================================

class ResumableUploads:
    """Server side of the resumable-upload protocol"""

    def __init__(self):
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.cancelled: List[str] = []
        self.requests: List[str] = []

    def open(self, session_id: str, on_complete: Callable[[bytes], Dict[str, Any]]):
        self.sessions[session_id] = {"data": bytearray(), "on_complete": on_complete}

    def handle_put(self, session_id: str, request: httpx.Request) -> httpx.Response:
        session = self.sessions.get(session_id)
        if session is None:
            return httpx.Response(404, json={"error": {"message": "session not found"}})

        content_range = request.headers["Content-Range"]
        self.requests.append(content_range)
        data = session["data"]
        body = request.content

        match = re.match(r"bytes \*/(\d+)", content_range)
        if match:
            total = int(match.group(1))
            if total != len(data):
                return self._incomplete(data)
            return self._complete(session_id)

        match = re.match(r"bytes (\d+)-(\d+)/(\*|\d+)", content_range)
        start, end, total = int(match.group(1)), int(match.group(2)), match.group(3)
        if start == len(data) and end - start + 1 == len(body):
            data.extend(body)
        if total != "*" and int(total) == len(data):
            return self._complete(session_id)
        return self._incomplete(data)

    def handle_delete(self, session_id: str) -> httpx.Response:
        self.sessions.pop(session_id, None)
        self.cancelled.append(session_id)
        return httpx.Response(499)

    @staticmethod
    def _incomplete(data: bytearray) -> httpx.Response:
        headers = {"Range": f"bytes=0-{len(data) - 1}"} if data else {}
        return httpx.Response(308, headers=headers)

    def _complete(self, session_id: str) -> httpx.Response:
        session = self.sessions.pop(session_id)
        return httpx.Response(200, json=session["on_complete"](bytes(session["data"])))


# ============================================================================
# Google Cloud Storage
# ============================================================================

class FakeGcsPage(list):
    prefixes: tuple = ()


class FakeGcsIterator:
    def __init__(self, blobs: List["FakeGcsBlob"], prefixes: List[str], max_results, page_token):
        start = int(page_token or 0)
        entries = blobs if max_results is None else blobs[start:start + max_results]
        page = FakeGcsPage(entries)
        page.prefixes = tuple(prefixes)
        self._all = entries
        self.pages = iter([page])
        end = start + (max_results or len(blobs))
        self.next_page_token = str(end) if max_results is not None and end < len(blobs) else None

    def __iter__(self):
        return iter(self._all)


class FakeGcsBlob:
    def __init__(self, bucket: "FakeGcsBucket", name: str):
        self.bucket = bucket
        self.name = name
        self.data = b""
        self.size = None
        self.updated = None
        self.content_type = None
        self.etag = None
        self.generation = None
        self.metadata = None
        self.cache_control = None
        self.content_disposition = None

    def exists(self):
        return self.name in self.bucket.blobs

    def upload_from_string(self, data, content_type=None, if_generation_match=None):
        if if_generation_match == 0 and self.name in self.bucket.blobs:
            raise gcs_exceptions.PreconditionFailed("At least one of the pre-conditions you specified did not hold.")
        self.bucket.store(self.name, bytes(data), content_type, self.metadata)
        self.etag = self.bucket.blobs[self.name].etag

    def delete(self):
        if self.bucket.blobs.pop(self.name, None) is None:
            raise gcs_exceptions.NotFound("No such object")

    def download_as_bytes(self, start=None, end=None):
        stored = self.bucket.blobs.get(self.name)
        if stored is None:
            raise gcs_exceptions.NotFound("No such object")
        if start is None:
            return stored.data
        return stored.data[start:end + 1]

    def generate_signed_url(self, version, expiration, method, content_type=None, response_disposition=None):
        self.bucket.signed.append({"method": method, "expiration": expiration, "version": version})
        seconds = int(expiration.total_seconds())
        return f"https://storage.googleapis.com/{self.bucket.name}/{self.name}?X-Goog-Expires={seconds}&method={method}"

    def create_resumable_upload_session(self, content_type=None, size=None):
        session_id = secrets.token_hex(8)
        name = self.name
        metadata = self.metadata

        def on_complete(data: bytes) -> Dict[str, Any]:
            self.bucket.store(name, data, content_type, metadata)
            return {"name": name, "size": str(len(data))}

        self.bucket.uploads.open(session_id, on_complete)
        return f"https://storage.googleapis.com/upload/storage/v1/b/{self.bucket.name}/o?upload_id={session_id}"


class FakeGcsBucket:
    def __init__(self, name: str, uploads: ResumableUploads):
        self.name = name
        self.uploads = uploads
        self.blobs: Dict[str, FakeGcsBlob] = {}
        self.signed: List[Dict[str, Any]] = []

    def store(self, name, data, content_type=None, metadata=None):
        blob = FakeGcsBlob(self, name)
        blob.data = data
        blob.size = len(data)
        blob.content_type = content_type
        blob.metadata = metadata
        blob.etag = _md5(data)
        blob.generation = len(self.blobs) + 1
        blob.updated = datetime.now(timezone.utc)
        self.blobs[name] = blob

    def put_stub(self, name: str, size: int):
        self.store(name, b"")
        self.blobs[name].size = size

    def blob(self, name, generation=None):
        return FakeGcsBlob(self, name)

    def get_blob(self, name):
        return self.blobs.get(name)

    def delete_blobs(self, blobs):
        for blob in blobs:
            self.blobs.pop(blob.name, None)


class FakeGcsClient:
    def __init__(self, bucket_names=("files",)):
        self.uploads = ResumableUploads()
        self.buckets = {name: FakeGcsBucket(name, self.uploads) for name in bucket_names}

    def bucket(self, name):
        return self.buckets.get(name) or FakeGcsBucket(name, self.uploads)

    def get_bucket(self, name):
        if name not in self.buckets:
            raise gcs_exceptions.NotFound(f"bucket {name} not found")
        return self.buckets[name]

    def list_blobs(self, bucket, prefix=None, max_results=None, page_token=None, delimiter=None):
        prefix = prefix or ""
        blobs = []
        prefixes = []
        for name in sorted(bucket.blobs):
            if not name.startswith(prefix):
                continue
            rest = name[len(prefix):]
            if delimiter and delimiter in rest:
                folder = prefix + rest.split(delimiter, 1)[0] + delimiter
                if folder not in prefixes:
                    prefixes.append(folder)
                continue
            blobs.append(bucket.blobs[name])
        return FakeGcsIterator(blobs, prefixes, max_results, page_token)

    def transport(self) -> httpx.MockTransport:
        def handler(request: httpx.Request) -> httpx.Response:
            session_id = request.url.params.get("upload_id")
            if request.method == "DELETE":
                return self.uploads.handle_delete(session_id)
            return self.uploads.handle_put(session_id, request)

        return httpx.MockTransport(handler)


# ============================================================================
# Google Drive
# ============================================================================

DRIVE_FOLDER = "application/vnd.google-apps.folder"


class FakeDriveServer:
    """Drive v3 and OAuth token endpoints over httpx.MockTransport"""

    def __init__(self, limit: int = 15 * 1024 ** 3):
        self.files: Dict[str, Dict[str, Any]] = {}
        self.uploads = ResumableUploads()
        self.limit = limit
        self.valid_tokens = {"initial-token"}
        self.token_requests = 0
        self.lookups = 0
        self.requests: List[str] = []
        self._counter = 0
        self.omit_session_location = False

    # --- helpers ---

    def _new_id(self) -> str:
        self._counter += 1
        return f"file{self._counter}"

    def add(self, name: str, parent: str = "root", content: Optional[bytes] = None,
            mime_type: str = "text/plain") -> str:
        file_id = self._new_id()
        is_folder = content is None
        self.files[file_id] = {
            "id": file_id,
            "name": name,
            "mimeType": DRIVE_FOLDER if is_folder else mime_type,
            "parents": [parent],
            "content": content or b"",
            "version": "1",
            "modifiedTime": "2026-01-01T00:00:00.000Z",
        }
        return file_id

    def revoke(self, token: str):
        self.valid_tokens.discard(token)

    def _resource(self, file: Dict[str, Any]) -> Dict[str, Any]:
        resource = {k: v for k, v in file.items() if k != "content"}
        if file["mimeType"] != DRIVE_FOLDER:
            resource["size"] = str(len(file["content"]))
            resource["md5Checksum"] = _md5(file["content"])
        return resource

    def _children(self, parent: str) -> List[Dict[str, Any]]:
        children = [f for f in self.files.values() if parent in f["parents"]]
        return sorted(children, key=lambda f: (f["mimeType"] != DRIVE_FOLDER, f["name"]))

    def _delete(self, file_id: str):
        for child in self._children(file_id):
            self._delete(child["id"])
        self.files.pop(file_id, None)

    @staticmethod
    def _unescape(value: str) -> str:
        return value.replace("\\'", "'").replace("\\\\", "\\")

    def _page(self, items: List[Dict[str, Any]], params) -> httpx.Response:
        size = int(params.get("pageSize", 100))
        start = int(params.get("pageToken", 0))
        body: Dict[str, Any] = {"files": [self._resource(f) for f in items[start:start + size]]}
        if start + size < len(items):
            body["nextPageToken"] = str(start + size)
        return httpx.Response(200, json=body)

    # --- routing ---

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        url = request.url
        self.requests.append(f"{request.method} {url.path}")

        if url.host == "oauth2.googleapis.com":
            self.token_requests += 1
            form = parse_qs(request.content.decode())
            if form.get("refresh_token") != ["refresh-token"]:
                return httpx.Response(400, json={"error": "invalid_grant"})
            token = f"refreshed-{self.token_requests}"
            self.valid_tokens.add(token)
            return httpx.Response(200, json={"access_token": token, "expires_in": 3600})

        session_id = url.params.get("upload_id")
        if session_id and request.method in ("PUT", "DELETE"):
            if request.method == "DELETE":
                return self.uploads.handle_delete(session_id)
            return self.uploads.handle_put(session_id, request)

        token = request.headers.get("Authorization", "").replace("Bearer ", "")
        if token not in self.valid_tokens:
            return httpx.Response(401, json={"error": {"message": "Invalid Credentials"}})

        path = url.path
        params = url.params

        if path == "/drive/v3/about":
            if params.get("fields") == "storageQuota":
                usage = sum(len(f["content"]) for f in self.files.values())
                return httpx.Response(200, json={"storageQuota": {"limit": str(self.limit), "usage": str(usage)}})
            return httpx.Response(200, json={"user": {"displayName": "Test User"}})

        if path == "/drive/v3/files" and request.method == "GET":
            query = params.get("q", "")
            match = re.match(r"name = '((?:[^'\\]|\\.)*)' and '([^']+)' in parents", query)
            if match:
                self.lookups += 1
                name, parent = self._unescape(match.group(1)), match.group(2)
                found = [f for f in self._children(parent) if f["name"] == name]
                return httpx.Response(200, json={"files": [{"id": f["id"]} for f in found[:1]]})
            match = re.match(r"'([^']+)' in parents", query)
            if match:
                return self._page(self._children(match.group(1)), params)
            files = [f for f in self.files.values() if f["mimeType"] != DRIVE_FOLDER]
            return self._page(files, params)

        if path == "/drive/v3/files" and request.method == "POST":
            body = json.loads(request.content)
            file_id = self.add(body["name"], body["parents"][0])
            self.files[file_id]["mimeType"] = body["mimeType"]
            return httpx.Response(200, json=self._resource(self.files[file_id]))

        match = re.match(r"/drive/v3/files/([^/]+)$", path)
        if match:
            file = self.files.get(match.group(1))
            if file is None:
                return httpx.Response(404, json={"error": {"message": "File not found"}})
            if request.method == "DELETE":
                self._delete(file["id"])
                return httpx.Response(204)
            if params.get("alt") == "media":
                content = file["content"]
                range_header = request.headers.get("Range")
                if range_header:
                    start, end = range_header.replace("bytes=", "").split("-")
                    return httpx.Response(206, content=content[int(start):int(end) + 1])
                return httpx.Response(200, content=content)
            return httpx.Response(200, json=self._resource(file))

        match = re.match(r"/upload/drive/v3/files(?:/([^/]+))?$", path)
        if match and params.get("uploadType") == "resumable":
            body = json.loads(request.content or b"{}")
            existing_id = match.group(1)
            session_id = secrets.token_hex(8)

            def on_complete(data: bytes) -> Dict[str, Any]:
                if existing_id:
                    target = self.files[existing_id]
                    target["version"] = str(int(target["version"]) + 1)
                else:
                    target = self.files[self.add(body["name"], body["parents"][0], b"", body.get("mimeType"))]
                target["content"] = data
                return self._resource(target)

            self.uploads.open(session_id, on_complete)
            if self.omit_session_location:
                return httpx.Response(200)
            location = f"https://www.googleapis.com/upload/drive/v3/files?uploadType=resumable&upload_id={session_id}"
            return httpx.Response(200, headers={"Location": location})

        return httpx.Response(400, json={"error": {"message": f"unhandled {request.method} {path}"}})


# ============================================================================
# Dropbox
# ============================================================================

class FakeDropboxServer:
    """Dropbox API v2 routes over httpx.MockTransport"""

    def __init__(self, allocated: int = 2 * 1024 ** 3):
        self.entries: Dict[str, Dict[str, Any]] = {}
        self.sessions: Dict[str, bytearray] = {}
        self.changes: List[Dict[str, Any]] = []
        self.allocated = allocated
        self.valid_tokens = {"dropbox-token"}
        self.token_requests = 0
        self.requests: List[str] = []
        self._counter = 0

    def _conflict(self, summary: str) -> httpx.Response:
        return httpx.Response(409, json={"error_summary": summary, "error": {".tag": summary.split("/")[0]}})

    def _store(self, path: str, tag: str, content: bytes = b"") -> Dict[str, Any]:
        self._counter += 1
        name = path.rsplit("/", 1)[-1]
        entry = {
            ".tag": tag,
            "name": name,
            "path_display": path,
            "path_lower": path.lower(),
            "id": f"id:{self._counter}",
        }
        if tag == "file":
            entry.update({
                "size": len(content),
                "rev": f"rev{self._counter}",
                "content_hash": _md5(content),
                "server_modified": "2026-01-01T00:00:00Z",
                "content": content,
            })
        self.entries[path.lower()] = entry
        self.changes.append(entry)
        return entry

    def put(self, path: str, content: bytes) -> Dict[str, Any]:
        return self._store(path, "file", content)

    @staticmethod
    def _public(entry: Dict[str, Any], with_tag: bool = True) -> Dict[str, Any]:
        public = {k: v for k, v in entry.items() if k != "content"}
        if not with_tag:
            public.pop(".tag")
        return public

    def _children(self, path: str, recursive: bool) -> List[Dict[str, Any]]:
        base = path.lower()
        result = []
        for key in sorted(self.entries):
            if not key.startswith(base + "/"):
                continue
            rest = key[len(base) + 1:]
            if recursive or "/" not in rest:
                result.append(self.entries[key])
        return result

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append(path)

        if path == "/oauth2/token":
            self.token_requests += 1
            token = f"dropbox-refreshed-{self.token_requests}"
            self.valid_tokens.add(token)
            return httpx.Response(200, json={"access_token": token, "expires_in": 14400})

        token = request.headers.get("Authorization", "").replace("Bearer ", "")
        if token not in self.valid_tokens:
            return httpx.Response(401, json={"error_summary": "expired_access_token/"})

        if request.url.host == "content.dropboxapi.com":
            arg = json.loads(request.headers["Dropbox-API-Arg"])
            return self._content_route(path, arg, request.content)

        body = json.loads(request.content) if request.content else None
        return self._rpc_route(path, body)

    def _rpc_route(self, path: str, body: Optional[Dict[str, Any]]) -> httpx.Response:
        if path == "/2/users/get_current_account":
            return httpx.Response(200, json={"account_id": "dbid:test"})

        if path == "/2/users/get_space_usage":
            used = sum(e.get("size", 0) for e in self.entries.values())
            return httpx.Response(200, json={"used": used, "allocation": {".tag": "individual", "allocated": self.allocated}})

        if path == "/2/files/get_metadata":
            entry = self.entries.get(body["path"].lower())
            if entry is None:
                return self._conflict("path/not_found/..")
            return httpx.Response(200, json=self._public(entry))

        if path == "/2/files/get_temporary_link":
            entry = self.entries.get(body["path"].lower())
            if entry is None:
                return self._conflict("path/not_found/..")
            return httpx.Response(200, json={"link": f"https://dl.dropboxusercontent.com/{entry['id']}", "metadata": self._public(entry)})

        if path == "/2/files/create_folder_v2":
            if body["path"].lower() in self.entries:
                return self._conflict("path/conflict/folder/..")
            entry = self._store(body["path"], "folder")
            return httpx.Response(200, json={"metadata": self._public(entry, with_tag=False)})

        if path == "/2/files/delete_v2":
            entry = self.entries.get(body["path"].lower())
            if entry is None:
                return self._conflict("path_lookup/not_found/..")
            for child in self._children(entry["path_lower"], recursive=True):
                self.entries.pop(child["path_lower"], None)
            self.entries.pop(entry["path_lower"])
            self.changes.append({".tag": "deleted", "name": entry["name"], "path_display": entry["path_display"]})
            return httpx.Response(200, json={"metadata": self._public(entry)})

        if path == "/2/files/list_folder":
            if body["path"] and body["path"].lower() not in self.entries:
                return self._conflict("path/not_found/..")
            items = self._children(body["path"], body.get("recursive", False))
            return self._listing(items, 0, body.get("limit", 2000), body["path"], body.get("recursive", False))

        if path == "/2/files/list_folder/get_latest_cursor":
            return httpx.Response(200, json={"cursor": f"changes:{len(self.changes)}"})

        if path == "/2/files/list_folder/continue":
            cursor = body["cursor"]
            if cursor.startswith("changes:"):
                start = int(cursor.split(":", 1)[1])
                entries = [self._public(e) for e in self.changes[start:]]
                return httpx.Response(200, json={"entries": entries, "cursor": f"changes:{len(self.changes)}", "has_more": False})
            state = json.loads(cursor)
            items = self._children(state["path"], state["recursive"])
            return self._listing(items, state["offset"], state["limit"], state["path"], state["recursive"])

        return httpx.Response(400, json={"error_summary": f"unhandled {path}"})

    def _listing(self, items, offset, limit, path, recursive) -> httpx.Response:
        page = items[offset:offset + limit]
        has_more = offset + limit < len(items)
        cursor = json.dumps({"path": path, "recursive": recursive, "offset": offset + limit, "limit": limit})
        return httpx.Response(200, json={
            "entries": [self._public(e) for e in page],
            "cursor": cursor,
            "has_more": has_more,
        })

    def _content_route(self, path: str, arg: Dict[str, Any], data: bytes) -> httpx.Response:
        if path == "/2/files/upload":
            if arg["mode"] == "add" and arg["path"].lower() in self.entries:
                return self._conflict("path/conflict/file/..")
            entry = self._store(arg["path"], "file", data)
            return httpx.Response(200, json=self._public(entry, with_tag=False))

        if path == "/2/files/download":
            entry = self.entries.get(arg["path"].lower())
            if entry is None:
                return self._conflict("path/not_found/..")
            return httpx.Response(
                200,
                content=entry["content"],
                headers={"Dropbox-API-Result": json.dumps(self._public(entry))}
            )

        if path == "/2/files/upload_session/start":
            session_id = f"session-{secrets.token_hex(6)}"
            self.sessions[session_id] = bytearray(data)
            return httpx.Response(200, json={"session_id": session_id})

        if path == "/2/files/upload_session/append_v2":
            cursor = arg["cursor"]
            buffer = self.sessions.get(cursor["session_id"])
            if buffer is None:
                return self._conflict("lookup_failed/not_found/")
            if cursor["offset"] != len(buffer):
                return self._conflict("incorrect_offset/..")
            buffer.extend(data)
            return httpx.Response(200, content=b"null", headers={"Content-Type": "application/json"})

        if path == "/2/files/upload_session/finish":
            cursor = arg["cursor"]
            buffer = self.sessions.pop(cursor["session_id"], None)
            if buffer is None:
                return self._conflict("lookup_failed/not_found/")
            if cursor["offset"] != len(buffer):
                return self._conflict("lookup_failed/incorrect_offset/")
            entry = self._store(arg["commit"]["path"], "file", bytes(buffer))
            return httpx.Response(200, json=self._public(entry, with_tag=False))

        return httpx.Response(400, json={"error_summary": f"unhandled {path}"})
