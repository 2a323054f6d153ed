"""
Key Utilities
Storage key normalization and content-type inference
"""

import mimetypes
import posixpath
from typing import Optional

from filegate.exceptions import StorageValidationError

DEFAULT_CONTENT_TYPE = "application/octet-stream"

# Office formats are missing from some platform mime tables
CONTENT_TYPE_OVERRIDES = {
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".ppt": "application/vnd.ms-powerpoint",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    ".md": "text/markdown",
    ".json": "application/json",
    ".js": "application/javascript",
}

DOCUMENT_TYPES = (
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument",
    "application/vnd.ms-",
    "application/vnd.oasis.opendocument",
    "application/rtf",
    "application/json",
    "application/xml",
)

ARCHIVE_TYPES = (
    "application/zip",
    "application/gzip",
    "application/x-tar",
    "application/x-7z-compressed",
    "application/x-rar-compressed",
    "application/vnd.rar",
)


def normalize_key(key: str, allow_empty: bool = False) -> str:
    """
    Normalize a storage key to the canonical form used by every adapter

    Backslashes become forward slashes, repeated separators collapse and the
    leading slash is dropped. A trailing slash (folder marker) is kept.

    Raises:
        StorageValidationError: On '.' or '..' segments or an empty key
    """
    if key is None:
        key = ""
    raw = key.replace("\\", "/")
    trailing = raw.endswith("/")
    segments = [segment for segment in raw.split("/") if segment]

    for segment in segments:
        if segment in (".", ".."):
            raise StorageValidationError(f"Relative segment '{segment}' not allowed in key '{key}'")

    normalized = "/".join(segments)
    if not normalized:
        if allow_empty:
            return ""
        raise StorageValidationError("Storage key must not be empty")

    if trailing:
        normalized += "/"
    return normalized


def normalize_prefix(path: Optional[str]) -> str:
    """Folder path as a listing prefix: '' for the root, else 'a/b/'"""
    normalized = normalize_key(path or "", allow_empty=True)
    if normalized and not normalized.endswith("/"):
        normalized += "/"
    return normalized


def join_key(path: Optional[str], name: str) -> str:
    """Build the key for `name` inside folder `path`"""
    name = name.strip("/\\")
    if not name:
        raise StorageValidationError("File or folder name must not be empty")
    return normalize_key(normalize_prefix(path) + name)


def folder_key(path: Optional[str], folder_name: str) -> str:
    """Key of a folder marker object (always ends with '/')"""
    return join_key(path, folder_name) + "/"


def parent_key(key: str) -> str:
    """Parent folder path of a key, '' for top-level entries"""
    parent = posixpath.dirname(normalize_key(key).rstrip("/"))
    return parent


def file_name_from_key(key: str) -> str:
    stripped = key.rstrip("/")
    return stripped.rsplit("/", 1)[-1] if stripped else key


def determine_content_type(file_name: str) -> str:
    """Guess a MIME type from a file name"""
    extension = posixpath.splitext(file_name.lower())[1]
    if extension in CONTENT_TYPE_OVERRIDES:
        return CONTENT_TYPE_OVERRIDES[extension]

    content_type, _ = mimetypes.guess_type(file_name, strict=False)
    return content_type or DEFAULT_CONTENT_TYPE


def categorize_content_type(content_type: Optional[str]) -> str:
    """Bucket a MIME type into a usage category"""
    if not content_type:
        return "other"
    if content_type.startswith("image/"):
        return "image"
    if content_type.startswith("video/"):
        return "video"
    if content_type.startswith("audio/"):
        return "audio"
    if content_type.startswith("text/") or content_type.startswith(DOCUMENT_TYPES):
        return "document"
    if content_type.startswith(ARCHIVE_TYPES):
        return "archive"
    return "other"
