"""
Custom exceptions for filegate
Normalized storage error taxonomy shared by every provider adapter
"""

from typing import Optional, Dict, Any


class StorageError(Exception):
    """Base exception for all storage errors"""

    code = "STORAGE_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None
    ):
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Outbound result shape consumed by the HTTP glue layer"""
        return {
            "success": False,
            "message": self.message,
            "data": None,
            "error": {
                "code": self.code,
                "status_code": self.status_code,
                "details": self.details
            }
        }


class StorageAuthError(StorageError):
    """Raised when credentials are invalid, expired or revoked"""

    code = "STORAGE_AUTH_ERROR"
    status_code = 401

    def __init__(self, provider: str, reason: str = "authentication failed", details: Optional[Dict[str, Any]] = None):
        self.provider = provider
        super().__init__(f"{provider}: {reason}", details)


class StorageAccessError(StorageError):
    """Raised when permission is denied on a key or operation"""

    code = "STORAGE_ACCESS_ERROR"
    status_code = 403

    def __init__(self, key: str, operation: str, details: Optional[Dict[str, Any]] = None):
        self.key = key
        self.operation = operation
        super().__init__(f"Access denied for {operation} on '{key}'", details)


class StorageNotFoundError(StorageError):
    """Raised when a key, folder or upload session does not exist"""

    code = "STORAGE_NOT_FOUND"
    status_code = 404

    def __init__(self, key: str, details: Optional[Dict[str, Any]] = None):
        self.key = key
        super().__init__(f"Not found: '{key}'", details)


class StorageQuotaExceededError(StorageError):
    """Raised when admission control rejects an operation"""

    code = "STORAGE_QUOTA_EXCEEDED"
    status_code = 507

    def __init__(self, account_id: str, requested_bytes: int, available_bytes: int):
        self.account_id = account_id
        self.requested_bytes = requested_bytes
        self.available_bytes = available_bytes
        super().__init__(
            f"Storage quota exceeded for account {account_id}: "
            f"requested {requested_bytes} bytes, {available_bytes} available",
            {"requested_bytes": requested_bytes, "available_bytes": available_bytes}
        )


class StorageProviderError(StorageError):
    """Raised for unexpected or transient backend failures"""

    code = "STORAGE_PROVIDER_ERROR"
    status_code = 502

    def __init__(
        self,
        provider: str,
        operation: str,
        reason: str,
        retryable: bool = True,
        details: Optional[Dict[str, Any]] = None
    ):
        self.provider = provider
        self.operation = operation
        self.retryable = retryable
        super().__init__(f"{provider} {operation} failed: {reason}", details)


class UnsupportedOperationError(StorageError):
    """Raised when a backend cannot perform the requested operation"""

    code = "STORAGE_UNSUPPORTED_OPERATION"
    status_code = 501

    def __init__(self, provider: str, operation: str, reason: Optional[str] = None):
        self.provider = provider
        self.operation = operation
        message = f"{provider} does not support {operation}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, {"operation": operation})


class StorageValidationError(StorageError):
    """Raised when a request is malformed (bad key, bad part list)"""

    code = "STORAGE_INVALID_REQUEST"
    status_code = 400
