"""
Custom exceptions for the offline sync engine.

Read and write paths never surface remote failures to callers; these
exceptions travel between the stores, the retry wrapper and the sync
components. Only authentication turns them into user-facing codes.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(Enum):
    """User-facing error codes reported by authentication-style calls."""

    OFFLINE = "OFFLINE"
    NETWORK_ERROR = "NETWORK_ERROR"
    SERVER_ERROR = "SERVER_ERROR"
    AUTH_FAILED = "AUTH_FAILED"
    EMAIL_NOT_FOUND = "EMAIL_NOT_FOUND"
    HANDSHAKE_TIMEOUT = "HANDSHAKE_TIMEOUT"
    VERSION_MISMATCH = "VERSION_MISMATCH"


class SyncStorageError(Exception):
    """Base exception for all sync engine errors."""

    code: ErrorCode = ErrorCode.SERVER_ERROR

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class OfflineError(SyncStorageError):
    """Raised when no connectivity is available and no remote call was attempted."""

    code = ErrorCode.OFFLINE

    def __init__(self, operation: str = "remote"):
        super().__init__(f"Offline: {operation} not attempted", {"operation": operation})
        self.operation = operation


class RemoteStoreError(SyncStorageError):
    """Raised when the remote store rejects or fails an operation."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        table: str | None = None,
        cause: Exception | None = None,
    ):
        details: dict = {}
        if status_code is not None:
            details["status_code"] = status_code
        if table:
            details["table"] = table
        if cause:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.status_code = status_code
        self.table = table
        self.cause = cause


class NetworkError(RemoteStoreError):
    """Raised when the transport to the remote store fails."""

    code = ErrorCode.NETWORK_ERROR


class ServerError(RemoteStoreError):
    """Raised on a remote 5xx or an unclassified remote exception."""

    code = ErrorCode.SERVER_ERROR


class AuthFailedError(SyncStorageError):
    """Raised when credentials do not match."""

    code = ErrorCode.AUTH_FAILED

    def __init__(self, email: str):
        super().__init__(f"Authentication failed for {email}", {"email": email})
        self.email = email


class EmailNotFoundError(SyncStorageError):
    """Raised when no operator is registered under an email."""

    code = ErrorCode.EMAIL_NOT_FOUND

    def __init__(self, email: str):
        super().__init__(f"No operator registered for {email}", {"email": email})
        self.email = email


class HandshakeTimeoutError(SyncStorageError):
    """Raised when an operation exceeds its wall-clock deadline."""

    code = ErrorCode.HANDSHAKE_TIMEOUT

    def __init__(self, operation: str, timeout: float):
        super().__init__(
            f"{operation} exceeded deadline of {timeout:.1f}s",
            {"operation": operation, "timeout": timeout},
        )
        self.operation = operation
        self.timeout = timeout


class VersionMismatchError(SyncStorageError):
    """Raised when the remote schema version is incompatible with this terminal."""

    code = ErrorCode.VERSION_MISMATCH

    def __init__(self, expected: str, actual: str):
        super().__init__(
            f"Version mismatch: expected {expected}, got {actual}",
            {"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class StorageIOError(SyncStorageError):
    """Raised when a local storage I/O operation fails."""

    def __init__(self, operation: str, path: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        message = f"Storage I/O error during {operation}"
        if path:
            message += f": {path}"
        super().__init__(message, details)
        self.operation = operation
        self.path = path
        self.cause = cause


class ValidationError(SyncStorageError):
    """Raised when a record fails validation before it reaches any store."""

    def __init__(self, field: str, reason: str, value: str | None = None):
        details = {"field": field, "reason": reason}
        if value is not None:
            details["value"] = value
        super().__init__(f"Validation failed for {field}: {reason}", details)
        self.field = field
        self.reason = reason
        self.value = value
