"""Exception types for tallycache.

Storage and network failures are raised as the typed exceptions below so that
callers (the sync orchestrator, the CLI) can tell a cache miss from a
corrupted entry, and a lost connection from an expired login.
"""

import errno
from enum import Enum
from typing import Optional


class TallyCacheError(Exception):
    """Base class for all tallycache errors."""


# === Storage ===


class CacheMissError(TallyCacheError, KeyError):
    """Raised when a key is in neither the primary store nor the legacy store."""

    def __init__(self, key: str):
        super().__init__(key)
        self.key = key

    def __str__(self) -> str:
        return f"No cache entry for key '{self.key}'"


class PayloadIntegrityError(TallyCacheError):
    """Raised by the codec when a stored payload cannot be decoded."""


class CorruptedEntryError(TallyCacheError):
    """A cache entry failed to decode and has been removed.

    Callers should re-download the dataset rather than retry the read.
    """

    def __init__(self, key: str, reason: str):
        super().__init__(
            f"Cache entry '{key}' was corrupted and has been removed ({reason}). "
            "Re-download the data to rebuild it."
        )
        self.key = key
        self.reason = reason


class StorageError(TallyCacheError):
    """Physical storage failure that is surfaced to the caller."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class StorageQuotaError(StorageError):
    """The storage volume is full or over quota."""


class StoragePermissionError(StorageError):
    """The storage location cannot be written."""


def storage_error_from_os(exc: OSError, key: Optional[str] = None) -> StorageError:
    """Translate an OSError raised by a backend into a typed storage error."""
    where = f" while writing '{key}'" if key else ""
    if exc.errno in (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)):
        return StorageQuotaError(f"Storage quota exceeded{where}: {exc}", key)
    if exc.errno in (errno.EACCES, errno.EPERM, errno.EROFS):
        return StoragePermissionError(f"Permission denied{where}: {exc}", key)
    return StorageError(f"Storage failure{where}: {exc}", key)


# === Sync / network ===


class ErrorKind(str, Enum):
    """Classification of remote failures, used for messaging only."""

    SERVER = "server"
    NETWORK = "network"
    CORS = "cors"
    AUTH_EXPIRED = "auth_expired"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    BAD_RESPONSE = "bad_response"


REMEDIATION_HINTS = {
    ErrorKind.SERVER: "The data server returned an error. Try resuming the download in a few minutes.",
    ErrorKind.NETWORK: "Check your internet connection, then resume the download.",
    ErrorKind.CORS: "The server rejected the request origin. Check the configured API base URL.",
    ErrorKind.AUTH_EXPIRED: "Your session has expired. Log in again, then resume the download.",
    ErrorKind.NOT_FOUND: "The company or endpoint was not found. Check the company details and API URL.",
    ErrorKind.TIMEOUT: "The server took too long to respond. Resume the download to continue from the last chunk.",
    ErrorKind.BAD_RESPONSE: "The server sent an unexpected response. Resume the download to retry.",
}


class SyncError(TallyCacheError):
    """A chunk fetch or master download failed.

    Every kind resumes the same way: the checkpoint keeps the last successful
    chunk and the next attempt starts there.
    """

    kind: ErrorKind = ErrorKind.NETWORK

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @property
    def remediation(self) -> str:
        return REMEDIATION_HINTS[self.kind]


class NetworkError(SyncError):
    kind = ErrorKind.NETWORK


class ServerError(SyncError):
    kind = ErrorKind.SERVER


class TimeoutSyncError(SyncError):
    kind = ErrorKind.TIMEOUT


class CorsError(SyncError):
    kind = ErrorKind.CORS


class AuthExpiredError(SyncError):
    """HTTP 401. The user must re-authenticate before resuming."""

    kind = ErrorKind.AUTH_EXPIRED


class RemoteNotFoundError(SyncError):
    kind = ErrorKind.NOT_FOUND


class BadResponseError(SyncError):
    kind = ErrorKind.BAD_RESPONSE


def sync_error_for_status(status: int, detail: str = "") -> SyncError:
    """Build the typed error for a non-2xx HTTP status."""
    message = f"HTTP {status}"
    if detail:
        message = f"{message}: {detail[:200]}"
    if status == 401:
        return AuthExpiredError(message, status)
    if status == 403:
        return CorsError(message, status)
    if status == 404:
        return RemoteNotFoundError(message, status)
    if status in (408, 504):
        return TimeoutSyncError(message, status)
    if status >= 500:
        return ServerError(message, status)
    return BadResponseError(message, status)
