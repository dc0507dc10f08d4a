"""User-facing error messages for the command line."""

import errno

import duckdb
from pydantic import ValidationError

from ..errors import (
    CacheMissError,
    CorruptedEntryError,
    StorageError,
    SyncError,
)


def create_user_friendly_error(error: Exception) -> str:
    """Turn any exception into a one-line message a user can act on.

    Args:
        error: The exception raised by a command

    Returns:
        Message suitable for printing to stderr
    """
    if isinstance(error, SyncError):
        return f"{error} {error.remediation}"

    if isinstance(error, CorruptedEntryError):
        return str(error)

    if isinstance(error, CacheMissError):
        return f"{error}. Run a sync to download it."

    if isinstance(error, StorageError):
        return str(error)

    if isinstance(error, ValidationError):
        problems = "; ".join(
            f"{'.'.join(str(p) for p in item['loc'])}: {item['msg']}" for item in error.errors()
        )
        return f"Invalid value: {problems}"

    if isinstance(error, PermissionError):
        return f"Permission denied: {error.filename or error}"

    if isinstance(error, FileNotFoundError):
        return f"File not found: {error.filename or error}"

    if isinstance(error, OSError) and error.errno == errno.ENOSPC:
        return "The disk is full. Free some space or clear old cache entries."

    if isinstance(error, duckdb.Error):
        return f"Record database error: {error}. Another tallycache process may hold the database open."

    if isinstance(error, ValueError):
        return str(error)

    return f"Unexpected error ({type(error).__name__}): {error}"
