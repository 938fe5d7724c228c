"""Error taxonomy for the BiblioPod store.

Low-level failures (SQLAlchemy, sqlite3, filesystem) are caught at the store
boundary and re-raised as one of the classes below via
:func:`classify_storage_error`, so callers only ever handle this taxonomy.

Example:
    >>> from bibliopod.exceptions import StorageQuotaError
    >>> try:
    ...     await library.add_book(book, epub_bytes)
    ... except StorageQuotaError:
    ...     print("Free up space by deleting some books")
"""

import errno

from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError


# =============================================================================
# Custom Exceptions
# =============================================================================


class BiblioPodError(Exception):
    """Base class for all store errors."""


class ValidationError(BiblioPodError):
    """A record failed validation on write.

    The write is rejected as a whole; nothing is persisted.
    """

    def __init__(self, message: str, errors: list[dict] | None = None):
        super().__init__(message)
        self.errors = errors or []


class NotFoundError(BiblioPodError):
    """A strict lookup referenced an identifier that does not exist.

    Regular reads return ``None``/``False`` for missing ids; this is only
    raised by helpers that explicitly require the record to exist.
    """

    def __init__(self, table: str, key: str):
        super().__init__(f"{table} record {key!r} not found")
        self.table = table
        self.key = key


class NotInitializedError(BiblioPodError, RuntimeError):
    """An operation ran before the store was initialized.

    Always recoverable by awaiting ``init()`` first.
    """


class StorageError(BiblioPodError):
    """The underlying storage engine failed or is unavailable."""


class StorageQuotaError(StorageError):
    """The storage engine refused a write because space ran out."""


class ArchiveFormatError(BiblioPodError):
    """A backup archive is corrupt or not in a recognized format.

    Raised before any record from the archive is written.
    """


# =============================================================================
# Classification
# =============================================================================

_QUOTA_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC), errno.EFBIG}
_QUOTA_MESSAGES = ("database or disk is full", "disk i/o error: full", "quota")


def classify_storage_error(exc: BaseException) -> BiblioPodError:
    """Map a low-level exception onto the store's error taxonomy.

    Args:
        exc: Exception raised by SQLAlchemy, sqlite3 or the filesystem

    Returns:
        The matching BiblioPodError (the input itself if it already is one)
    """
    if isinstance(exc, BiblioPodError):
        return exc

    if isinstance(exc, OSError):
        if exc.errno in _QUOTA_ERRNOS:
            return StorageQuotaError(f"Storage quota exceeded: {exc}")
        return StorageError(f"Filesystem error: {exc}")

    if isinstance(exc, (OperationalError, DBAPIError)):
        message = str(exc.orig if exc.orig is not None else exc).lower()
        if any(marker in message for marker in _QUOTA_MESSAGES):
            return StorageQuotaError(f"Storage quota exceeded: {message}")
        return StorageError(f"Storage engine error: {message}")

    if isinstance(exc, SQLAlchemyError):
        return StorageError(f"Storage engine error: {exc}")

    return StorageError(f"Unexpected storage failure: {exc!r}")


__all__ = [
    "BiblioPodError",
    "ValidationError",
    "NotFoundError",
    "NotInitializedError",
    "StorageError",
    "StorageQuotaError",
    "ArchiveFormatError",
    "classify_storage_error",
]
