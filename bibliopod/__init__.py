"""BiblioPod - local e-book library store.

This package provides the client-side data plane of a personal e-book
library: book metadata and payloads, collections, reading challenges,
highlights, bookmarks, reading progress, settings and the local profile, all
kept in SQLite plus a payload directory, with ZIP backup archives.

Example:
    >>> from bibliopod import Library
    >>> import asyncio
    >>>
    >>> async def main():
    ...     async with Library() as library:
    ...         await library.initialize_demo_data()
    ...         for view in await library.get_library():
    ...             print(view.book.title, view.current_percentage)
    >>>
    >>> asyncio.run(main())
"""

__version__ = "0.1.0"

from bibliopod.config import settings  # noqa: E402
from bibliopod.exceptions import (  # noqa: E402
    ArchiveFormatError,
    BiblioPodError,
    NotFoundError,
    NotInitializedError,
    StorageError,
    StorageQuotaError,
    ValidationError,
)
from bibliopod.library import Library, StorageUsage  # noqa: E402
from bibliopod.models import (  # noqa: E402
    Book,
    Bookmark,
    Challenge,
    ChallengeStatus,
    Collection,
    DataSelection,
    Highlight,
    ImportResult,
    ReadingProgress,
    Table,
    User,
)
from bibliopod.relations import BookView, ChallengeView, CollectionView  # noqa: E402

__all__ = [
    # Main components
    "Library",
    "StorageUsage",
    # Configuration
    "settings",
    # Domain models
    "Book",
    "Bookmark",
    "Challenge",
    "ChallengeStatus",
    "Collection",
    "DataSelection",
    "Highlight",
    "ImportResult",
    "ReadingProgress",
    "Table",
    "User",
    # Views
    "BookView",
    "ChallengeView",
    "CollectionView",
    # Errors
    "ArchiveFormatError",
    "BiblioPodError",
    "NotFoundError",
    "NotInitializedError",
    "StorageError",
    "StorageQuotaError",
    "ValidationError",
]
