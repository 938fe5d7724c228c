"""The BiblioPod store handle.

:class:`Library` wires the storage components together and is the only
object callers need:

1. ``DatabaseManager``: SQLite engine, units of work, worker thread
2. ``EntityStore``: generic get/get_all/put/delete per table
3. ``BinaryObjectStore``: book payload files
4. ``TransactionManager``: atomic compound and per-key serialized writes
5. ``relations``: hydrated views and derived metrics, computed on read
6. ``DemoSeeder`` and ``BackupCodec``

Nothing works before :meth:`Library.init` has completed; every operation
raises :class:`NotInitializedError` until then.

Example:
    >>> library = Library(Path("data/bibliopod.db"), files_dir=Path("data/book_files"))
    >>> await library.init()
    >>> book = await library.add_book({"isbn": "123", "title": "T", "author": "A"}, epub)
    >>> await library.update_reading_progress("123", 100, "epubcfi(/6/4)")
    >>> [view.status for view in await library.get_challenges()]
    >>> await library.close()
"""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, BinaryIO, Mapping, Optional

from pydantic import BaseModel, computed_field

from bibliopod import __version__
from bibliopod.backup import BackupCodec
from bibliopod.blobs import BinaryObjectStore, PayloadInfo
from bibliopod.database import DatabaseManager
from bibliopod.exceptions import NotFoundError, ValidationError
from bibliopod.locks import KeyedLocks
from bibliopod.logging import clear_request_context, logger, set_request_context
from bibliopod.models import (
    SETTINGS_KEY,
    Book,
    Bookmark,
    Challenge,
    Collection,
    DataSelection,
    Highlight,
    ImportResult,
    ReadingProgress,
    Table,
    User,
    validate_record,
)
from bibliopod.relations import (
    BookView,
    ChallengeView,
    CollectionView,
    challenge_views,
    collection_views,
    library_view,
)
from bibliopod.seed import DemoSeeder, SeedResult
from bibliopod.store import EntityStore, Record
from bibliopod.transactions import TransactionManager
from bibliopod.utils import format_bytes, unique_ordered

SHOWCASE_SEEN_KEY = "showcase_seen"
READER_SETTINGS_KEY = "reader_settings"
SELECTED_BOOK_KEY = "selected_book"


def book_locations_key(isbn: str) -> str:
    return f"book_locations_{isbn}"


class StorageUsage(BaseModel):
    """Payload storage consumption."""

    used_bytes: int
    quota_bytes: Optional[int] = None
    book_files: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def percentage(self) -> Optional[float]:
        if not self.quota_bytes:
            return None
        return round(self.used_bytes * 100 / self.quota_bytes, 2)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def formatted(self) -> str:
        return format_bytes(self.used_bytes)


class Library:
    """Explicit handle over one local BiblioPod store.

    Args:
        database_path: SQLite file, or ``":memory:"`` (defaults to settings.database_path)
        files_dir: Payload directory (defaults to settings.files_dir)
        max_storage_bytes: Optional payload quota (defaults to settings.max_storage_bytes)
    """

    def __init__(
        self,
        database_path: Path | str | None = None,
        files_dir: Path | str | None = None,
        max_storage_bytes: int | None = None,
    ):
        self.db = DatabaseManager(Path(database_path) if database_path else None)
        self.locks = KeyedLocks()
        self.entities = EntityStore(self.db)
        self.blobs = BinaryObjectStore(
            self.db,
            Path(files_dir) if files_dir else None,
            max_storage_bytes=max_storage_bytes,
        )
        self.transactions = TransactionManager(self.db, self.blobs, self.locks)
        self.seeder = DemoSeeder(self.db, self.locks)
        self.backup = BackupCodec(
            self.db, self.blobs, self.transactions, app_version=__version__
        )
        self._ready = False
        self._init_lock = asyncio.Lock()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def initialized(self) -> bool:
        return self._ready and self.db.initialized

    async def init(self) -> None:
        """Create the schema and payload directory if absent. Idempotent."""
        async with self._init_lock:
            if self.initialized:
                return
            await self.db.initialize()
            await self.blobs.initialize()
            self._ready = True
        logger.info("✅ Library initialized")

    async def close(self) -> None:
        async with self._init_lock:
            self._ready = False
            await self.db.close()

    async def __aenter__(self) -> "Library":
        await self.init()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def clear_all_data(self) -> dict[str, int]:
        """Empty every table and delete every payload."""
        return await self.transactions.clear_all()

    async def initialize_demo_data(self, user: Optional[Record] = None) -> SeedResult:
        return await self.seeder.seed(user)

    # =========================================================================
    # Books
    # =========================================================================

    async def add_book(
        self,
        metadata: Record,
        file: bytes | BinaryIO | None = None,
        file_name: str | None = None,
        mime_type: str | None = None,
    ) -> Book:
        """Add (or replace) a book, with its payload when ``file`` is given.

        Metadata and payload are committed together or not at all.
        """
        return await self.transactions.add_book_with_file(metadata, file, file_name, mime_type)

    async def get_book(self, isbn: str) -> Optional[Book]:
        return await self.entities.get(Table.BOOKS, isbn)  # type: ignore[return-value]

    async def require_book(self, isbn: str) -> Book:
        """Like :meth:`get_book` but raises NotFoundError when absent."""
        book = await self.get_book(isbn)
        if book is None:
            raise NotFoundError(Table.BOOKS, isbn)
        return book

    async def get_all_books(self) -> list[Book]:
        return await self.entities.get_all(Table.BOOKS)  # type: ignore[return-value]

    async def update_book(self, isbn: str, patch: Mapping[str, Any]) -> Optional[Book]:
        return await self.transactions.modify(Table.BOOKS, isbn, lambda _: patch)  # type: ignore[return-value]

    async def delete_book(self, isbn: str) -> bool:
        """Delete a book and its payload. Collections and challenges keep their references."""
        return await self.transactions.delete_book_with_file(isbn)

    async def get_book_file(self, isbn: str) -> Optional[bytes]:
        return await self.blobs.get_payload(isbn)

    async def get_book_file_info(self, isbn: str) -> Optional[PayloadInfo]:
        return await self.blobs.get_payload_info(isbn)

    async def open_book_file(self, isbn: str) -> Optional[BinaryIO]:
        """Open a payload for streaming; the caller closes it."""
        return await self.blobs.open_payload(isbn)

    def iter_book_file(self, isbn: str) -> AsyncIterator[bytes]:
        return self.blobs.iter_payload(isbn)

    async def get_library(self) -> list[BookView]:
        """Every book with its reading progress."""
        return await library_view(self.db)

    # =========================================================================
    # Collections
    # =========================================================================

    async def add_collection(self, data: Record) -> Collection:
        collection = await self.entities.put(Table.COLLECTIONS, data)
        logger.info(f"📁 Added collection {collection.collection_name!r}")  # type: ignore[attr-defined]
        return collection  # type: ignore[return-value]

    async def get_collections(self) -> list[Collection]:
        return await self.entities.get_all(Table.COLLECTIONS)  # type: ignore[return-value]

    async def get_collection(self, collection_id: str) -> Optional[Collection]:
        return await self.entities.get(Table.COLLECTIONS, collection_id)  # type: ignore[return-value]

    async def get_collection_view(self, collection_id: str) -> Optional[CollectionView]:
        collection = await self.get_collection(collection_id)
        if collection is None:
            return None
        views = await collection_views(self.db, [collection])
        return views[0]

    async def get_collection_views(self) -> list[CollectionView]:
        return await collection_views(self.db)

    async def update_collection(
        self, collection_id: str, patch: Mapping[str, Any]
    ) -> Optional[Collection]:
        return await self.transactions.modify(  # type: ignore[return-value]
            Table.COLLECTIONS, collection_id, lambda _: patch
        )

    async def add_book_to_collection(self, collection_id: str, isbn: str) -> Optional[Collection]:
        return await self.transactions.modify(  # type: ignore[return-value]
            Table.COLLECTIONS,
            collection_id,
            lambda current: {"books": unique_ordered([*current.books, isbn])},
        )

    async def remove_book_from_collection(
        self, collection_id: str, isbn: str
    ) -> Optional[Collection]:
        return await self.remove_books_from_collection(collection_id, [isbn])

    async def remove_books_from_collection(
        self, collection_id: str, isbns: list[str]
    ) -> Optional[Collection]:
        removed = set(isbns)
        return await self.transactions.modify(  # type: ignore[return-value]
            Table.COLLECTIONS,
            collection_id,
            lambda current: {"books": [i for i in current.books if i not in removed]},
        )

    async def delete_collection(self, collection_id: str) -> bool:
        """Delete a collection; the books it referenced are untouched."""
        return await self.entities.delete(Table.COLLECTIONS, collection_id)

    # =========================================================================
    # Challenges
    # =========================================================================

    async def add_challenge(self, data: Record) -> Challenge:
        challenge = await self.entities.put(Table.CHALLENGES, data)
        logger.info(f"🏆 Added challenge {challenge.title!r}")  # type: ignore[attr-defined]
        return challenge  # type: ignore[return-value]

    async def get_challenges(self) -> list[ChallengeView]:
        """Every challenge with resolved books and derived status."""
        return await challenge_views(self.db)

    async def get_challenge(self, challenge_id: str) -> Optional[ChallengeView]:
        challenge = await self.entities.get(Table.CHALLENGES, challenge_id)
        if challenge is None:
            return None
        views = await challenge_views(self.db, [challenge])  # type: ignore[list-item]
        return views[0]

    async def update_challenge(
        self, challenge_id: str, patch: Mapping[str, Any]
    ) -> Optional[Challenge]:
        return await self.transactions.modify(  # type: ignore[return-value]
            Table.CHALLENGES, challenge_id, lambda _: patch
        )

    async def add_book_to_challenge(self, challenge_id: str, isbn: str) -> Optional[Challenge]:
        return await self.transactions.modify(  # type: ignore[return-value]
            Table.CHALLENGES,
            challenge_id,
            lambda current: {"books": unique_ordered([*current.books, isbn])},
        )

    async def remove_book_from_challenge(
        self, challenge_id: str, isbn: str
    ) -> Optional[Challenge]:
        return await self.transactions.modify(  # type: ignore[return-value]
            Table.CHALLENGES,
            challenge_id,
            lambda current: {"books": [i for i in current.books if i != isbn]},
        )

    async def delete_challenge(self, challenge_id: str) -> bool:
        return await self.entities.delete(Table.CHALLENGES, challenge_id)

    # =========================================================================
    # Highlights and bookmarks
    # =========================================================================

    async def add_highlight(self, data: Record) -> Highlight:
        return await self.entities.put(Table.HIGHLIGHTS, data)  # type: ignore[return-value]

    async def get_highlights(self) -> list[Highlight]:
        return await self.entities.get_all(Table.HIGHLIGHTS)  # type: ignore[return-value]

    async def get_highlights_for_book(self, isbn: str) -> list[Highlight]:
        return await self.entities.get_all(Table.HIGHLIGHTS, book_isbn=isbn)  # type: ignore[return-value]

    async def update_highlight(
        self, highlight_id: str, patch: Mapping[str, Any]
    ) -> Optional[Highlight]:
        return await self.transactions.modify(  # type: ignore[return-value]
            Table.HIGHLIGHTS, highlight_id, lambda _: patch
        )

    async def delete_highlight(self, highlight_id: str) -> bool:
        return await self.entities.delete(Table.HIGHLIGHTS, highlight_id)

    async def get_annotations(self, isbn: str) -> list[Highlight]:
        """Highlights of one book, as the reader shows them."""
        return await self.get_highlights_for_book(isbn)

    async def add_annotation(self, isbn: str, data: Record) -> Highlight:
        return await self.add_highlight({**dict(data), "book_isbn": isbn})

    async def delete_annotation(self, isbn: str, highlight_id: str) -> bool:
        """Delete a highlight of ``isbn``; a highlight of another book is left alone."""
        highlight = await self.entities.get(Table.HIGHLIGHTS, highlight_id)
        if highlight is None or highlight.book_isbn != isbn:  # type: ignore[attr-defined]
            return False
        return await self.delete_highlight(highlight_id)

    async def add_bookmark(self, isbn: str, data: Record) -> Bookmark:
        return await self.entities.put(  # type: ignore[return-value]
            Table.BOOKMARKS, {**dict(data), "book_isbn": isbn}
        )

    async def get_bookmarks(self, isbn: str) -> list[Bookmark]:
        return await self.entities.get_all(Table.BOOKMARKS, book_isbn=isbn)  # type: ignore[return-value]

    async def update_bookmark(
        self, bookmark_id: str, patch: Mapping[str, Any]
    ) -> Optional[Bookmark]:
        return await self.transactions.modify(  # type: ignore[return-value]
            Table.BOOKMARKS, bookmark_id, lambda _: patch
        )

    async def delete_bookmark(self, bookmark_id: str) -> bool:
        return await self.entities.delete(Table.BOOKMARKS, bookmark_id)

    # =========================================================================
    # Reading progress
    # =========================================================================

    async def get_reading_progress(self, isbn: str) -> Optional[ReadingProgress]:
        return await self.entities.get(Table.READING_PROGRESS, isbn)  # type: ignore[return-value]

    async def update_reading_progress(
        self,
        isbn: str,
        percentage: float,
        cfi: str | None = None,
        timestamp: datetime | str | None = None,
    ) -> ReadingProgress:
        """Upsert progress; an update older than the stored one is ignored."""
        return await self.transactions.upsert_progress(isbn, percentage, cfi, timestamp)

    # =========================================================================
    # Settings and user
    # =========================================================================

    async def get_settings(self) -> dict[str, Any]:
        record = await self.entities.get(Table.SETTINGS, SETTINGS_KEY)
        return dict(record.values) if record is not None else {}  # type: ignore[attr-defined]

    async def update_settings(self, patch: Mapping[str, Any]) -> dict[str, Any]:
        values, _ = await self.transactions.merge_settings(patch)
        return values

    async def mark_showcase_seen(self) -> None:
        await self.update_settings({SHOWCASE_SEEN_KEY: True})

    async def has_seen_showcase(self) -> bool:
        return bool((await self.get_settings()).get(SHOWCASE_SEEN_KEY, False))

    async def get_reader_settings(self) -> dict[str, Any]:
        value = (await self.get_settings()).get(READER_SETTINGS_KEY)
        return dict(value) if isinstance(value, dict) else {}

    async def set_reader_settings(self, values: Mapping[str, Any]) -> dict[str, Any]:
        """Replace the reader preferences (font, theme, flow...) as a whole."""
        await self.update_settings({READER_SETTINGS_KEY: dict(values)})
        return dict(values)

    async def update_reader_setting(self, name: str, value: Any) -> dict[str, Any]:
        return await self.transactions.merge_setting_map(READER_SETTINGS_KEY, {name: value})

    async def set_book_locations(self, isbn: str, locations: Any) -> None:
        """Cache the pagination locations generated for a book's payload."""
        await self.update_settings({book_locations_key(isbn): locations})

    async def get_book_locations(self, isbn: str) -> Any:
        return (await self.get_settings()).get(book_locations_key(isbn))

    async def set_selected_book(self, book: Record | None) -> Optional[Book]:
        """Remember the book the reader has open; None clears it."""
        selected: Optional[Book] = validate_record(Book, book) if book is not None else None
        await self.update_settings(
            {SELECTED_BOOK_KEY: selected.model_dump(mode="json") if selected else None}
        )
        return selected

    async def get_selected_book(self) -> Optional[Book]:
        value = (await self.get_settings()).get(SELECTED_BOOK_KEY)
        if not value:
            return None
        try:
            return validate_record(Book, value)
        except ValidationError as e:
            logger.warning(f"⚠️  Ignoring malformed selected book: {e}")
            return None

    async def get_user(self) -> Optional[User]:
        users = await self.entities.get_all(Table.USER)
        return users[0] if users else None  # type: ignore[return-value]

    async def set_user(self, user: Record) -> User:
        """Make ``user`` the one local profile, replacing any previous one."""
        return await self.transactions.replace_user(user)

    # =========================================================================
    # Storage and backup
    # =========================================================================

    async def get_storage_usage(self) -> StorageUsage:
        """Payload bytes stored, against the quota when one is configured."""
        used = await self.blobs.refresh_usage()
        return StorageUsage(
            used_bytes=used,
            quota_bytes=self.blobs.max_storage_bytes,
            book_files=await self.blobs.count(),
        )

    async def export_archive(
        self, selection: DataSelection | None = None, include_files: bool = False
    ) -> bytes:
        set_request_context(operation="export_archive")
        try:
            return await self.backup.export_archive(selection, include_files)
        finally:
            clear_request_context()

    async def export_archive_to(
        self,
        path: Path | str,
        selection: DataSelection | None = None,
        include_files: bool = False,
    ) -> Path:
        set_request_context(operation="export_archive")
        try:
            return await self.backup.export_archive_to(path, selection, include_files)
        finally:
            clear_request_context()

    async def import_archive(
        self,
        source: bytes | str | Path | BinaryIO,
        selection: DataSelection | None = None,
    ) -> ImportResult:
        set_request_context(operation="import_archive")
        try:
            return await self.backup.import_archive(source, selection)
        finally:
            clear_request_context()


__all__ = [
    "Library",
    "READER_SETTINGS_KEY",
    "SELECTED_BOOK_KEY",
    "SHOWCASE_SEEN_KEY",
    "StorageUsage",
    "book_locations_key",
]
