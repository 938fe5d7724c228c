"""Compound and per-key serialized operations.

The transaction manager is the only place where more than one table (or a
table plus the payload directory) changes in a single logical operation:

- Book metadata and its payload are written in one unit of work; the payload
  file swap is undone if the unit fails, so neither half is ever visible alone.
- Reading progress is upserted atomically and resolves concurrent writers
  last-write-wins on ``updated_at``.
- Read-modify-write on a single record (``books`` lists, patches) is queued
  per ``(table, key)`` and the read and the write share one unit of work.

Nothing here retries: a failed operation is logged, rolled back and raised.
"""

from datetime import datetime
from typing import Any, BinaryIO, Callable, Mapping, Optional

from pydantic import BaseModel
from sqlmodel import Session

from bibliopod.blobs import BinaryObjectStore, PendingSwap, StagedPayload
from bibliopod.database import DatabaseManager
from bibliopod.locks import KeyedLocks
from bibliopod.logging import logger
from bibliopod.metrics import track_operation
from bibliopod.models import (
    SETTINGS_KEY,
    TABLES,
    Book,
    BookFileRow,
    Highlight,
    ReadingProgress,
    SettingsRecord,
    Table,
    User,
    table_spec,
    validate_record,
)
from bibliopod.repository import Repository
from bibliopod.store import Record, delete_in, get_all_in, get_in, put_in
from bibliopod.utils import new_id, parse_datetime, utc_now

Mutation = Callable[[BaseModel], BaseModel | Mapping[str, Any]]

_TIMESTAMP_FIELDS = {"created_at", "updated_at"}


def same_content(a: BaseModel, b: BaseModel) -> bool:
    """Compare two records ignoring their bookkeeping timestamps."""
    return a.model_dump(exclude=_TIMESTAMP_FIELDS) == b.model_dump(exclude=_TIMESTAMP_FIELDS)


def with_stored_file(session: Session, book: Book) -> Book:
    """Describe the payload already on disk in metadata written without one."""
    row = session.get(BookFileRow, book.isbn)
    if row is None:
        return book
    return book.model_copy(
        update={"file_name": row.file_name, "file_size": row.size, "file_type": row.mime_type}
    )


class TransactionManager:
    """Atomic compound operations and per-key serialization.

    Args:
        db: DatabaseManager running the units of work
        blobs: Payload store whose file swaps join the units of work
        locks: Per-key locks (shared with anything else that needs them)
    """

    def __init__(
        self,
        db: DatabaseManager,
        blobs: BinaryObjectStore,
        locks: KeyedLocks | None = None,
    ):
        self.db = db
        self.blobs = blobs
        self.locks = locks or KeyedLocks()

    # -------------------------------------------------------------------------
    # Books and payloads
    # -------------------------------------------------------------------------

    async def write_book(
        self,
        book: Record,
        data: bytes | BinaryIO | None = None,
        file_name: str | None = None,
        mime_type: str | None = None,
        touch: bool = True,
        skip_unchanged: bool = False,
    ) -> tuple[Book, bool]:
        """Write book metadata and, optionally, its payload as one unit.

        Args:
            book: Book model or mapping (validated before anything is staged)
            data: Payload bytes or readable binary stream, or None for metadata only
            file_name: Original payload file name
            mime_type: Payload MIME type
            touch: Re-stamp ``updated_at``; False keeps the supplied timestamps
            skip_unchanged: Return without writing if metadata and payload
                digest match what is stored

        Returns:
            ``(stored book, whether anything was written)``

        Raises:
            ValidationError: Malformed metadata
            StorageQuotaError: Payload does not fit in the storage quota
            StorageError: Engine or filesystem failure (nothing is left behind)
        """
        model: Book = validate_record(Book, book)
        staged: Optional[StagedPayload] = None
        if data is not None:
            staged = await self.blobs.stage(
                model.isbn, data, file_name or model.file_name, mime_type or model.file_type
            )
            model = model.model_copy(
                update={
                    "file_name": staged.file_name,
                    "file_size": staged.size,
                    "file_type": staged.mime_type,
                }
            )

        holder: dict[str, PendingSwap] = {}

        def work(session: Session) -> tuple[Book, bool]:
            current = model if staged is not None else with_stored_file(session, model)
            if skip_unchanged:
                existing = get_in(session, Table.BOOKS, current.isbn)
                if existing is not None and same_content(existing, current):
                    stored_file = session.get(BookFileRow, model.isbn)
                    if staged is None or (
                        stored_file is not None and stored_file.sha256 == staged.sha256
                    ):
                        return existing, False  # type: ignore[return-value]
            stored = put_in(session, Table.BOOKS, current, touch=touch)
            if staged is not None:
                holder["pending"] = self.blobs.write_in_unit(session, staged)
            return stored, True  # type: ignore[return-value]

        async with self.locks.hold(Table.BOOKS, model.isbn):
            with track_operation("add_book", Table.BOOKS):
                try:
                    stored, changed = await self.db.run(work, label="add_book")
                except BaseException as e:
                    if "pending" in holder:
                        await self.blobs.settle(holder["pending"], committed=False)
                    elif staged is not None:
                        await self.blobs.discard(staged)
                    logger.error(f"❌ Failed to add book {model.isbn!r}: {e}")
                    raise

            if "pending" in holder:
                await self.blobs.settle(holder["pending"], committed=True)
            elif staged is not None:
                await self.blobs.discard(staged)

        if changed:
            suffix = f" with {staged.size} byte payload" if staged is not None else ""
            logger.info(f"📚 Stored book {stored.isbn!r}{suffix}")
        return stored, changed

    async def add_book_with_file(
        self,
        book: Record,
        data: bytes | BinaryIO | None = None,
        file_name: str | None = None,
        mime_type: str | None = None,
    ) -> Book:
        stored, _ = await self.write_book(book, data, file_name, mime_type)
        return stored

    async def delete_book_with_file(self, isbn: str) -> bool:
        """Delete a book and its payload together.

        References from collections, challenges, progress and highlights are
        left alone.
        """
        holder: dict[str, Optional[PendingSwap]] = {}

        def work(session: Session) -> bool:
            deleted = delete_in(session, Table.BOOKS, isbn)
            holder["pending"] = self.blobs.delete_in_unit(session, isbn)
            return deleted or holder["pending"] is not None

        async with self.locks.hold(Table.BOOKS, isbn):
            with track_operation("delete_book", Table.BOOKS):
                try:
                    deleted = await self.db.run(work, label="delete_book")
                except BaseException as e:
                    await self.blobs.settle(holder.get("pending"), committed=False)
                    logger.error(f"❌ Failed to delete book {isbn!r}: {e}")
                    raise
            await self.blobs.settle(holder.get("pending"), committed=True)

        if deleted:
            logger.info(f"🗑️  Deleted book {isbn!r}")
        return deleted

    # -------------------------------------------------------------------------
    # Reading progress
    # -------------------------------------------------------------------------

    async def apply_progress(self, progress: Record) -> tuple[ReadingProgress, bool]:
        """Upsert a progress record, last-write-wins on ``updated_at``.

        A record older than the stored one, or identical to it, is not written.

        Returns:
            ``(stored record, whether it was written)``
        """
        incoming: ReadingProgress = validate_record(ReadingProgress, progress)
        if incoming.updated_at is None:
            incoming = incoming.model_copy(update={"updated_at": utc_now()})

        def work(session: Session) -> tuple[ReadingProgress, bool]:
            existing = get_in(session, Table.READING_PROGRESS, incoming.isbn)
            if existing is not None:
                if existing.updated_at and existing.updated_at > incoming.updated_at:
                    return existing, False  # type: ignore[return-value]
                if existing == incoming:
                    return existing, False  # type: ignore[return-value]
            stored = put_in(session, Table.READING_PROGRESS, incoming, touch=False)
            return stored, True  # type: ignore[return-value]

        async with self.locks.hold(Table.READING_PROGRESS, incoming.isbn):
            with track_operation("update_progress", Table.READING_PROGRESS):
                stored, written = await self.db.run(work, label="update_progress")

        if not written and stored.updated_at and stored.updated_at > incoming.updated_at:
            logger.debug(
                f"Ignored stale progress for {incoming.isbn!r} "
                f"({incoming.updated_at} < {stored.updated_at})"
            )
        return stored, written

    async def upsert_progress(
        self,
        isbn: str,
        percentage: float,
        cfi: str | None = None,
        timestamp: datetime | str | None = None,
    ) -> ReadingProgress:
        """Record reading position for a book; ``timestamp`` defaults to now."""
        when = parse_datetime(timestamp) or utc_now()
        stored, _ = await self.apply_progress(
            {
                "isbn": isbn,
                "current_percentage": percentage,
                "current_cfi": cfi,
                "last_read": when,
                "updated_at": when,
            }
        )
        return stored

    # -------------------------------------------------------------------------
    # Serialized read-modify-write
    # -------------------------------------------------------------------------

    async def modify(
        self, table: Table | str, key: str, mutate: Mutation
    ) -> Optional[BaseModel]:
        """Apply ``mutate`` to the stored record under the record's key lock.

        ``mutate`` receives a copy of the current record and returns either a
        full replacement model or a mapping of fields to change. The key field
        itself cannot be changed.

        Returns:
            The stored record, or None if there was no record with that key
        """
        spec = table_spec(table)

        def work(session: Session) -> Optional[BaseModel]:
            current = get_in(session, spec.table, key)
            if current is None:
                return None
            changed = mutate(current.model_copy(deep=True))
            if isinstance(changed, Mapping):
                data = current.model_dump()
                data.update(changed)
            else:
                data = changed.model_dump()
            data[spec.key_field] = key
            candidate = validate_record(spec.model, data)
            if same_content(current, candidate):
                return current
            return put_in(session, spec.table, candidate, touch=True)

        async with self.locks.hold(spec.table, key):
            with track_operation("modify", spec.table):
                result = await self.db.run(work, label=f"modify:{spec.table}")

        if result is not None:
            logger.debug(f"Updated {spec.table} record {key!r}")
        return result

    async def upsert(
        self,
        table: Table | str,
        record: Record,
        merge: Callable[[BaseModel, BaseModel], BaseModel] | None = None,
    ) -> tuple[BaseModel, bool]:
        """Insert a record, or update the stored one in place.

        New records keep their supplied timestamps. When a record with the
        same key exists, ``merge(existing, incoming)`` decides the result
        (default: the incoming record); an unchanged result is not written.

        Returns:
            ``(stored record, whether it was written)``
        """
        spec = table_spec(table)
        incoming = validate_record(spec.model, record)
        key = spec.key_of(incoming)

        def work(session: Session) -> tuple[BaseModel, bool]:
            existing = get_in(session, spec.table, key)
            if existing is None:
                return put_in(session, spec.table, incoming, touch=False), True
            candidate = merge(existing, incoming) if merge else incoming
            if same_content(existing, candidate):
                return existing, False
            return put_in(session, spec.table, candidate, touch=True), True

        async with self.locks.hold(spec.table, key):
            with track_operation("upsert", spec.table):
                return await self.db.run(work, label=f"upsert:{spec.table}")

    async def add_highlight_if_new(self, highlight: Record) -> tuple[Highlight, bool]:
        """Insert a highlight under a fresh id unless it is already stored.

        A highlight is already stored when its id exists or another highlight
        on the same book has the same content fingerprint.
        """
        incoming: Highlight = validate_record(Highlight, highlight)

        def work(session: Session) -> tuple[Highlight, bool]:
            existing = get_in(session, Table.HIGHLIGHTS, incoming.id)
            if existing is not None:
                return existing, False  # type: ignore[return-value]
            fingerprint = incoming.fingerprint()
            for other in get_all_in(session, Table.HIGHLIGHTS, book_isbn=incoming.book_isbn):
                if other.fingerprint() == fingerprint:  # type: ignore[attr-defined]
                    return other, False  # type: ignore[return-value]
            fresh = incoming.model_copy(update={"id": new_id("highlight")})
            return put_in(session, Table.HIGHLIGHTS, fresh, touch=False), True  # type: ignore[return-value]

        async with self.locks.hold(Table.HIGHLIGHTS, incoming.book_isbn):
            with track_operation("import_highlight", Table.HIGHLIGHTS):
                return await self.db.run(work, label="import_highlight")

    # -------------------------------------------------------------------------
    # Settings and user
    # -------------------------------------------------------------------------

    async def merge_settings(self, patch: Mapping[str, Any]) -> tuple[dict[str, Any], int]:
        """Merge ``patch`` key by key into the settings row.

        Returns:
            ``(resulting settings, number of keys whose value changed)``
        """

        def work(session: Session) -> tuple[dict[str, Any], int]:
            current = get_in(session, Table.SETTINGS, SETTINGS_KEY)
            values = dict(current.values) if current is not None else {}  # type: ignore[attr-defined]
            changed = sum(
                1 for name, value in patch.items() if name not in values or values[name] != value
            )
            if changed == 0:
                return values, 0
            values.update(patch)
            stored = put_in(session, Table.SETTINGS, SettingsRecord(values=values))
            return dict(stored.values), changed  # type: ignore[attr-defined]

        async with self.locks.hold(Table.SETTINGS, SETTINGS_KEY):
            with track_operation("update_settings", Table.SETTINGS):
                return await self.db.run(work, label="update_settings")

    async def merge_setting_map(self, key: str, patch: Mapping[str, Any]) -> dict[str, Any]:
        """Merge ``patch`` into the mapping stored under the settings entry ``key``.

        A missing or non-mapping entry starts out empty.
        """

        def work(session: Session) -> dict[str, Any]:
            current = get_in(session, Table.SETTINGS, SETTINGS_KEY)
            values = dict(current.values) if current is not None else {}  # type: ignore[attr-defined]
            nested = values.get(key)
            nested = dict(nested) if isinstance(nested, dict) else {}
            merged = {**nested, **patch}
            if key not in values or merged != nested:
                values[key] = merged
                put_in(session, Table.SETTINGS, SettingsRecord(values=values))
            return merged

        async with self.locks.hold(Table.SETTINGS, SETTINGS_KEY):
            with track_operation("update_settings", Table.SETTINGS):
                return await self.db.run(work, label="update_settings")

    async def replace_user(self, user: Record) -> User:
        """Store ``user`` as the only profile, dropping any previous one."""
        model: User = validate_record(User, user)

        def work(session: Session) -> User:
            spec = TABLES[Table.USER]
            Repository(session, spec.row).clear()
            return put_in(session, Table.USER, model)  # type: ignore[return-value]

        async with self.locks.hold(Table.USER, "profile"):
            with track_operation("set_user", Table.USER):
                stored = await self.db.run(work, label="set_user")
        logger.info(f"👤 Profile set to {stored.name!r}")
        return stored

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def clear_all(self) -> dict[str, int]:
        """Empty every table and the payload directory.

        Returns:
            Rows removed per table
        """

        def work(session: Session) -> dict[str, int]:
            removed = {
                str(spec.table): Repository(session, spec.row).clear()
                for spec in TABLES.values()
            }
            removed["book_files"] = Repository(session, BookFileRow).clear()
            return removed

        with track_operation("clear_all", "all"):
            removed = await self.db.run(work, label="clear_all")
            await self.blobs.clear_files()

        logger.warning(f"🧨 Cleared all data ({sum(removed.values())} rows)")
        return removed


__all__ = ["Mutation", "TransactionManager", "same_content"]
