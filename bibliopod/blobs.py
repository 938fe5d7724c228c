"""Binary payload storage for BiblioPod.

Book files (EPUB bytes) are kept as individual files in a payload directory
and tracked by the ``book_files`` table. Payloads are never patched:

1. ``stage()`` copies the source in chunks into a private staging file while
   hashing it, so arbitrarily large payloads never sit in memory whole.
2. Inside a database unit of work the ``book_files`` row is written and the
   staged file is swapped into place with an atomic rename; a previous payload
   is parked as a backup.
3. After the unit commits the backup is purged; if anything failed the swap
   is undone and the previous payload restored. Backups left behind by a
   process that died mid-write are checked against the index on startup.

Example:
    >>> blobs = BinaryObjectStore(db, Path("data/book_files"))
    >>> await blobs.initialize()
    >>> await blobs.put_payload("123", epub_bytes, "book.epub", "application/epub+zip")
    >>> data = await blobs.get_payload("123")
    >>> async for chunk in blobs.iter_payload("123"):
    ...     sink.write(chunk)
"""

import hashlib
import os
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Optional

from pydantic import BaseModel
from sqlalchemy import func
from sqlmodel import Session, select

from bibliopod.config import settings
from bibliopod.database import DatabaseManager
from bibliopod.exceptions import StorageError, StorageQuotaError, ValidationError
from bibliopod.logging import logger
from bibliopod.metrics import payload_bytes_stored
from bibliopod.models import BookFileRow
from bibliopod.repository import Repository
from bibliopod.utils import quote_key, utc_now_iso

STAGING_DIR = ".staging"
TRASH_DIR = ".trash"


class PayloadInfo(BaseModel):
    """Metadata describing a stored payload."""

    isbn: str
    file_name: str
    mime_type: str
    size: int
    sha256: str
    stored_at: str

    @classmethod
    def from_row(cls, row: BookFileRow) -> "PayloadInfo":
        return cls(
            isbn=row.isbn,
            file_name=row.file_name,
            mime_type=row.mime_type,
            size=row.size,
            sha256=row.sha256,
            stored_at=row.stored_at,
        )


@dataclass
class StagedPayload:
    """A payload copied into the staging area but not yet visible."""

    isbn: str
    file_name: str
    mime_type: str
    size: int
    sha256: str
    temp_path: Path


@dataclass
class PendingSwap:
    """File-level state of an uncommitted payload write or delete."""

    isbn: str
    staged: Optional[StagedPayload] = None
    backup: Optional[Path] = None
    swapped: bool = False


# =============================================================================
# Payload Directory (blocking filesystem operations)
# =============================================================================


class PayloadDirectory:
    """Blocking file operations on the payload directory.

    Every method here runs on the store's worker thread.
    """

    def __init__(self, root: Path, chunk_size: int):
        self.root = Path(root)
        self.chunk_size = chunk_size

    @property
    def staging(self) -> Path:
        return self.root / STAGING_DIR

    @property
    def trash(self) -> Path:
        return self.root / TRASH_DIR

    def prepare(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        for scratch in (self.staging, self.trash):
            if scratch.exists():
                shutil.rmtree(scratch)
            scratch.mkdir()

    def path_for(self, isbn: str) -> Path:
        return self.root / quote_key(isbn)

    def stage(
        self,
        isbn: str,
        source: bytes | BinaryIO,
        file_name: str,
        mime_type: str,
    ) -> StagedPayload:
        """Copy ``source`` into a staging file, hashing as it goes."""
        temp_path = self.staging / f"{uuid.uuid4().hex}.part"
        digest = hashlib.sha256()
        size = 0
        try:
            with open(temp_path, "wb") as out:
                if isinstance(source, (bytes, bytearray, memoryview)):
                    view = memoryview(source)
                    for offset in range(0, len(view), self.chunk_size):
                        chunk = view[offset : offset + self.chunk_size]
                        out.write(chunk)
                        digest.update(chunk)
                    size = len(view)
                else:
                    while chunk := source.read(self.chunk_size):
                        out.write(chunk)
                        digest.update(chunk)
                        size += len(chunk)
                out.flush()
                os.fsync(out.fileno())
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

        return StagedPayload(
            isbn=isbn,
            file_name=file_name,
            mime_type=mime_type,
            size=size,
            sha256=digest.hexdigest(),
            temp_path=temp_path,
        )

    def park(self, isbn: str) -> Optional[Path]:
        """Move the current payload for ``isbn`` aside, returning where it went."""
        final = self.path_for(isbn)
        if not final.exists():
            return None
        parked = self.trash / f"{final.name}.{uuid.uuid4().hex}.bak"
        os.replace(final, parked)
        return parked

    def swap_in(self, pending: PendingSwap) -> None:
        """Park the current payload and move the staged one into place."""
        assert pending.staged is not None
        pending.backup = self.park(pending.isbn)
        os.replace(pending.staged.temp_path, self.path_for(pending.isbn))
        pending.swapped = True

    def undo(self, pending: PendingSwap) -> None:
        """Revert a swap or park that did not commit."""
        final = self.path_for(pending.isbn)
        if pending.swapped:
            final.unlink(missing_ok=True)
        if pending.backup is not None and pending.backup.exists():
            os.replace(pending.backup, final)
        if pending.staged is not None:
            pending.staged.temp_path.unlink(missing_ok=True)

    def settle(self, pending: PendingSwap) -> None:
        """Drop the parked payload once the swap committed."""
        if pending.backup is not None:
            pending.backup.unlink(missing_ok=True)

    def discard(self, staged: StagedPayload) -> None:
        staged.temp_path.unlink(missing_ok=True)

    def read(self, isbn: str) -> bytes:
        return self.path_for(isbn).read_bytes()

    def open(self, isbn: str) -> BinaryIO:
        return open(self.path_for(isbn), "rb")

    def read_chunk(self, handle: BinaryIO) -> bytes:
        return handle.read(self.chunk_size)

    def digest(self, path: Path) -> str:
        digest = hashlib.sha256()
        with open(path, "rb") as handle:
            while chunk := handle.read(self.chunk_size):
                digest.update(chunk)
        return digest.hexdigest()

    def recover(self, expected: dict[str, str]) -> list[str]:
        """Move parked payloads back where the index still expects their bytes.

        A process that died between a swap and its commit leaves the new
        bytes in place and the committed ones in the trash.

        Args:
            expected: sha256 per blob name, from the ``book_files`` index

        Returns:
            Blob names restored from the trash
        """
        restored: list[str] = []
        if not self.trash.is_dir():
            return restored
        for parked in sorted(self.trash.glob("*.bak")):
            blob_name = parked.name.removesuffix(".bak").rsplit(".", 1)[0]
            wanted = expected.get(blob_name)
            final = self.root / blob_name
            if wanted is None or (final.exists() and self.digest(final) == wanted):
                continue
            if self.digest(parked) == wanted:
                os.replace(parked, final)
                restored.append(blob_name)
        return restored

    def sweep(self, known: set[str]) -> list[str]:
        """Delete payload files that have no ``book_files`` row."""
        removed = []
        for path in self.root.iterdir():
            if path.name in (STAGING_DIR, TRASH_DIR) or not path.is_file():
                continue
            if path.name not in known:
                path.unlink()
                removed.append(path.name)
        return removed

    def clear(self) -> None:
        for path in self.root.iterdir():
            if path.name in (STAGING_DIR, TRASH_DIR):
                continue
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink()


# =============================================================================
# Binary Object Store
# =============================================================================


class BinaryObjectStore:
    """Async payload store keyed by isbn.

    Args:
        db: Initialized DatabaseManager that owns the ``book_files`` table
        root: Payload directory (defaults to settings.files_dir)
        max_storage_bytes: Optional quota on the total payload size
        chunk_size: Streaming chunk size (defaults to settings.stream_chunk_size)
    """

    def __init__(
        self,
        db: DatabaseManager,
        root: Path | None = None,
        max_storage_bytes: int | None = None,
        chunk_size: int | None = None,
    ):
        self.db = db
        self.directory = PayloadDirectory(
            root or settings.files_dir,
            chunk_size or settings.stream_chunk_size,
        )
        self.max_storage_bytes = (
            max_storage_bytes if max_storage_bytes is not None else settings.max_storage_bytes
        )

    async def initialize(self) -> None:
        """Create the payload directory and settle leftovers of interrupted writes."""
        expected = await self.db.run(
            lambda session: {
                quote_key(row.isbn): row.sha256
                for row in Repository[BookFileRow](session, BookFileRow).get_all()
            },
            label="payload_index",
        )
        restored = await self.db.run_blocking(self.directory.recover, expected)
        if restored:
            logger.warning(f"♻️  Restored {len(restored)} payload(s) parked by an interrupted write")
        await self.db.run_blocking(self.directory.prepare)
        removed = await self.db.run_blocking(self.directory.sweep, set(expected))
        if removed:
            logger.warning(f"🧹 Removed {len(removed)} orphaned payload file(s)")
        await self.refresh_usage()

    # -------------------------------------------------------------------------
    # Building blocks shared with the transaction manager
    # -------------------------------------------------------------------------

    async def stage(
        self,
        isbn: str,
        source: bytes | BinaryIO,
        file_name: str | None = None,
        mime_type: str | None = None,
    ) -> StagedPayload:
        """Copy a payload into the staging area (not yet visible to readers)."""
        if not isbn:
            raise ValidationError("Payload requires an isbn")
        return await self.db.run_blocking(
            self.directory.stage,
            isbn,
            source,
            file_name or f"{quote_key(isbn)}.epub",
            mime_type or settings.default_mime_type,
        )

    async def discard(self, staged: StagedPayload) -> None:
        await self.db.run_blocking(self.directory.discard, staged)

    def write_in_unit(self, session: Session, staged: StagedPayload) -> PendingSwap:
        """Record and swap in a staged payload inside an open unit of work.

        Raises:
            StorageQuotaError: If the payload would exceed the storage quota
        """
        self._check_quota(session, staged)
        Repository[BookFileRow](session, BookFileRow).put(
            BookFileRow(
                isbn=staged.isbn,
                file_name=staged.file_name,
                mime_type=staged.mime_type,
                size=staged.size,
                sha256=staged.sha256,
                blob_name=quote_key(staged.isbn),
                stored_at=utc_now_iso(),
            )
        )
        pending = PendingSwap(isbn=staged.isbn, staged=staged)
        try:
            self.directory.swap_in(pending)
        except BaseException:
            self.directory.undo(pending)
            raise
        return pending

    def delete_in_unit(self, session: Session, isbn: str) -> Optional[PendingSwap]:
        """Remove the payload row and park its file inside an open unit of work."""
        if not Repository[BookFileRow](session, BookFileRow).delete(isbn):
            return None
        pending = PendingSwap(isbn=isbn)
        pending.backup = self.directory.park(isbn)
        return pending

    async def settle(self, pending: Optional[PendingSwap], committed: bool) -> None:
        """Finish a pending swap after its unit of work committed or failed."""
        if pending is None:
            return
        if committed:
            await self.db.run_blocking(self.directory.settle, pending)
        else:
            await self.db.run_blocking(self.directory.undo, pending)
        await self.refresh_usage()

    def _check_quota(self, session: Session, staged: StagedPayload) -> None:
        if self.max_storage_bytes is None:
            return
        stmt = select(func.coalesce(func.sum(BookFileRow.size), 0)).where(
            BookFileRow.isbn != staged.isbn
        )
        used = session.exec(stmt).one()
        if used + staged.size > self.max_storage_bytes:
            raise StorageQuotaError(
                f"Storage quota exceeded: {used + staged.size} bytes needed, "
                f"{self.max_storage_bytes} allowed. Free up space by deleting some books."
            )

    # -------------------------------------------------------------------------
    # Public payload operations
    # -------------------------------------------------------------------------

    async def put_payload(
        self,
        isbn: str,
        data: bytes | BinaryIO,
        file_name: str | None = None,
        mime_type: str | None = None,
    ) -> PayloadInfo:
        """Store (or wholesale replace) the payload for ``isbn``."""
        staged = await self.stage(isbn, data, file_name, mime_type)
        holder: dict[str, PendingSwap] = {}

        def work(session: Session) -> PayloadInfo:
            holder["pending"] = self.write_in_unit(session, staged)
            return PayloadInfo.from_row(session.get(BookFileRow, isbn))  # type: ignore[arg-type]

        try:
            info = await self.db.run(work, label="put_payload")
        except BaseException:
            pending = holder.get("pending")
            if pending is not None:
                await self.settle(pending, committed=False)
            else:
                await self.discard(staged)
            raise

        await self.settle(holder["pending"], committed=True)
        logger.debug(f"Stored payload for {isbn} ({staged.size} bytes)")
        return info

    async def get_payload_info(self, isbn: str) -> Optional[PayloadInfo]:
        row = await self.db.run(
            lambda session: session.get(BookFileRow, isbn), label="payload_info"
        )
        return PayloadInfo.from_row(row) if row else None

    async def get_payload(self, isbn: str) -> Optional[bytes]:
        """Read a whole payload into memory, or None if there is none.

        Prefer :meth:`iter_payload` for large files.
        """
        info = await self.get_payload_info(isbn)
        if info is None:
            return None
        try:
            return await self.db.run_blocking(self.directory.read, isbn)
        except StorageError as e:
            raise StorageError(f"Payload for {isbn!r} is recorded but unreadable: {e}") from e

    async def open_payload(self, isbn: str) -> Optional[BinaryIO]:
        """Open a payload for streaming reads. The caller closes the handle."""
        info = await self.get_payload_info(isbn)
        if info is None:
            return None
        return await self.db.run_blocking(self.directory.open, isbn)

    async def iter_payload(self, isbn: str) -> AsyncIterator[bytes]:
        """Yield a payload chunk by chunk; yields nothing when absent."""
        handle = await self.open_payload(isbn)
        if handle is None:
            return
        try:
            while chunk := await self.db.run_blocking(self.directory.read_chunk, handle):
                yield chunk
        finally:
            handle.close()

    def payload_path(self, isbn: str) -> Path:
        """Filesystem location of a payload (for zero-copy archive packing)."""
        return self.directory.path_for(isbn)

    async def delete_payload(self, isbn: str) -> bool:
        """Remove a payload. Returns False if there was none."""
        holder: dict[str, Optional[PendingSwap]] = {}

        def work(session: Session) -> bool:
            holder["pending"] = self.delete_in_unit(session, isbn)
            return holder["pending"] is not None

        try:
            deleted = await self.db.run(work, label="delete_payload")
        except BaseException:
            await self.settle(holder.get("pending"), committed=False)
            raise
        await self.settle(holder.get("pending"), committed=True)
        return deleted

    async def clear_files(self) -> None:
        """Delete every payload file (rows are cleared by the caller's unit)."""
        await self.db.run_blocking(self.directory.clear)
        await self.refresh_usage()

    async def count(self) -> int:
        return await self.db.run(
            lambda session: Repository[BookFileRow](session, BookFileRow).count(),
            label="payload_count",
        )

    async def total_bytes(self) -> int:
        stmt = select(func.coalesce(func.sum(BookFileRow.size), 0))
        return await self.db.run(lambda session: session.exec(stmt).one(), label="payload_usage")

    async def refresh_usage(self) -> int:
        used = await self.total_bytes()
        payload_bytes_stored.set(used)
        return used


__all__ = [
    "BinaryObjectStore",
    "PayloadDirectory",
    "PayloadInfo",
    "PendingSwap",
    "StagedPayload",
]
