"""Backup archive export and import.

An archive is a ZIP file holding:

- ``metadata.json``: the manifest (format tag, version, export date, app
  version, which entity types were exported, whether payloads are included)
- one JSON document per exported entity type (``books.json``,
  ``collections.json``, ``highlights.json``, ``reading_progress.json``,
  ``challenges.json``, ``settings.json``), always present for a selected type
  even when the table is empty
- ``book_files/<isbn>.<ext>`` payloads when exported with files

Import is two-phase. The whole archive is read and validated first (manifest,
every document, every record, member CRCs); any problem raises
:class:`ArchiveFormatError` before a single write. The records are then
merged through the transaction manager, counting only writes that changed
the store, so importing the same archive twice writes nothing the second time.

Example:
    >>> codec = BackupCodec(db, blobs, transactions, app_version="0.1.0")
    >>> data = await codec.export_archive(DataSelection.all(), include_files=True)
    >>> await library.clear_all_data()
    >>> result = await codec.import_archive(data)
    >>> result.imported_count
    42
"""

import io
import json
import zipfile
import zlib
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Any, BinaryIO, Optional

from pydantic import BaseModel, Field
from sqlmodel import Session

from bibliopod.blobs import BinaryObjectStore
from bibliopod.database import DatabaseManager
from bibliopod.exceptions import ArchiveFormatError, BiblioPodError, ValidationError
from bibliopod.logging import logger
from bibliopod.metrics import archive_items_total, archive_operations_total, errors_total
from bibliopod.models import (
    SETTINGS_KEY,
    Book,
    BookFileRow,
    Challenge,
    Collection,
    DataSelection,
    Highlight,
    ImportResult,
    ReadingProgress,
    Table,
    validate_record,
)
from bibliopod.repository import Repository
from bibliopod.store import get_all_in, get_in
from bibliopod.transactions import TransactionManager
from bibliopod.utils import file_extension, quote_key, unquote_key, utc_now

ARCHIVE_FORMAT = "bibliopod-backup"
ARCHIVE_FORMAT_VERSION = 1
LEGACY_FORMAT_VERSION = 0
MANIFEST_NAME = "metadata.json"
FILES_DIR = "book_files"

DOCUMENTS: dict[str, str] = {
    "books": "books.json",
    "collections": "collections.json",
    "highlights": "highlights.json",
    "progress": "reading_progress.json",
    "challenges": "challenges.json",
    "settings": "settings.json",
}

ENTITY_TABLES: dict[str, Table] = {
    "books": Table.BOOKS,
    "collections": Table.COLLECTIONS,
    "highlights": Table.HIGHLIGHTS,
    "progress": Table.READING_PROGRESS,
    "challenges": Table.CHALLENGES,
}

ENTITY_MODELS: dict[str, type[BaseModel]] = {
    "books": Book,
    "collections": Collection,
    "highlights": Highlight,
    "progress": ReadingProgress,
    "challenges": Challenge,
}

# Fields an import may change on a record that already exists
COLLECTION_MUTABLE = ("collection_name", "collection_description", "books")
CHALLENGE_MUTABLE = (
    "title",
    "description",
    "goal_count",
    "categories",
    "deadline",
    "is_private",
    "books",
)


# =============================================================================
# Manifest
# =============================================================================


class Manifest(BaseModel):
    """Contents of ``metadata.json``."""

    format: str = ARCHIVE_FORMAT
    format_version: int = ARCHIVE_FORMAT_VERSION
    export_date: datetime
    app_version: str = ""
    data_types: list[str] = Field(default_factory=list)
    includes_files: bool = False

    @classmethod
    def from_document(cls, data: Any) -> "Manifest":
        """Parse a manifest, accepting the camelCase layout of older exports.

        Raises:
            ArchiveFormatError: If the manifest is not recognized
        """
        if not isinstance(data, dict):
            raise ArchiveFormatError("Manifest must be a JSON object")

        if "format" not in data and "exportDate" in data and "dataTypes" in data:
            data = {
                "format": ARCHIVE_FORMAT,
                "format_version": LEGACY_FORMAT_VERSION,
                "export_date": data["exportDate"],
                "app_version": str(data.get("appVersion", "")),
                "data_types": data["dataTypes"],
                "includes_files": False,
            }

        if data.get("format") != ARCHIVE_FORMAT:
            raise ArchiveFormatError(f"Unrecognized archive format: {data.get('format')!r}")

        try:
            manifest = cls.model_validate(data)
        except ValueError as e:
            raise ArchiveFormatError(f"Invalid manifest: {e}") from e

        if manifest.format_version > ARCHIVE_FORMAT_VERSION:
            raise ArchiveFormatError(
                f"Archive format version {manifest.format_version} is newer than "
                f"supported version {ARCHIVE_FORMAT_VERSION}"
            )
        return manifest


# =============================================================================
# Import plan
# =============================================================================


@dataclass
class ImportPlan:
    """A fully validated archive, ready to be merged."""

    archive: zipfile.ZipFile
    manifest: Manifest
    records: dict[str, list[BaseModel]] = field(default_factory=dict)
    settings: Optional[dict[str, Any]] = None
    payloads: dict[str, str] = field(default_factory=dict)


def _normalize_legacy(entity: str, record: Any) -> Any:
    """Map field names used by older exports onto the current ones."""
    if not isinstance(record, dict):
        return record
    record = dict(record)
    if entity == "books":
        record.pop("file_data", None)
    elif entity == "progress":
        if "lastRead" in record and "last_read" not in record:
            record["last_read"] = record.pop("lastRead")
        if record.get("updated_at") is None and record.get("last_read"):
            record["updated_at"] = record["last_read"]
    elif entity == "challenges":
        record.pop("status", None)
    return record


def payload_member(isbn: str, file_name: Optional[str] = None) -> str:
    """Archive member name of a book's payload, keeping the original extension."""
    return f"{FILES_DIR}/{quote_key(isbn)}.{file_extension(file_name)}"


# =============================================================================
# Backup Codec
# =============================================================================


class BackupCodec:
    """Exports the store into archives and merges archives back into it.

    Args:
        db: DatabaseManager shared with the rest of the store
        blobs: Payload store (source and destination of book files)
        transactions: Transaction manager every import write goes through
        app_version: Version string written into manifests
    """

    def __init__(
        self,
        db: DatabaseManager,
        blobs: BinaryObjectStore,
        transactions: TransactionManager,
        app_version: str = "",
    ):
        self.db = db
        self.blobs = blobs
        self.transactions = transactions
        self.app_version = app_version

    # -------------------------------------------------------------------------
    # Export
    # -------------------------------------------------------------------------

    async def export_archive(
        self, selection: DataSelection | None = None, include_files: bool = False
    ) -> bytes:
        """Build an archive in memory and return its bytes.

        Use :meth:`export_archive_to` for large libraries with payloads.
        """
        buffer = io.BytesIO()
        await self._export(buffer, selection or DataSelection.all(), include_files)
        return buffer.getvalue()

    async def export_archive_to(
        self,
        path: str | Path,
        selection: DataSelection | None = None,
        include_files: bool = False,
    ) -> Path:
        """Stream an archive to ``path``; payloads are copied from disk member by member."""
        path = Path(path)
        await self.db.run_blocking(lambda: path.parent.mkdir(parents=True, exist_ok=True))
        with open(path, "wb") as target:
            await self._export(target, selection or DataSelection.all(), include_files)
        return path

    async def _export(
        self, target: BinaryIO, selection: DataSelection, include_files: bool
    ) -> None:
        self.db.require_initialized()
        try:
            snapshot = await self.db.run(
                lambda session: self._snapshot(session, selection, include_files),
                label="export_snapshot",
            )
            archive = await self.db.run_blocking(
                lambda: zipfile.ZipFile(target, "w", compression=zipfile.ZIP_DEFLATED)
            )
            try:
                for entity, document in snapshot["documents"].items():
                    await self.db.run_blocking(
                        archive.writestr, DOCUMENTS[entity], json.dumps(document, indent=2)
                    )
                    archive_items_total.labels(entity=entity, direction="export").inc(
                        len(document) if isinstance(document, list) else 1
                    )

                packed = 0
                for book, row in snapshot["payloads"]:
                    async with self.transactions.locks.hold(Table.BOOKS, book.isbn):
                        if await self.db.run_blocking(self._pack_payload, archive, book, row):
                            packed += 1

                manifest = Manifest(
                    export_date=utc_now(),
                    app_version=self.app_version,
                    data_types=selection.selected(),
                    includes_files=include_files,
                )
                await self.db.run_blocking(
                    archive.writestr, MANIFEST_NAME, manifest.model_dump_json(indent=2)
                )
            finally:
                await self.db.run_blocking(archive.close)
        except BiblioPodError as e:
            archive_operations_total.labels(direction="export", status="error").inc()
            logger.error(f"❌ Export failed: {e}")
            raise

        archive_operations_total.labels(direction="export", status="success").inc()
        logger.info(
            f"📦 Exported {', '.join(selection.selected()) or 'nothing'}"
            + (f" with {packed} payload(s)" if include_files else "")
        )

    def _snapshot(
        self, session: Session, selection: DataSelection, include_files: bool
    ) -> dict[str, Any]:
        """Read every selected table in one unit so the archive is consistent."""
        documents: dict[str, Any] = {}
        for entity in selection.selected():
            if entity == "settings":
                current = get_in(session, Table.SETTINGS, SETTINGS_KEY)
                documents[entity] = dict(current.values) if current else {}  # type: ignore[attr-defined]
            else:
                documents[entity] = [
                    record.model_dump(mode="json")
                    for record in get_all_in(session, ENTITY_TABLES[entity])
                ]

        payloads = []
        if include_files and selection.books:
            files = {row.isbn: row for row in Repository(session, BookFileRow).get_all()}
            for record in get_all_in(session, Table.BOOKS):
                if record.isbn in files:  # type: ignore[attr-defined]
                    payloads.append((record, files[record.isbn]))  # type: ignore[attr-defined]
        return {"documents": documents, "payloads": payloads}

    def _pack_payload(
        self, archive: zipfile.ZipFile, book: Book, row: BookFileRow
    ) -> bool:
        path = self.blobs.payload_path(book.isbn)
        if not path.exists():
            logger.warning(f"⚠️  Payload for {book.isbn!r} vanished during export; skipped")
            return False
        archive.write(path, payload_member(book.isbn, row.file_name or book.file_name))
        return True

    # -------------------------------------------------------------------------
    # Import
    # -------------------------------------------------------------------------

    async def import_archive(
        self,
        source: bytes | str | Path | BinaryIO,
        selection: DataSelection | None = None,
    ) -> ImportResult:
        """Validate an archive completely, then merge it into the store.

        Args:
            source: Archive bytes, a path, or a readable binary file object
            selection: Entity types to import (default: all)

        Returns:
            ImportResult with the number of records that changed the store

        Raises:
            ArchiveFormatError: Corrupt or unrecognized archive (nothing written)
        """
        self.db.require_initialized()
        selection = selection or DataSelection.all()
        try:
            plan = await self.db.run_blocking(self._read_plan, source, selection)
        except ArchiveFormatError as e:
            archive_operations_total.labels(direction="import", status="error").inc()
            errors_total.labels(error_type="ArchiveFormatError", component="archive").inc()
            logger.error(f"❌ Rejected archive: {e}")
            raise

        result = ImportResult()
        try:
            await self._merge(plan, result)
        except BiblioPodError as e:
            archive_operations_total.labels(direction="import", status="error").inc()
            logger.error(f"❌ Import failed after {result.imported_count} write(s): {e}")
            raise
        finally:
            await self.db.run_blocking(plan.archive.close)

        archive_operations_total.labels(direction="import", status="success").inc()
        logger.info(f"📥 Imported {result.imported_count} item(s): {result.counts}")
        return result

    def _read_plan(
        self, source: bytes | str | Path | BinaryIO, selection: DataSelection
    ) -> ImportPlan:
        if isinstance(source, (bytes, bytearray, memoryview)):
            source = io.BytesIO(bytes(source))
        try:
            archive = zipfile.ZipFile(source)
        except (zipfile.BadZipFile, zipfile.LargeZipFile) as e:
            raise ArchiveFormatError(f"Not a valid archive: {e}") from e

        try:
            return self._validate(archive, selection)
        except BaseException:
            archive.close()
            raise

    def _read_json(self, archive: zipfile.ZipFile, name: str) -> Any:
        try:
            return json.loads(archive.read(name).decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            raise ArchiveFormatError(f"{name} is not valid JSON: {e}") from e
        except (zipfile.BadZipFile, zlib.error) as e:
            raise ArchiveFormatError(f"{name} is corrupt: {e}") from e

    def _validate(self, archive: zipfile.ZipFile, selection: DataSelection) -> ImportPlan:
        names = set(archive.namelist())
        if MANIFEST_NAME not in names:
            raise ArchiveFormatError(f"Archive has no {MANIFEST_NAME}")
        try:
            bad_member = archive.testzip()
        except (zipfile.BadZipFile, zlib.error, OSError, EOFError) as e:
            raise ArchiveFormatError(f"Archive is corrupt: {e}") from e
        if bad_member is not None:
            raise ArchiveFormatError(f"Archive member {bad_member!r} is corrupt")

        plan = ImportPlan(
            archive=archive,
            manifest=Manifest.from_document(self._read_json(archive, MANIFEST_NAME)),
        )

        for entity in selection.selected():
            name = DOCUMENTS[entity]
            if name not in names:
                continue
            document = self._read_json(archive, name)
            if entity == "settings":
                if not isinstance(document, dict):
                    raise ArchiveFormatError(f"{name} must be a JSON object")
                try:
                    json.dumps(document)
                except (TypeError, ValueError) as e:
                    raise ArchiveFormatError(f"{name} is not serializable: {e}") from e
                plan.settings = document
                continue
            if not isinstance(document, list):
                raise ArchiveFormatError(f"{name} must be a JSON array")
            records = []
            for index, raw in enumerate(document):
                try:
                    records.append(
                        validate_record(ENTITY_MODELS[entity], _normalize_legacy(entity, raw))
                    )
                except ValidationError as e:
                    raise ArchiveFormatError(f"{name}[{index}]: {e}") from e
            plan.records[entity] = records

        members: dict[str, str] = {}
        legacy = plan.manifest.format_version == LEGACY_FORMAT_VERSION
        for name in sorted(names):
            if not name.startswith(f"{FILES_DIR}/") or name.endswith("/"):
                continue
            stem = PurePosixPath(name).stem
            members.setdefault(unquote_key(stem), name)
            # older exports wrote the raw isbn as the member stem
            if legacy:
                members[stem] = name
        for book in plan.records.get("books", []):
            member = members.get(book.isbn)  # type: ignore[attr-defined]
            if member is not None:
                plan.payloads[book.isbn] = member  # type: ignore[attr-defined]

        return plan

    async def _merge(self, plan: ImportPlan, result: ImportResult) -> None:
        for book in plan.records.get("books", []):
            if await self._import_book(plan, book):  # type: ignore[arg-type]
                result.add("books")

        for collection in plan.records.get("collections", []):
            _, written = await self.transactions.upsert(
                Table.COLLECTIONS, collection, merge=_merge_fields(COLLECTION_MUTABLE)
            )
            if written:
                result.add("collections")

        for challenge in plan.records.get("challenges", []):
            _, written = await self.transactions.upsert(
                Table.CHALLENGES, challenge, merge=_merge_fields(CHALLENGE_MUTABLE)
            )
            if written:
                result.add("challenges")

        for highlight in plan.records.get("highlights", []):
            _, written = await self.transactions.add_highlight_if_new(highlight)
            if written:
                result.add("highlights")

        for progress in plan.records.get("progress", []):
            _, written = await self.transactions.apply_progress(progress)
            if written:
                result.add("progress")

        if plan.settings:
            _, changed = await self.transactions.merge_settings(plan.settings)
            if changed:
                result.add("settings", changed)

        for entity, amount in result.counts.items():
            archive_items_total.labels(entity=entity, direction="import").inc(amount)

    async def _import_book(self, plan: ImportPlan, book: Book) -> bool:
        member = plan.payloads.get(book.isbn)
        if member is None:
            _, written = await self.transactions.write_book(
                book, touch=False, skip_unchanged=True
            )
            return written

        handle = await self.db.run_blocking(plan.archive.open, member)
        try:
            _, written = await self.transactions.write_book(
                book,
                handle,
                file_name=book.file_name or PurePosixPath(member).name,
                mime_type=book.file_type,
                touch=False,
                skip_unchanged=True,
            )
        finally:
            await self.db.run_blocking(handle.close)
        return written


def _merge_fields(fields: tuple[str, ...]):
    """Build a merge function that copies ``fields`` from incoming onto existing."""

    def merge(existing: BaseModel, incoming: BaseModel) -> BaseModel:
        return existing.model_copy(
            update={name: getattr(incoming, name) for name in fields}
        )

    return merge


__all__ = [
    "ARCHIVE_FORMAT",
    "ARCHIVE_FORMAT_VERSION",
    "BackupCodec",
    "DOCUMENTS",
    "ImportPlan",
    "Manifest",
    "payload_member",
]
