"""Data models for BiblioPod.

This module defines both Pydantic validation models (the records callers read
and write) and SQLModel ORM models (the persisted rows).

Models are organized into three sections:
1. Pydantic domain models for library entities
2. SQLModel tables for database persistence
3. The table registry used by the generic entity store
"""

import json
from dataclasses import dataclass
from datetime import date, datetime
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field as PydanticField, field_validator
from pydantic import ValidationError as PydanticValidationError
from sqlmodel import Field, SQLModel

from bibliopod.exceptions import ValidationError
from bibliopod.utils import format_iso, new_id, parse_datetime, unique_ordered

# =============================================================================
# Section 1: Pydantic Domain Models
# =============================================================================


class _Timestamped(BaseModel):
    """Shared created/updated timestamp handling."""

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _coerce_timestamps(cls, v: Optional[str | datetime]) -> Optional[datetime]:
        return parse_datetime(v)


class Book(_Timestamped):
    """Book metadata.

    Unknown keys are kept (``extra="allow"``) and persisted alongside the
    known columns so that metadata survives a backup round trip untouched.

    Attributes:
        isbn: Primary key, externally supplied or generated
        title: Book title
        author: Author display name
        genre: Free-form genre label
        thumbnail: Cover image URL or local reference
        description: Blurb or synopsis
        language: Language code
        publisher: Publisher name
        rating: User rating from 0 to 5
        file_name: Original file name of the stored payload
        file_size: Payload size in bytes
        file_type: Payload MIME type
    """

    model_config = ConfigDict(extra="allow")

    isbn: str = PydanticField(default_factory=lambda: new_id("book"), min_length=1)
    title: str = PydanticField(min_length=1)
    author: str = ""
    genre: Optional[str] = None
    thumbnail: Optional[str] = None
    description: Optional[str] = None
    language: Optional[str] = None
    publisher: Optional[str] = None
    rating: Optional[float] = PydanticField(default=None, ge=0, le=5)
    file_name: Optional[str] = None
    file_size: Optional[int] = PydanticField(default=None, ge=0)
    file_type: Optional[str] = None


class Collection(_Timestamped):
    """User-curated shelf of books.

    ``books`` holds soft references: ids need not match an existing Book.
    """

    model_config = ConfigDict(extra="ignore")

    id: str = PydanticField(default_factory=lambda: new_id("collection"), min_length=1)
    collection_name: str = PydanticField(min_length=1)
    collection_description: str = ""
    books: list[str] = PydanticField(default_factory=list)

    @field_validator("books", mode="after")
    @classmethod
    def _dedupe_books(cls, v: list[str]) -> list[str]:
        return unique_ordered(v)

    @field_validator("collection_description", mode="before")
    @classmethod
    def _none_description(cls, v: Optional[str]) -> str:
        return v or ""


class ChallengeStatus(StrEnum):
    """Derived challenge state."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class Challenge(_Timestamped):
    """Reading challenge: finish ``goal_count`` of the listed books.

    Completion status is never stored; see :mod:`bibliopod.relations`.
    """

    model_config = ConfigDict(extra="ignore")

    id: str = PydanticField(default_factory=lambda: new_id("challenge"), min_length=1)
    title: str = PydanticField(min_length=1)
    description: str = ""
    goal_count: int = PydanticField(gt=0)
    categories: list[str] = PydanticField(default_factory=list)
    deadline: Optional[date] = None
    is_private: bool = False
    books: list[str] = PydanticField(default_factory=list)

    @field_validator("books", "categories", mode="after")
    @classmethod
    def _dedupe(cls, v: list[str]) -> list[str]:
        return unique_ordered(v)

    @field_validator("description", mode="before")
    @classmethod
    def _none_description(cls, v: Optional[str]) -> str:
        return v or ""

    @field_validator("deadline", mode="before")
    @classmethod
    def _coerce_deadline(cls, v: Any) -> Any:
        if isinstance(v, datetime):
            return v.date()
        if isinstance(v, str) and "T" in v:
            return parse_datetime(v).date()  # type: ignore[union-attr]
        return v or None


class Highlight(_Timestamped):
    """Highlighted passage inside a book."""

    model_config = ConfigDict(extra="ignore")

    id: str = PydanticField(default_factory=lambda: new_id("highlight"), min_length=1)
    book_isbn: str = PydanticField(min_length=1)
    text: str = PydanticField(min_length=1)
    color: str = "yellow"
    note: Optional[str] = None
    cfi_range: Optional[str] = None
    page: Optional[int] = PydanticField(default=None, ge=0)
    location: Optional[str] = None

    def fingerprint(self) -> tuple:
        """Content identity used to recognise the same highlight across devices."""
        return (self.book_isbn, self.cfi_range, self.page, self.location, self.text)


class Bookmark(_Timestamped):
    """Saved reading position."""

    model_config = ConfigDict(extra="ignore")

    id: str = PydanticField(default_factory=lambda: new_id("bookmark"), min_length=1)
    book_isbn: str = PydanticField(min_length=1)
    cfi: str = PydanticField(min_length=1)
    label: Optional[str] = None
    page: Optional[int] = PydanticField(default=None, ge=0)


class ReadingProgress(BaseModel):
    """Resume position and completion for one book (keyed by isbn)."""

    model_config = ConfigDict(extra="ignore")

    isbn: str = PydanticField(min_length=1)
    current_percentage: float = PydanticField(default=0, ge=0, le=100)
    current_cfi: Optional[str] = None
    last_read: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("last_read", "updated_at", mode="before")
    @classmethod
    def _coerce_timestamps(cls, v: Optional[str | datetime]) -> Optional[datetime]:
        return parse_datetime(v)

    @property
    def is_finished(self) -> bool:
        return self.current_percentage == 100


class User(_Timestamped):
    """The single local profile."""

    model_config = ConfigDict(extra="ignore")

    id: str = PydanticField(default_factory=lambda: new_id("user"), min_length=1)
    name: str = PydanticField(min_length=1)
    email: Optional[str] = None


SETTINGS_KEY = "settings"


class SettingsRecord(BaseModel):
    """Flat option-name to value mapping, stored as one row."""

    model_config = ConfigDict(extra="ignore")

    id: str = SETTINGS_KEY
    values: dict[str, Any] = PydanticField(default_factory=dict)

    @field_validator("values", mode="after")
    @classmethod
    def _json_values(cls, v: dict[str, Any]) -> dict[str, Any]:
        try:
            json.dumps(v)
        except (TypeError, ValueError) as e:
            raise ValueError(f"settings values must be JSON serializable: {e}") from e
        return v


class DataSelection(BaseModel):
    """Which entity types a backup export or import touches."""

    books: bool = True
    collections: bool = True
    highlights: bool = True
    progress: bool = True
    challenges: bool = True
    settings: bool = True

    @classmethod
    def all(cls) -> "DataSelection":
        return cls()

    @classmethod
    def only(cls, *names: str) -> "DataSelection":
        """Select just the named entity types.

        Raises:
            ValidationError: If a name is not a known entity type
        """
        unknown = set(names) - set(cls.model_fields)
        if unknown:
            raise ValidationError(f"Unknown data types: {sorted(unknown)}")
        return cls(**{name: name in names for name in cls.model_fields})

    def selected(self) -> list[str]:
        return [name for name in type(self).model_fields if getattr(self, name)]


class ImportResult(BaseModel):
    """Outcome of a backup import."""

    imported_count: int = 0
    counts: dict[str, int] = PydanticField(default_factory=dict)

    def add(self, entity: str, amount: int = 1) -> None:
        self.counts[entity] = self.counts.get(entity, 0) + amount
        self.imported_count += amount


def validate_record(model: type[BaseModel], data: Any) -> Any:
    """Validate ``data`` into ``model``, raising the store's ValidationError.

    Args:
        model: Pydantic model class
        data: Mapping or model instance

    Returns:
        Validated model instance
    """
    if isinstance(data, BaseModel):
        data = data.model_dump()
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid {model.__name__}: {e.error_count()} validation error(s)",
            errors=e.errors(include_url=False),
        ) from e


# =============================================================================
# Section 2: SQLModel Tables for Database Persistence
# =============================================================================


def _dump_json(value: Any) -> str:
    return json.dumps(value, default=str)


class BookRow(SQLModel, table=True):
    """Persisted representation of a Book.

    Attributes:
        isbn: Primary key
        title: Title (indexed)
        author: Author (indexed)
        extra_json: JSON object of metadata keys without a dedicated column
        created_at: ISO8601 UTC creation timestamp (indexed)
        updated_at: ISO8601 UTC last update timestamp
    """

    __tablename__ = "books"  # type: ignore[assignment]

    isbn: str = Field(primary_key=True)
    title: str = Field(index=True)
    author: str = Field(default="", index=True)
    genre: Optional[str] = None
    thumbnail: Optional[str] = None
    description: Optional[str] = None
    language: Optional[str] = None
    publisher: Optional[str] = None
    rating: Optional[float] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    file_type: Optional[str] = None
    extra_json: Optional[str] = None
    created_at: Optional[str] = Field(default=None, index=True)
    updated_at: Optional[str] = None

    @classmethod
    def from_model(cls, book: Book) -> "BookRow":
        """Create BookRow from Pydantic Book model."""
        extra = book.model_extra or {}
        return cls(
            isbn=book.isbn,
            title=book.title,
            author=book.author,
            genre=book.genre,
            thumbnail=book.thumbnail,
            description=book.description,
            language=book.language,
            publisher=book.publisher,
            rating=book.rating,
            file_name=book.file_name,
            file_size=book.file_size,
            file_type=book.file_type,
            extra_json=_dump_json(extra) if extra else None,
            created_at=format_iso(book.created_at),
            updated_at=format_iso(book.updated_at),
        )

    def to_model(self) -> Book:
        data = self.model_dump(exclude={"extra_json"})
        if self.extra_json:
            data.update(json.loads(self.extra_json))
        return Book.model_validate(data)


class BookFileRow(SQLModel, table=True):
    """Bookkeeping for a stored binary payload.

    The bytes themselves live on disk under ``settings.files_dir``.

    Attributes:
        isbn: Primary key, same as the owning Book
        file_name: Original file name
        mime_type: MIME type
        size: Size in bytes
        sha256: Hex digest of the payload
        blob_name: File name inside the payload directory
        stored_at: ISO8601 UTC write timestamp
    """

    __tablename__ = "book_files"  # type: ignore[assignment]

    isbn: str = Field(primary_key=True)
    file_name: str
    mime_type: str
    size: int
    sha256: str
    blob_name: str
    stored_at: str


class CollectionRow(SQLModel, table=True):
    """Persisted representation of a Collection."""

    __tablename__ = "collections"  # type: ignore[assignment]

    id: str = Field(primary_key=True)
    collection_name: str
    collection_description: str = ""
    books_json: str = "[]"
    created_at: Optional[str] = Field(default=None, index=True)
    updated_at: Optional[str] = None

    @classmethod
    def from_model(cls, collection: Collection) -> "CollectionRow":
        return cls(
            id=collection.id,
            collection_name=collection.collection_name,
            collection_description=collection.collection_description,
            books_json=_dump_json(collection.books),
            created_at=format_iso(collection.created_at),
            updated_at=format_iso(collection.updated_at),
        )

    def to_model(self) -> Collection:
        return Collection(
            id=self.id,
            collection_name=self.collection_name,
            collection_description=self.collection_description,
            books=json.loads(self.books_json),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class ChallengeRow(SQLModel, table=True):
    """Persisted representation of a Challenge (no status column)."""

    __tablename__ = "challenges"  # type: ignore[assignment]

    id: str = Field(primary_key=True)
    title: str
    description: str = ""
    goal_count: int
    categories_json: str = "[]"
    deadline: Optional[str] = None
    is_private: bool = False
    books_json: str = "[]"
    created_at: Optional[str] = Field(default=None, index=True)
    updated_at: Optional[str] = None

    @classmethod
    def from_model(cls, challenge: Challenge) -> "ChallengeRow":
        return cls(
            id=challenge.id,
            title=challenge.title,
            description=challenge.description,
            goal_count=challenge.goal_count,
            categories_json=_dump_json(challenge.categories),
            deadline=challenge.deadline.isoformat() if challenge.deadline else None,
            is_private=challenge.is_private,
            books_json=_dump_json(challenge.books),
            created_at=format_iso(challenge.created_at),
            updated_at=format_iso(challenge.updated_at),
        )

    def to_model(self) -> Challenge:
        return Challenge(
            id=self.id,
            title=self.title,
            description=self.description,
            goal_count=self.goal_count,
            categories=json.loads(self.categories_json),
            deadline=self.deadline,
            is_private=self.is_private,
            books=json.loads(self.books_json),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class HighlightRow(SQLModel, table=True):
    """Persisted representation of a Highlight."""

    __tablename__ = "highlights"  # type: ignore[assignment]

    id: str = Field(primary_key=True)
    book_isbn: str = Field(index=True)
    text: str
    color: str = "yellow"
    note: Optional[str] = None
    cfi_range: Optional[str] = None
    page: Optional[int] = None
    location: Optional[str] = None
    created_at: Optional[str] = Field(default=None, index=True)
    updated_at: Optional[str] = None

    @classmethod
    def from_model(cls, highlight: Highlight) -> "HighlightRow":
        data = highlight.model_dump(exclude={"created_at", "updated_at"})
        return cls(
            **data,
            created_at=format_iso(highlight.created_at),
            updated_at=format_iso(highlight.updated_at),
        )

    def to_model(self) -> Highlight:
        return Highlight.model_validate(self.model_dump())


class BookmarkRow(SQLModel, table=True):
    """Persisted representation of a Bookmark."""

    __tablename__ = "bookmarks"  # type: ignore[assignment]

    id: str = Field(primary_key=True)
    book_isbn: str = Field(index=True)
    cfi: str
    label: Optional[str] = None
    page: Optional[int] = None
    created_at: Optional[str] = Field(default=None, index=True)
    updated_at: Optional[str] = None

    @classmethod
    def from_model(cls, bookmark: Bookmark) -> "BookmarkRow":
        data = bookmark.model_dump(exclude={"created_at", "updated_at"})
        return cls(
            **data,
            created_at=format_iso(bookmark.created_at),
            updated_at=format_iso(bookmark.updated_at),
        )

    def to_model(self) -> Bookmark:
        return Bookmark.model_validate(self.model_dump())


class ReadingProgressRow(SQLModel, table=True):
    """Persisted representation of Reading Progress."""

    __tablename__ = "reading_progress"  # type: ignore[assignment]

    isbn: str = Field(primary_key=True)
    current_percentage: float = 0
    current_cfi: Optional[str] = None
    last_read: Optional[str] = None
    updated_at: Optional[str] = Field(default=None, index=True)

    @classmethod
    def from_model(cls, progress: ReadingProgress) -> "ReadingProgressRow":
        return cls(
            isbn=progress.isbn,
            current_percentage=progress.current_percentage,
            current_cfi=progress.current_cfi,
            last_read=format_iso(progress.last_read),
            updated_at=format_iso(progress.updated_at),
        )

    def to_model(self) -> ReadingProgress:
        return ReadingProgress.model_validate(self.model_dump())


class SettingsRow(SQLModel, table=True):
    """The single Settings row."""

    __tablename__ = "settings"  # type: ignore[assignment]

    id: str = Field(default=SETTINGS_KEY, primary_key=True)
    values_json: str = "{}"

    @classmethod
    def from_model(cls, record: SettingsRecord) -> "SettingsRow":
        return cls(id=record.id, values_json=_dump_json(record.values))

    def to_model(self) -> SettingsRecord:
        return SettingsRecord(id=self.id, values=json.loads(self.values_json))


class UserRow(SQLModel, table=True):
    """Persisted representation of the local User."""

    __tablename__ = "user"  # type: ignore[assignment]

    id: str = Field(primary_key=True)
    name: str
    email: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_model(cls, user: User) -> "UserRow":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            created_at=format_iso(user.created_at),
            updated_at=format_iso(user.updated_at),
        )

    def to_model(self) -> User:
        return User.model_validate(self.model_dump())


# =============================================================================
# Section 3: Table Registry
# =============================================================================


class Table(StrEnum):
    """Logical tables addressable through the entity store."""

    BOOKS = "books"
    COLLECTIONS = "collections"
    CHALLENGES = "challenges"
    HIGHLIGHTS = "highlights"
    BOOKMARKS = "bookmarks"
    READING_PROGRESS = "reading_progress"
    SETTINGS = "settings"
    USER = "user"


@dataclass(frozen=True)
class TableSpec:
    """Binds a logical table to its domain model, row model and key field."""

    table: Table
    model: type[BaseModel]
    row: type[SQLModel]
    key_field: str
    stamped: bool = True

    def key_of(self, record: BaseModel) -> str:
        return getattr(record, self.key_field)

    def to_row(self, record: BaseModel) -> SQLModel:
        return self.row.from_model(record)  # type: ignore[attr-defined]


TABLES: dict[Table, TableSpec] = {
    Table.BOOKS: TableSpec(Table.BOOKS, Book, BookRow, "isbn"),
    Table.COLLECTIONS: TableSpec(Table.COLLECTIONS, Collection, CollectionRow, "id"),
    Table.CHALLENGES: TableSpec(Table.CHALLENGES, Challenge, ChallengeRow, "id"),
    Table.HIGHLIGHTS: TableSpec(Table.HIGHLIGHTS, Highlight, HighlightRow, "id"),
    Table.BOOKMARKS: TableSpec(Table.BOOKMARKS, Bookmark, BookmarkRow, "id"),
    Table.READING_PROGRESS: TableSpec(
        Table.READING_PROGRESS, ReadingProgress, ReadingProgressRow, "isbn"
    ),
    Table.SETTINGS: TableSpec(
        Table.SETTINGS, SettingsRecord, SettingsRow, "id", stamped=False
    ),
    Table.USER: TableSpec(Table.USER, User, UserRow, "id"),
}


def table_spec(table: Table | str) -> TableSpec:
    """Look up a table by enum or name.

    Raises:
        ValidationError: If the table name is unknown
    """
    try:
        return TABLES[Table(table)]
    except ValueError as e:
        raise ValidationError(f"Unknown table: {table!r}") from e
