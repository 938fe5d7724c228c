"""Soft-reference resolution and derived metrics.

Collections and challenges refer to books by isbn only. Nothing here ever
writes: references are resolved and aggregates computed on every read, and a
missing book is a normal outcome (reported in ``missing``), never an error.

The ``build_*`` functions are pure and operate on already loaded records; the
async ``*_view(s)`` functions load what they need in one unit of work so a
view never mixes data from before and after a concurrent write.
"""

from typing import Iterable, Optional, Sequence

from pydantic import BaseModel, Field, computed_field
from sqlmodel import Session, select

from bibliopod.database import DatabaseManager
from bibliopod.models import (
    Book,
    BookFileRow,
    BookRow,
    Challenge,
    ChallengeRow,
    ChallengeStatus,
    Collection,
    CollectionRow,
    ReadingProgress,
    ReadingProgressRow,
)
from bibliopod.repository import Repository

FINISHED_PERCENTAGE = 100


# =============================================================================
# Views
# =============================================================================


class BookView(BaseModel):
    """A book with its reading progress."""

    book: Book
    progress: Optional[ReadingProgress] = None
    has_file: bool = False

    @computed_field  # type: ignore[prop-decorator]
    @property
    def current_percentage(self) -> float:
        return self.progress.current_percentage if self.progress else 0


class CollectionView(BaseModel):
    """A collection with its book ids resolved."""

    collection: Collection
    books: list[Book] = Field(default_factory=list)
    missing: list[str] = Field(default_factory=list)


class ChallengeView(BaseModel):
    """A challenge with resolved books and derived completion state."""

    challenge: Challenge
    books: list[Book] = Field(default_factory=list)
    missing: list[str] = Field(default_factory=list)
    progress: dict[str, float] = Field(default_factory=dict)
    completed_count: int = 0
    status: ChallengeStatus = ChallengeStatus.IN_PROGRESS

    @computed_field  # type: ignore[prop-decorator]
    @property
    def books_in_challenge(self) -> int:
        return len(self.books)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def percent_complete(self) -> float:
        return percent_complete(self.completed_count, self.challenge.goal_count)


# =============================================================================
# Pure derivations
# =============================================================================


def resolve_books(
    ids: Iterable[str], books_by_isbn: dict[str, Book]
) -> tuple[list[Book], list[str]]:
    """Split referenced ids into found books (in reference order) and dangling ids."""
    found, missing = [], []
    for isbn in ids:
        book = books_by_isbn.get(isbn)
        if book is None:
            missing.append(isbn)
        else:
            found.append(book)
    return found, missing


def is_finished(progress: Optional[ReadingProgress]) -> bool:
    return progress is not None and progress.current_percentage == FINISHED_PERCENTAGE


def count_completed(
    books: Iterable[Book], progress_by_isbn: dict[str, ReadingProgress]
) -> int:
    return sum(1 for book in books if is_finished(progress_by_isbn.get(book.isbn)))


def challenge_status(completed_count: int, goal_count: int) -> ChallengeStatus:
    if completed_count >= goal_count:
        return ChallengeStatus.COMPLETED
    return ChallengeStatus.IN_PROGRESS


def percent_complete(completed_count: int, goal_count: int) -> float:
    """Completion percentage towards a goal, capped at 100."""
    if goal_count <= 0:
        return 0.0
    return min(100.0, round(completed_count * 100 / goal_count, 2))


def build_collection_view(
    collection: Collection, books_by_isbn: dict[str, Book]
) -> CollectionView:
    books, missing = resolve_books(collection.books, books_by_isbn)
    return CollectionView(collection=collection, books=books, missing=missing)


def build_challenge_view(
    challenge: Challenge,
    books_by_isbn: dict[str, Book],
    progress_by_isbn: dict[str, ReadingProgress],
) -> ChallengeView:
    books, missing = resolve_books(challenge.books, books_by_isbn)
    completed = count_completed(books, progress_by_isbn)
    return ChallengeView(
        challenge=challenge,
        books=books,
        missing=missing,
        progress={
            book.isbn: progress_by_isbn[book.isbn].current_percentage
            for book in books
            if book.isbn in progress_by_isbn
        },
        completed_count=completed,
        status=challenge_status(completed, challenge.goal_count),
    )


# =============================================================================
# Loading
# =============================================================================


def _load_books(session: Session, ids: Optional[Sequence[str]] = None) -> dict[str, Book]:
    stmt = select(BookRow)
    if ids is not None:
        if not ids:
            return {}
        stmt = stmt.where(BookRow.isbn.in_(list(ids)))  # type: ignore[attr-defined]
    stmt = stmt.order_by(BookRow.created_at)
    return {row.isbn: row.to_model() for row in session.exec(stmt).all()}


def _load_progress(
    session: Session, ids: Optional[Sequence[str]] = None
) -> dict[str, ReadingProgress]:
    stmt = select(ReadingProgressRow)
    if ids is not None:
        if not ids:
            return {}
        stmt = stmt.where(ReadingProgressRow.isbn.in_(list(ids)))  # type: ignore[attr-defined]
    return {row.isbn: row.to_model() for row in session.exec(stmt).all()}


def _all_rows(session: Session, row_model: type) -> Sequence:
    return Repository(session, row_model).get_all()


def _referenced(records: Iterable[Collection | Challenge]) -> list[str]:
    return sorted({isbn for record in records for isbn in record.books})


async def collection_views(
    db: DatabaseManager, collections: Optional[Sequence[Collection]] = None
) -> list[CollectionView]:
    """Hydrate ``collections`` (default: every stored collection)."""

    def work(session: Session) -> list[CollectionView]:
        loaded = collections
        if loaded is None:
            loaded = [row.to_model() for row in _all_rows(session, CollectionRow)]
        books = _load_books(session, _referenced(loaded))
        return [build_collection_view(collection, books) for collection in loaded]

    return await db.run(work, label="collection_views")


async def collection_view(db: DatabaseManager, collection: Collection) -> CollectionView:
    views = await collection_views(db, [collection])
    return views[0]


async def challenge_views(
    db: DatabaseManager, challenges: Optional[Sequence[Challenge]] = None
) -> list[ChallengeView]:
    """Hydrate ``challenges`` (default: every stored challenge)."""

    def work(session: Session) -> list[ChallengeView]:
        loaded = challenges
        if loaded is None:
            loaded = [row.to_model() for row in _all_rows(session, ChallengeRow)]
        ids = _referenced(loaded)
        books = _load_books(session, ids)
        progress = _load_progress(session, ids)
        return [build_challenge_view(challenge, books, progress) for challenge in loaded]

    return await db.run(work, label="challenge_views")


async def challenge_view(db: DatabaseManager, challenge: Challenge) -> ChallengeView:
    views = await challenge_views(db, [challenge])
    return views[0]


async def library_view(db: DatabaseManager) -> list[BookView]:
    """Every book (oldest first) with its progress and payload presence."""

    def work(session: Session) -> list[BookView]:
        books = _load_books(session)
        progress = _load_progress(session)
        with_files = set(session.exec(select(BookFileRow.isbn)).all())
        return [
            BookView(book=book, progress=progress.get(isbn), has_file=isbn in with_files)
            for isbn, book in books.items()
        ]

    return await db.run(work, label="library_view")


__all__ = [
    "BookView",
    "ChallengeView",
    "CollectionView",
    "FINISHED_PERCENTAGE",
    "build_challenge_view",
    "build_collection_view",
    "challenge_status",
    "challenge_view",
    "challenge_views",
    "collection_view",
    "collection_views",
    "count_completed",
    "is_finished",
    "library_view",
    "percent_complete",
    "resolve_books",
]
