"""Demo data for a fresh profile.

Seeding creates the demo user when there is none and, on a store that has no
books and has never been seeded, a small starter shelf: public-domain books
(metadata only, placeholder covers), a "Classics" collection and a couple of
highlights. Running it again is a no-op.
"""

from typing import Any, Optional

from pydantic import BaseModel
from sqlmodel import Session

from bibliopod.database import DatabaseManager
from bibliopod.locks import KeyedLocks
from bibliopod.logging import logger
from bibliopod.models import SETTINGS_KEY, TABLES, SettingsRecord, Table
from bibliopod.repository import Repository
from bibliopod.store import Record, get_in, put_in

SEED_MARKER = "demo_seeded"
PLACEHOLDER_THUMBNAIL = "/images/placeholder-cover.png"

DEMO_USER: dict[str, Any] = {
    "id": "demo-user-1",
    "name": "Demo User",
    "email": "demo@bibliopod.com",
}

DEMO_BOOKS: list[dict[str, Any]] = [
    {
        "isbn": "demo-pride-and-prejudice",
        "title": "Pride and Prejudice",
        "author": "Jane Austen",
        "genre": "Classic",
        "language": "en",
        "description": "A comedy of manners set among the landed gentry of Regency England.",
    },
    {
        "isbn": "demo-moby-dick",
        "title": "Moby-Dick",
        "author": "Herman Melville",
        "genre": "Adventure",
        "language": "en",
        "description": "Captain Ahab's obsessive hunt for the white whale.",
    },
    {
        "isbn": "demo-frankenstein",
        "title": "Frankenstein",
        "author": "Mary Shelley",
        "genre": "Gothic",
        "language": "en",
        "description": "A young scientist creates a living being and flees from it.",
    },
    {
        "isbn": "demo-alice-in-wonderland",
        "title": "Alice's Adventures in Wonderland",
        "author": "Lewis Carroll",
        "genre": "Fantasy",
        "language": "en",
        "description": "A girl falls down a rabbit hole into a world of nonsense.",
    },
]

DEMO_COLLECTIONS: list[dict[str, Any]] = [
    {
        "id": "demo-collection-classics",
        "collection_name": "Classics",
        "collection_description": "Timeless novels to get you started",
        "books": ["demo-pride-and-prejudice", "demo-moby-dick", "demo-frankenstein"],
    },
]

DEMO_HIGHLIGHTS: list[dict[str, Any]] = [
    {
        "id": "demo-highlight-1",
        "book_isbn": "demo-pride-and-prejudice",
        "text": (
            "It is a truth universally acknowledged, that a single man in possession "
            "of a good fortune, must be in want of a wife."
        ),
        "color": "yellow",
        "page": 1,
    },
    {
        "id": "demo-highlight-2",
        "book_isbn": "demo-moby-dick",
        "text": "Call me Ishmael.",
        "color": "blue",
        "note": "One of the most famous opening lines",
        "page": 1,
    },
]


class SeedResult(BaseModel):
    """What a seeding run wrote."""

    seeded: bool = False
    user_created: bool = False
    books: int = 0
    collections: int = 0
    highlights: int = 0


class DemoSeeder:
    """Populates an empty store with starter content exactly once.

    Args:
        db: DatabaseManager running the seeding unit of work
        locks: Key locks shared with the transaction manager
    """

    def __init__(self, db: DatabaseManager, locks: KeyedLocks | None = None):
        self.db = db
        self.locks = locks or KeyedLocks()

    async def seed(self, user: Optional[Record] = None) -> SeedResult:
        """Seed the store if it is still empty.

        Args:
            user: Profile to create when the store has none (default: demo user)
        """
        profile = user if user is not None else DEMO_USER

        async with self.locks.hold("seed", "demo"):
            result = await self.db.run(
                lambda session: self._seed(session, profile), label="seed"
            )

        if result.seeded:
            logger.info(
                f"🌱 Seeded demo data: {result.books} books, "
                f"{result.collections} collection(s), {result.highlights} highlight(s)"
            )
        else:
            logger.debug("Demo data already present; nothing seeded")
        return result

    def _seed(self, session: Session, profile: Record) -> SeedResult:
        result = SeedResult()

        if Repository(session, TABLES[Table.USER].row).count() == 0:
            put_in(session, Table.USER, profile)
            result.user_created = True

        settings = get_in(session, Table.SETTINGS, SETTINGS_KEY)
        values = dict(settings.values) if settings is not None else {}  # type: ignore[attr-defined]
        has_books = Repository(session, TABLES[Table.BOOKS].row).count() > 0
        if values.get(SEED_MARKER) or has_books:
            return result

        for book in DEMO_BOOKS:
            put_in(session, Table.BOOKS, {**book, "thumbnail": PLACEHOLDER_THUMBNAIL})
            result.books += 1
        for collection in DEMO_COLLECTIONS:
            put_in(session, Table.COLLECTIONS, collection)
            result.collections += 1
        for highlight in DEMO_HIGHLIGHTS:
            put_in(session, Table.HIGHLIGHTS, highlight)
            result.highlights += 1

        values[SEED_MARKER] = True
        put_in(session, Table.SETTINGS, SettingsRecord(values=values))
        result.seeded = True
        return result


__all__ = [
    "DEMO_BOOKS",
    "DEMO_COLLECTIONS",
    "DEMO_HIGHLIGHTS",
    "DEMO_USER",
    "DemoSeeder",
    "PLACEHOLDER_THUMBNAIL",
    "SEED_MARKER",
    "SeedResult",
]
