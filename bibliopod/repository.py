"""Generic repository pattern for type-safe row access.

This module provides a Generic Repository[T] implementation for SQLModel rows.
Repositories never commit: they only flush, so that several repository calls
made inside one :meth:`DatabaseManager.run` unit of work commit (or roll back)
together.

Example:
    >>> from bibliopod.repository import Repository
    >>> from bibliopod.models import BookRow, BookFileRow
    >>>
    >>> def add_with_file(session):
    ...     books = Repository[BookRow](session, BookRow)
    ...     files = Repository[BookFileRow](session, BookFileRow)
    ...     books.put(book_row)
    ...     files.put(file_row)  # both commit together
"""

from collections.abc import Sequence
from typing import Any, Generic, TypeVar

from sqlalchemy import delete as sa_delete, func
from sqlmodel import Session, SQLModel, select

# =============================================================================
# Type Variables
# =============================================================================

T = TypeVar("T", bound=SQLModel)


# =============================================================================
# Generic Repository
# =============================================================================


class Repository(Generic[T]):
    """Generic repository implementation for SQLModel rows.

    Type Parameter:
        T: SQLModel row type (BookRow, CollectionRow, ...)

    Args:
        session: SQLModel Session instance
        model: SQLModel class

    Example:
        >>> repo = Repository[CollectionRow](session, CollectionRow)
        >>> row = repo.get("collection-1")       # CollectionRow | None
        >>> rows = repo.get_all()                # Sequence[CollectionRow]
        >>> repo.put(CollectionRow(id="c2", collection_name="Sci-Fi"))
        >>> repo.delete("c2")                    # True
    """

    def __init__(self, session: Session, model: type[T]):
        self.session = session
        self.model = model

    def get(self, entity_id: str) -> T | None:
        """Get row by primary key, or None if not found."""
        return self.session.get(self.model, entity_id)

    def get_all(self, limit: int | None = None, offset: int = 0) -> Sequence[T]:
        """Get all rows, oldest first where the table records creation time.

        Args:
            limit: Maximum number of results (None for all)
            offset: Number of results to skip
        """
        stmt = select(self.model)
        if "created_at" in self.model.model_fields:
            stmt = stmt.order_by(getattr(self.model, "created_at"))
        stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return self.session.exec(stmt).all()

    def put(self, entity: T) -> T:
        """Insert or replace a row by primary key.

        Returns:
            The persistent row instance
        """
        merged = self.session.merge(entity)
        self.session.flush()
        return merged

    def delete(self, entity_id: str) -> bool:
        """Delete row by primary key.

        Returns:
            True if deleted, False if not found
        """
        entity = self.get(entity_id)
        if entity is None:
            return False
        self.session.delete(entity)
        self.session.flush()
        return True

    def clear(self) -> int:
        """Delete every row of the table.

        Returns:
            Number of rows removed
        """
        self.session.flush()
        result = self.session.connection().execute(sa_delete(self.model))
        self.session.expunge_all()
        return result.rowcount or 0

    def find_by(self, **filters: Any) -> Sequence[T]:
        """Find rows matching simple equality filters."""
        stmt = select(self.model)
        for key, value in filters.items():
            if hasattr(self.model, key):
                stmt = stmt.where(getattr(self.model, key) == value)
        if "created_at" in self.model.model_fields:
            stmt = stmt.order_by(getattr(self.model, "created_at"))
        return self.session.exec(stmt).all()

    def count(self) -> int:
        """Count rows in the table."""
        stmt = select(func.count()).select_from(self.model)
        return self.session.exec(stmt).one()

    def exists(self, entity_id: str) -> bool:
        """Check if a row exists by primary key."""
        return self.get(entity_id) is not None


__all__ = ["Repository"]
