"""Generic entity store over the logical tables.

Every table is addressed through the same four coroutines; records go in and
come out as the pydantic domain models registered in :data:`TABLES`. There is
no foreign-key enforcement here: soft references between tables are resolved
by :mod:`bibliopod.relations`.

The ``*_in`` helpers work on an already open session so that compound
operations (see :mod:`bibliopod.transactions`) can combine several of them
inside one unit of work.

Example:
    >>> store = EntityStore(db)
    >>> book = await store.put(Table.BOOKS, {"isbn": "123", "title": "T"})
    >>> await store.get(Table.BOOKS, "123")
    Book(isbn='123', title='T', ...)
    >>> await store.delete(Table.BOOKS, "123")
    True
"""

from datetime import datetime
from typing import Any, Mapping, Optional

from pydantic import BaseModel
from sqlmodel import Session

from bibliopod.database import DatabaseManager
from bibliopod.logging import logger
from bibliopod.metrics import track_operation
from bibliopod.models import Table, TableSpec, table_spec, validate_record
from bibliopod.repository import Repository
from bibliopod.utils import utc_now

Record = BaseModel | Mapping[str, Any]


# =============================================================================
# Session-level helpers
# =============================================================================


def stamp(
    record: BaseModel,
    spec: TableSpec,
    existing: Optional[BaseModel] = None,
    now: Optional[datetime] = None,
    touch: bool = True,
) -> BaseModel:
    """Fill ``created_at``/``updated_at`` on a validated record.

    ``created_at`` is kept from the record or the stored version and only
    generated when neither has one. ``updated_at`` is re-stamped when
    ``touch`` is set, otherwise only filled when missing.
    """
    if not spec.stamped:
        return record
    now = now or utc_now()
    fields = type(record).model_fields
    updates: dict[str, Any] = {}
    if "created_at" in fields:
        created = getattr(record, "created_at") or (
            getattr(existing, "created_at", None) if existing is not None else None
        )
        updates["created_at"] = created or now
    if "updated_at" in fields and (touch or getattr(record, "updated_at") is None):
        updates["updated_at"] = now
    return record.model_copy(update=updates)


def get_in(session: Session, table: Table | str, key: str) -> Optional[BaseModel]:
    spec = table_spec(table)
    row = Repository(session, spec.row).get(key)
    return row.to_model() if row is not None else None  # type: ignore[attr-defined]


def get_all_in(session: Session, table: Table | str, **filters: Any) -> list[BaseModel]:
    spec = table_spec(table)
    repo = Repository(session, spec.row)
    rows = repo.find_by(**filters) if filters else repo.get_all()
    return [row.to_model() for row in rows]  # type: ignore[attr-defined]


def put_in(
    session: Session,
    table: Table | str,
    record: Record,
    touch: bool = True,
    now: Optional[datetime] = None,
) -> BaseModel:
    """Validate, stamp and insert-or-replace one record.

    Raises:
        ValidationError: If the record is malformed (nothing is written)
    """
    spec = table_spec(table)
    model = validate_record(spec.model, record)
    existing = get_in(session, spec.table, spec.key_of(model))
    model = stamp(model, spec, existing=existing, now=now, touch=touch)
    Repository(session, spec.row).put(spec.to_row(model))
    return model


def delete_in(session: Session, table: Table | str, key: str) -> bool:
    spec = table_spec(table)
    return Repository(session, spec.row).delete(key)


# =============================================================================
# Entity Store
# =============================================================================


class EntityStore:
    """Async get/get_all/put/delete over every logical table.

    Args:
        db: DatabaseManager that runs the units of work

    Raises:
        NotInitializedError: From any operation before ``db.initialize()``
    """

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def get(self, table: Table | str, key: str) -> Optional[BaseModel]:
        """Fetch one record, or None if absent."""
        spec = table_spec(table)
        with track_operation("get", spec.table):
            return await self.db.run(
                lambda session: get_in(session, spec.table, key), label=f"get:{spec.table}"
            )

    async def get_all(self, table: Table | str, **filters: Any) -> list[BaseModel]:
        """Fetch every record of a table (optionally filtered by equality)."""
        spec = table_spec(table)
        with track_operation("get_all", spec.table):
            return await self.db.run(
                lambda session: get_all_in(session, spec.table, **filters),
                label=f"get_all:{spec.table}",
            )

    async def put(self, table: Table | str, record: Record, touch: bool = True) -> BaseModel:
        """Insert or replace a record by its key.

        Args:
            table: Target table
            record: Domain model or mapping; validated before anything is written
            touch: Re-stamp ``updated_at`` (False keeps supplied timestamps)

        Returns:
            The stored record
        """
        spec = table_spec(table)
        self.db.require_initialized()
        with track_operation("put", spec.table):
            stored = await self.db.run(
                lambda session: put_in(session, spec.table, record, touch=touch),
                label=f"put:{spec.table}",
            )
        logger.debug(f"Stored {spec.table} record {spec.key_of(stored)!r}")
        return stored

    async def delete(self, table: Table | str, key: str) -> bool:
        """Hard-delete a record. Returns False if it did not exist."""
        spec = table_spec(table)
        with track_operation("delete", spec.table):
            deleted = await self.db.run(
                lambda session: delete_in(session, spec.table, key),
                label=f"delete:{spec.table}",
            )
        if deleted:
            logger.debug(f"Deleted {spec.table} record {key!r}")
        return deleted

    async def count(self, table: Table | str) -> int:
        spec = table_spec(table)
        return await self.db.run(
            lambda session: Repository(session, spec.row).count(), label=f"count:{spec.table}"
        )

    async def clear(self, table: Table | str) -> int:
        """Empty one table. Other tables are untouched."""
        spec = table_spec(table)
        with track_operation("clear", spec.table):
            removed = await self.db.run(
                lambda session: Repository(session, spec.row).clear(),
                label=f"clear:{spec.table}",
            )
        logger.info(f"🗑️  Cleared {removed} {spec.table} record(s)")
        return removed


__all__ = [
    "EntityStore",
    "Record",
    "delete_in",
    "get_all_in",
    "get_in",
    "put_in",
    "stamp",
]
