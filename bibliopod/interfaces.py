"""Protocol interfaces for the storage contracts.

These describe the two leaf stores structurally, so alternative backends
(or test doubles) can stand in without inheriting from the SQLite
implementations.

Example:
    >>> from bibliopod.interfaces import IEntityStore
    >>> class DictStore:
    ...     async def get(self, table, key): ...
    ...     async def get_all(self, table, **filters): ...
    ...     async def put(self, table, record, touch=True): ...
    ...     async def delete(self, table, key): ...
    >>> isinstance(DictStore(), IEntityStore)
    True
"""

from typing import Any, BinaryIO, Optional, Protocol, runtime_checkable

from pydantic import BaseModel

from bibliopod.models import Table


@runtime_checkable
class IEntityStore(Protocol):
    """Keyed record storage, one logical table per entity type.

    Implementations validate on ``put`` (raising ValidationError), return
    None/False for missing keys, and raise NotInitializedError before setup.
    """

    async def get(self, table: Table | str, key: str) -> Optional[BaseModel]:
        """Fetch one record, or None if absent."""
        ...

    async def get_all(self, table: Table | str, **filters: Any) -> list[BaseModel]:
        """Fetch every record of a table."""
        ...

    async def put(self, table: Table | str, record: Any, touch: bool = True) -> BaseModel:
        """Insert or replace a record by key."""
        ...

    async def delete(self, table: Table | str, key: str) -> bool:
        """Remove a record; False if there was none."""
        ...


@runtime_checkable
class IPayloadStore(Protocol):
    """Binary payload storage keyed by isbn."""

    async def put_payload(
        self,
        isbn: str,
        data: bytes | BinaryIO,
        file_name: str | None = None,
        mime_type: str | None = None,
    ) -> Any:
        """Store or wholesale replace a payload."""
        ...

    async def get_payload(self, isbn: str) -> Optional[bytes]:
        """Read a whole payload, or None if absent."""
        ...

    async def open_payload(self, isbn: str) -> Optional[BinaryIO]:
        """Open a payload for streaming reads."""
        ...

    async def delete_payload(self, isbn: str) -> bool:
        """Remove a payload; False if there was none."""
        ...


__all__ = ["IEntityStore", "IPayloadStore"]
