"""Database engine management for BiblioPod.

This module provides SQLite database management with:
- Connection management with WAL mode
- Schema creation on first use (idempotent)
- Units of work: one SQLModel session, one transaction, all-or-nothing
- A single worker thread that owns every blocking engine call, so coroutines
  suspend while the engine works and engine calls never interleave

Example:
    >>> from bibliopod.database import DatabaseManager
    >>>
    >>> db = DatabaseManager()
    >>> await db.initialize()
    >>>
    >>> def count_books(session):
    ...     return len(session.exec(select(BookRow)).all())
    >>> total = await db.run(count_books)
    >>>
    >>> await db.close()
"""

import asyncio
import contextvars
import time
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from pathlib import Path
from typing import Any, Callable, TypeVar

from sqlalchemy import event, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from bibliopod.config import settings
from bibliopod.exceptions import (
    BiblioPodError,
    NotInitializedError,
    classify_storage_error,
)
from bibliopod.logging import logger
from bibliopod.metrics import errors_total

R = TypeVar("R")

MEMORY_PATH = ":memory:"


# =============================================================================
# Database Manager
# =============================================================================


class DatabaseManager:
    """Manages the SQLite engine and executes units of work.

    Features:
    - WAL mode and tuned PRAGMAs for a local single-writer store
    - Idempotent schema initialization
    - ``run()`` executes a callable inside one committed transaction on the
      store's worker thread; any failure rolls the whole unit back and is
      re-raised in the store's error taxonomy

    Args:
        database_path: Path to SQLite database file (defaults to settings.database_path).
            ``":memory:"`` keeps everything in process memory.

    Example:
        >>> db = DatabaseManager(Path("/tmp/library.db"))
        >>> await db.initialize()
        >>> await db.run(lambda session: session.get(BookRow, "123"))
        >>> await db.close()
    """

    def __init__(self, database_path: Path | None = None):
        """Initialize database manager.

        Args:
            database_path: Path to SQLite database (defaults to settings.database_path)
        """
        self.database_path = Path(database_path or settings.database_path)
        self.engine: Engine | None = None
        self._executor: ThreadPoolExecutor | None = None

    @property
    def initialized(self) -> bool:
        """True once initialize() has completed and until close()."""
        return self.engine is not None

    @property
    def in_memory(self) -> bool:
        return str(self.database_path) == MEMORY_PATH

    async def initialize(self) -> None:
        """Create the engine, the schema and the worker thread.

        Calling this again on an initialized manager is a no-op.
        """
        if self.initialized:
            return

        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="bibliopod-db"
        )
        loop = asyncio.get_running_loop()
        try:
            self.engine = await loop.run_in_executor(self._executor, self._create_engine)
        except Exception as e:
            self._executor.shutdown(wait=False)
            self._executor = None
            raise classify_storage_error(e) from e

        logger.info(f"✅ Database initialized at {self.database_path}")

    def _create_engine(self) -> Engine:
        if self.in_memory:
            engine = create_engine(
                "sqlite://",
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            engine = create_engine(
                f"sqlite:///{self.database_path}",
                echo=False,
                connect_args={"check_same_thread": False, "timeout": 30},
            )

        event.listen(engine, "connect", _configure_connection)

        # Register every table on SQLModel.metadata before create_all
        import bibliopod.models  # noqa: F401

        SQLModel.metadata.create_all(engine)
        self._create_indexes(engine)
        return engine

    def _create_indexes(self, engine: Engine) -> None:
        """Create composite indexes that Field(index=True) cannot express."""
        with engine.connect() as conn:
            conn.execute(
                text(
                    "CREATE INDEX IF NOT EXISTS idx_highlights_book_created "
                    "ON highlights(book_isbn, created_at)"
                )
            )
            conn.execute(
                text(
                    "CREATE INDEX IF NOT EXISTS idx_bookmarks_book_created "
                    "ON bookmarks(book_isbn, created_at)"
                )
            )
            conn.commit()

        logger.debug("✅ Database indexes created")

    async def close(self) -> None:
        """Dispose the engine and stop the worker thread."""
        if self.engine is None:
            return

        engine, self.engine = self.engine, None
        executor, self._executor = self._executor, None
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(executor, engine.dispose)
        executor.shutdown(wait=True)  # type: ignore[union-attr]
        logger.debug("Database closed")

    def require_initialized(self) -> None:
        """Raise NotInitializedError unless initialize() has completed."""
        if self.engine is None or self._executor is None:
            raise NotInitializedError(
                "Store not initialized; await init() before using it"
            )

    async def run(self, work: Callable[[Session], R], *, label: str = "unit") -> R:
        """Execute ``work(session)`` as one transaction on the worker thread.

        The session commits when ``work`` returns and rolls back if it raises.

        Args:
            work: Callable receiving an open Session
            label: Name used in logs for this unit of work

        Returns:
            Whatever ``work`` returns

        Raises:
            NotInitializedError: If the store has not been initialized
            BiblioPodError: Any failure, classified into the store taxonomy
        """
        self.require_initialized()
        loop = asyncio.get_running_loop()
        ctx = contextvars.copy_context()
        return await loop.run_in_executor(
            self._executor, ctx.run, partial(self._run_unit, work, label)
        )

    async def run_blocking(self, func: Callable[..., R], *args: Any) -> R:
        """Run a blocking non-database callable (e.g. file I/O) on the worker thread."""
        self.require_initialized()
        loop = asyncio.get_running_loop()
        try:
            ctx = contextvars.copy_context()
            return await loop.run_in_executor(self._executor, ctx.run, partial(func, *args))
        except BiblioPodError:
            raise
        except Exception as e:
            errors_total.labels(error_type=type(e).__name__, component="filesystem").inc()
            raise classify_storage_error(e) from e

    def _run_unit(self, work: Callable[[Session], R], label: str) -> R:
        start = time.perf_counter()
        with Session(self.engine, expire_on_commit=False) as session:
            try:
                result = work(session)
                session.commit()
            except BiblioPodError:
                session.rollback()
                raise
            except Exception as e:
                session.rollback()
                errors_total.labels(error_type=type(e).__name__, component="database").inc()
                logger.error(f"❌ Unit of work '{label}' failed: {e}")
                raise classify_storage_error(e) from e

        logger.trace(f"Unit of work '{label}' took {time.perf_counter() - start:.4f}s")
        return result


def _configure_connection(dbapi_connection: Any, connection_record: Any) -> None:
    """Apply per-connection PRAGMAs."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL;")
    cursor.execute("PRAGMA synchronous = NORMAL;")
    cursor.execute("PRAGMA cache_size = -64000;")  # 64MB cache
    cursor.execute("PRAGMA temp_store = MEMORY;")
    cursor.close()


__all__ = ["DatabaseManager", "MEMORY_PATH"]
