"""Pytest configuration and shared fixtures for BiblioPod tests."""

import sys
from pathlib import Path
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from loguru import logger

from bibliopod.blobs import BinaryObjectStore
from bibliopod.database import DatabaseManager
from bibliopod.library import Library


# =============================================================================
# Test Configuration
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    """Configure loguru for tests to avoid I/O errors."""
    logger.remove()  # Remove default handler
    logger.add(
        sys.stderr,
        level="ERROR",  # Only log errors during tests
        format="{time} {level} {message}",
        catch=True,  # Prevent exceptions in logging
        enqueue=True,  # Thread-safe logging
    )
    yield
    logger.remove()  # Clean up after all tests


@pytest.fixture(scope="function", autouse=True)
def reset_loguru():
    """Reset loguru handlers before each test to prevent I/O errors."""
    logger.remove()
    logger.add(
        sys.stderr,
        level="ERROR",
        format="{time} {level} {message}",
        catch=True,
        enqueue=True,
    )
    yield
    logger.remove()


# =============================================================================
# Store Fixtures
# =============================================================================


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "library.db"


@pytest.fixture
def files_dir(tmp_path: Path) -> Path:
    return tmp_path / "book_files"


@pytest_asyncio.fixture
async def db(db_path: Path) -> AsyncGenerator[DatabaseManager, None]:
    """Initialized database manager on a temporary file."""
    manager = DatabaseManager(database_path=db_path)
    await manager.initialize()
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def blobs(db: DatabaseManager, files_dir: Path) -> BinaryObjectStore:
    """Payload store with a small chunk size so streaming paths are exercised."""
    store = BinaryObjectStore(db, files_dir, chunk_size=4096)
    await store.initialize()
    return store


@pytest_asyncio.fixture
async def library(db_path: Path, files_dir: Path) -> AsyncGenerator[Library, None]:
    """Initialized library on temporary storage."""
    lib = Library(db_path, files_dir=files_dir)
    await lib.init()
    yield lib
    await lib.close()


# =============================================================================
# Sample Data Fixtures
# =============================================================================


@pytest.fixture
def epub_bytes() -> bytes:
    """Fake EPUB payload spanning several 4 KiB chunks."""
    return b"PK\x03\x04mimetypeapplication/epub+zip" + bytes(range(256)) * 64


@pytest.fixture
def sample_book() -> dict[str, Any]:
    return {
        "isbn": "123",
        "title": "T",
        "author": "A",
        "genre": "Fiction",
        "thumbnail": "https://example.com/cover.jpg",
    }


@pytest.fixture
def sample_collection() -> dict[str, Any]:
    return {
        "id": "collection-1",
        "collection_name": "Favorites",
        "collection_description": "Books I love",
        "books": ["123", "456"],
    }


@pytest.fixture
def sample_challenge() -> dict[str, Any]:
    return {
        "id": "challenge-1",
        "title": "Read two books",
        "description": "A short warm-up",
        "goal_count": 2,
        "categories": ["fiction"],
        "deadline": "2030-12-31",
        "books": ["123", "456"],
    }
