"""End-to-end tests for BiblioPod.

These tests walk a library through complete user workflows.
"""

import pytest

from bibliopod.library import Library
from bibliopod.models import ChallengeStatus, DataSelection
from bibliopod.seed import DEMO_BOOKS


class TestCompleteWorkflow:
    """End-to-end tests for complete workflows."""

    @pytest.mark.asyncio
    async def test_read_then_restore_on_new_device(
        self, tmp_path, library, sample_book, sample_challenge, epub_bytes
    ):
        """Seed -> add book -> finish challenge -> export -> import elsewhere."""
        await library.initialize_demo_data()
        await library.add_book(sample_book, epub_bytes, file_name="t.epub")
        await library.add_book({"isbn": "456", "title": "Second", "author": "B"})
        await library.add_challenge(sample_challenge)
        await library.update_reading_progress("123", 100, "cfi-end")
        await library.update_reading_progress("456", 100, "cfi-end")

        view = await library.get_challenge("challenge-1")
        assert view.status == ChallengeStatus.COMPLETED

        archive = await library.export_archive(DataSelection.all(), include_files=True)

        async with Library(
            tmp_path / "device-2.db", files_dir=tmp_path / "device-2-files"
        ) as restored:
            result = await restored.import_archive(archive)

            assert result.imported_count > 0
            books = {book.isbn for book in await restored.get_all_books()}
            assert books == {"123", "456"} | {book["isbn"] for book in DEMO_BOOKS}
            assert await restored.get_book_file("123") == epub_bytes
            restored_view = await restored.get_challenge("challenge-1")
            assert restored_view.status == ChallengeStatus.COMPLETED

            await restored.update_reading_progress("456", 40)
            restored_view = await restored.get_challenge("challenge-1")
            assert restored_view.status == ChallengeStatus.IN_PROGRESS
            assert restored_view.completed_count == 1

    @pytest.mark.asyncio
    async def test_clear_and_reimport(self, library, sample_book, epub_bytes):
        """Export -> clear -> import brings the library back."""
        await library.add_book(sample_book, epub_bytes)
        await library.add_highlight({"book_isbn": "123", "text": "Call me Ishmael."})
        archive = await library.export_archive(include_files=True)

        await library.clear_all_data()
        assert await library.get_all_books() == []
        assert (await library.get_storage_usage()).used_bytes == 0

        await library.import_archive(archive)

        assert [book.isbn for book in await library.get_all_books()] == ["123"]
        assert await library.get_book_file("123") == epub_bytes
        assert len(await library.get_highlights()) == 1
        assert (await library.get_storage_usage()).used_bytes == len(epub_bytes)

    @pytest.mark.asyncio
    async def test_deleted_book_dangles_in_collection(
        self, library, sample_book, sample_collection
    ):
        await library.add_book(sample_book)
        await library.add_collection(sample_collection)

        await library.delete_book("123")

        assert await library.get_book("123") is None
        raw = await library.get_collection("collection-1")
        assert "123" in raw.books
        view = await library.get_collection_view("collection-1")
        assert "123" not in [book.isbn for book in view.books]
