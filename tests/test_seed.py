"""Tests for demo data seeding."""

import asyncio

import pytest

from bibliopod.seed import (
    DEMO_BOOKS,
    DEMO_COLLECTIONS,
    DEMO_HIGHLIGHTS,
    DEMO_USER,
    PLACEHOLDER_THUMBNAIL,
    SEED_MARKER,
)


class TestSeeding:
    """Tests for initialize_demo_data."""

    @pytest.mark.asyncio
    async def test_seeds_empty_library(self, library):
        result = await library.initialize_demo_data()

        assert result.seeded
        assert result.user_created
        assert result.books == len(DEMO_BOOKS)
        books = await library.get_all_books()
        assert {book.isbn for book in books} == {book["isbn"] for book in DEMO_BOOKS}
        assert all(book.thumbnail == PLACEHOLDER_THUMBNAIL for book in books)
        assert len(await library.get_collections()) == len(DEMO_COLLECTIONS)
        assert len(await library.get_highlights()) == len(DEMO_HIGHLIGHTS)
        user = await library.get_user()
        assert user.id == DEMO_USER["id"]
        assert (await library.get_settings())[SEED_MARKER] is True

    @pytest.mark.asyncio
    async def test_demo_collection_resolves(self, library):
        await library.initialize_demo_data()

        view = await library.get_collection_view(DEMO_COLLECTIONS[0]["id"])

        assert view.missing == []
        assert len(view.books) == len(DEMO_COLLECTIONS[0]["books"])

    @pytest.mark.asyncio
    async def test_second_run_is_noop(self, library):
        await library.initialize_demo_data()

        result = await library.initialize_demo_data()

        assert not result.seeded
        assert not result.user_created
        assert len(await library.get_all_books()) == len(DEMO_BOOKS)

    @pytest.mark.asyncio
    async def test_not_reseeded_after_user_deletes_demo_books(self, library):
        await library.initialize_demo_data()
        for book in DEMO_BOOKS:
            await library.delete_book(book["isbn"])

        result = await library.initialize_demo_data()

        assert not result.seeded
        assert await library.get_all_books() == []

    @pytest.mark.asyncio
    async def test_existing_books_prevent_seeding(self, library, sample_book):
        await library.add_book(sample_book)

        result = await library.initialize_demo_data()

        assert not result.seeded
        assert result.user_created
        assert [book.isbn for book in await library.get_all_books()] == ["123"]

    @pytest.mark.asyncio
    async def test_existing_user_kept(self, library):
        await library.set_user({"id": "me", "name": "Reader"})

        result = await library.initialize_demo_data()

        assert result.seeded
        assert not result.user_created
        assert (await library.get_user()).id == "me"

    @pytest.mark.asyncio
    async def test_custom_user(self, library):
        await library.initialize_demo_data({"id": "custom", "name": "Custom"})

        assert (await library.get_user()).name == "Custom"

    @pytest.mark.asyncio
    async def test_concurrent_seeding_seeds_once(self, library):
        results = await asyncio.gather(
            library.initialize_demo_data(), library.initialize_demo_data()
        )

        assert sum(result.seeded for result in results) == 1
        assert len(await library.get_all_books()) == len(DEMO_BOOKS)
