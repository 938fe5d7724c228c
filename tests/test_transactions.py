"""Tests for compound and per-key serialized operations."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from bibliopod.blobs import STAGING_DIR, TRASH_DIR, BinaryObjectStore
from bibliopod.exceptions import StorageError, StorageQuotaError, ValidationError
from bibliopod.locks import KeyedLocks
from bibliopod.models import Book, Table
from bibliopod.store import EntityStore
from bibliopod.transactions import TransactionManager, same_content


@pytest.fixture
def transactions(db, blobs):
    return TransactionManager(db, blobs)


@pytest.fixture
def entities(db):
    return EntityStore(db)


T0 = datetime(2024, 1, 15, 10, 0, tzinfo=UTC)


class TestKeyedLocks:
    """Tests for the per-key lock map."""

    @pytest.mark.asyncio
    async def test_same_key_serialized(self):
        locks = KeyedLocks()
        order = []

        async def worker(name):
            async with locks.hold("books", "1"):
                order.append(f"{name}-start")
                await asyncio.sleep(0.01)
                order.append(f"{name}-end")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-start", "a-end", "b-start", "b-end"]

    @pytest.mark.asyncio
    async def test_different_keys_independent(self):
        locks = KeyedLocks()

        async with locks.hold("books", "1"):
            assert locks.is_locked("books", "1")
            assert not locks.is_locked("books", "2")
            async with locks.hold("books", "2"):
                assert locks.is_locked("books", "2")

    @pytest.mark.asyncio
    async def test_locks_dropped_when_unused(self):
        locks = KeyedLocks()

        async with locks.hold("books", "1"):
            assert len(locks) == 1

        assert len(locks) == 0


class TestWriteBook:
    """Tests for atomic book metadata and payload writes."""

    @pytest.mark.asyncio
    async def test_metadata_and_payload_together(self, transactions, blobs, sample_book, epub_bytes):
        book = await transactions.add_book_with_file(sample_book, epub_bytes, "t.epub")

        assert book.file_name == "t.epub"
        assert book.file_size == len(epub_bytes)
        assert book.file_type == "application/epub+zip"
        assert await blobs.get_payload("123") == epub_bytes

    @pytest.mark.asyncio
    async def test_metadata_only(self, transactions, blobs, sample_book):
        book = await transactions.add_book_with_file(sample_book)

        assert book.file_size is None
        assert await blobs.get_payload("123") is None

    @pytest.mark.asyncio
    async def test_metadata_rewrite_keeps_file_fields(self, transactions, blobs, epub_bytes):
        await transactions.add_book_with_file(
            {"isbn": "p1", "title": "T"}, epub_bytes, "book.pdf", "application/pdf"
        )

        book = await transactions.add_book_with_file({"isbn": "p1", "title": "T2"})

        assert book.title == "T2"
        assert book.file_name == "book.pdf"
        assert book.file_type == "application/pdf"
        assert book.file_size == len(epub_bytes)
        assert await blobs.get_payload("p1") == epub_bytes

    @pytest.mark.asyncio
    async def test_invalid_metadata_stages_nothing(self, transactions, files_dir, epub_bytes):
        with pytest.raises(ValidationError):
            await transactions.add_book_with_file({"isbn": "123"}, epub_bytes)

        assert list((files_dir / STAGING_DIR).iterdir()) == []

    @pytest.mark.asyncio
    async def test_quota_failure_leaves_nothing(self, db, files_dir, entities, sample_book):
        blobs = BinaryObjectStore(db, files_dir, max_storage_bytes=10)
        await blobs.initialize()
        transactions = TransactionManager(db, blobs)

        with pytest.raises(StorageQuotaError):
            await transactions.add_book_with_file(sample_book, b"x" * 11)

        assert await entities.get(Table.BOOKS, "123") is None
        assert await blobs.get_payload("123") is None
        assert list((files_dir / STAGING_DIR).iterdir()) == []

    @pytest.mark.asyncio
    async def test_commit_failure_restores_previous_state(
        self, transactions, blobs, entities, files_dir, sample_book, mocker
    ):
        await transactions.add_book_with_file(sample_book, b"original")
        mocker.patch(
            "bibliopod.database.Session.commit", side_effect=RuntimeError("disk gone")
        )

        with pytest.raises(StorageError):
            await transactions.add_book_with_file(
                {**sample_book, "title": "New"}, b"replacement"
            )

        mocker.stopall()
        assert (await entities.get(Table.BOOKS, "123")).title == "T"
        assert await blobs.get_payload("123") == b"original"
        assert list((files_dir / TRASH_DIR).iterdir()) == []

    @pytest.mark.asyncio
    async def test_skip_unchanged(self, transactions, sample_book, epub_bytes):
        await transactions.write_book(sample_book, epub_bytes)

        _, written = await transactions.write_book(sample_book, epub_bytes, skip_unchanged=True)
        _, rewritten = await transactions.write_book(
            sample_book, epub_bytes + b"!", skip_unchanged=True
        )

        assert written is False
        assert rewritten is True

    @pytest.mark.asyncio
    async def test_delete_book_with_file(self, transactions, blobs, entities, sample_book):
        await transactions.add_book_with_file(sample_book, b"data")

        assert await transactions.delete_book_with_file("123") is True
        assert await entities.get(Table.BOOKS, "123") is None
        assert await blobs.get_payload("123") is None
        assert await transactions.delete_book_with_file("123") is False


class TestProgress:
    """Tests for last-write-wins reading progress."""

    @pytest.mark.asyncio
    async def test_upsert_creates(self, transactions):
        progress = await transactions.upsert_progress("123", 42.5, "epubcfi(/6/4)", T0)

        assert progress.current_percentage == 42.5
        assert progress.current_cfi == "epubcfi(/6/4)"
        assert progress.last_read == T0
        assert progress.updated_at == T0

    @pytest.mark.asyncio
    async def test_newer_update_wins(self, transactions):
        await transactions.upsert_progress("123", 10, timestamp=T0)

        progress = await transactions.upsert_progress("123", 20, timestamp=T0 + timedelta(minutes=1))

        assert progress.current_percentage == 20

    @pytest.mark.asyncio
    async def test_stale_update_ignored(self, transactions, entities):
        await transactions.upsert_progress("123", 50, timestamp=T0)

        progress = await transactions.upsert_progress("123", 5, timestamp=T0 - timedelta(hours=1))

        assert progress.current_percentage == 50
        assert (await entities.get(Table.READING_PROGRESS, "123")).current_percentage == 50

    @pytest.mark.asyncio
    async def test_identical_record_not_rewritten(self, transactions):
        record = {"isbn": "123", "current_percentage": 30, "updated_at": T0}
        await transactions.apply_progress(record)

        _, written = await transactions.apply_progress(record)

        assert written is False

    @pytest.mark.asyncio
    async def test_out_of_range_rejected(self, transactions):
        with pytest.raises(ValidationError):
            await transactions.upsert_progress("123", 101)

    @pytest.mark.asyncio
    async def test_concurrent_updates_converge_on_latest(self, transactions, entities):
        stamps = [T0 + timedelta(seconds=i) for i in range(10)]

        await asyncio.gather(
            *(
                transactions.upsert_progress("123", i * 10, timestamp=stamp)
                for i, stamp in reversed(list(enumerate(stamps)))
            )
        )

        stored = await entities.get(Table.READING_PROGRESS, "123")
        assert stored.current_percentage == 90
        assert stored.updated_at == stamps[-1]


class TestModify:
    """Tests for serialized read-modify-write."""

    @pytest.mark.asyncio
    async def test_patch_mapping(self, transactions, entities, sample_collection):
        created = await entities.put(Table.COLLECTIONS, sample_collection)

        updated = await transactions.modify(
            Table.COLLECTIONS, "collection-1", lambda c: {"collection_name": "Renamed"}
        )

        assert updated.collection_name == "Renamed"
        assert updated.created_at == created.created_at
        assert updated.books == ["123", "456"]

    @pytest.mark.asyncio
    async def test_missing_record(self, transactions):
        result = await transactions.modify(Table.COLLECTIONS, "nope", lambda c: {"books": []})

        assert result is None

    @pytest.mark.asyncio
    async def test_key_cannot_change(self, transactions, entities, sample_collection):
        await entities.put(Table.COLLECTIONS, sample_collection)

        updated = await transactions.modify(
            Table.COLLECTIONS, "collection-1", lambda c: {"id": "other", "collection_name": "X"}
        )

        assert updated.id == "collection-1"
        assert await entities.get(Table.COLLECTIONS, "other") is None

    @pytest.mark.asyncio
    async def test_unchanged_not_rewritten(self, transactions, entities, sample_collection):
        created = await entities.put(Table.COLLECTIONS, sample_collection)

        result = await transactions.modify(Table.COLLECTIONS, "collection-1", lambda c: c)

        assert result.updated_at == created.updated_at

    @pytest.mark.asyncio
    async def test_invalid_patch_rejected(self, transactions, entities, sample_challenge):
        await entities.put(Table.CHALLENGES, sample_challenge)

        with pytest.raises(ValidationError):
            await transactions.modify(Table.CHALLENGES, "challenge-1", lambda c: {"goal_count": 0})

        assert (await entities.get(Table.CHALLENGES, "challenge-1")).goal_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_appends_all_kept(self, transactions, entities, sample_challenge):
        await entities.put(Table.CHALLENGES, {**sample_challenge, "books": []})
        isbns = [f"isbn-{i}" for i in range(20)]

        await asyncio.gather(
            *(
                transactions.modify(
                    Table.CHALLENGES,
                    "challenge-1",
                    lambda c, isbn=isbn: {"books": [*c.books, isbn]},
                )
                for isbn in isbns
            )
        )

        stored = await entities.get(Table.CHALLENGES, "challenge-1")
        assert sorted(stored.books) == sorted(isbns)


class TestUpsertAndHighlights:
    """Tests for import-style merges."""

    @pytest.mark.asyncio
    async def test_upsert_insert_keeps_timestamps(self, transactions):
        stamp = "2020-05-01T00:00:00Z"

        stored, written = await transactions.upsert(
            Table.COLLECTIONS,
            {"id": "c1", "collection_name": "Old", "created_at": stamp, "updated_at": stamp},
        )

        assert written is True
        assert stored.updated_at == datetime(2020, 5, 1, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_upsert_unchanged(self, transactions, sample_collection):
        await transactions.upsert(Table.COLLECTIONS, sample_collection)

        _, written = await transactions.upsert(Table.COLLECTIONS, sample_collection)

        assert written is False

    @pytest.mark.asyncio
    async def test_upsert_with_merge(self, transactions, sample_collection):
        await transactions.upsert(Table.COLLECTIONS, sample_collection)

        stored, written = await transactions.upsert(
            Table.COLLECTIONS,
            {**sample_collection, "collection_name": "Ignored", "books": ["789"]},
            merge=lambda existing, incoming: existing.model_copy(
                update={"books": incoming.books}
            ),
        )

        assert written is True
        assert stored.collection_name == "Favorites"
        assert stored.books == ["789"]

    @pytest.mark.asyncio
    async def test_highlight_gets_fresh_id(self, transactions):
        stored, written = await transactions.add_highlight_if_new(
            {"id": "h1", "book_isbn": "123", "text": "Call me Ishmael."}
        )

        assert written is True
        assert stored.id != "h1"
        assert stored.id.startswith("highlight-")

    @pytest.mark.asyncio
    async def test_highlight_duplicate_by_fingerprint(self, transactions, entities):
        highlight = {"id": "h1", "book_isbn": "123", "text": "Call me Ishmael.", "page": 1}
        await transactions.add_highlight_if_new(highlight)

        _, written = await transactions.add_highlight_if_new({**highlight, "id": "h2"})

        assert written is False
        assert len(await entities.get_all(Table.HIGHLIGHTS)) == 1

    @pytest.mark.asyncio
    async def test_highlight_duplicate_by_id(self, transactions, entities):
        await entities.put(Table.HIGHLIGHTS, {"id": "h1", "book_isbn": "123", "text": "a"})

        _, written = await transactions.add_highlight_if_new(
            {"id": "h1", "book_isbn": "123", "text": "different"}
        )

        assert written is False


class TestSettingsUserAndClear:
    @pytest.mark.asyncio
    async def test_merge_settings_counts_changes(self, transactions):
        values, changed = await transactions.merge_settings({"theme": "dark", "font": 16})
        values, again = await transactions.merge_settings({"theme": "dark", "font": 18})

        assert changed == 2
        assert again == 1
        assert values == {"theme": "dark", "font": 18}

    @pytest.mark.asyncio
    async def test_replace_user_keeps_single_profile(self, transactions, entities):
        await transactions.replace_user({"id": "u1", "name": "First"})
        await transactions.replace_user({"id": "u2", "name": "Second"})

        users = await entities.get_all(Table.USER)
        assert [u.id for u in users] == ["u2"]

    @pytest.mark.asyncio
    async def test_clear_all(self, transactions, blobs, entities, sample_book, sample_collection):
        await transactions.add_book_with_file(sample_book, b"data")
        await entities.put(Table.COLLECTIONS, sample_collection)
        await transactions.merge_settings({"theme": "dark"})

        removed = await transactions.clear_all()

        assert removed["books"] == 1
        assert removed["collections"] == 1
        assert removed["settings"] == 1
        assert removed["book_files"] == 1
        for table in Table:
            assert await entities.count(table) == 0
        assert await blobs.count() == 0
        assert await blobs.get_payload("123") is None


def test_same_content_ignores_timestamps():
    a = Book(isbn="1", title="T", created_at="2020-01-01T00:00:00Z")
    b = Book(isbn="1", title="T", updated_at="2024-01-01T00:00:00Z")

    assert same_content(a, b)
    assert not same_content(a, Book(isbn="1", title="Other"))
