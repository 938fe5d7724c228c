"""Tests for binary payload storage."""

import hashlib
import io

import pytest

from bibliopod.blobs import STAGING_DIR, TRASH_DIR, BinaryObjectStore, PendingSwap
from bibliopod.database import DatabaseManager
from bibliopod.exceptions import StorageError, StorageQuotaError, ValidationError
from bibliopod.interfaces import IPayloadStore
from bibliopod.models import BookFileRow
from bibliopod.utils import quote_key


def payload_files(files_dir):
    return sorted(
        path.name
        for path in files_dir.iterdir()
        if path.is_file() and path.name not in (STAGING_DIR, TRASH_DIR)
    )


class TestPutAndGet:
    """Tests for storing and reading payloads."""

    def test_satisfies_protocol(self, tmp_path):
        store = BinaryObjectStore(DatabaseManager(tmp_path / "library.db"), tmp_path / "files")

        assert isinstance(store, IPayloadStore)

    @pytest.mark.asyncio
    async def test_put_then_get(self, blobs, epub_bytes):
        info = await blobs.put_payload("123", epub_bytes, "book.epub")

        assert await blobs.get_payload("123") == epub_bytes
        assert info.size == len(epub_bytes)
        assert info.sha256 == hashlib.sha256(epub_bytes).hexdigest()
        assert info.file_name == "book.epub"
        assert info.mime_type == "application/epub+zip"

    @pytest.mark.asyncio
    async def test_default_file_name(self, blobs):
        info = await blobs.put_payload("978/0", b"data")

        assert info.file_name == "978%2F0.epub"

    @pytest.mark.asyncio
    async def test_put_from_stream(self, blobs, epub_bytes):
        info = await blobs.put_payload("123", io.BytesIO(epub_bytes), mime_type="application/pdf")

        assert info.size == len(epub_bytes)
        assert info.mime_type == "application/pdf"
        assert await blobs.get_payload("123") == epub_bytes

    @pytest.mark.asyncio
    async def test_empty_payload(self, blobs):
        info = await blobs.put_payload("123", b"")

        assert info.size == 0
        assert await blobs.get_payload("123") == b""

    @pytest.mark.asyncio
    async def test_replace_is_wholesale(self, blobs, files_dir):
        await blobs.put_payload("123", b"first version, rather long")
        await blobs.put_payload("123", b"second")

        assert await blobs.get_payload("123") == b"second"
        assert payload_files(files_dir) == ["123"]
        assert list((files_dir / TRASH_DIR).iterdir()) == []

    @pytest.mark.asyncio
    async def test_get_missing(self, blobs):
        assert await blobs.get_payload("nope") is None
        assert await blobs.get_payload_info("nope") is None
        assert await blobs.open_payload("nope") is None

    @pytest.mark.asyncio
    async def test_isbn_required(self, blobs):
        with pytest.raises(ValidationError):
            await blobs.put_payload("", b"data")

    @pytest.mark.asyncio
    async def test_unsafe_isbn_stays_inside_directory(self, blobs, files_dir):
        await blobs.put_payload("../escape", b"data")

        assert blobs.payload_path("../escape").parent == files_dir
        assert payload_files(files_dir) == [quote_key("../escape")]

    @pytest.mark.asyncio
    async def test_missing_file_is_storage_error(self, blobs):
        await blobs.put_payload("123", b"data")
        blobs.payload_path("123").unlink()

        with pytest.raises(StorageError, match="unreadable"):
            await blobs.get_payload("123")


class TestStreaming:
    """Tests for chunked reads."""

    @pytest.mark.asyncio
    async def test_iter_payload_chunks(self, blobs, epub_bytes):
        await blobs.put_payload("123", epub_bytes)

        chunks = [chunk async for chunk in blobs.iter_payload("123")]

        assert len(chunks) > 1
        assert all(len(chunk) <= 4096 for chunk in chunks)
        assert b"".join(chunks) == epub_bytes

    @pytest.mark.asyncio
    async def test_iter_missing_yields_nothing(self, blobs):
        assert [chunk async for chunk in blobs.iter_payload("nope")] == []

    @pytest.mark.asyncio
    async def test_open_payload(self, blobs, epub_bytes):
        await blobs.put_payload("123", epub_bytes)

        handle = await blobs.open_payload("123")
        try:
            assert handle.read() == epub_bytes
        finally:
            handle.close()


class TestDelete:
    """Tests for payload deletion."""

    @pytest.mark.asyncio
    async def test_delete(self, blobs, files_dir):
        await blobs.put_payload("123", b"data")

        assert await blobs.delete_payload("123") is True
        assert await blobs.get_payload("123") is None
        assert payload_files(files_dir) == []

    @pytest.mark.asyncio
    async def test_delete_missing(self, blobs):
        assert await blobs.delete_payload("nope") is False


class TestQuota:
    """Tests for the storage quota."""

    @pytest.mark.asyncio
    async def test_over_quota_rejected(self, db, files_dir):
        blobs = BinaryObjectStore(db, files_dir, max_storage_bytes=100)
        await blobs.initialize()
        await blobs.put_payload("a", b"x" * 60)

        with pytest.raises(StorageQuotaError):
            await blobs.put_payload("b", b"y" * 60)

        assert await blobs.get_payload("b") is None
        assert await blobs.get_payload("a") == b"x" * 60
        assert payload_files(files_dir) == ["a"]
        assert list((files_dir / STAGING_DIR).iterdir()) == []

    @pytest.mark.asyncio
    async def test_replacement_does_not_count_old_payload(self, db, files_dir):
        blobs = BinaryObjectStore(db, files_dir, max_storage_bytes=100)
        await blobs.initialize()
        await blobs.put_payload("a", b"x" * 60)

        await blobs.put_payload("a", b"z" * 90)

        assert await blobs.total_bytes() == 90


class TestFailureRecovery:
    """Tests for undo on failed units of work."""

    @pytest.mark.asyncio
    async def test_commit_failure_restores_previous_payload(self, blobs, files_dir, mocker):
        await blobs.put_payload("123", b"original")
        mocker.patch(
            "bibliopod.database.Session.commit", side_effect=RuntimeError("disk gone")
        )

        with pytest.raises(StorageError):
            await blobs.put_payload("123", b"replacement")

        mocker.stopall()
        assert await blobs.get_payload("123") == b"original"
        assert (await blobs.get_payload_info("123")).size == len(b"original")
        assert list((files_dir / STAGING_DIR).iterdir()) == []
        assert list((files_dir / TRASH_DIR).iterdir()) == []

    @pytest.mark.asyncio
    async def test_failed_delete_keeps_payload(self, blobs, mocker):
        await blobs.put_payload("123", b"original")
        mocker.patch(
            "bibliopod.database.Session.commit", side_effect=RuntimeError("disk gone")
        )

        with pytest.raises(StorageError):
            await blobs.delete_payload("123")

        mocker.stopall()
        assert await blobs.get_payload("123") == b"original"

    @pytest.mark.asyncio
    async def test_initialize_sweeps_orphans(self, db, files_dir):
        files_dir.mkdir(parents=True)
        (files_dir / "orphan").write_bytes(b"left behind")
        (files_dir / STAGING_DIR).mkdir()
        (files_dir / STAGING_DIR / "abc.part").write_bytes(b"partial")
        await db.run(
            lambda s: s.add(
                BookFileRow(
                    isbn="kept",
                    file_name="kept.epub",
                    mime_type="application/epub+zip",
                    size=4,
                    sha256="0" * 64,
                    blob_name="kept",
                    stored_at="2024-01-01T00:00:00Z",
                )
            )
        )
        (files_dir / "kept").write_bytes(b"kept")

        blobs = BinaryObjectStore(db, files_dir)
        await blobs.initialize()

        assert payload_files(files_dir) == ["kept"]
        assert list((files_dir / STAGING_DIR).iterdir()) == []
        assert await blobs.get_payload("kept") == b"kept"

    @pytest.mark.asyncio
    async def test_initialize_restores_payload_parked_before_commit(self, db, blobs, files_dir):
        await blobs.put_payload("123", b"original")
        # a swap that never reached its commit
        staged = blobs.directory.stage("123", b"replacement", "t.epub", "application/epub+zip")
        blobs.directory.swap_in(PendingSwap(isbn="123", staged=staged))

        restarted = BinaryObjectStore(db, files_dir)
        await restarted.initialize()

        assert await restarted.get_payload("123") == b"original"
        info = await restarted.get_payload_info("123")
        assert info.sha256 == hashlib.sha256(b"original").hexdigest()
        assert list((files_dir / TRASH_DIR).iterdir()) == []

    @pytest.mark.asyncio
    async def test_initialize_restores_payload_parked_by_delete(self, db, blobs, files_dir):
        await blobs.put_payload("a b", b"original")
        blobs.directory.park("a b")

        restarted = BinaryObjectStore(db, files_dir)
        await restarted.initialize()

        assert await restarted.get_payload("a b") == b"original"

    @pytest.mark.asyncio
    async def test_initialize_drops_backup_of_committed_write(self, db, blobs, files_dir):
        await blobs.put_payload("123", b"original")
        blobs.directory.park("123")
        await blobs.put_payload("123", b"replacement")

        restarted = BinaryObjectStore(db, files_dir)
        await restarted.initialize()

        assert await restarted.get_payload("123") == b"replacement"
        assert list((files_dir / TRASH_DIR).iterdir()) == []


class TestUsage:
    @pytest.mark.asyncio
    async def test_count_and_total_bytes(self, blobs):
        await blobs.put_payload("a", b"12345")
        await blobs.put_payload("b", b"123")

        assert await blobs.count() == 2
        assert await blobs.total_bytes() == 8

    @pytest.mark.asyncio
    async def test_clear_files(self, blobs, files_dir):
        await blobs.put_payload("a", b"12345")

        await blobs.clear_files()

        assert payload_files(files_dir) == []
        assert (files_dir / STAGING_DIR).is_dir()
