"""Tests for logging configuration and context propagation."""

import json
from datetime import UTC, datetime
from types import SimpleNamespace

import pytest

from bibliopod.logging import (
    clear_request_context,
    get_request_context,
    logger,
    scope_label,
    serialize,
    set_request_context,
    setup_logging,
    store_scope,
)
from bibliopod.metrics import track_operation


def fake_record(**extra) -> dict:
    return {
        "time": datetime(2024, 1, 15, 10, 30, tzinfo=UTC),
        "level": SimpleNamespace(name="INFO"),
        "message": "hello",
        "module": "library",
        "function": "add_book",
        "line": 42,
        "extra": extra,
        "exception": None,
    }


@pytest.fixture(autouse=True)
def clean_context():
    clear_request_context()
    yield
    clear_request_context()


class TestRequestContext:
    def test_set_and_get(self):
        set_request_context(request_id="req-1", operation="import_archive")

        assert get_request_context() == {
            "request_id": "req-1",
            "operation": "import_archive",
            "table": None,
        }

    def test_partial_update_keeps_other_value(self):
        set_request_context(request_id="req-1")
        set_request_context(operation="export_archive")

        assert get_request_context() == {
            "request_id": "req-1",
            "operation": "export_archive",
            "table": None,
        }

    def test_clear(self):
        set_request_context(request_id="req-1", operation="x", table="books")

        clear_request_context()

        assert get_request_context() == {"request_id": None, "operation": None, "table": None}


class TestSerialize:
    def test_basic_fields(self):
        data = json.loads(serialize(fake_record()))

        assert data["level"] == "INFO"
        assert data["message"] == "hello"
        assert data["function"] == "add_book"
        assert "operation" not in data

    def test_includes_context_and_extra(self):
        set_request_context(operation="import_archive")

        data = json.loads(serialize(fake_record(entity="books")))

        assert data["operation"] == "import_archive"
        assert data["entity"] == "books"

    def test_exception_details(self):
        try:
            raise ValueError("boom")
        except ValueError as e:
            record = fake_record()
            record["exception"] = SimpleNamespace(
                type=ValueError, value=e, traceback=e.__traceback__
            )

        data = json.loads(serialize(record))

        assert data["exception"]["type"] == "ValueError"
        assert data["exception"]["value"] == "boom"


class TestStoreScope:
    def test_sets_and_restores(self):
        set_request_context(operation="import_archive")

        with store_scope("put", "books"):
            assert get_request_context()["operation"] == "put"
            assert scope_label() == "put/books"
            with store_scope("get_all", "highlights"):
                assert scope_label() == "get_all/highlights"
            assert get_request_context()["table"] == "books"

        assert get_request_context()["operation"] == "import_archive"
        assert get_request_context()["table"] is None
        assert scope_label() == "import_archive"

    def test_empty_scope_label(self):
        assert scope_label() == "-"

    def test_track_operation_scopes_records(self):
        with track_operation("add_book", "books"):
            data = json.loads(serialize(fake_record()))

        assert data["operation"] == "add_book"
        assert data["table"] == "books"
        assert "table" not in json.loads(serialize(fake_record()))


class TestSetupLogging:
    def test_json_file_output(self, tmp_path):
        log_file = tmp_path / "logs" / "bibliopod.log"
        configured = setup_logging(level="INFO", json_logs=True, log_file=log_file)

        set_request_context(operation="add_book")
        configured.info("Stored book")
        logger.complete()
        configured.remove()

        line = log_file.read_text().strip().splitlines()[-1]
        data = json.loads(line)
        assert data["message"] == "Stored book"
        assert data["operation"] == "add_book"

    def test_text_output_respects_level(self, tmp_path):
        log_file = tmp_path / "bibliopod.log"
        configured = setup_logging(level="WARNING", log_file=log_file, colorize=False)

        configured.info("hidden")
        configured.warning("shown")
        logger.complete()
        configured.remove()

        content = log_file.read_text()
        assert "shown" in content
        assert "hidden" not in content

    def test_text_lines_carry_scope(self, tmp_path):
        log_file = tmp_path / "bibliopod.log"
        configured = setup_logging(level="INFO", log_file=log_file, colorize=False)

        with store_scope("delete_book", "books"):
            configured.info("Deleted")
        logger.complete()
        configured.remove()

        assert "delete_book/books | Deleted" in log_file.read_text()
