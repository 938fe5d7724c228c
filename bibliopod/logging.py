"""Logging setup for BiblioPod using Loguru.

Every record carries the store scope it was emitted in: the caller's
``request_id``, the ``operation`` being run and the ``table`` it touches.
:func:`store_scope` sets the last two around a store call (``track_operation``
does this for every store operation), and the values follow the call onto the
store's worker thread.

Output is human-readable and colored in development, one JSON object per line
when ``log_json`` is set, and optionally mirrored to a rotating file.

Example:
    >>> from bibliopod.logging import logger, store_scope
    >>> with store_scope("import_archive", "books"):
    ...     logger.info("Importing backup")
    >>> # JSON output: {"operation": "import_archive", "table": "books", ...}
"""

import json
import sys
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Any, Iterator

from loguru import logger as loguru_logger

from bibliopod.config import settings

# =============================================================================
# Context Variables
# =============================================================================

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
operation_var: ContextVar[str | None] = ContextVar("operation", default=None)
table_var: ContextVar[str | None] = ContextVar("table", default=None)

CONTEXT_VARS = {
    "request_id": request_id_var,
    "operation": operation_var,
    "table": table_var,
}


# =============================================================================
# Record Formatting
# =============================================================================


def scope_label() -> str:
    """Short ``operation/table`` label for human-readable lines."""
    operation, table = operation_var.get(), table_var.get()
    if operation and table:
        return f"{operation}/{table}"
    return operation or table or "-"


def serialize(record: dict[str, Any]) -> str:
    """Serialize a log record into a compact JSON line.

    Args:
        record: Loguru log record dictionary

    Returns:
        JSON string with selected fields, store scope and bound extras
    """
    subset = {
        "time": record["time"].isoformat(),
        "level": record["level"].name,
        "message": record["message"],
        "module": record["module"],
        "function": record["function"],
        "line": record["line"],
    }
    subset.update(
        {name: value for name, var in CONTEXT_VARS.items() if (value := var.get())}
    )
    subset.update(record["extra"])

    if exc := record["exception"]:
        subset["exception"] = {
            "type": exc.type.__name__ if exc.type else None,
            "value": str(exc.value),
            "traceback": traceback.format_exception(
                exc.type, exc.value, exc.traceback
            ),
        }

    return json.dumps(subset, default=str)


def patching(record: dict[str, Any]) -> None:
    record["serialized"] = serialize(record)
    record["scope"] = scope_label()


def json_formatter(record: dict[str, Any]) -> str:
    return "{serialized}\n"


TEXT_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{scope}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time} | {level} | {scope} | {message}"


# =============================================================================
# Logger Configuration
# =============================================================================


def setup_logging(
    level: str = "INFO",
    json_logs: bool = False,
    log_file: Path | None = None,
    colorize: bool = True,
) -> Any:
    """Configure Loguru handlers.

    Args:
        level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: One JSON object per line instead of text
        log_file: Optional file that mirrors the console output
        colorize: Color the text output

    Returns:
        Configured Loguru logger instance
    """
    loguru_logger.remove()
    patched_logger = loguru_logger.patch(patching)

    if json_logs:
        patched_logger.add(sys.stderr, level=level, format=json_formatter)
    else:
        patched_logger.add(sys.stderr, level=level, format=TEXT_FORMAT, colorize=colorize)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        patched_logger.add(
            log_file,
            level=level,
            format=json_formatter if json_logs else FILE_FORMAT,
            rotation="10 MB",
            retention="14 days",
            compression="zip",
            enqueue=True,
        )

    return patched_logger


logger = setup_logging(
    level=settings.log_level,
    json_logs=settings.log_json,
    log_file=settings.data_dir / "bibliopod.log" if settings.log_to_file else None,
    colorize=not settings.log_json,
)


# =============================================================================
# Context Helpers
# =============================================================================


def set_request_context(
    request_id: str | None = None,
    operation: str | None = None,
    table: str | None = None,
) -> None:
    """Set context variables for the current async context.

    Args:
        request_id: Identifier correlating the log lines of one caller action
        operation: Operation name (e.g., "add_book", "export_archive")
        table: Logical table the operation works on
    """
    if request_id is not None:
        request_id_var.set(request_id)
    if operation is not None:
        operation_var.set(operation)
    if table is not None:
        table_var.set(table)


def clear_request_context() -> None:
    for var in CONTEXT_VARS.values():
        var.set(None)


def get_request_context() -> dict[str, str | None]:
    return {name: var.get() for name, var in CONTEXT_VARS.items()}


@contextmanager
def store_scope(operation: str, table: str | None = None) -> Iterator[None]:
    """Tag the records logged inside the block with ``operation`` and ``table``.

    The previous values come back when the block exits, so scopes nest.
    """
    tokens = [operation_var.set(operation), table_var.set(table)]
    try:
        yield
    finally:
        table_var.reset(tokens[1])
        operation_var.reset(tokens[0])


__all__ = [
    "logger",
    "request_id_var",
    "operation_var",
    "table_var",
    "set_request_context",
    "clear_request_context",
    "get_request_context",
    "store_scope",
    "setup_logging",
]
