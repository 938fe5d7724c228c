"""Utility functions for BiblioPod.

This module provides common helper functions for datetime handling,
identifier generation and archive naming.
"""

import uuid
from datetime import UTC, datetime
from pathlib import PurePosixPath
from typing import Any, Iterable
from urllib.parse import quote, unquote

from dateutil import parser as dateutil_parser  # type: ignore[import-untyped]


def parse_datetime(value: str | datetime | None) -> datetime | None:
    """Parse ISO8601 timestamp string into timezone-aware UTC datetime.

    Args:
        value: ISO8601 timestamp string, datetime object, or None

    Returns:
        Parsed timezone-aware datetime in UTC, or None if input is None

    Raises:
        ValueError: If timestamp format is invalid

    Example:
        >>> dt = parse_datetime("2024-01-15T10:30:00Z")
        >>> dt.tzinfo
        datetime.timezone.utc
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    dt = dateutil_parser.isoparse(value)

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)

    return dt.astimezone(UTC)


def utc_now() -> datetime:
    """Get current UTC timestamp as timezone-aware datetime."""
    return datetime.now(UTC)


def utc_now_iso() -> str:
    """Get current UTC timestamp as ISO8601 string with 'Z' suffix.

    Example:
        >>> utc_now_iso().endswith('Z')
        True
    """
    return format_iso(utc_now())  # type: ignore[return-value]


def format_iso(dt: datetime | None) -> str | None:
    """Format datetime as ISO8601 string with 'Z' suffix.

    Example:
        >>> from datetime import UTC
        >>> format_iso(datetime(2024, 1, 15, 10, 30, tzinfo=UTC))
        '2024-01-15T10:30:00Z'
    """
    if dt is None:
        return None
    return dt.isoformat().replace("+00:00", "Z")


def new_id(prefix: str) -> str:
    """Generate a unique identifier such as ``highlight-5f0c9a...``.

    Example:
        >>> new_id("collection").startswith("collection-")
        True
    """
    return f"{prefix}-{uuid.uuid4().hex}"


def unique_ordered(values: Iterable[Any]) -> list[Any]:
    """Drop duplicates while keeping first-seen order.

    Example:
        >>> unique_ordered(["a", "b", "a", "c"])
        ['a', 'b', 'c']
    """
    seen: set[Any] = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


def quote_key(key: str) -> str:
    """Quote an identifier so it is always a safe single path component.

    Example:
        >>> quote_key("978/0")
        '978%2F0'
    """
    quoted = quote(key, safe="-_.")
    # "." and ".." are valid isbn strings but not valid file names
    if quoted in {".", ".."}:
        quoted = quoted.replace(".", "%2E")
    return quoted


def unquote_key(component: str) -> str:
    """Inverse of :func:`quote_key`."""
    return unquote(component)


def file_extension(file_name: str | None, default: str = "epub") -> str:
    """Return the lowercase extension of a file name without the dot.

    Example:
        >>> file_extension("Moby Dick.EPUB")
        'epub'
        >>> file_extension(None)
        'epub'
    """
    if not file_name:
        return default
    suffix = PurePosixPath(file_name.replace("\\", "/")).suffix.lstrip(".")
    return suffix.lower() or default


def format_bytes(num_bytes: int) -> str:
    """Render a byte count for humans.

    Example:
        >>> format_bytes(0)
        '0 Bytes'
        >>> format_bytes(1536)
        '1.5 KB'
    """
    if num_bytes <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    value = float(num_bytes)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {units[index]}"
