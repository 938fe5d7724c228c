"""Prometheus metrics collection and export.

This module provides Prometheus instrumentation for the BiblioPod store,
covering store operations, payload storage and backup archives.

Metric Types:
    Counters (always increase):
        - store_operations_total: Store operations by operation, table, status
        - errors_total: Errors by type and component
        - archive_operations_total: Backup exports/imports by status
        - archive_items_total: Records written to or read from archives

    Gauges (can go up or down):
        - payload_bytes_stored: Bytes of book payloads currently stored

    Histograms (track distributions):
        - store_operation_duration_seconds: Store operation latency

Usage:
    ```python
    from bibliopod.metrics import store_operations_total

    store_operations_total.labels(
        operation="put", table="books", status="success"
    ).inc()
    ```

    Dumping the registry (the CLI ``metrics`` command does this):

    ```python
    from bibliopod.metrics import generate_metrics_output

    print(generate_metrics_output().decode())
    ```
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Iterator

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from bibliopod.logging import store_scope

# Custom registry for explicit metric control
registry = CollectorRegistry()

# Local store operations are fast; buckets cover 1ms to 10s
DEFAULT_LATENCY_BUCKETS = (
    0.001,
    0.005,
    0.01,
    0.05,
    0.1,
    0.25,
    0.5,
    1.0,
    2.5,
    10.0,
)


# ========== COUNTER METRICS ==========

store_operations_total = Counter(
    "store_operations_total",
    "Total number of store operations",
    labelnames=["operation", "table", "status"],
    registry=registry,
)
"""Counter for store operations.

Labels:
    operation: Operation name (e.g., "get", "put", "delete", "add_book")
    table: Logical table (e.g., "books", "challenges")
    status: "success" or "error"
"""

errors_total = Counter(
    "errors_total",
    "Total number of errors encountered",
    labelnames=["error_type", "component"],
    registry=registry,
)
"""Counter for errors by exception type and component ("database", "filesystem", "archive")."""

archive_operations_total = Counter(
    "archive_operations_total",
    "Total number of backup archive operations",
    labelnames=["direction", "status"],
    registry=registry,
)
"""Counter for archive exports/imports.

Labels:
    direction: "export" or "import"
    status: "success" or "error"
"""

archive_items_total = Counter(
    "archive_items_total",
    "Total number of records moved through backup archives",
    labelnames=["entity", "direction"],
    registry=registry,
)


# ========== GAUGE METRICS ==========

payload_bytes_stored = Gauge(
    "payload_bytes_stored",
    "Bytes of book payloads currently stored",
    registry=registry,
)


# ========== HISTOGRAM METRICS ==========

store_operation_duration_seconds = Histogram(
    "store_operation_duration_seconds",
    "Store operation latency in seconds",
    labelnames=["operation", "table"],
    buckets=DEFAULT_LATENCY_BUCKETS,
    registry=registry,
)


# ========== HELPER FUNCTIONS ==========


@contextmanager
def track_operation(operation: str, table: str) -> Iterator[None]:
    """Count and time one store operation, logging inside it under its scope.

    Example:
        ```python
        with track_operation("put", "books"):
            ...
        ```
    """
    start = time.perf_counter()
    try:
        with store_scope(operation, table):
            yield
    except Exception:
        store_operations_total.labels(operation=operation, table=table, status="error").inc()
        raise
    else:
        store_operations_total.labels(operation=operation, table=table, status="success").inc()
    finally:
        store_operation_duration_seconds.labels(operation=operation, table=table).observe(
            time.perf_counter() - start
        )


def generate_metrics_output() -> bytes:
    """Generate Prometheus metrics output in text exposition format."""
    return generate_latest(registry)


__all__ = [
    "registry",
    "store_operations_total",
    "errors_total",
    "archive_operations_total",
    "archive_items_total",
    "payload_bytes_stored",
    "store_operation_duration_seconds",
    "track_operation",
    "generate_metrics_output",
    "DEFAULT_LATENCY_BUCKETS",
]
