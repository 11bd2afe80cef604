"""Prometheus metrics definitions for r2pilot.

All r2pilot metrics use the ``r2pilot_`` prefix. They count transfer-core
activity (operations, retries, bytes) and are only registered when
``observability.metrics`` is enabled; otherwise the module-level references
stay ``None`` and the ``record_*`` helpers do nothing.
"""

from __future__ import annotations

from prometheus_client import Counter

# Flag indicating whether metrics have been initialised via init_metrics().
_initialized: bool = False

# ---------------------------------------------------------------------------
# Operation counter  (labels: operation, status)
# ---------------------------------------------------------------------------
operations_total: Counter | None = None

# ---------------------------------------------------------------------------
# Retry counter  (labels: operation)
# ---------------------------------------------------------------------------
retries_total: Counter | None = None

# ---------------------------------------------------------------------------
# Byte counters
# ---------------------------------------------------------------------------
bytes_uploaded_total: Counter | None = None
bytes_downloaded_total: Counter | None = None


def init_metrics() -> None:
    """Create and register all Prometheus metrics.

    Safe to call more than once; collectors are registered in the global
    registry on the first call only.
    """
    global _initialized
    global operations_total, retries_total
    global bytes_uploaded_total, bytes_downloaded_total

    if _initialized:
        return

    operations_total = Counter(
        "r2pilot_operations_total",
        "Total transfer operations by type and outcome",
        ["operation", "status"],
    )

    retries_total = Counter(
        "r2pilot_retries_total",
        "Total transient-error retries by operation",
        ["operation"],
    )

    bytes_uploaded_total = Counter(
        "r2pilot_bytes_uploaded_total",
        "Total payload bytes acknowledged by the storage service",
    )

    bytes_downloaded_total = Counter(
        "r2pilot_bytes_downloaded_total",
        "Total payload bytes written to download sinks",
    )

    _initialized = True


def record_operation(operation: str, status: str) -> None:
    if operations_total is not None:
        operations_total.labels(operation=operation, status=status).inc()


def record_retry(operation: str) -> None:
    if retries_total is not None:
        retries_total.labels(operation=operation).inc()


def record_bytes_uploaded(count: int) -> None:
    if bytes_uploaded_total is not None and count > 0:
        bytes_uploaded_total.inc(count)


def record_bytes_downloaded(count: int) -> None:
    if bytes_downloaded_total is not None and count > 0:
        bytes_downloaded_total.inc(count)
