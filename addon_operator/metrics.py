"""Metrics observed around add-on install and uninstall."""

from collections.abc import Generator
from contextlib import contextmanager
import logging
from time import perf_counter

from prometheus_client import Histogram

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "ADDON_DURATION",
    "MANIFEST_DURATION",
    "record_duration",
]

# More buckets for operations that take a few seconds, fewer for long ones.
BUCKETS = (1, 2, 3, 4, 5, 7, 10, 12, 15, 18, 20, 25, 30, 60, 120, 180, 300)

STATUS_PASS = "pass"
STATUS_FAIL = "fail"

OPERATION_INSTALL = "install"
OPERATION_UNINSTALL = "uninstall"

ADDON_DURATION = Histogram(
    "addon_operator_addon_duration_seconds",
    "Time spent installing or uninstalling an add-on.",
    ["name", "operation", "status"],
    buckets=BUCKETS,
)

MANIFEST_DURATION = Histogram(
    "addon_operator_manifest_duration_seconds",
    "Time spent applying or removing a manifest.",
    ["name", "operation", "status"],
    buckets=BUCKETS,
)


@contextmanager
def record_duration(
    histogram: Histogram, name: str, operation: str
) -> Generator[None, None, None]:
    """Observe how long the block takes, labelled by whether it raised."""
    status = STATUS_FAIL
    t1 = perf_counter()
    try:
        yield
        status = STATUS_PASS
    finally:
        elapsed = perf_counter() - t1
        histogram.labels(name=name, operation=operation, status=status).observe(
            elapsed
        )
        _LOGGER.debug("%s %s %s (%0.2fs)", operation, name, status, elapsed)
