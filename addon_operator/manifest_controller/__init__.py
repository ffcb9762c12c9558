"""Manifest controller for rendering and tracking raw manifest add-ons."""

from .controller import ManifestController, checksum
from .status import check_status
from .timeout import should_retry, parse_duration, await_available

__all__ = [
    "ManifestController",
    "checksum",
    "check_status",
    "should_retry",
    "parse_duration",
    "await_available",
]
