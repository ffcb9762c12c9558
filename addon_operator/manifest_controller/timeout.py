"""Retry and timeout policy for manifests."""

import asyncio
import datetime
import logging
import re

from addon_operator.exceptions import AwaitTimeoutError, InputException
from addon_operator.manifest import (
    FAILURE_POLICY_RETRY,
    ManifestRecord,
    NamedResource,
    parse_timestamp,
)
from addon_operator.status import StatusType
from addon_operator.store import STATUS_SUBRESOURCE, Store

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "parse_duration",
    "last_spec_change",
    "should_retry",
    "await_available",
]

_UNITS = {
    "ns": datetime.timedelta(microseconds=0.001),
    "us": datetime.timedelta(microseconds=1),
    "µs": datetime.timedelta(microseconds=1),
    "ms": datetime.timedelta(milliseconds=1),
    "s": datetime.timedelta(seconds=1),
    "m": datetime.timedelta(minutes=1),
    "h": datetime.timedelta(hours=1),
}
_DURATION_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: str) -> datetime.timedelta:
    """Parse a duration such as `90s`, `5m` or `1h30m`."""
    if value == "0":
        return datetime.timedelta()
    pos = 0
    total = datetime.timedelta()
    for match in _DURATION_RE.finditer(value):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNITS[match.group(2)]
        pos = match.end()
    if not value or pos != len(value):
        raise InputException(f"Invalid duration '{value}'")
    return total


def last_spec_change(record: ManifestRecord) -> datetime.datetime | None:
    """Return when the record was last written, ignoring status writes."""
    times = [
        parse_timestamp(entry["time"])
        for entry in record.managed_fields
        if entry.get("subresource") != STATUS_SUBRESOURCE and entry.get("time")
    ]
    return max(times, default=None)


def should_retry(
    record: ManifestRecord, now: datetime.datetime | None = None
) -> bool:
    """Return True if an unhealthy manifest should be applied again.

    Only manifests with the `Retry` failure policy and a timeout are retried,
    and only once the timeout has passed since the last change to the record.
    """
    if record.failure_policy != FAILURE_POLICY_RETRY:
        return False
    if record.status is None or record.status.type != StatusType.UNHEALTHY:
        return False
    if not record.timeout:
        _LOGGER.info("Not retrying manifest %s: timeout not specified", record.name)
        return False
    try:
        timeout = parse_duration(record.timeout)
    except InputException as err:
        _LOGGER.warning("Not retrying manifest %s: %s", record.name, err)
        return False
    if (last_update := last_spec_change(record)) is None:
        return False
    now = now or datetime.datetime.now(datetime.UTC)
    if now < last_update + timeout:
        _LOGGER.debug(
            "Not retrying manifest %s until %s", record.name, last_update + timeout
        )
        return False
    _LOGGER.info("Retrying manifest %s", record.name)
    return True


async def await_available(
    store: Store,
    resource_id: NamedResource,
    timeout: float,
    poll_interval: float = 5.0,
) -> None:
    """Poll until the object reports an `Available` status.

    Raises:
        AwaitTimeoutError: If the object is not available within `timeout`.
    """
    try:
        async with asyncio.timeout(timeout):
            while True:
                doc = await store.get_object(resource_id)
                if (doc.get("status") or {}).get("type") == StatusType.AVAILABLE:
                    _LOGGER.info("%s available before timeout", resource_id)
                    return
                await asyncio.sleep(poll_interval)
    except TimeoutError as err:
        raise AwaitTimeoutError(str(resource_id), timeout) from err
