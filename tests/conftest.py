"""Shared fixtures for addon-operator tests."""

from typing import Any

import pytest

from addon_operator.manifest import NamedResource
from addon_operator.store import InMemoryStore, StoreEvent


@pytest.fixture(name="store")
def store_fixture() -> InMemoryStore:
    """Create an empty in-memory store."""
    return InMemoryStore()


@pytest.fixture(name="mutations")
def mutations_fixture(
    store: InMemoryStore,
) -> list[tuple[StoreEvent, NamedResource]]:
    """Record every create, update and delete made against the store."""
    events: list[tuple[StoreEvent, NamedResource]] = []

    def listener(event: StoreEvent):  # type: ignore[no-untyped-def]
        def record(resource_id: NamedResource, obj: dict[str, Any]) -> None:
            events.append((event, resource_id))

        return record

    for event in StoreEvent:
        store.add_listener(event, listener(event))
    return events
