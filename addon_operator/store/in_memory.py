"""Module for in memory object store."""

import copy
import datetime
import itertools
import logging
import uuid
from collections import defaultdict
from collections.abc import Callable
from typing import Any, DefaultDict

from addon_operator.exceptions import (
    AlreadyExistsError,
    ConflictError,
    ObjectNotFoundError,
)
from addon_operator.manifest import NamedResource, format_timestamp

from .store import Store, StoreEvent, PropagationPolicy, STATUS_SUBRESOURCE


_LOGGER = logging.getLogger(__name__)

# Metadata owned by the store that callers cannot overwrite.
_SERVER_FIELDS = ("uid", "creationTimestamp", "deletionTimestamp", "managedFields")


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


def _sort_key(resource_id: NamedResource) -> tuple[str, str, str]:
    return (resource_id.kind, resource_id.namespace or "", resource_id.name)


def _owner_uids(obj: dict[str, Any]) -> set[str]:
    refs = obj["metadata"].get("ownerReferences") or ()
    return {ref["uid"] for ref in refs if ref.get("uid")}


class InMemoryStore(Store):
    """In-memory implementation of the Store interface.

    Objects are kept as documents keyed by NamedResource and every write hands
    out and keeps deep copies so callers never share state with the store.
    Writes bump `metadata.resourceVersion` and record a `managedFields` entry
    per subresource with the time of the write. Deleting an object garbage
    collects the objects that name it in their `ownerReferences`.
    """

    def __init__(self, clock: Callable[[], datetime.datetime] | None = None) -> None:
        """Initialize the InMemoryStore."""
        self._objects: dict[NamedResource, dict[str, Any]] = {}
        self._listeners: DefaultDict[
            StoreEvent, list[Callable[[NamedResource, dict[str, Any]], None]]
        ] = defaultdict(list)
        self._versions = itertools.count(1)
        self._clock = clock or _utcnow

    async def get_object(self, resource_id: NamedResource) -> dict[str, Any]:
        """Return a copy of the object."""
        if (obj := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"Object {resource_id} not found")
        return copy.deepcopy(obj)

    async def list_objects(
        self, kind: str, namespace: str | None = None
    ) -> list[dict[str, Any]]:
        """Return copies of all objects of a kind, optionally in one namespace."""
        return [
            copy.deepcopy(self._objects[resource_id])
            for resource_id in sorted(self._objects, key=_sort_key)
            if resource_id.kind == kind
            and (namespace is None or resource_id.namespace == namespace)
        ]

    async def create_object(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Create a new object and return the stored copy."""
        resource_id = NamedResource.from_doc(obj)
        if resource_id in self._objects:
            raise AlreadyExistsError(f"Object {resource_id} already exists")
        stored = copy.deepcopy(obj)
        metadata = stored["metadata"]
        for key in _SERVER_FIELDS:
            metadata.pop(key, None)
        metadata["uid"] = str(uuid.uuid4())
        metadata["creationTimestamp"] = format_timestamp(self._clock())
        self._touch(stored, None)
        _LOGGER.debug("Creating object %s", resource_id)
        self._objects[resource_id] = stored
        self._fire_event(StoreEvent.OBJECT_CREATED, resource_id, stored)
        return copy.deepcopy(stored)

    async def update_object(
        self, obj: dict[str, Any], subresource: str | None = None
    ) -> dict[str, Any]:
        """Replace an existing object and return the stored copy."""
        resource_id = NamedResource.from_doc(obj)
        if (existing := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"Object {resource_id} not found")
        token = obj["metadata"].get("resourceVersion")
        if token != existing["metadata"]["resourceVersion"]:
            raise ConflictError(
                f"Object {resource_id} has been modified (resourceVersion {token!r} "
                f"is not {existing['metadata']['resourceVersion']!r})"
            )
        if subresource == STATUS_SUBRESOURCE:
            stored = copy.deepcopy(existing)
            if "status" in obj:
                stored["status"] = copy.deepcopy(obj["status"])
            else:
                stored.pop("status", None)
        else:
            stored = copy.deepcopy(obj)
            for key in _SERVER_FIELDS:
                if key in existing["metadata"]:
                    stored["metadata"][key] = copy.deepcopy(existing["metadata"][key])
                else:
                    stored["metadata"].pop(key, None)
            if "status" in existing:
                stored["status"] = copy.deepcopy(existing["status"])
            else:
                stored.pop("status", None)
        self._touch(stored, subresource)

        if stored["metadata"].get("deletionTimestamp") and not stored["metadata"].get(
            "finalizers"
        ):
            _LOGGER.debug("Last finalizer removed from %s", resource_id)
            self._objects[resource_id] = stored
            self._remove(resource_id, PropagationPolicy.BACKGROUND)
            return copy.deepcopy(stored)

        _LOGGER.debug("Updating object %s (%s)", resource_id, subresource or "spec")
        self._objects[resource_id] = stored
        self._fire_event(StoreEvent.OBJECT_UPDATED, resource_id, stored)
        return copy.deepcopy(stored)

    async def delete_object(
        self,
        resource_id: NamedResource,
        propagation: PropagationPolicy = PropagationPolicy.BACKGROUND,
    ) -> None:
        """Delete an object, garbage collecting objects it owns."""
        if resource_id not in self._objects:
            raise ObjectNotFoundError(f"Object {resource_id} not found")
        self._delete(resource_id, propagation)

    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[NamedResource, dict[str, Any]], None],
    ) -> Callable[[], None]:
        """Register a callback for a specific event."""

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        self._listeners[event].append(callback)
        return remove

    def _touch(self, stored: dict[str, Any], subresource: str | None) -> None:
        """Bump the resource version and record the write time."""
        metadata = stored["metadata"]
        metadata["resourceVersion"] = str(next(self._versions))
        managed_fields = [
            entry
            for entry in metadata.get("managedFields") or ()
            if entry.get("subresource") != subresource
        ]
        entry: dict[str, Any] = {
            "operation": "Update",
            "time": format_timestamp(self._clock()),
        }
        if subresource:
            entry["subresource"] = subresource
        managed_fields.append(entry)
        metadata["managedFields"] = managed_fields

    def _delete(self, resource_id: NamedResource, propagation: PropagationPolicy) -> None:
        obj = self._objects[resource_id]
        metadata = obj["metadata"]
        if metadata.get("finalizers"):
            if not metadata.get("deletionTimestamp"):
                _LOGGER.debug(
                    "Marking %s for deletion, waiting on finalizers %s",
                    resource_id,
                    metadata["finalizers"],
                )
                metadata["deletionTimestamp"] = format_timestamp(self._clock())
                metadata["resourceVersion"] = str(next(self._versions))
                self._fire_event(StoreEvent.OBJECT_UPDATED, resource_id, obj)
            return
        self._remove(resource_id, propagation)

    def _remove(self, resource_id: NamedResource, propagation: PropagationPolicy) -> None:
        uid = self._objects[resource_id]["metadata"]["uid"]
        dependents = [
            dependent_id
            for dependent_id, dependent in self._objects.items()
            if uid in _owner_uids(dependent)
        ]
        if propagation == PropagationPolicy.FOREGROUND:
            self._collect(dependents, propagation)
        obj = self._objects.pop(resource_id)
        _LOGGER.debug("Deleted object %s", resource_id)
        self._fire_event(StoreEvent.OBJECT_DELETED, resource_id, obj)
        if propagation == PropagationPolicy.BACKGROUND:
            self._collect(dependents, propagation)

    def _collect(
        self, dependents: list[NamedResource], propagation: PropagationPolicy
    ) -> None:
        for dependent_id in dependents:
            if dependent_id in self._objects:
                _LOGGER.debug("Garbage collecting dependent %s", dependent_id)
                self._delete(dependent_id, propagation)

    def _fire_event(self, event: StoreEvent, *args: Any) -> None:
        for cb in list(self._listeners[event]):
            try:
                cb(*args)
            except Exception:
                _LOGGER.exception("Store listener callback failed for event %s", event)
