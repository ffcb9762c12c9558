"""Store module for the objects the controllers read and write."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum, StrEnum
from typing import Any

from addon_operator.manifest import NamedResource


STATUS_SUBRESOURCE = "status"


class StoreEvent(str, Enum):
    """Enum for store events."""

    OBJECT_CREATED = "object_created"
    OBJECT_UPDATED = "object_updated"
    OBJECT_DELETED = "object_deleted"


class PropagationPolicy(StrEnum):
    """How dependents of a deleted object are garbage collected."""

    BACKGROUND = "Background"
    """The object is removed first and its dependents afterwards."""

    FOREGROUND = "Foreground"
    """Dependents are removed before the object itself."""


class Store(ABC):
    """Abstract base class for a cluster object store.

    Objects are plain documents keyed by NamedResource. Every object carries a
    `metadata.resourceVersion` concurrency token and updates must present the
    current token.
    """

    @abstractmethod
    async def get_object(self, resource_id: NamedResource) -> dict[str, Any]:
        """Return a copy of the object.

        Raises:
            ObjectNotFoundError: If there is no object with this identity.
        """

    @abstractmethod
    async def list_objects(
        self, kind: str, namespace: str | None = None
    ) -> list[dict[str, Any]]:
        """Return copies of all objects of a kind, optionally in one namespace."""

    @abstractmethod
    async def create_object(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Create a new object and return the stored copy.

        Raises:
            AlreadyExistsError: If an object with the same identity exists.
        """

    @abstractmethod
    async def update_object(
        self, obj: dict[str, Any], subresource: str | None = None
    ) -> dict[str, Any]:
        """Replace an existing object and return the stored copy.

        When `subresource` is `status` only the status block is written,
        otherwise everything except the status block is written.

        Raises:
            ObjectNotFoundError: If there is no object with this identity.
            ConflictError: If the resourceVersion is missing or stale.
        """

    @abstractmethod
    async def delete_object(
        self,
        resource_id: NamedResource,
        propagation: PropagationPolicy = PropagationPolicy.BACKGROUND,
    ) -> None:
        """Delete an object, garbage collecting objects it owns.

        Objects with finalizers are only marked for deletion and are removed
        once the last finalizer is cleared.

        Raises:
            ObjectNotFoundError: If there is no object with this identity.
        """

    @abstractmethod
    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[NamedResource, dict[str, Any]], None],
    ) -> Callable[[], None]:
        """Register a callback for a specific event.

        Returns a callable that can be called to remove the listener.
        """
