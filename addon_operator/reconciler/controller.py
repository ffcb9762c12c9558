"""Reconciles a desired list of component specs against installed objects.

The same loop serves every component kind: list what is installed, apply each
desired spec in order, then delete whatever is installed but no longer
declared. Running it twice with the same input makes no further changes.
"""

import asyncio
import contextlib
import dataclasses
import logging
from collections.abc import Sequence
from typing import Any, TypeVar

from addon_operator.config import ControllerConfig
from addon_operator.exceptions import (
    AlreadyExistsError,
    ConflictError,
    ObjectNotFoundError,
)
from addon_operator.manifest import (
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    NAMESPACE_KIND,
    Blueprint,
    ComponentSpec,
    NamedResource,
    content_differs,
)
from addon_operator.store import PropagationPolicy, Store

from .components import ComponentKind

_LOGGER = logging.getLogger(__name__)

S = TypeVar("S", bound=ComponentSpec)


async def ensure_namespace(store: Store, name: str) -> None:
    """Create the namespace unless it already exists."""
    with contextlib.suppress(ObjectNotFoundError):
        await store.get_object(NamedResource(NAMESPACE_KIND, None, name))
        return
    _LOGGER.info("Creating namespace %s", name)
    with contextlib.suppress(AlreadyExistsError):
        await store.create_object(
            {
                "apiVersion": "v1",
                "kind": NAMESPACE_KIND,
                "metadata": {
                    "name": name,
                    "labels": {MANAGED_BY_LABEL: MANAGED_BY_VALUE},
                },
            }
        )


class ComponentReconciler:
    """Drives the installed components of a kind toward a desired list."""

    def __init__(self, store: Store, config: ControllerConfig) -> None:
        """Initialize ComponentReconciler.

        Args:
            store: The object store holding the components.
            config: Controller configuration, supplies the operation deadline.
        """
        self.store = store
        self._config = config

    async def reconcile(
        self, kind: ComponentKind[S], composite: Blueprint, specs: Sequence[S]
    ) -> None:
        """Create, update or move each desired component, then delete orphans.

        Any store error aborts the pass. Components applied before the error
        stay applied and the next pass picks up where this one stopped.
        """
        to_uninstall = {
            kind.component_name(obj): obj
            for obj in await kind.list_installed(self.store)
        }
        _LOGGER.debug(
            "Installed %s components: %s", kind.kind, sorted(to_uninstall)
        )

        applied: set[str] = set()
        for spec in specs:
            if not spec.cluster_scoped and not spec.namespace:
                spec = dataclasses.replace(spec, namespace=composite.namespace)
            desired = kind.materialize(spec)
            name = kind.component_name(desired)
            if name in applied:
                _LOGGER.warning(
                    "Skipping duplicate %s component %s in %s",
                    kind.kind,
                    name,
                    composite.name,
                )
                continue
            applied.add(name)

            _LOGGER.info("Reconciling %s component %s", kind.kind, name)
            async with asyncio.timeout(self._config.operation_timeout):
                if not spec.cluster_scoped:
                    await ensure_namespace(self.store, spec.namespace)
                await self._create_or_update(kind, desired)
            to_uninstall.pop(name, None)

        for name, obj in to_uninstall.items():
            _LOGGER.info("Removing %s component %s", kind.kind, name)
            async with asyncio.timeout(self._config.operation_timeout):
                with contextlib.suppress(ObjectNotFoundError):
                    await self.store.delete_object(
                        NamedResource.from_doc(obj), PropagationPolicy.BACKGROUND
                    )

    async def _create_or_update(
        self, kind: ComponentKind[S], desired: dict[str, Any]
    ) -> None:
        resource_id = NamedResource.from_doc(desired)
        existing: dict[str, Any] | None = None
        with contextlib.suppress(ObjectNotFoundError):
            existing = await self.store.get_object(resource_id)

        if existing is not None:
            old_namespace = kind.component_namespace(existing)
            new_namespace = kind.component_namespace(desired)
            if old_namespace == new_namespace:
                if not content_differs(desired, existing):
                    _LOGGER.debug("Component %s is up to date", resource_id)
                    return
                _LOGGER.info("Updating component %s", resource_id)
                metadata = desired["metadata"]
                metadata["resourceVersion"] = existing["metadata"]["resourceVersion"]
                if finalizers := existing["metadata"].get("finalizers"):
                    metadata["finalizers"] = finalizers
                await self.store.update_object(desired)
                return

            # Updates cannot move an object between namespaces
            _LOGGER.info(
                "Component %s moved from namespace %s to %s, recreating",
                resource_id,
                old_namespace,
                new_namespace,
            )
            with contextlib.suppress(ObjectNotFoundError):
                await self.store.delete_object(
                    resource_id, PropagationPolicy.FOREGROUND
                )

        _LOGGER.info("Creating component %s", resource_id)
        try:
            await self.store.create_object(desired)
        except AlreadyExistsError as err:
            if existing is None:
                raise
            raise ConflictError(
                f"Component {resource_id} is still being deleted from namespace "
                f"{kind.component_namespace(existing)}"
            ) from err
