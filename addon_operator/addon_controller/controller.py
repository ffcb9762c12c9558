"""Addon Controller implementation.

An Addon is installed either as a flux HelmRelease (chart add-ons) or by
rendering and applying its manifests (manifest add-ons). This controller
dispatches to the matching controller, keeps a finalizer on the Addon so that
an uninstall always runs before the object goes away, and writes the
resulting health back onto the Addon.
"""

import dataclasses
import datetime
import logging
from typing import Any

from addon_operator.config import ControllerConfig
from addon_operator.exceptions import (
    AddonException,
    InputException,
    ObjectNotFoundError,
)
from addon_operator.helm_controller import ReleaseController, release_health
from addon_operator.kustomize import OverlayRenderer
from addon_operator.manifest import (
    ADDON_FINALIZER,
    ADDON_KIND,
    ADDON_KIND_CHART,
    Addon,
    NamedResource,
    format_timestamp,
)
from addon_operator.manifest_controller import (
    ManifestController,
    check_status,
    should_retry,
)
from addon_operator.metrics import (
    ADDON_DURATION,
    OPERATION_INSTALL,
    OPERATION_UNINSTALL,
    record_duration,
)
from addon_operator.status import Status, StatusType
from addon_operator.store import STATUS_SUBRESOURCE, Store

_LOGGER = logging.getLogger(__name__)

ADDON_DISABLED = "Addon disabled"
INSTALL_FAILED = "Install failed"


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class AddonController:
    """Installs, uninstalls and reports on Addon objects."""

    def __init__(
        self,
        store: Store,
        renderer: OverlayRenderer,
        config: ControllerConfig,
    ) -> None:
        """Initialize the controller.

        Args:
            store: The central store holding the Addon objects
            renderer: Renders the sources of manifest add-ons
            config: The configuration for the controller
        """
        self.store = store
        self._config = config
        self.releases = ReleaseController(store, config.release)
        self.manifests = ManifestController(store, renderer, config.manifest)

    async def reconcile(self, namespace: str, name: str) -> Status | None:
        """Drive one Addon toward its spec.

        Returns the status written onto the Addon, or None when the Addon no
        longer exists or is being deleted.

        Raises:
            AddonException: When installing fails. The failure is written onto
                the Addon status before it is raised.
        """
        resource_id = NamedResource(ADDON_KIND, namespace, name)
        try:
            doc = await self.store.get_object(resource_id)
        except ObjectNotFoundError:
            _LOGGER.debug("Addon %s no longer exists", resource_id)
            return None
        addon = Addon.parse_doc(doc)

        if addon.deletion_timestamp:
            _LOGGER.info("Addon %s is being deleted", resource_id)
            await self.uninstall(addon)
            await self._remove_finalizer(resource_id)
            return None

        if ADDON_FINALIZER not in addon.finalizers:
            _LOGGER.debug("Adding finalizer to %s", resource_id)
            metadata = doc["metadata"]
            metadata["finalizers"] = [*addon.finalizers, ADDON_FINALIZER]
            await self.store.update_object(doc)

        if not addon.spec.enabled:
            _LOGGER.info("Addon %s is disabled", resource_id)
            await self.uninstall(addon)
            status = Status(StatusType.AVAILABLE, reason=ADDON_DISABLED)
        else:
            try:
                status = await self.install(addon)
            except (AddonException, TimeoutError) as err:
                _LOGGER.error("Failed to install addon %s: %s", resource_id, err)
                await self._write_status(
                    resource_id,
                    Status(StatusType.UNHEALTHY, reason=INSTALL_FAILED, message=str(err)),
                )
                raise
        return await self._write_status(resource_id, status)

    async def install(self, addon: Addon) -> Status:
        """Install the add-on and return its current health."""
        with record_duration(ADDON_DURATION, addon.name, OPERATION_INSTALL):
            if addon.spec.kind == ADDON_KIND_CHART:
                await self.releases.create_release(addon, addon.target_namespace)
                return release_health(await self.releases.get_release(addon))
            return await self._install_manifest(addon)

    async def _install_manifest(self, addon: Addon) -> Status:
        if addon.spec.manifest is None:
            raise InputException(f"Addon {addon.name} has no manifest")
        record = await self.manifests.apply(
            addon.namespace, addon.name, addon.spec.manifest
        )
        status = await check_status(self.store, record.name, record.objects)
        if not status.same_state(record.status):
            record = await self.manifests.update_status(record, status)
        if should_retry(record):
            _LOGGER.info("Manifest %s will be re-applied", record.resource_id)
            await self.manifests.reset_checksum(record)
        return status

    async def uninstall(self, addon: Addon) -> None:
        """Remove everything the add-on installed."""
        with record_duration(ADDON_DURATION, addon.name, OPERATION_UNINSTALL):
            if addon.spec.kind == ADDON_KIND_CHART:
                await self.releases.delete_release(addon)
            else:
                await self.manifests.remove(addon.namespace, addon.name)

    async def _remove_finalizer(self, resource_id: NamedResource) -> None:
        doc = await self.store.get_object(resource_id)
        finalizers = doc["metadata"].get("finalizers") or []
        if ADDON_FINALIZER not in finalizers:
            return
        _LOGGER.debug("Removing finalizer from %s", resource_id)
        doc["metadata"]["finalizers"] = [f for f in finalizers if f != ADDON_FINALIZER]
        await self.store.update_object(doc)

    async def _write_status(self, resource_id: NamedResource, status: Status) -> Status:
        """Write the status, keeping the transition time unless the type changed."""
        doc = await self.store.get_object(resource_id)
        current = addon_status(doc)
        if current is not None and status.same_state(current):
            _LOGGER.debug("Status of %s is unchanged", resource_id)
            return current
        if current is not None and current.type == status.type:
            transition_time = current.last_transition_time
        else:
            transition_time = format_timestamp(_utcnow())
        status = dataclasses.replace(status, last_transition_time=transition_time)
        _LOGGER.info("Addon %s is %s", resource_id, status)
        doc["status"] = status.to_dict()
        await self.store.update_object(doc, STATUS_SUBRESOURCE)
        return status


def addon_status(doc: dict[str, Any]) -> Status | None:
    """Return the status recorded on an Addon document."""
    if status := doc.get("status"):
        return Status.from_dict(status)
    return None
