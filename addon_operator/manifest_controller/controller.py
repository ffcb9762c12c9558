"""Manifest Controller implementation.

This controller renders manifest add-ons and keeps the objects they produce
in the store.

Key Concepts:
    - ManifestRecord: Persisted tracking state for one manifest add-on. It
      holds the fingerprint of the last applied render and the identity of
      every object the render produced.
    - Fingerprint: SHA-256 of the rendered bytes. An unchanged fingerprint
      means there is nothing to do.
    - Tracked objects are appended one at a time as they are created, so an
      interrupted apply never tracks an object that was not created.
    - `newChecksum` is set while a walk over the rendered objects is underway
      and cleared once it completes. A record that still carries it is walked
      again on the next apply, including after an interrupted first apply.
"""

import asyncio
import contextlib
import hashlib
import logging
from typing import Any

from addon_operator.config import ManifestControllerConfig
from addon_operator.exceptions import AlreadyExistsError, ObjectNotFoundError
from addon_operator.kustomize import OverlayRenderer, parse_documents
from addon_operator.manifest import (
    MANIFEST_KIND,
    ManifestInfo,
    ManifestRecord,
    NamedResource,
    TrackedObject,
    content_differs,
)
from addon_operator.metrics import MANIFEST_DURATION, record_duration
from addon_operator.status import Status
from addon_operator.store import STATUS_SUBRESOURCE, Store

from .objects import apply_order, handler_for
from .timeout import await_available

_LOGGER = logging.getLogger(__name__)


def checksum(data: bytes) -> str:
    """Return the fingerprint of rendered manifests."""
    return hashlib.sha256(data).hexdigest()


def _settings_changed(record: ManifestRecord, manifest: ManifestInfo) -> bool:
    return (record.url, record.config, record.failure_policy, record.timeout) != (
        manifest.url,
        manifest.config,
        manifest.failure_policy,
        manifest.timeout,
    )


class ManifestController:
    """Applies and removes the objects rendered from manifest add-ons."""

    def __init__(
        self,
        store: Store,
        renderer: OverlayRenderer,
        config: ManifestControllerConfig,
    ) -> None:
        """Initialize the controller.

        Args:
            store: The object store that receives the rendered objects
            renderer: Expands a manifest source and overlays into documents
            config: The configuration for the controller
        """
        self.store = store
        self._renderer = renderer
        self._config = config

    async def get_record(self, namespace: str, name: str) -> ManifestRecord | None:
        """Return the tracking record for a manifest, if there is one."""
        resource_id = NamedResource(MANIFEST_KIND, namespace, name)
        try:
            doc = await self.store.get_object(resource_id)
        except ObjectNotFoundError:
            return None
        return ManifestRecord.parse_doc(doc)

    async def apply(
        self, namespace: str, name: str, manifest: ManifestInfo
    ) -> ManifestRecord:
        """Render the manifest and make the store match the render.

        Returns the tracking record as it was left after the apply.
        """
        with record_duration(MANIFEST_DURATION, f"{namespace}/{name}", "apply"):
            return await self._apply(namespace, name, manifest)

    async def _apply(
        self, namespace: str, name: str, manifest: ManifestInfo
    ) -> ManifestRecord:
        async with asyncio.timeout(self._config.operation_timeout):
            data = await self._renderer.render(
                manifest.url, manifest.patches, manifest.images
            )
        docs = parse_documents(data)
        fingerprint = checksum(data)

        record = await self.get_record(namespace, name)
        if record is None:
            _LOGGER.info("Creating manifest %s/%s (%s)", namespace, name, fingerprint)
            record = await self._create_record(
                ManifestRecord(
                    name=name,
                    namespace=namespace,
                    url=manifest.url,
                    checksum=fingerprint,
                    new_checksum=fingerprint,
                    config=manifest.config,
                    failure_policy=manifest.failure_policy,
                    timeout=manifest.timeout,
                )
            )
        elif record.checksum == fingerprint and not record.new_checksum:
            if _settings_changed(record, manifest):
                _LOGGER.info("Updating settings of manifest %s/%s", namespace, name)
                self._copy_settings(record, manifest)
                return await self._save(record)
            _LOGGER.debug("Manifest %s/%s is unchanged", namespace, name)
            return record
        else:
            _LOGGER.info(
                "Manifest %s/%s changed (%s -> %s)",
                namespace,
                name,
                record.checksum or "none",
                fingerprint,
            )
            self._copy_settings(record, manifest)
            record.new_checksum = fingerprint
            record = await self._save(record)

        tracked = {obj.resource_id for obj in record.objects}
        produced: set[NamedResource] = set()
        for doc in apply_order(docs):
            async with asyncio.timeout(self._config.operation_timeout):
                obj = await self._apply_object(doc)
            produced.add(obj.resource_id)
            if obj.resource_id not in tracked:
                tracked.add(obj.resource_id)
                record.objects.append(obj)
                record = await self._save(record)

        dirty = False
        for obj in [obj for obj in record.objects if obj.resource_id not in produced]:
            _LOGGER.info("Deleting %s, no longer rendered", obj.resource_id)
            async with asyncio.timeout(self._config.operation_timeout):
                with contextlib.suppress(ObjectNotFoundError):
                    await handler_for(obj.kind).delete(self.store, obj.resource_id)
            record.objects.remove(obj)
            dirty = True

        if record.new_checksum:
            record.checksum = record.new_checksum
            record.new_checksum = ""
            dirty = True
        if dirty:
            record = await self._save(record)
        _LOGGER.info(
            "Applied manifest %s/%s with %d objects",
            namespace,
            name,
            len(record.objects),
        )
        return record

    async def _apply_object(self, doc: dict[str, Any]) -> TrackedObject:
        """Create the object, or adopt it if it already exists."""
        handler = handler_for(doc["kind"])
        doc = handler.prepare(doc)
        resource_id = handler.identity(doc)
        try:
            await handler.create(self.store, doc)
            _LOGGER.debug("Created %s", resource_id)
        except AlreadyExistsError:
            existing = await self.store.get_object(resource_id)
            if content_differs(doc, existing):
                _LOGGER.debug("Updating existing %s", resource_id)
                doc["metadata"]["resourceVersion"] = existing["metadata"][
                    "resourceVersion"
                ]
                await self.store.update_object(doc)
        return TrackedObject.from_doc(doc)

    async def remove(self, namespace: str, name: str) -> None:
        """Delete every tracked object, then the record itself."""
        with record_duration(MANIFEST_DURATION, f"{namespace}/{name}", "remove"):
            if (record := await self.get_record(namespace, name)) is None:
                _LOGGER.debug("Manifest %s/%s already removed", namespace, name)
                return
            for obj in record.objects:
                _LOGGER.debug("Deleting %s", obj.resource_id)
                async with asyncio.timeout(self._config.operation_timeout):
                    with contextlib.suppress(ObjectNotFoundError):
                        await handler_for(obj.kind).delete(self.store, obj.resource_id)
            with contextlib.suppress(ObjectNotFoundError):
                await self.store.delete_object(record.resource_id)
            _LOGGER.info("Removed manifest %s/%s", namespace, name)

    async def update_status(
        self, record: ManifestRecord, status: Status
    ) -> ManifestRecord:
        """Write the aggregated health onto the record."""
        record.status = status
        doc = await self.store.update_object(record.to_doc(), STATUS_SUBRESOURCE)
        return ManifestRecord.parse_doc(doc)

    async def reset_checksum(self, record: ManifestRecord) -> ManifestRecord:
        """Forget the applied fingerprint so the next apply walks every object."""
        record.checksum = ""
        return await self._save(record)

    async def await_timeout(self, namespace: str, name: str, timeout: float) -> None:
        """Wait until the manifest reports `Available`.

        Raises:
            AwaitTimeoutError: If the manifest is not available within `timeout`.
        """
        await await_available(
            self.store,
            NamedResource(MANIFEST_KIND, namespace, name),
            timeout,
            self._config.poll_interval,
        )

    @staticmethod
    def _copy_settings(record: ManifestRecord, manifest: ManifestInfo) -> None:
        record.url = manifest.url
        record.config = manifest.config
        record.failure_policy = manifest.failure_policy
        record.timeout = manifest.timeout

    async def _create_record(self, record: ManifestRecord) -> ManifestRecord:
        doc = await self.store.create_object(record.to_doc())
        return ManifestRecord.parse_doc(doc)

    async def _save(self, record: ManifestRecord) -> ManifestRecord:
        doc = await self.store.update_object(record.to_doc())
        return ManifestRecord.parse_doc(doc)
