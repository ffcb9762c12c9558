"""Release Controller implementation.

Chart add-ons are installed by declaring a flux HelmRepository and HelmRelease
and letting flux do the work. This controller writes those declarations and
derives the add-on health from the conditions flux reports on the release.

Key Concepts:
    - HelmRepository: The chart source, named `repo-<addon>-<chart>`
    - HelmRelease: The release itself, named after the add-on and owned by it
      so that deleting the Addon garbage collects the release
"""

import contextlib
from enum import StrEnum
import logging
from typing import Any

from addon_operator.config import ReleaseControllerConfig
from addon_operator.exceptions import (
    AlreadyExistsError,
    InputException,
    ObjectNotFoundError,
)
from addon_operator.manifest import (
    HELM_RELEASE,
    HELM_REPO_KIND,
    Addon,
    HelmRepository,
    NamedResource,
    ReleaseDeclaration,
    content_differs,
)
from addon_operator.status import Status, StatusType
from addon_operator.store import Store

_LOGGER = logging.getLogger(__name__)

RELEASED_CONDITION = "Released"

FAILURE_REASONS = frozenset(
    {
        "InstallFailed",
        "UpgradeFailed",
        "RollbackFailed",
        "UninstallFailed",
    }
)


class ReleaseStatus(StrEnum):
    """Outcome of a release as reported by flux."""

    SUCCESS = "Success"
    FAILED = "Failed"
    PROGRESSING = "Progressing"


def _released_condition(release: dict[str, Any]) -> dict[str, Any] | None:
    for condition in (release.get("status") or {}).get("conditions") or ():
        if condition.get("type") == RELEASED_CONDITION:
            return condition
    return None


def determine_status(release: dict[str, Any]) -> ReleaseStatus:
    """Classify a HelmRelease by its `Released` condition."""
    if (condition := _released_condition(release)) is not None:
        if condition.get("status") == "True":
            return ReleaseStatus.SUCCESS
        if condition.get("status") == "False" and condition.get("reason") in FAILURE_REASONS:
            return ReleaseStatus.FAILED
    return ReleaseStatus.PROGRESSING


def release_health(release: dict[str, Any] | None) -> Status:
    """Return the component health for a HelmRelease, None if not created yet."""
    if release is None:
        return Status(
            StatusType.PROGRESSING,
            reason="HelmReleasePending",
            message="Waiting for the HelmRelease to be created",
        )
    condition = _released_condition(release) or {}
    message = condition.get("message", "")
    match determine_status(release):
        case ReleaseStatus.SUCCESS:
            return Status(
                StatusType.AVAILABLE,
                reason=condition.get("reason") or "Released",
                message=message,
            )
        case ReleaseStatus.FAILED:
            return Status(StatusType.UNHEALTHY, reason=condition["reason"], message=message)
    return Status(
        StatusType.PROGRESSING,
        reason=condition.get("reason") or "HelmReleaseProgressing",
        message=message or "Waiting for the release to complete",
    )


def repo_name(addon: Addon) -> str:
    """Return the name of the HelmRepository serving the add-on chart."""
    if addon.spec.chart is None:
        raise InputException(f"Addon {addon.name} has no chart")
    return f"repo-{addon.name}-{addon.spec.chart.name}"


class ReleaseController:
    """Creates, deletes and inspects the flux objects of chart add-ons."""

    def __init__(self, store: Store, config: ReleaseControllerConfig) -> None:
        """Initialize the controller.

        Args:
            store: The central store the flux objects are written to
            config: The configuration for the controller
        """
        self.store = store
        self._config = config

    def declarations(
        self, addon: Addon, target_namespace: str
    ) -> tuple[HelmRepository, ReleaseDeclaration]:
        """Return the HelmRepository and HelmRelease for an add-on."""
        if (chart := addon.spec.chart) is None:
            raise InputException(f"Addon {addon.name} has no chart")
        repo = HelmRepository.from_url(
            name=repo_name(addon),
            namespace=self._config.system_namespace,
            url=chart.repo,
            interval=self._config.repository_interval,
        )
        release = ReleaseDeclaration(
            name=addon.name,
            namespace=self._config.system_namespace,
            chart=chart,
            repo_name=repo.name,
            target_namespace=target_namespace,
            interval=self._config.release_interval,
            install_retries=self._config.install_retries,
            upgrade_retries=self._config.upgrade_retries,
            owner=addon.owner_reference() if addon.uid else None,
        )
        return repo, release

    async def create_release(self, addon: Addon, target_namespace: str) -> None:
        """Create or update the HelmRepository and then the HelmRelease.

        The release refers to the repository so the repository always goes
        first.
        """
        repo, release = self.declarations(addon, target_namespace)
        _LOGGER.info("Applying HelmRepository %s", repo.resource_id)
        await self._apply(repo.to_doc())
        _LOGGER.info("Applying HelmRelease %s", release.resource_id)
        await self._apply(release.to_doc())

    async def delete_release(self, addon: Addon) -> None:
        """Delete the HelmRelease and its HelmRepository if they exist."""
        namespace = self._config.system_namespace
        for resource_id in (
            NamedResource(HELM_RELEASE, namespace, addon.name),
            NamedResource(HELM_REPO_KIND, namespace, repo_name(addon)),
        ):
            _LOGGER.info("Deleting %s", resource_id)
            with contextlib.suppress(ObjectNotFoundError):
                await self.store.delete_object(resource_id)

    async def get_release(self, addon: Addon) -> dict[str, Any] | None:
        """Return the HelmRelease of an add-on, None if it does not exist."""
        resource_id = NamedResource(
            HELM_RELEASE, self._config.system_namespace, addon.name
        )
        try:
            return await self.store.get_object(resource_id)
        except ObjectNotFoundError:
            return None

    async def _apply(self, doc: dict[str, Any]) -> None:
        try:
            await self.store.create_object(doc)
            return
        except AlreadyExistsError:
            pass
        existing = await self.store.get_object(NamedResource.from_doc(doc))
        if not content_differs(doc, existing):
            return
        doc["metadata"]["resourceVersion"] = existing["metadata"]["resourceVersion"]
        await self.store.update_object(doc)
