"""Health aggregation for the workloads a manifest created.

Only Deployments and DaemonSets report reliable health, every other kind is
ignored. The result is one of `Available`, `Progressing` or `Unhealthy`.
"""

from collections.abc import Sequence
import logging
from typing import Any

from addon_operator.exceptions import ObjectNotFoundError
from addon_operator.manifest import DAEMONSET_KIND, DEPLOYMENT_KIND, TrackedObject
from addon_operator.status import Status, StatusType
from addon_operator.store import Store

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "check_status",
]

NO_OBJECTS = "No objects detected for manifest"
DEPLOYMENTS_PROGRESSING = "1 or more manifest deployments are still progressing"
DEPLOYMENTS_AVAILABLE = "Manifest Deployments Available"
NO_DEPLOYMENTS = "No deployments"
DAEMONSETS_PROGRESSING = "1 or more manifest daemonsets are still progressing"
DAEMONSETS_AVAILABLE = "Manifest Daemonsets Available"
NO_DAEMONSETS = "No daemonsets"
COMPONENTS_PROGRESSING = "Manifest Components Still Progressing"
COMPONENTS_AVAILABLE = "Manifest Components Available"

# Reasons a deployment reports while a rollout is underway.
_PROGRESSING_REASONS = {"MinimumReplicasUnavailable"}


def _condition(conditions: list[dict[str, Any]], type_: str) -> dict[str, Any] | None:
    for condition in conditions:
        if condition.get("type") == type_:
            return condition
    return None


def _deployment_failure(name: str, conditions: list[dict[str, Any]]) -> Status:
    """Return the failure reported by a deployment's own conditions."""
    for condition in conditions:
        failed = condition.get("status") == "False" or (
            condition.get("type") == "ReplicaFailure"
            and condition.get("status") == "True"
        )
        if failed and condition.get("reason"):
            return Status(
                StatusType.UNHEALTHY,
                reason=condition["reason"],
                message=condition.get("message", ""),
            )
    return Status(
        StatusType.UNHEALTHY, reason=f"Deployment {name} is not available"
    )


async def _get_status(store: Store, obj: TrackedObject) -> dict[str, Any] | None:
    try:
        doc = await store.get_object(obj.resource_id)
    except ObjectNotFoundError:
        return None
    return doc.get("status") or {}


async def _check_deployments(
    store: Store, deployments: list[TrackedObject]
) -> Status:
    if not deployments:
        return Status(StatusType.AVAILABLE, message=NO_DEPLOYMENTS)
    progressing = 0
    for obj in deployments:
        name = obj.resource_id.namespaced_name
        if (status := await _get_status(store, obj)) is None:
            return Status(StatusType.UNHEALTHY, reason=f"Deployment {name} not found")
        conditions = status.get("conditions") or []
        replicas_ready = status.get("availableReplicas", 0) == status.get(
            "replicas", 0
        )
        available = _condition(conditions, "Available")
        if replicas_ready and (
            not conditions or (available is not None and available.get("status") == "True")
        ):
            continue

        progress = _condition(conditions, "Progressing")
        if progress is not None and progress.get("status") == "False":
            failure = Status(
                StatusType.UNHEALTHY,
                reason=progress.get("reason") or f"Deployment {name} is not progressing",
                message=progress.get("message", ""),
            )
            _LOGGER.debug("Deployment %s stopped progressing: %s", name, failure)
            return failure
        if progress is not None or any(
            condition.get("reason") in _PROGRESSING_REASONS for condition in conditions
        ):
            _LOGGER.debug("Deployment %s is progressing", name)
            progressing += 1
            continue

        failure = _deployment_failure(name, conditions)
        _LOGGER.debug("Deployment %s failed: %s", name, failure)
        return failure

    if progressing:
        return Status(
            StatusType.PROGRESSING,
            reason="DeploymentsProgressing",
            message=DEPLOYMENTS_PROGRESSING,
        )
    return Status(
        StatusType.AVAILABLE, reason="DeploymentsAvailable", message=DEPLOYMENTS_AVAILABLE
    )


async def _check_daemonsets(store: Store, daemonsets: list[TrackedObject]) -> Status:
    if not daemonsets:
        return Status(StatusType.AVAILABLE, message=NO_DAEMONSETS)
    progressing = 0
    for obj in daemonsets:
        name = obj.resource_id.namespaced_name
        if (status := await _get_status(store, obj)) is None:
            return Status(StatusType.UNHEALTHY, reason=f"Daemonset {name} not found")
        desired = status.get("desiredNumberScheduled", 0)
        if desired == status.get("numberReady", 0) == status.get("numberAvailable", 0):
            continue
        if status.get("numberMisscheduled", 0) > 0 or status.get("numberUnavailable", 0) > 0:
            return Status(
                StatusType.UNHEALTHY,
                reason=f"Daemonset {obj.name} failed to schedule pods",
                message=(
                    f"{status.get('numberMisscheduled', 0)} misscheduled, "
                    f"{status.get('numberUnavailable', 0)} unavailable"
                ),
            )
        _LOGGER.debug("Daemonset %s is progressing", name)
        progressing += 1

    if progressing:
        return Status(
            StatusType.PROGRESSING,
            reason="DaemonsetsProgressing",
            message=DAEMONSETS_PROGRESSING,
        )
    return Status(
        StatusType.AVAILABLE, reason="DaemonsetsAvailable", message=DAEMONSETS_AVAILABLE
    )


async def check_status(
    store: Store, name: str, objects: Sequence[TrackedObject]
) -> Status:
    """Roll up the health of the workloads a manifest created.

    This only reads from the store, callers persist the result.

    Args:
        store: The store holding the tracked objects.
        name: The manifest the objects belong to, used for logging.
        objects: The tracked objects of the manifest.
    """
    if not objects:
        _LOGGER.info("No objects tracked for manifest %s", name)
        return Status(StatusType.UNHEALTHY, reason=NO_OBJECTS)

    deployments = [obj for obj in objects if obj.kind == DEPLOYMENT_KIND]
    daemonsets = [obj for obj in objects if obj.kind == DAEMONSET_KIND]

    deployment_status = await _check_deployments(store, deployments)
    if deployment_status.type == StatusType.UNHEALTHY:
        return deployment_status
    daemonset_status = await _check_daemonsets(store, daemonsets)
    if daemonset_status.type == StatusType.UNHEALTHY:
        return daemonset_status

    detail = (
        f"Deployments : {deployment_status.message}, "
        f"Daemonsets : {daemonset_status.message}"
    )
    deployments_progressing = deployment_status.type == StatusType.PROGRESSING
    daemonsets_progressing = daemonset_status.type == StatusType.PROGRESSING
    if deployments_progressing and daemonsets_progressing:
        # Reported as Available although both are still rolling out. Existing
        # consumers depend on this label.
        return Status(StatusType.AVAILABLE, reason=COMPONENTS_PROGRESSING, message=detail)
    if deployments_progressing:
        return deployment_status
    if daemonsets_progressing:
        return daemonset_status
    return Status(StatusType.AVAILABLE, reason=COMPONENTS_AVAILABLE, message=detail)
