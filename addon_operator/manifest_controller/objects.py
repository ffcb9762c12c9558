"""Per-kind handling of the objects a manifest renders.

Every rendered object goes through the same create and delete paths. The
kind decides whether the object is namespaced, which propagation policy is
used when it is deleted, and how early it is applied.
"""

from dataclasses import dataclass
import copy
from typing import Any

from addon_operator.manifest import (
    CRD_KIND,
    DAEMONSET_KIND,
    DEFAULT_NAMESPACE,
    DEPLOYMENT_KIND,
    NAMESPACE_KIND,
    NamedResource,
)
from addon_operator.store import PropagationPolicy, Store

__all__ = [
    "KindHandler",
    "handler_for",
    "apply_order",
]


@dataclass(frozen=True)
class KindHandler:
    """How objects of one kind are identified, created and deleted."""

    cluster_scoped: bool = False
    """Cluster scoped objects never carry a namespace."""

    order: int = 10
    """Objects with a lower order are applied first."""

    propagation: PropagationPolicy = PropagationPolicy.BACKGROUND
    """How dependents are collected when the object is deleted."""

    def identity(self, doc: dict[str, Any]) -> NamedResource:
        """Return the identity of a rendered object."""
        resource_id = NamedResource.from_doc(doc)
        if self.cluster_scoped:
            return NamedResource(resource_id.kind, None, resource_id.name)
        return NamedResource(
            resource_id.kind, resource_id.namespace or DEFAULT_NAMESPACE, resource_id.name
        )

    def prepare(self, doc: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of the object with its namespace resolved."""
        doc = copy.deepcopy(doc)
        metadata = doc["metadata"]
        if self.cluster_scoped:
            metadata.pop("namespace", None)
        else:
            metadata["namespace"] = metadata.get("namespace") or DEFAULT_NAMESPACE
        return doc

    async def create(self, store: Store, doc: dict[str, Any]) -> dict[str, Any]:
        return await store.create_object(doc)

    async def delete(self, store: Store, resource_id: NamedResource) -> None:
        await store.delete_object(resource_id, self.propagation)


_NAMESPACED = KindHandler()
_CLUSTER_SCOPED = KindHandler(cluster_scoped=True)
_WORKLOAD = KindHandler(propagation=PropagationPolicy.FOREGROUND)

HANDLERS: dict[str, KindHandler] = {
    NAMESPACE_KIND: KindHandler(cluster_scoped=True, order=0),
    CRD_KIND: KindHandler(cluster_scoped=True, order=1),
    "ClusterRole": _CLUSTER_SCOPED,
    "ClusterRoleBinding": _CLUSTER_SCOPED,
    "ClusterIssuer": _CLUSTER_SCOPED,
    "PriorityClass": _CLUSTER_SCOPED,
    "StorageClass": _CLUSTER_SCOPED,
    "IngressClass": _CLUSTER_SCOPED,
    "PersistentVolume": _CLUSTER_SCOPED,
    "APIService": _CLUSTER_SCOPED,
    "MutatingWebhookConfiguration": _CLUSTER_SCOPED,
    "ValidatingWebhookConfiguration": _CLUSTER_SCOPED,
    DEPLOYMENT_KIND: _WORKLOAD,
    DAEMONSET_KIND: _WORKLOAD,
    "StatefulSet": _WORKLOAD,
    "Job": _WORKLOAD,
}


def handler_for(kind: str) -> KindHandler:
    """Return the handler for a kind, unknown kinds are namespaced."""
    return HANDLERS.get(kind, _NAMESPACED)


def apply_order(docs: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Sort rendered objects so namespaces and CRDs are applied first.

    The sort is stable so objects of equal order keep their rendered order.
    """
    return sorted(docs, key=lambda doc: handler_for(doc.get("kind", "")).order)
