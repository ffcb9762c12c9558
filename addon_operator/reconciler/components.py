"""The kinds of components a Blueprint declares.

Each kind knows how to turn a spec into a concrete object, where installed
objects of the kind live, and how to name a component so that desired and
installed components can be matched up.
"""

from abc import ABC, abstractmethod
from typing import Any, ClassVar, Generic, TypeVar

from addon_operator.manifest import (
    ADDON_KIND,
    API_VERSION,
    CERT_MANAGER_API_VERSION,
    CERTIFICATE_KIND,
    CLUSTER_ISSUER_KIND,
    ISSUER_KIND,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    AddonSpec,
    CertificateSpec,
    ClusterIssuerSpec,
    ComponentSpec,
    IssuerSpec,
)
from addon_operator.store import Store

__all__ = [
    "ComponentKind",
    "AddonKind",
    "IssuerKind",
    "ClusterIssuerKind",
    "CertificateKind",
]

S = TypeVar("S", bound=ComponentSpec)


def _metadata(name: str, namespace: str | None) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "name": name,
        "labels": {MANAGED_BY_LABEL: MANAGED_BY_VALUE},
    }
    if namespace:
        metadata["namespace"] = namespace
    return metadata


def is_managed(obj: dict[str, Any]) -> bool:
    """Return True if the object was created by the reconciler."""
    labels = obj["metadata"].get("labels") or {}
    return labels.get(MANAGED_BY_LABEL) == MANAGED_BY_VALUE


class ComponentKind(ABC, Generic[S]):
    """Capabilities the reconciler needs for one kind of component."""

    kind: ClassVar[str]
    """The kind of the concrete object."""

    @abstractmethod
    def materialize(self, spec: S) -> dict[str, Any]:
        """Return the concrete object for a spec with its namespace resolved."""

    def component_name(self, obj: dict[str, Any]) -> str:
        """Return the key used to match installed and desired components."""
        return obj["metadata"]["name"]

    def component_namespace(self, obj: dict[str, Any]) -> str | None:
        """Return the namespace the component is declared for."""
        return obj["metadata"].get("namespace")

    def list_namespace(self) -> str | None:
        """Return the namespace installed objects live in, None for all."""
        return None

    async def list_installed(self, store: Store) -> list[dict[str, Any]]:
        """Return the installed components of this kind."""
        return [
            obj
            for obj in await store.list_objects(self.kind, self.list_namespace())
            if is_managed(obj)
        ]


class AddonKind(ComponentKind[AddonSpec]):
    """Addon objects all live in the system namespace.

    The component namespace is the target namespace in the Addon spec, so a
    namespace move keeps the object identity but still requires the Addon
    to be recreated.
    """

    kind = ADDON_KIND

    def __init__(self, system_namespace: str) -> None:
        self._system_namespace = system_namespace

    def materialize(self, spec: AddonSpec) -> dict[str, Any]:
        return {
            "apiVersion": API_VERSION,
            "kind": ADDON_KIND,
            "metadata": _metadata(spec.name, self._system_namespace),
            "spec": spec.to_dict(),
        }

    def component_namespace(self, obj: dict[str, Any]) -> str | None:
        return (obj.get("spec") or {}).get("namespace")

    def list_namespace(self) -> str | None:
        return self._system_namespace


N = TypeVar("N", IssuerSpec, CertificateSpec)


class _NamespacedCertManagerKind(ComponentKind[N]):
    """Namespaced cert-manager objects, named `namespace/name`."""

    def materialize(self, spec: N) -> dict[str, Any]:
        return {
            "apiVersion": CERT_MANAGER_API_VERSION,
            "kind": self.kind,
            "metadata": _metadata(spec.name, spec.namespace),
            "spec": spec.spec,
        }

    def component_name(self, obj: dict[str, Any]) -> str:
        metadata = obj["metadata"]
        return f"{metadata.get('namespace')}/{metadata['name']}"


class IssuerKind(_NamespacedCertManagerKind[IssuerSpec]):
    """cert-manager Issuers."""

    kind = ISSUER_KIND


class CertificateKind(_NamespacedCertManagerKind[CertificateSpec]):
    """cert-manager Certificates."""

    kind = CERTIFICATE_KIND


class ClusterIssuerKind(ComponentKind[ClusterIssuerSpec]):
    """cert-manager ClusterIssuers."""

    kind = CLUSTER_ISSUER_KIND

    def materialize(self, spec: ClusterIssuerSpec) -> dict[str, Any]:
        return {
            "apiVersion": CERT_MANAGER_API_VERSION,
            "kind": self.kind,
            "metadata": _metadata(spec.name, None),
            "spec": spec.spec,
        }
