"""Representation of the objects managed by the addon operator.

The object store holds plain kubernetes style documents (`dict` objects with
`apiVersion`, `kind`, `metadata`, `spec` and `status`). The dataclasses in this
module are the typed view of those documents that the controllers work with.
Each type can be parsed from a document with `parse_doc` and the types that
are written back to the store can produce a document with `to_doc`.
"""

from dataclasses import dataclass, field
import datetime
import logging
from typing import Any, ClassVar, TypeVar

from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig
from mashumaro.exceptions import InvalidFieldValue, MissingField

from .exceptions import InputException
from .status import Status

__all__ = [
    "NamedResource",
    "TrackedObject",
    "Selector",
    "Patch",
    "Image",
    "OverlayConfig",
    "ManifestInfo",
    "ChartInfo",
    "ComponentSpec",
    "AddonSpec",
    "IssuerSpec",
    "ClusterIssuerSpec",
    "CertificateSpec",
    "Blueprint",
    "Addon",
    "ManifestRecord",
    "HelmRepository",
    "ReleaseDeclaration",
]

_LOGGER = logging.getLogger(__name__)

_S = TypeVar("_S", bound="ComponentSpec")

# Match a prefix of apiVersion to ensure we have the right type of object.
API_GROUP = "blueprint.addons.dev"
API_VERSION = f"{API_GROUP}/v1alpha1"
CERT_MANAGER_DOMAIN = "cert-manager.io"
CERT_MANAGER_API_VERSION = f"{CERT_MANAGER_DOMAIN}/v1"
HELM_REPO_DOMAIN = "source.toolkit.fluxcd.io"
HELM_REPO_API_VERSION = f"{HELM_REPO_DOMAIN}/v1"
HELM_RELEASE_DOMAIN = "helm.toolkit.fluxcd.io"
HELM_RELEASE_API_VERSION = f"{HELM_RELEASE_DOMAIN}/v2"

BLUEPRINT_KIND = "Blueprint"
ADDON_KIND = "Addon"
MANIFEST_KIND = "Manifest"
ISSUER_KIND = "Issuer"
CLUSTER_ISSUER_KIND = "ClusterIssuer"
CERTIFICATE_KIND = "Certificate"
HELM_RELEASE = "HelmRelease"
HELM_REPO_KIND = "HelmRepository"
NAMESPACE_KIND = "Namespace"
CRD_KIND = "CustomResourceDefinition"
DEPLOYMENT_KIND = "Deployment"
DAEMONSET_KIND = "DaemonSet"

DEFAULT_NAMESPACE = "default"
SYSTEM_NAMESPACE = "blueprint-system"

ADDON_KIND_CHART = "chart"
ADDON_KIND_MANIFEST = "manifest"
ADDON_KINDS = (ADDON_KIND_CHART, ADDON_KIND_MANIFEST)

FAILURE_POLICY_NONE = "None"
FAILURE_POLICY_RETRY = "Retry"

REPO_TYPE_DEFAULT = "default"
REPO_TYPE_OCI = "oci"

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "addon-operator"

ADDON_FINALIZER = "addons.dev/finalizer"


def _check_version(doc: dict[str, Any], version: str) -> None:
    """Assert that the resource has the specified version."""
    if not (api_version := doc.get("apiVersion")):
        raise InputException(f"Invalid object missing apiVersion: {doc}")
    if not api_version.startswith(version):
        raise InputException(f"Invalid object expected '{version}': {doc}")


def format_timestamp(value: datetime.datetime) -> str:
    """Format a timestamp the way the object store reports them."""
    return value.astimezone(datetime.UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: str) -> datetime.datetime:
    """Parse a timestamp reported by the object store."""
    return datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))


# Top level fields that do not describe desired state.
_STATE_FIELDS = ("apiVersion", "kind", "metadata", "status")


def content_differs(desired: dict[str, Any], existing: dict[str, Any]) -> bool:
    """Return True if writing `desired` would change `existing`.

    Only the desired state is compared: every top level field except metadata
    and status, plus the labels and annotations.
    """
    keys = (set(desired) | set(existing)) - set(_STATE_FIELDS)
    if any(desired.get(key) != existing.get(key) for key in keys):
        return True
    desired_meta = desired.get("metadata") or {}
    existing_meta = existing.get("metadata") or {}
    return any(
        (desired_meta.get(key) or {}) != (existing_meta.get(key) or {})
        for key in ("labels", "annotations")
    )


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "NamedResource":
        """Return the identity of a raw kubernetes object."""
        if not (kind := doc.get("kind")):
            raise InputException(f"Invalid object missing kind: {doc}")
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid object missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid object missing metadata.name: {doc}")
        return cls(kind, metadata.get("namespace") or None, name)

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


@dataclass
class TrackedObject(BaseManifest):
    """The identity of an object created while applying a manifest."""

    api_version: str = field(metadata=field_options(alias="apiVersion"))
    """The apiVersion of the object."""

    kind: str
    """The kind of the object."""

    name: str
    """The name of the object."""

    namespace: str | None = None
    """The namespace of the object, unset for cluster scoped objects."""

    group: str = ""
    """The API group of the object, empty for the core group."""

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "TrackedObject":
        """Build the tracking entry for a rendered object."""
        resource_id = NamedResource.from_doc(doc)
        if not (api_version := doc.get("apiVersion")):
            raise InputException(f"Invalid object missing apiVersion: {doc}")
        group, _, _ = api_version.rpartition("/")
        return cls(
            api_version=api_version,
            kind=resource_id.kind,
            name=resource_id.name,
            namespace=resource_id.namespace,
            group=group,
        )

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(self.kind, self.namespace or None, self.name)


@dataclass
class Selector(BaseManifest):
    """Selects the resources a patch applies to."""

    group: str | None = None
    version: str | None = None
    kind: str | None = None
    namespace: str | None = None
    name: str | None = None
    annotation_selector: str | None = field(
        default=None, metadata=field_options(alias="annotationSelector")
    )
    label_selector: str | None = field(
        default=None, metadata=field_options(alias="labelSelector")
    )


@dataclass
class Patch(BaseManifest):
    """An inline strategic merge or JSON6902 patch and its target."""

    patch: str | None = None
    """The content of an inline patch."""

    path: str | None = None
    """A path to a patch file, relative to the manifest source."""

    target: Selector | None = None
    """The resources the patch applies to."""

    options: dict[str, bool] | None = None
    """Options passed through to kustomize, e.g. allowNameChange."""


@dataclass
class Image(BaseManifest):
    """An image name, tag or digest substitution."""

    name: str
    new_name: str | None = field(default=None, metadata=field_options(alias="newName"))
    new_tag: str | None = field(default=None, metadata=field_options(alias="newTag"))
    digest: str | None = None


@dataclass
class OverlayConfig(BaseManifest):
    """Structural changes applied on top of a manifest source."""

    patches: list[Patch] = field(default_factory=list)
    images: list[Image] = field(default_factory=list)


@dataclass
class ManifestInfo(BaseManifest):
    """Describes a bundle of raw manifests installed from a URL."""

    url: str
    """The location of the manifests to render."""

    config: OverlayConfig | None = None
    """Patches and image substitutions applied when rendering."""

    failure_policy: str = field(
        default=FAILURE_POLICY_NONE, metadata=field_options(alias="failurePolicy")
    )
    """Either `None` or `Retry` to re-apply unhealthy manifests after `timeout`."""

    timeout: str | None = None
    """How long to wait after a change before an unhealthy manifest is retried."""

    @property
    def patches(self) -> list[Patch]:
        return self.config.patches if self.config else []

    @property
    def images(self) -> list[Image]:
        return self.config.images if self.config else []


@dataclass
class ChartInfo(BaseManifest):
    """Describes a helm chart release."""

    name: str
    """The name of the chart in the repository."""

    repo: str
    """The URL of the chart repository, `oci://` for OCI registries."""

    version: str
    """The chart version to install."""

    values: dict[str, Any] | None = None
    """Values passed to the chart."""

    depends_on: list[str] = field(
        default_factory=list, metadata=field_options(alias="dependsOn")
    )
    """Names of other chart add-ons that must be released first."""


@dataclass(kw_only=True)
class ComponentSpec(BaseManifest):
    """Desired state of one component declared in a Blueprint."""

    cluster_scoped: ClassVar[bool] = False

    name: str
    """The name of the component, unique among components of the same kind."""

    namespace: str = ""
    """The namespace of the component, defaults to the Blueprint namespace."""

    def validate(self) -> None:
        """Raise an InputException if the spec is not usable."""
        if not self.name:
            raise InputException(f"{type(self).__name__} name cannot be empty")

    @classmethod
    def parse_doc(cls: type[_S], doc: dict[str, Any]) -> _S:
        """Parse a component spec from the Blueprint document."""
        try:
            spec = cls.from_dict(doc)
        except (MissingField, InvalidFieldValue) as err:
            raise InputException(f"Invalid {cls.__name__}: {err}") from err
        spec.validate()
        return spec


@dataclass(kw_only=True)
class AddonSpec(ComponentSpec):
    """An add-on installed either from a helm chart or from raw manifests."""

    kind: str
    """Either `chart` or `manifest`."""

    enabled: bool = True
    """Disabled add-ons are uninstalled but stay declared."""

    chart: ChartInfo | None = None
    manifest: ManifestInfo | None = None

    def validate(self) -> None:
        super().validate()
        self.kind = self.kind.lower()
        if self.kind not in ADDON_KINDS:
            raise InputException(
                f"Addon {self.name} has unsupported kind '{self.kind}'"
            )
        if self.kind == ADDON_KIND_CHART and self.chart is None:
            raise InputException(f"Addon {self.name} of kind chart is missing chart")
        if self.kind == ADDON_KIND_MANIFEST and self.manifest is None:
            raise InputException(
                f"Addon {self.name} of kind manifest is missing manifest"
            )


@dataclass(kw_only=True)
class IssuerSpec(ComponentSpec):
    """A namespaced cert-manager Issuer."""

    spec: dict[str, Any] = field(default_factory=dict)
    """The cert-manager issuer spec, passed through unchanged."""


@dataclass(kw_only=True)
class ClusterIssuerSpec(ComponentSpec):
    """A cluster scoped cert-manager ClusterIssuer."""

    cluster_scoped: ClassVar[bool] = True

    spec: dict[str, Any] = field(default_factory=dict)


@dataclass(kw_only=True)
class CertificateSpec(ComponentSpec):
    """A cert-manager Certificate."""

    spec: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        super().validate()
        issuer_ref = self.spec.get("issuerRef") or {}
        if not issuer_ref.get("name"):
            raise InputException(f"Certificate {self.name} issuer name cannot be empty")
        if not issuer_ref.get("kind"):
            raise InputException(f"Certificate {self.name} issuer kind cannot be empty")


@dataclass
class Blueprint(BaseManifest):
    """The composite resource declaring every component of a cluster."""

    kind: ClassVar[str] = BLUEPRINT_KIND

    name: str
    namespace: str
    uid: str | None = None
    addons: list[AddonSpec] = field(default_factory=list)
    issuers: list[IssuerSpec] = field(default_factory=list)
    cluster_issuers: list[ClusterIssuerSpec] = field(default_factory=list)
    certificates: list[CertificateSpec] = field(default_factory=list)

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Blueprint":
        """Parse a Blueprint from a kubernetes resource object."""
        _check_version(doc, API_GROUP)
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid {cls} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid {cls} missing metadata.name: {doc}")
        spec = doc.get("spec") or {}
        components = spec.get("components") or {}
        certs = (spec.get("resources") or {}).get("certManagement") or {}
        return cls(
            name=name,
            namespace=metadata.get("namespace") or DEFAULT_NAMESPACE,
            uid=metadata.get("uid"),
            addons=[AddonSpec.parse_doc(d) for d in components.get("addons") or ()],
            issuers=[IssuerSpec.parse_doc(d) for d in certs.get("issuers") or ()],
            cluster_issuers=[
                ClusterIssuerSpec.parse_doc(d)
                for d in certs.get("clusterIssuers") or ()
            ],
            certificates=[
                CertificateSpec.parse_doc(d) for d in certs.get("certificates") or ()
            ],
        )


@dataclass
class Addon(BaseManifest):
    """A materialized add-on component."""

    kind: ClassVar[str] = ADDON_KIND

    name: str
    """The name of the Addon object."""

    namespace: str
    """The namespace holding the Addon object."""

    spec: AddonSpec
    """The add-on spec copied from the Blueprint."""

    uid: str | None = None
    finalizers: list[str] = field(default_factory=list)
    deletion_timestamp: str | None = None
    status: Status | None = None

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Addon":
        """Parse an Addon from a kubernetes resource object."""
        _check_version(doc, API_GROUP)
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid {cls} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid {cls} missing metadata.name: {doc}")
        if not (namespace := metadata.get("namespace")):
            raise InputException(f"Invalid {cls} missing metadata.namespace: {doc}")
        if not (spec := doc.get("spec")):
            raise InputException(f"Invalid {cls} missing spec: {doc}")
        status: Status | None = None
        if status_doc := doc.get("status"):
            status = Status.from_dict(status_doc)
        return cls(
            name=name,
            namespace=namespace,
            spec=AddonSpec.parse_doc(spec),
            uid=metadata.get("uid"),
            finalizers=list(metadata.get("finalizers") or ()),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            status=status,
        )

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(ADDON_KIND, self.namespace, self.name)

    @property
    def target_namespace(self) -> str:
        """Namespace the add-on installs its objects into."""
        return self.spec.namespace or DEFAULT_NAMESPACE

    def owner_reference(self) -> dict[str, Any]:
        """Return a controller owner reference pointing at this Addon."""
        return {
            "apiVersion": API_VERSION,
            "kind": ADDON_KIND,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }


@dataclass
class ManifestRecord(BaseManifest):
    """Persisted tracking state for a manifest add-on."""

    kind: ClassVar[str] = MANIFEST_KIND

    name: str
    namespace: str

    url: str
    """The manifest source that was rendered."""

    checksum: str = ""
    """Fingerprint of the last render that was completely applied."""

    new_checksum: str = field(default="", metadata=field_options(alias="newChecksum"))
    """Fingerprint of a render that is being applied, empty when none is pending."""

    objects: list[TrackedObject] = field(default_factory=list)
    """Objects created from the render, in the order they were created."""

    config: OverlayConfig | None = None
    failure_policy: str = field(
        default=FAILURE_POLICY_NONE, metadata=field_options(alias="failurePolicy")
    )
    timeout: str | None = None

    status: Status | None = field(default=None, metadata={"serialize": "omit"})
    """Aggregated health of the tracked objects."""

    resource_version: str | None = field(default=None, metadata={"serialize": "omit"})
    managed_fields: list[dict[str, Any]] = field(
        default_factory=list, metadata={"serialize": "omit"}
    )

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ManifestRecord":
        """Parse a ManifestRecord from a kubernetes resource object."""
        _check_version(doc, API_GROUP)
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid {cls} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid {cls} missing metadata.name: {doc}")
        if not (namespace := metadata.get("namespace")):
            raise InputException(f"Invalid {cls} missing metadata.namespace: {doc}")
        if not (spec := doc.get("spec")):
            raise InputException(f"Invalid {cls} missing spec: {doc}")
        try:
            record = cls.from_dict(
                {
                    **spec,
                    "name": name,
                    "namespace": namespace,
                    "status": doc.get("status") or None,
                }
            )
        except (MissingField, InvalidFieldValue) as err:
            raise InputException(f"Invalid {cls.__name__}: {err}") from err
        record.resource_version = metadata.get("resourceVersion")
        record.managed_fields = list(metadata.get("managedFields") or ())
        return record

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(MANIFEST_KIND, self.namespace, self.name)

    def to_doc(self) -> dict[str, Any]:
        """Return the document stored for this record."""
        spec = self.to_dict()
        spec.pop("name")
        spec.pop("namespace")
        metadata: dict[str, Any] = {"name": self.name, "namespace": self.namespace}
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        doc: dict[str, Any] = {
            "apiVersion": API_VERSION,
            "kind": MANIFEST_KIND,
            "metadata": metadata,
            "spec": spec,
        }
        if self.status:
            doc["status"] = self.status.to_dict()
        return doc


@dataclass
class HelmRepository(BaseManifest):
    """A representation of a flux HelmRepository."""

    kind: ClassVar[str] = HELM_REPO_KIND

    name: str
    """The name of the HelmRepository."""

    namespace: str
    """The namespace of owning the HelmRepository."""

    url: str
    """The URL to the repository of helm charts."""

    repo_type: str = REPO_TYPE_DEFAULT
    """The type of the HelmRepository."""

    interval: str = "5m"
    """How often the repository index is refreshed."""

    @classmethod
    def from_url(cls, name: str, namespace: str, url: str, interval: str) -> "HelmRepository":
        """Build a HelmRepository, detecting OCI registries from the URL."""
        repo_type = REPO_TYPE_OCI if url.startswith("oci://") else REPO_TYPE_DEFAULT
        return cls(
            name=name, namespace=namespace, url=url, repo_type=repo_type, interval=interval
        )

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(HELM_REPO_KIND, self.namespace, self.name)

    def to_doc(self) -> dict[str, Any]:
        return {
            "apiVersion": HELM_REPO_API_VERSION,
            "kind": HELM_REPO_KIND,
            "metadata": {"name": self.name, "namespace": self.namespace},
            "spec": {
                "url": self.url,
                "type": self.repo_type,
                "interval": self.interval,
            },
        }


@dataclass
class ReleaseDeclaration(BaseManifest):
    """A flux HelmRelease installing a chart on behalf of an Addon."""

    kind: ClassVar[str] = HELM_RELEASE

    name: str
    """The name of the HelmRelease, also used as the helm release name."""

    namespace: str
    """The namespace holding the HelmRelease."""

    chart: ChartInfo
    """The chart to install."""

    repo_name: str
    """The name of the HelmRepository serving the chart."""

    target_namespace: str
    """The namespace the chart is installed into."""

    interval: str = "30s"
    """How often the release is checked for drift."""

    install_retries: int = 3
    upgrade_retries: int = 3

    owner: dict[str, Any] | None = None
    """Controller owner reference to the Addon."""

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(HELM_RELEASE, self.namespace, self.name)

    def to_doc(self) -> dict[str, Any]:
        metadata: dict[str, Any] = {"name": self.name, "namespace": self.namespace}
        if self.owner:
            metadata["ownerReferences"] = [self.owner]
        spec: dict[str, Any] = {
            "targetNamespace": self.target_namespace,
            "releaseName": self.name,
            "chart": {
                "spec": {
                    "chart": self.chart.name,
                    "version": self.chart.version,
                    "sourceRef": {"kind": HELM_REPO_KIND, "name": self.repo_name},
                    "reconcileStrategy": "Revision",
                }
            },
            "install": {
                "disableWait": True,
                "createNamespace": True,
                "remediation": {"retries": self.install_retries},
            },
            "upgrade": {
                "disableWait": True,
                "cleanupOnFail": True,
                "remediation": {
                    "retries": self.upgrade_retries,
                    "strategy": "rollback",
                },
            },
            "driftDetection": {"mode": "enabled"},
            "interval": self.interval,
        }
        if self.chart.values:
            spec["values"] = self.chart.values
        if self.chart.depends_on:
            spec["dependsOn"] = [
                {"name": name, "namespace": self.namespace}
                for name in self.chart.depends_on
            ]
        return {
            "apiVersion": HELM_RELEASE_API_VERSION,
            "kind": HELM_RELEASE,
            "metadata": metadata,
            "spec": spec,
        }
