"""Tests for the manifest controller."""

from typing import Any

import pytest
import yaml

from addon_operator.config import ManifestControllerConfig
from addon_operator.exceptions import (
    AwaitTimeoutError,
    ConflictError,
    KustomizeException,
)
from addon_operator.kustomize import OverlayRenderer, kustomization
from addon_operator.manifest import (
    Image,
    ManifestInfo,
    NamedResource,
    OverlayConfig,
    Patch,
    Selector,
)
from addon_operator.manifest_controller import ManifestController, checksum
from addon_operator.manifest_controller.objects import apply_order, handler_for
from addon_operator.status import Status, StatusType
from addon_operator.store import InMemoryStore, PropagationPolicy, StoreEvent

NAMESPACE = {
    "apiVersion": "v1",
    "kind": "Namespace",
    "metadata": {"name": "monitoring"},
}
CONFIG_MAP = {
    "apiVersion": "v1",
    "kind": "ConfigMap",
    "metadata": {"name": "settings", "namespace": "monitoring"},
    "data": {"level": "info"},
}
DEPLOYMENT = {
    "apiVersion": "apps/v1",
    "kind": "Deployment",
    "metadata": {"name": "metrics", "namespace": "monitoring"},
    "spec": {"replicas": 1},
}
CLUSTER_ROLE = {
    "apiVersion": "rbac.authorization.k8s.io/v1",
    "kind": "ClusterRole",
    "metadata": {"name": "metrics-reader"},
    "rules": [],
}
CRD = {
    "apiVersion": "apiextensions.k8s.io/v1",
    "kind": "CustomResourceDefinition",
    "metadata": {"name": "widgets.example.com"},
    "spec": {"group": "example.com"},
}

URL = "https://example.com/metrics.yaml"


class FakeRenderer(OverlayRenderer):
    """Renders whatever documents the test sets."""

    def __init__(self) -> None:
        self.docs: list[dict[str, Any]] = []
        self.calls: list[tuple[str, list[Patch], list[Image]]] = []

    async def render(
        self, url: str, patches: list[Patch], images: list[Image]
    ) -> bytes:
        self.calls.append((url, patches, images))
        return yaml.dump_all(self.docs, sort_keys=False).encode()


class KustomizationRenderer(OverlayRenderer):
    """Renders a ConfigMap holding the kustomization built for the overlays."""

    async def render(
        self, url: str, patches: list[Patch], images: list[Image]
    ) -> bytes:
        contents = kustomization([url], patches, images)
        doc = {**CONFIG_MAP, "data": {"kustomization": yaml.dump(contents)}}
        return yaml.dump(doc, sort_keys=False).encode()


class FlakyStore(InMemoryStore):
    """A store that fails the first create of selected objects."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_once: set[NamedResource] = set()

    async def create_object(self, obj: dict[str, Any]) -> dict[str, Any]:
        resource_id = NamedResource.from_doc(obj)
        if resource_id in self.fail_once:
            self.fail_once.discard(resource_id)
            raise ConflictError(f"Unable to create {resource_id}")
        return await super().create_object(obj)


@pytest.fixture(name="renderer")
def renderer_fixture() -> FakeRenderer:
    """Create a renderer with no documents."""
    return FakeRenderer()


@pytest.fixture(name="controller")
def controller_fixture(
    store: InMemoryStore, renderer: FakeRenderer
) -> ManifestController:
    """Create a ManifestController for testing."""
    return ManifestController(
        store, renderer, ManifestControllerConfig(poll_interval=0.01)
    )


def test_checksum() -> None:
    """Test the fingerprint of rendered output."""
    assert checksum(b"") == (
        "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    )
    assert checksum(b"a") != checksum(b"b")


def test_apply_order() -> None:
    """Test namespaces and CRDs are applied first, keeping rendered order."""
    docs = [CONFIG_MAP, DEPLOYMENT, CRD, CLUSTER_ROLE, NAMESPACE]
    assert [doc["kind"] for doc in apply_order(docs)] == [
        "Namespace",
        "CustomResourceDefinition",
        "ConfigMap",
        "Deployment",
        "ClusterRole",
    ]


def test_handler_identity() -> None:
    """Test the identity of namespaced and cluster scoped objects."""
    assert handler_for("ClusterRole").identity(
        {"kind": "ClusterRole", "metadata": {"name": "a", "namespace": "x"}}
    ) == NamedResource("ClusterRole", None, "a")
    assert handler_for("ConfigMap").identity(
        {"kind": "ConfigMap", "metadata": {"name": "a"}}
    ) == NamedResource("ConfigMap", "default", "a")
    assert handler_for("Deployment").propagation == PropagationPolicy.FOREGROUND
    assert handler_for("ConfigMap").propagation == PropagationPolicy.BACKGROUND


async def test_apply_creates_objects(
    store: InMemoryStore,
    renderer: FakeRenderer,
    controller: ManifestController,
) -> None:
    """Test the first apply creates every rendered object and the record."""
    renderer.docs = [CONFIG_MAP, DEPLOYMENT, NAMESPACE, CLUSTER_ROLE]
    manifest = ManifestInfo(
        url=URL,
        config=OverlayConfig(images=[Image(name="metrics", new_tag="v2")]),
    )
    record = await controller.apply("blueprint-system", "metrics", manifest)

    assert renderer.calls == [(URL, [], [Image(name="metrics", new_tag="v2")])]
    assert [obj.resource_id for obj in record.objects] == [
        NamedResource("Namespace", None, "monitoring"),
        NamedResource("ConfigMap", "monitoring", "settings"),
        NamedResource("Deployment", "monitoring", "metrics"),
        NamedResource("ClusterRole", None, "metrics-reader"),
    ]
    data = yaml.dump_all(renderer.docs, sort_keys=False).encode()
    assert record.checksum == checksum(data)
    assert record.new_checksum == ""
    assert record.config == manifest.config

    for obj in record.objects:
        assert await store.get_object(obj.resource_id)

    stored = await controller.get_record("blueprint-system", "metrics")
    assert stored == record


async def test_apply_unchanged_is_noop(
    store: InMemoryStore,
    renderer: FakeRenderer,
    controller: ManifestController,
    mutations: list[Any],
) -> None:
    """Test applying an unchanged render makes no writes."""
    renderer.docs = [NAMESPACE, CONFIG_MAP]
    manifest = ManifestInfo(url=URL)
    first = await controller.apply("blueprint-system", "metrics", manifest)
    mutations.clear()

    second = await controller.apply("blueprint-system", "metrics", manifest)
    assert mutations == []
    assert second == first


async def test_apply_settings_change_only(
    store: InMemoryStore,
    renderer: FakeRenderer,
    controller: ManifestController,
    mutations: list[Any],
) -> None:
    """Test a settings change with an identical render only updates the record."""
    renderer.docs = [NAMESPACE, CONFIG_MAP]
    await controller.apply("blueprint-system", "metrics", ManifestInfo(url=URL))
    mutations.clear()

    record = await controller.apply(
        "blueprint-system",
        "metrics",
        ManifestInfo(url=URL, failure_policy="Retry", timeout="5m"),
    )
    assert record.failure_policy == "Retry"
    assert record.timeout == "5m"
    assert mutations == [
        (StoreEvent.OBJECT_UPDATED, NamedResource("Manifest", "blueprint-system", "metrics"))
    ]


async def test_apply_changed_render(
    store: InMemoryStore,
    renderer: FakeRenderer,
    controller: ManifestController,
) -> None:
    """Test a changed render updates objects and deletes ones no longer produced."""
    renderer.docs = [NAMESPACE, CONFIG_MAP, DEPLOYMENT]
    manifest = ManifestInfo(url=URL)
    first = await controller.apply("blueprint-system", "metrics", manifest)

    renderer.docs = [NAMESPACE, {**CONFIG_MAP, "data": {"level": "debug"}}]
    record = await controller.apply("blueprint-system", "metrics", manifest)

    assert record.checksum != first.checksum
    assert record.new_checksum == ""
    assert [obj.kind for obj in record.objects] == ["Namespace", "ConfigMap"]
    config_map = await store.get_object(
        NamedResource("ConfigMap", "monitoring", "settings")
    )
    assert config_map["data"] == {"level": "debug"}
    assert not await store.list_objects("Deployment")


async def test_apply_adopts_existing_object(
    store: InMemoryStore,
    renderer: FakeRenderer,
    controller: ManifestController,
) -> None:
    """Test an object that already exists is updated and tracked."""
    await store.create_object({**CONFIG_MAP, "data": {"level": "warn"}})
    renderer.docs = [CONFIG_MAP]
    record = await controller.apply("blueprint-system", "metrics", ManifestInfo(url=URL))

    assert [obj.name for obj in record.objects] == ["settings"]
    config_map = await store.get_object(
        NamedResource("ConfigMap", "monitoring", "settings")
    )
    assert config_map["data"] == {"level": "info"}


async def test_apply_defaults_namespace(
    store: InMemoryStore,
    renderer: FakeRenderer,
    controller: ManifestController,
) -> None:
    """Test objects rendered without a namespace go to the default namespace."""
    renderer.docs = [
        {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "plain"}}
    ]
    record = await controller.apply("blueprint-system", "metrics", ManifestInfo(url=URL))
    assert record.objects[0].namespace == "default"
    assert await store.get_object(NamedResource("ConfigMap", "default", "plain"))


async def test_apply_render_failure(
    store: InMemoryStore,
    renderer: FakeRenderer,
    controller: ManifestController,
) -> None:
    """Test a render that cannot be parsed leaves the store untouched."""

    async def broken_render(*args: Any) -> bytes:
        return b"- not an object\n"

    renderer.render = broken_render  # type: ignore[method-assign]
    with pytest.raises(KustomizeException):
        await controller.apply("blueprint-system", "metrics", ManifestInfo(url=URL))
    assert await controller.get_record("blueprint-system", "metrics") is None


async def test_reset_checksum_reapplies(
    store: InMemoryStore,
    renderer: FakeRenderer,
    controller: ManifestController,
) -> None:
    """Test wiping the checksum recreates objects deleted out of band."""
    renderer.docs = [NAMESPACE, CONFIG_MAP]
    record = await controller.apply("blueprint-system", "metrics", ManifestInfo(url=URL))
    fingerprint = record.checksum

    rid = NamedResource("ConfigMap", "monitoring", "settings")
    await store.delete_object(rid)

    record = await controller.reset_checksum(record)
    assert record.checksum == ""
    record = await controller.apply("blueprint-system", "metrics", ManifestInfo(url=URL))
    assert record.checksum == fingerprint
    assert await store.get_object(rid)


async def test_remove(
    store: InMemoryStore,
    renderer: FakeRenderer,
    controller: ManifestController,
) -> None:
    """Test removing deletes tracked objects in order, then the record."""
    renderer.docs = [NAMESPACE, CONFIG_MAP, DEPLOYMENT]
    await controller.apply("blueprint-system", "metrics", ManifestInfo(url=URL))

    # Already deleted objects are skipped
    await store.delete_object(NamedResource("Deployment", "monitoring", "metrics"))

    deleted: list[NamedResource] = []
    store.add_listener(
        StoreEvent.OBJECT_DELETED, lambda resource_id, obj: deleted.append(resource_id)
    )
    await controller.remove("blueprint-system", "metrics")
    assert deleted == [
        NamedResource("Namespace", None, "monitoring"),
        NamedResource("ConfigMap", "monitoring", "settings"),
        NamedResource("Manifest", "blueprint-system", "metrics"),
    ]
    assert await controller.get_record("blueprint-system", "metrics") is None

    # Removing again is a no-op
    await controller.remove("blueprint-system", "metrics")


async def test_update_status(
    store: InMemoryStore,
    renderer: FakeRenderer,
    controller: ManifestController,
) -> None:
    """Test the status is written through the status subresource."""
    renderer.docs = [NAMESPACE]
    record = await controller.apply("blueprint-system", "metrics", ManifestInfo(url=URL))
    record = await controller.update_status(record, Status(StatusType.AVAILABLE))
    assert record.status == Status(StatusType.AVAILABLE)
    assert [entry.get("subresource") for entry in record.managed_fields] == [
        None,
        "status",
    ]


async def test_await_timeout(
    store: InMemoryStore,
    renderer: FakeRenderer,
    controller: ManifestController,
) -> None:
    """Test waiting on a manifest that stays unhealthy."""
    renderer.docs = [NAMESPACE]
    record = await controller.apply("blueprint-system", "metrics", ManifestInfo(url=URL))
    await controller.update_status(
        record, Status(StatusType.UNHEALTHY, reason="No objects detected for manifest")
    )
    with pytest.raises(AwaitTimeoutError):
        await controller.await_timeout("blueprint-system", "metrics", 0.05)

    record = await controller.get_record("blueprint-system", "metrics")
    assert record
    await controller.update_status(record, Status(StatusType.AVAILABLE))
    await controller.await_timeout("blueprint-system", "metrics", 1.0)


@pytest.fixture(name="flaky_store")
def flaky_store_fixture() -> FlakyStore:
    """Create a store that can fail individual creates."""
    return FlakyStore()


async def test_interrupted_first_apply(
    flaky_store: FlakyStore, renderer: FakeRenderer
) -> None:
    """Test a first apply that fails part way is finished by the next apply."""
    controller = ManifestController(
        flaky_store, renderer, ManifestControllerConfig(poll_interval=0.01)
    )
    renderer.docs = [NAMESPACE, CONFIG_MAP]
    config_map_id = NamedResource("ConfigMap", "monitoring", "settings")
    flaky_store.fail_once.add(config_map_id)

    with pytest.raises(ConflictError):
        await controller.apply("blueprint-system", "metrics", ManifestInfo(url=URL))
    record = await controller.get_record("blueprint-system", "metrics")
    assert record
    assert [obj.kind for obj in record.objects] == ["Namespace"]
    assert record.new_checksum == record.checksum

    record = await controller.apply("blueprint-system", "metrics", ManifestInfo(url=URL))
    assert [obj.kind for obj in record.objects] == ["Namespace", "ConfigMap"]
    assert record.new_checksum == ""
    assert await flaky_store.get_object(config_map_id)


async def test_interrupted_update_keeps_pending_checksum(
    flaky_store: FlakyStore, renderer: FakeRenderer
) -> None:
    """Test a changed render that fails part way stays pending until finished."""
    controller = ManifestController(
        flaky_store, renderer, ManifestControllerConfig(poll_interval=0.01)
    )
    renderer.docs = [NAMESPACE, CONFIG_MAP]
    first = await controller.apply("blueprint-system", "metrics", ManifestInfo(url=URL))

    renderer.docs = [NAMESPACE, CONFIG_MAP, DEPLOYMENT]
    deployment_id = NamedResource("Deployment", "monitoring", "metrics")
    flaky_store.fail_once.add(deployment_id)
    with pytest.raises(ConflictError):
        await controller.apply("blueprint-system", "metrics", ManifestInfo(url=URL))

    fingerprint = checksum(yaml.dump_all(renderer.docs, sort_keys=False).encode())
    record = await controller.get_record("blueprint-system", "metrics")
    assert record
    assert record.checksum == first.checksum
    assert record.new_checksum == fingerprint

    record = await controller.apply("blueprint-system", "metrics", ManifestInfo(url=URL))
    assert record.checksum == fingerprint
    assert record.new_checksum == ""
    assert await flaky_store.get_object(deployment_id)


async def test_patch_change_changes_fingerprint(store: InMemoryStore) -> None:
    """Test changing a single patch produces a new fingerprint and re-applies."""
    controller = ManifestController(
        store, KustomizationRenderer(), ManifestControllerConfig(poll_interval=0.01)
    )

    def manifest(replicas: int) -> ManifestInfo:
        patch = Patch(
            patch=f"- op: replace\n  path: /spec/replicas\n  value: {replicas}\n",
            target=Selector(kind="Deployment", name="metrics"),
        )
        return ManifestInfo(url=URL, config=OverlayConfig(patches=[patch]))

    first = await controller.apply("blueprint-system", "metrics", manifest(1))
    again = await controller.apply("blueprint-system", "metrics", manifest(1))
    assert again.checksum == first.checksum

    changed = await controller.apply("blueprint-system", "metrics", manifest(2))
    assert changed.checksum != first.checksum
    config_map = await store.get_object(
        NamedResource("ConfigMap", "monitoring", "settings")
    )
    contents = yaml.safe_load(config_map["data"]["kustomization"])
    assert contents["patches"][0]["patch"].endswith("value: 2\n")
