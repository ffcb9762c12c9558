"""Library for rendering manifest sources with kustomize.

A manifest add-on points at a URL and optionally carries patches and image
substitutions. The renderer writes a `kustomization.yaml` that references the
source, adds the patches and images, and runs `kustomize build` on it:

```python
from addon_operator import kustomize

renderer = kustomize.KustomizeRenderer()
data = await renderer.render("https://example.com/app.yaml", patches, images)
for doc in kustomize.parse_documents(data):
    print(f"Found object {doc['apiVersion']} {doc['kind']}")
```

A URL to a plain YAML or JSON file is downloaded first and handed to
kustomize as a local file. Any other URL, such as a remote kustomization
directory, is passed through for kustomize to resolve.
"""

from abc import ABC, abstractmethod
import logging
from pathlib import Path
import tempfile
from typing import Any
from urllib.parse import urlparse

import aiofiles
import yaml

from .command import Command, Task, run_piped
from .exceptions import KustomizeException
from .fetch import ManifestFetcher
from .manifest import Image, Patch

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "OverlayRenderer",
    "KustomizeRenderer",
    "kustomization",
    "parse_documents",
]

KUSTOMIZE_BIN = "kustomize"
KUSTOMIZATION_FILE = "kustomization.yaml"
SOURCE_FILE = "source.yaml"
KUSTOMIZE_API_VERSION = "kustomize.config.k8s.io/v1beta1"

_PLAIN_SUFFIXES = (".yaml", ".yml", ".json")


class OverlayRenderer(ABC):
    """Expands a manifest source plus overlays into object documents."""

    @abstractmethod
    async def render(
        self, url: str, patches: list[Patch], images: list[Image]
    ) -> bytes:
        """Return the rendered documents.

        The output must be identical for identical inputs.
        """


def is_plain_manifest(url: str) -> bool:
    """Return True if the URL points at a single YAML or JSON file over http."""
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and parsed.path.endswith(
        _PLAIN_SUFFIXES
    )


def kustomization(
    resources: list[str], patches: list[Patch], images: list[Image]
) -> dict[str, Any]:
    """Build the contents of a kustomization.yaml."""
    doc: dict[str, Any] = {
        "apiVersion": KUSTOMIZE_API_VERSION,
        "kind": "Kustomization",
        "resources": resources,
    }
    if patches:
        doc["patches"] = [patch.to_dict() for patch in patches]
    if images:
        doc["images"] = [image.to_dict() for image in images]
    return doc


class KustomizeBuild(Task):
    """A task that issues a kustomize build command."""

    def __init__(self, path: Path) -> None:
        """Initialize KustomizeBuild."""
        self._path = path

    async def run(self, stdin: bytes | None = None) -> bytes:
        """Run the task."""
        args = [
            KUSTOMIZE_BIN,
            "build",
            "--load-restrictor",
            "LoadRestrictionsNone",
            str(self._path),
        ]
        return await Command(args, exc=KustomizeException).run()

    def __str__(self) -> str:
        """Render as a debug string."""
        return f"kustomize build {self._path}"


class KustomizeRenderer(OverlayRenderer):
    """Renders manifests by running `kustomize build` in a scratch directory."""

    def __init__(
        self, fetcher: ManifestFetcher | None = None, timeout: float = 60.0
    ) -> None:
        """Initialize KustomizeRenderer."""
        self._fetcher = fetcher or ManifestFetcher(timeout=timeout)
        self._timeout = timeout

    async def render(
        self, url: str, patches: list[Patch], images: list[Image]
    ) -> bytes:
        """Render the manifest source with overlays applied."""
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = Path(tmp_dir)
            resource = url
            if is_plain_manifest(url):
                content = await self._fetcher.fetch(url)
                async with aiofiles.open(path / SOURCE_FILE, mode="wb") as f:
                    await f.write(content)
                resource = SOURCE_FILE
            contents = kustomization([resource], patches, images)
            async with aiofiles.open(path / KUSTOMIZATION_FILE, mode="w") as f:
                await f.write(yaml.dump(contents, sort_keys=False))
            _LOGGER.debug("Rendering %s with kustomize", url)
            return await run_piped([KustomizeBuild(path)], self._timeout)


def parse_documents(data: bytes) -> list[dict[str, Any]]:
    """Parse rendered output into a list of object documents."""
    try:
        docs = [doc for doc in yaml.safe_load_all(data) if doc is not None]
    except yaml.YAMLError as err:
        raise KustomizeException(f"Unable to parse rendered manifests: {err}") from err
    for doc in docs:
        if not isinstance(doc, dict):
            raise KustomizeException(f"Rendered document is not an object: {doc}")
    return docs
