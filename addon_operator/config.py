"""Configuration objects for addon-operator."""

from dataclasses import dataclass, field

from .manifest import SYSTEM_NAMESPACE


@dataclass
class ManifestControllerConfig:
    """Configuration for the ManifestController."""

    poll_interval: float = 5.0
    """Seconds between health checks while waiting for a manifest."""

    operation_timeout: float = 60.0
    """Deadline in seconds for rendering and for each store operation group."""


@dataclass
class ReleaseControllerConfig:
    """Configuration for the ReleaseController."""

    system_namespace: str = SYSTEM_NAMESPACE
    """Namespace holding the HelmRepository and HelmRelease objects."""

    repository_interval: str = "5m"
    """How often flux refreshes the chart repository index."""

    release_interval: str = "30s"
    """How often flux checks the release for drift."""

    install_retries: int = 3
    upgrade_retries: int = 3


@dataclass
class ControllerConfig:
    """Configuration shared by the Blueprint and Addon controllers."""

    system_namespace: str = SYSTEM_NAMESPACE
    """Namespace holding the Addon objects."""

    operation_timeout: float = 60.0
    """Deadline in seconds applied to each component operation."""

    manifest: ManifestControllerConfig = field(default_factory=ManifestControllerConfig)
    release: ReleaseControllerConfig = field(default_factory=ReleaseControllerConfig)
