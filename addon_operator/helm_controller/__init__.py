"""Release controller for chart add-ons installed through flux."""

from .controller import (
    ReleaseController,
    ReleaseStatus,
    determine_status,
    release_health,
    repo_name,
)

__all__ = [
    "ReleaseController",
    "ReleaseStatus",
    "determine_status",
    "release_health",
    "repo_name",
]
