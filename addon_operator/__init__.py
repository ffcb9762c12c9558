"""
.. include:: ../README.md
"""

__all__ = [
    "manifest",
    "status",
    "store",
    "reconciler",
    "manifest_controller",
    "helm_controller",
    "addon_controller",
    "blueprint_controller",
    "kustomize",
    "exceptions",
]
