"""Addon controller dispatching add-ons to the release or manifest controller."""

from .controller import AddonController, addon_status

__all__ = [
    "AddonController",
    "addon_status",
]
