"""Blueprint controller reconciling every component kind of a composite."""

from .controller import BlueprintController

__all__ = ["BlueprintController"]
