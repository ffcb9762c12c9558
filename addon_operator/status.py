"""Health status reported on components."""

from enum import StrEnum
from dataclasses import dataclass, field

from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig

__all__ = [
    "StatusType",
    "Status",
]


class StatusType(StrEnum):
    """Health classification for a component."""

    AVAILABLE = "Available"
    PROGRESSING = "Progressing"
    DEGRADED = "Degraded"
    READY = "Ready"
    UNHEALTHY = "Unhealthy"


REASON_REQUIRED = (StatusType.UNHEALTHY, StatusType.DEGRADED)


@dataclass
class Status(DataClassDictMixin):
    """Health of a component with a reason and message for humans."""

    type: StatusType
    reason: str = ""
    message: str = ""
    last_transition_time: str | None = field(
        default=None, metadata=field_options(alias="lastTransitionTime")
    )

    def __post_init__(self) -> None:
        if self.type in REASON_REQUIRED and not self.reason:
            raise ValueError(f"Status {self.type} requires a reason")

    def same_state(self, other: "Status | None") -> bool:
        """Return True if both statuses report the same thing, ignoring time."""
        if other is None:
            return False
        return (self.type, self.reason, self.message) == (
            other.type,
            other.reason,
            other.message,
        )

    def __str__(self) -> str:
        """Return a string representation of the status."""
        if self.reason:
            return f"{self.type}: {self.reason}"
        return str(self.type)

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True
