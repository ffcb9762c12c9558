"""Exceptions related to addon-operator."""

__all__ = [
    "AddonException",
    "InputException",
    "CommandException",
    "KustomizeException",
    "RenderException",
    "FetchException",
    "StoreException",
    "ObjectNotFoundError",
    "AlreadyExistsError",
    "ConflictError",
    "AwaitTimeoutError",
]


class AddonException(Exception):
    """Generic base exception used for this library."""


class InputException(AddonException):
    """Raised when the input objects or values are not formatted as expected."""


class CommandException(AddonException):
    """Raised when there is a failure running a subcommand."""


class KustomizeException(CommandException):
    """Raised when there is a failure running a kustomize command."""


class RenderException(AddonException):
    """Raised when a manifest source could not be rendered into objects."""


class FetchException(RenderException):
    """Raised when a manifest could not be downloaded."""

    def __init__(self, url: str, message: str) -> None:
        super().__init__(f"Failed to fetch {url}: {message}")
        self.url = url


class StoreException(AddonException):
    """Base exception for errors returned by the object store."""


class ObjectNotFoundError(StoreException):
    """Raised when an object is not found in the store."""


class AlreadyExistsError(StoreException):
    """Raised when creating an object that is already in the store."""


class ConflictError(StoreException):
    """Raised when an update carries a stale resource version."""


class AwaitTimeoutError(AddonException):
    """Raised when a component did not become available in time."""

    def __init__(self, resource_name: str, timeout: float) -> None:
        super().__init__(
            f"Timed out after {timeout:g}s waiting for {resource_name} to become available"
        )
        self.resource_name = resource_name
        self.timeout = timeout

