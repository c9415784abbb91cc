"""Exception hierarchy shared by the isengard modules."""

from typing import Optional


class IsengardError(Exception):
    """Base class for all isengard errors."""


class EngineError(IsengardError):
    """A Docker Engine API call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RegistryError(IsengardError):
    """The registry could not provide a verifiable digest.

    Always recoverable: callers fall back to pull-and-compare.
    """


class UpdateCheckError(IsengardError):
    """Deciding whether a container is stale failed (the pull failed)."""


class RecreateError(IsengardError):
    """A container could not be recreated against its new image."""
