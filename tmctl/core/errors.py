"""Exceptions raised by tmctl.

Errors coming back from the Kubernetes API are not wrapped: they surface as
``kubernetes.client.rest.ApiException`` exactly as the client raised them.
"""

from typing import Optional


class TmctlError(Exception):
    """Base class for tmctl errors."""


class ManifestNotFound(TmctlError):
    """Manifest location is neither a local file nor a reachable URL."""

    def __init__(self, location: str, reason: str = "") -> None:
        self.location = location
        message = f"manifest {location!r} not found"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class ManifestParseError(TmctlError):
    """Manifest content does not decode into the expected object."""


class SchemaMismatch(TmctlError):
    """Object ``kind`` or ``apiVersion`` differs from the expected value."""

    def __init__(self, field: str, expected: str, actual: Optional[str]) -> None:
        self.field = field
        self.expected = expected
        self.actual = actual
        super().__init__(f"object {field} mismatch: got {actual!r}, want {expected!r}")


class InvalidDescriptor(TmctlError):
    """Deployment parameters are incomplete or malformed."""


class TaskRunFailed(TmctlError):
    """A TaskRun finished with a failed ``Succeeded`` condition."""

    def __init__(self, name: str, message: str) -> None:
        self.name = name
        super().__init__(f"taskrun {name!r} failed: {message}")


class WaitTimeout(TmctlError):
    """Waiting for a resource to finish took longer than allowed."""
