"""Exceptions related to gitops-reconciler."""

__all__ = [
    "ReconcilerException",
    "InputException",
    "FetchError",
    "ResolutionError",
    "CyclicReferenceError",
    "SchemaError",
    "ApplyError",
    "ConflictError",
    "RateLimitedError",
    "AdmissionError",
    "HookFailure",
    "ClusterConnectionError",
    "StaleCacheError",
    "ObjectNotFoundError",
    "ApplicationNotFoundError",
    "RevisionNotFoundError",
]


class ReconcilerException(Exception):
    """Generic base exception used for this library."""


class InputException(ReconcilerException):
    """Raised when the input files or values are not formatted as expected."""


class FetchError(ReconcilerException):
    """Raised when a desired state source could not be reached or read."""

    def __init__(
        self, url: str, message: str, target_revision: str | None = None
    ) -> None:
        super().__init__(f"Failed to fetch {url}: {message}")
        self.url = url
        self.message = message
        self.target_revision = target_revision
        """The revision of the source being followed, when known."""


class ResolutionError(InputException):
    """Raised when a revision could not be expanded into concrete resources."""


class SchemaError(ResolutionError):
    """Raised when a resource definition fails validation for its kind."""


class CyclicReferenceError(ResolutionError):
    """Raised when an Application composition graph refers back to itself."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Cyclic Application reference: {' -> '.join(cycle)}")
        self.cycle = cycle


class ApplyError(ReconcilerException):
    """Raised when the managed environment rejects a write.

    Transient errors may succeed when retried, permanent errors will not.
    """

    transient: bool = False

    def __init__(self, resource: str, message: str | None) -> None:
        super().__init__(f"Apply of {resource} failed: {message or 'Unknown error'}")
        self.resource = resource
        self.message = message


class ConflictError(ApplyError):
    """Raised when a write races with a newer version of the live object."""

    transient = True


class RateLimitedError(ApplyError):
    """Raised when the managed environment throttles writes."""

    transient = True


class AdmissionError(ApplyError):
    """Raised when the managed environment rejects a definition outright."""

    transient = False


class HookFailure(ReconcilerException):
    """Raised when a sync hook ends in a failed state."""

    def __init__(self, hook: str, message: str | None, blocking: bool = True) -> None:
        super().__init__(f"Hook {hook} failed: {message or 'Unknown error'}")
        self.hook = hook
        self.message = message
        self.blocking = blocking


class ClusterConnectionError(ReconcilerException):
    """Raised when the list/watch connection to the managed environment drops."""


class StaleCacheError(ReconcilerException):
    """Raised when the live cache is older than the allowed staleness window."""


class ObjectNotFoundError(ReconcilerException):
    """Raised when an object is not found in the store."""


class ApplicationNotFoundError(ObjectNotFoundError):
    """Raised when an operation names an Application that is not registered."""


class RevisionNotFoundError(ObjectNotFoundError):
    """Raised when a rollback target is not present in the revision history."""
