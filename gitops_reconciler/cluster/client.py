"""Interface to the managed environment that resources are applied to."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from gitops_reconciler.manifest import ResourceId

__all__ = [
    "ClusterClient",
    "EventType",
    "WatchEvent",
]


class EventType(StrEnum):
    """Type of change reported by a watch stream."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class WatchEvent:
    """A change to one live object."""

    type: EventType
    object: dict[str, Any]
    """The object after the change, or its last state when deleted."""


class ClusterClient(ABC):
    """Reads and writes resource objects in one or more destinations.

    Objects are kubernetes style dictionaries. The server assigns
    `metadata.resourceVersion` on every write; versions increase monotonically
    within a destination.
    """

    @abstractmethod
    async def list(self, destination: str) -> tuple[list[dict[str, Any]], str]:
        """Return every object in a destination and the current resource version.

        Raises:
            ClusterConnectionError: If the destination could not be reached.
        """

    @abstractmethod
    def watch(self, destination: str, resource_version: str) -> AsyncIterator[WatchEvent]:
        """Stream changes that happened after a resource version.

        Raises:
            ClusterConnectionError: When the stream is disconnected.
        """

    @abstractmethod
    async def get(self, resource_id: ResourceId) -> dict[str, Any] | None:
        """Return a live object or None if it does not exist."""

    @abstractmethod
    async def apply(
        self,
        destination: str,
        manifest: dict[str, Any],
        expected_version: str | None = None,
    ) -> dict[str, Any]:
        """Create or replace an object and return the stored object.

        When `expected_version` is set the write only succeeds if the live
        object is still at that version.

        Raises:
            ConflictError: If the live object changed since `expected_version`.
            RateLimitedError: If the destination throttled the write.
            AdmissionError: If the destination rejected the definition.
        """

    @abstractmethod
    async def delete(self, resource_id: ResourceId) -> str | None:
        """Delete an object, returning the resource version of the deletion.

        Raises:
            ObjectNotFoundError: If the object does not exist.
        """
