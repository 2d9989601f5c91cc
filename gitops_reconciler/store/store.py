"""Store module for holding Applications and the state derived for them."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from typing import Any, TypeVar

from gitops_reconciler.manifest import Application

from .artifact import Artifact
from .status import ApplicationStatus

S = TypeVar("S", bound=Artifact)


class StoreEvent(str, Enum):
    """Enum for store events."""

    APPLICATION_ADDED = "application_added"
    APPLICATION_REMOVED = "application_removed"
    STATUS_UPDATED = "status_updated"
    ARTIFACT_UPDATED = "artifact_updated"


class Store(ABC):
    """Abstract base class for the Application store with listener support.

    All state is keyed by Application name. The store holds only derived
    bookkeeping: the Application definitions, their status and the artifacts
    produced for them by each controller.
    """

    @abstractmethod
    def add_application(self, app: Application) -> None:
        """Add or replace an Application."""

    @abstractmethod
    def get_application(self, name: str) -> Application | None:
        """Retrieve an Application by name."""

    @abstractmethod
    def remove_application(self, name: str) -> None:
        """Remove an Application and everything recorded for it."""

    @abstractmethod
    def list_applications(self) -> list[Application]:
        """List all Applications in the store."""

    @abstractmethod
    def update_status(self, name: str, status: ApplicationStatus) -> None:
        """Replace the status of an Application."""

    @abstractmethod
    def get_status(self, name: str) -> ApplicationStatus | None:
        """Retrieve the status of an Application."""

    @abstractmethod
    def set_artifact(self, name: str, artifact: Artifact) -> None:
        """Store an artifact for an Application, replacing one of the same type."""

    @abstractmethod
    def get_artifact(self, name: str, cls: type[S]) -> S | None:
        """Retrieve the artifact of a type for an Application."""

    @abstractmethod
    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[str, Any], None],
        flush: bool = False,
    ) -> Callable[[], None]:
        """Register a callback for a specific event.

        Callbacks receive the Application name and the added or updated
        object. When `flush` is set the callback is invoked for existing state.

        Returns a callable that can be called to remove the listener.
        """
