"""Module for in memory Application store."""

from collections import defaultdict
from collections.abc import Callable
import logging
from typing import Any, DefaultDict, TypeVar

from gitops_reconciler.manifest import Application

from .artifact import Artifact
from .status import ApplicationStatus
from .store import Store, StoreEvent

_LOGGER = logging.getLogger(__name__)

S = TypeVar("S", bound=Artifact)


class InMemoryStore(Store):
    """In-memory implementation of the Store interface.

    Artifacts are keyed by Application name and artifact type so each
    controller owns exactly one slot per Application.
    """

    def __init__(self) -> None:
        """Initialize the InMemoryStore."""
        self._applications: dict[str, Application] = {}
        self._status: dict[str, ApplicationStatus] = {}
        self._artifacts: dict[tuple[str, type[Artifact]], Artifact] = {}
        self._listeners: DefaultDict[StoreEvent, list[Callable[..., None]]] = (
            defaultdict(list)
        )

    def add_application(self, app: Application) -> None:
        """Add or replace an Application."""
        if (existing := self._applications.get(app.name)) is not None:
            if existing == app:
                _LOGGER.debug("Application %s unchanged, skipping", app.name)
                return
            _LOGGER.debug("Updating existing Application %s in store", app.name)
        else:
            _LOGGER.debug("Adding Application %s to store", app.name)
        self._applications[app.name] = app
        self._fire_event(StoreEvent.APPLICATION_ADDED, app.name, app)

    def get_application(self, name: str) -> Application | None:
        """Retrieve an Application by name."""
        return self._applications.get(name)

    def remove_application(self, name: str) -> None:
        """Remove an Application and everything recorded for it."""
        if (app := self._applications.pop(name, None)) is None:
            return
        self._status.pop(name, None)
        for key in [key for key in self._artifacts if key[0] == name]:
            del self._artifacts[key]
        self._fire_event(StoreEvent.APPLICATION_REMOVED, name, app)

    def list_applications(self) -> list[Application]:
        """List all Applications in the store."""
        return list(self._applications.values())

    def update_status(self, name: str, status: ApplicationStatus) -> None:
        """Replace the status of an Application."""
        if name not in self._applications:
            raise ValueError(f"Application {name} is not in the store")
        if status.error:
            _LOGGER.error("Application %s status %s", name, status)
        else:
            _LOGGER.debug("Updating status for Application %s to %s", name, status)
        self._status[name] = status
        self._fire_event(StoreEvent.STATUS_UPDATED, name, status)

    def get_status(self, name: str) -> ApplicationStatus | None:
        """Retrieve the status of an Application."""
        return self._status.get(name)

    def set_artifact(self, name: str, artifact: Artifact) -> None:
        """Store an artifact for an Application, replacing one of the same type."""
        if not isinstance(artifact, Artifact):
            raise ValueError(
                f"Artifact/set {name} is not of type {Artifact.__name__} (was {artifact.__class__.__name__})"
            )
        self._artifacts[(name, type(artifact))] = artifact
        self._fire_event(StoreEvent.ARTIFACT_UPDATED, name, artifact)

    def get_artifact(self, name: str, cls: type[S]) -> S | None:
        """Retrieve the artifact of a type for an Application."""
        artifact = self._artifacts.get((name, cls))
        if artifact is not None and not isinstance(artifact, cls):
            raise ValueError(
                f"Artifact/get {name} is not of type {cls.__name__} (was {artifact.__class__.__name__})"
            )
        return artifact

    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[str, Any], None],
        flush: bool = False,
    ) -> Callable[[], None]:
        """Register a callback for a specific event."""

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        self._listeners[event].append(callback)

        if flush:
            _LOGGER.debug("Flushing objects for event type %s", event)
            if event == StoreEvent.APPLICATION_ADDED:
                for name, app in list(self._applications.items()):
                    callback(name, app)
            elif event == StoreEvent.STATUS_UPDATED:
                for name, status in list(self._status.items()):
                    callback(name, status)
            elif event == StoreEvent.ARTIFACT_UPDATED:
                for (name, _), artifact in list(self._artifacts.items()):
                    callback(name, artifact)

        return remove

    def _fire_event(self, event: StoreEvent, *args: Any) -> None:
        for cb in list(self._listeners[event]):
            try:
                cb(*args)
            except Exception:
                _LOGGER.exception("Store listener callback failed for event %s", event)
