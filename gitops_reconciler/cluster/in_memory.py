"""An in memory managed environment.

`InMemoryCluster` stores objects per destination and assigns increasing
resource versions on every change. It is used by the command line tool to
preview syncs and by tests, which use its hooks to simulate the behavior of a
real cluster:

- admission validators reject definitions outright
- apply listeners react to writes, e.g. to report a rollout or a finished Job
- `mutate`, `set_status` and `remove` change objects outside of the controller
- `disconnect` breaks watch streams and optionally makes a destination unreachable
"""

import asyncio
from collections import defaultdict, deque
from collections.abc import AsyncIterator, Callable, Iterable
import copy
import datetime
import logging
from typing import Any
import uuid

from gitops_reconciler.exceptions import (
    AdmissionError,
    ApplyError,
    ClusterConnectionError,
    ConflictError,
    ObjectNotFoundError,
)
from gitops_reconciler.manifest import ResourceId, resource_version
from gitops_reconciler.values import deep_merge

from .client import ClusterClient, EventType, WatchEvent

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "InMemoryCluster",
]

DEFAULT_HISTORY_LIMIT = 1000

AdmissionValidator = Callable[[dict[str, Any]], str | None]
"""Returns a rejection message, or None to admit the object."""

ApplyListener = Callable[["InMemoryCluster", ResourceId, dict[str, Any]], None]


class InMemoryCluster(ClusterClient):
    """A ClusterClient that keeps all objects in memory."""

    def __init__(self, history_limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        """Initialize InMemoryCluster."""
        self._objects: dict[ResourceId, dict[str, Any]] = {}
        self._versions: defaultdict[str, int] = defaultdict(int)
        self._history: defaultdict[str, deque[tuple[int, WatchEvent]]] = defaultdict(
            lambda: deque(maxlen=history_limit)
        )
        self._compacted: defaultdict[str, int] = defaultdict(int)
        self._watchers: defaultdict[str, list[asyncio.Queue[WatchEvent | None]]] = (
            defaultdict(list)
        )
        self._unreachable: set[str] = set()
        self._admission: list[AdmissionValidator] = []
        self._apply_listeners: list[ApplyListener] = []
        self._injected: defaultdict[ResourceId, list[ApplyError]] = defaultdict(list)
        self.writes: list[tuple[str, ResourceId]] = []
        """Log of ("apply" | "delete", id) for every write made through the client."""

    def _record(
        self, destination: str, event_type: EventType, obj: dict[str, Any]
    ) -> None:
        self._versions[destination] += 1
        version = self._versions[destination]
        obj.setdefault("metadata", {})["resourceVersion"] = str(version)
        event = WatchEvent(type=event_type, object=copy.deepcopy(obj))
        history = self._history[destination]
        if history.maxlen is not None and len(history) == history.maxlen:
            self._compacted[destination] = history[0][0]
        history.append((version, event))
        for queue in self._watchers[destination]:
            queue.put_nowait(event)

    def _store(self, resource_id: ResourceId, obj: dict[str, Any]) -> dict[str, Any]:
        existing = self._objects.get(resource_id)
        self._objects[resource_id] = obj
        self._record(
            resource_id.destination,
            EventType.MODIFIED if existing is not None else EventType.ADDED,
            obj,
        )
        return copy.deepcopy(obj)

    async def list(self, destination: str) -> tuple[list[dict[str, Any]], str]:
        if destination in self._unreachable:
            raise ClusterConnectionError(f"Destination {destination} is unreachable")
        objects = [
            copy.deepcopy(obj)
            for resource_id, obj in sorted(self._objects.items())
            if resource_id.destination == destination
        ]
        return objects, str(self._versions[destination])

    async def watch(
        self, destination: str, resource_version: str
    ) -> AsyncIterator[WatchEvent]:
        if destination in self._unreachable:
            raise ClusterConnectionError(f"Destination {destination} is unreachable")
        since = int(resource_version or 0)
        if since < self._compacted[destination]:
            raise ClusterConnectionError(
                f"Resource version {resource_version} of {destination} is too old"
            )
        queue: asyncio.Queue[WatchEvent | None] = asyncio.Queue()
        for version, event in self._history[destination]:
            if version > since:
                queue.put_nowait(event)
        self._watchers[destination].append(queue)
        try:
            while True:
                if (event := await queue.get()) is None:
                    raise ClusterConnectionError(f"Watch of {destination} disconnected")
                yield event
        finally:
            self._watchers[destination].remove(queue)

    async def get(self, resource_id: ResourceId) -> dict[str, Any] | None:
        return self.lookup(resource_id)

    async def apply(
        self,
        destination: str,
        manifest: dict[str, Any],
        expected_version: str | None = None,
    ) -> dict[str, Any]:
        await asyncio.sleep(0)
        resource_id = ResourceId.from_manifest(manifest, destination)
        if injected := self._injected.get(resource_id):
            raise injected.pop(0)
        for validator in self._admission:
            if (message := validator(manifest)) is not None:
                raise AdmissionError(str(resource_id), message)
        existing = self._objects.get(resource_id)
        if expected_version is not None:
            current = resource_version(existing) if existing is not None else None
            if current != expected_version:
                raise ConflictError(
                    str(resource_id),
                    f"expected version {expected_version}, found {current}",
                )
        obj = copy.deepcopy(manifest)
        metadata = obj.setdefault("metadata", {})
        if existing is not None:
            existing_metadata = existing.get("metadata") or {}
            metadata["uid"] = existing_metadata.get("uid")
            metadata["creationTimestamp"] = existing_metadata.get("creationTimestamp")
            generation = existing_metadata.get("generation", 1)
            if obj.get("spec") != existing.get("spec"):
                generation += 1
            metadata["generation"] = generation
            if "status" not in obj and "status" in existing:
                obj["status"] = copy.deepcopy(existing["status"])
        else:
            metadata["uid"] = str(uuid.uuid4())
            metadata["creationTimestamp"] = datetime.datetime.now(
                datetime.timezone.utc
            ).isoformat()
            metadata["generation"] = 1
        result = self._store(resource_id, obj)
        self.writes.append(("apply", resource_id))
        _LOGGER.debug("Applied %s at version %s", resource_id, resource_version(result))
        for listener in list(self._apply_listeners):
            listener(self, resource_id, copy.deepcopy(result))
        return result

    async def delete(self, resource_id: ResourceId) -> str | None:
        await asyncio.sleep(0)
        version = self.remove(resource_id)
        self.writes.append(("delete", resource_id))
        return version

    def lookup(self, resource_id: ResourceId) -> dict[str, Any] | None:
        """Return a copy of a stored object."""
        if (obj := self._objects.get(resource_id)) is None:
            return None
        return copy.deepcopy(obj)

    def objects(self, destination: str | None = None) -> dict[ResourceId, dict[str, Any]]:
        """Return copies of all stored objects, optionally for one destination."""
        return {
            resource_id: copy.deepcopy(obj)
            for resource_id, obj in sorted(self._objects.items())
            if destination is None or resource_id.destination == destination
        }

    def seed(self, destination: str, manifests: Iterable[dict[str, Any]]) -> None:
        """Store objects directly, as if they already existed."""
        for manifest in manifests:
            resource_id = ResourceId.from_manifest(manifest, destination)
            obj = copy.deepcopy(manifest)
            obj.setdefault("metadata", {}).setdefault("generation", 1)
            self._store(resource_id, obj)

    def mutate(self, resource_id: ResourceId, patch: dict[str, Any]) -> dict[str, Any]:
        """Deep merge a patch into an object, as an external actor would."""
        if (existing := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"{resource_id} not found")
        obj = deep_merge(copy.deepcopy(existing), patch)
        if obj.get("spec") != existing.get("spec"):
            metadata = obj.setdefault("metadata", {})
            metadata["generation"] = metadata.get("generation", 1) + 1
        return self._store(resource_id, obj)

    def set_status(
        self, resource_id: ResourceId, status: dict[str, Any]
    ) -> dict[str, Any]:
        """Replace the status of an object."""
        if (existing := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"{resource_id} not found")
        obj = copy.deepcopy(existing)
        obj["status"] = copy.deepcopy(status)
        return self._store(resource_id, obj)

    def remove(self, resource_id: ResourceId) -> str:
        """Delete an object, returning the resource version of the deletion."""
        if (obj := self._objects.pop(resource_id, None)) is None:
            raise ObjectNotFoundError(f"{resource_id} not found")
        self._record(resource_id.destination, EventType.DELETED, obj)
        return str(self._versions[resource_id.destination])

    def add_admission_validator(self, validator: AdmissionValidator) -> None:
        """Reject applies for which the validator returns a message."""
        self._admission.append(validator)

    def add_apply_listener(self, listener: ApplyListener) -> Callable[[], None]:
        """Invoke the listener after every successful apply."""

        def remove() -> None:
            if listener in self._apply_listeners:
                self._apply_listeners.remove(listener)

        self._apply_listeners.append(listener)
        return remove

    def inject_apply_error(self, resource_id: ResourceId, error: ApplyError) -> None:
        """Fail the next apply of an object with the error."""
        self._injected[resource_id].append(error)

    def disconnect(self, destination: str, unreachable: bool = False) -> None:
        """Break every watch stream of a destination.

        When `unreachable` is set, list and watch keep failing until `reconnect`.
        """
        _LOGGER.debug("Disconnecting watchers of %s", destination)
        if unreachable:
            self._unreachable.add(destination)
        for queue in self._watchers[destination]:
            queue.put_nowait(None)

    def reconnect(self, destination: str) -> None:
        """Make a destination reachable again."""
        self._unreachable.discard(destination)
