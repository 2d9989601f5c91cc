"""Cluster State Observer.

The observer keeps a cache of live objects per destination. Each destination
is populated with a `list` and then kept current with a continuous `watch`.
When the watch stream disconnects the destination is relisted with backoff and
the differences found are reported as change events, including deletions that
happened while disconnected.

Reads never silently serve stale data: once a destination has been
disconnected for longer than `max_staleness` reads raise `StaleCacheError`
until a relist succeeds.
"""

import asyncio
from collections.abc import AsyncGenerator, Callable
import copy
from dataclasses import dataclass, field
import logging
import time
from typing import Any

from gitops_reconciler.backoff import Backoff
from gitops_reconciler.config import ObserverConfig
from gitops_reconciler.exceptions import (
    ClusterConnectionError,
    InputException,
    StaleCacheError,
)
from gitops_reconciler.manifest import ResourceId, owner_of, resource_version
from gitops_reconciler.task import get_task_service

from .client import ClusterClient, EventType, WatchEvent

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "ClusterObserver",
    "ChangeEvent",
    "LiveView",
]


def _version_key(version: str | None) -> int:
    try:
        return int(version or 0)
    except ValueError:
        return 0


@dataclass(frozen=True)
class ChangeEvent:
    """A change to a cached live object."""

    type: EventType
    id: ResourceId
    object: dict[str, Any]
    """The object after the change, or its last known state when deleted."""


@dataclass
class _DestinationCache:
    destination: str
    objects: dict[ResourceId, dict[str, Any]] = field(default_factory=dict)
    resource_version: str = "0"
    synced: bool = False
    connected: bool = False
    disconnected_at: float | None = None
    updated: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None


class LiveView:
    """Read-only view of the live state of the destinations of one Application."""

    def __init__(self, observer: "ClusterObserver", destinations: list[str]) -> None:
        """Initialize LiveView."""
        self._observer = observer
        self.destinations = destinations

    def get(self, resource_id: ResourceId) -> dict[str, Any] | None:
        """Return a live object or None if it does not exist.

        Raises:
            StaleCacheError: If the cache can't be trusted.
        """
        return self._observer.get(resource_id)

    def owned(self, app_name: str) -> dict[ResourceId, dict[str, Any]]:
        """Return the live objects carrying the ownership label of an Application."""
        return {
            resource_id: obj
            for destination in self.destinations
            for resource_id, obj in self._observer.objects(destination).items()
            if owner_of(obj) == app_name
        }


class ClusterObserver:
    """Maintains a cache of live state for every observed destination."""

    def __init__(self, client: ClusterClient, config: ObserverConfig) -> None:
        """Initialize ClusterObserver."""
        self._client = client
        self._config = config
        self._caches: dict[str, _DestinationCache] = {}
        self._listeners: list[Callable[[ChangeEvent], None]] = []

    @property
    def client(self) -> ClusterClient:
        return self._client

    async def observe(self, destination: str) -> None:
        """Start observing a destination.

        The initial list is performed before returning. If it fails the
        destination is retried in the background and reads fail until a list
        succeeds.
        """
        if destination in self._caches:
            return
        cache = _DestinationCache(destination=destination)
        self._caches[destination] = cache
        try:
            await self._relist(cache)
        except ClusterConnectionError as err:
            _LOGGER.warning("Initial list of %s failed: %s", destination, err)
            cache.disconnected_at = time.monotonic()
        cache.task = get_task_service().create_background_task(
            self._run(cache), name=f"observer-{destination}"
        )

    def _cache(self, destination: str) -> _DestinationCache:
        if (cache := self._caches.get(destination)) is None:
            raise ClusterConnectionError(f"Destination {destination} is not observed")
        return cache

    def _check_fresh(self, cache: _DestinationCache) -> None:
        if not cache.synced:
            raise StaleCacheError(
                f"Live state of {cache.destination} has not been synchronized"
            )
        if cache.connected or cache.disconnected_at is None:
            return
        age = time.monotonic() - cache.disconnected_at
        if age > self._config.max_staleness:
            raise StaleCacheError(
                f"Live state of {cache.destination} is stale ({age:0.0f}s since last sync)"
            )

    def is_fresh(self, destination: str) -> bool:
        """Return True if reads of a destination would succeed."""
        try:
            self._check_fresh(self._cache(destination))
        except (StaleCacheError, ClusterConnectionError):
            return False
        return True

    def get(self, resource_id: ResourceId) -> dict[str, Any] | None:
        """Return a copy of a live object or None if it does not exist."""
        cache = self._cache(resource_id.destination)
        self._check_fresh(cache)
        if (obj := cache.objects.get(resource_id)) is None:
            return None
        return copy.deepcopy(obj)

    def objects(self, destination: str) -> dict[ResourceId, dict[str, Any]]:
        """Return copies of every live object of a destination."""
        cache = self._cache(destination)
        self._check_fresh(cache)
        return {
            resource_id: copy.deepcopy(obj)
            for resource_id, obj in sorted(cache.objects.items())
        }

    def view(self, *destinations: str) -> LiveView:
        """Return the read view of one or more destinations."""
        for destination in destinations:
            self._cache(destination)
        return LiveView(self, sorted(set(destinations)))

    def add_listener(self, callback: Callable[[ChangeEvent], None]) -> Callable[[], None]:
        """Register a callback for change events, returning a remove function."""

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        self._listeners.append(callback)
        return remove

    def _fire_event(self, event: ChangeEvent) -> None:
        for cb in list(self._listeners):
            try:
                cb(event)
            except Exception:
                _LOGGER.exception("Observer listener callback failed for %s", event.id)

    async def subscribe(self) -> AsyncGenerator[ChangeEvent, None]:
        """Yield every change event until the generator is closed."""
        queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        remove_listener = self.add_listener(queue.put_nowait)
        try:
            while True:
                yield await queue.get()
        finally:
            _LOGGER.debug("Cleaning up listener for subscription")
            remove_listener()

    async def wait_for_version(
        self, destination: str, version: str | None, timeout: float
    ) -> bool:
        """Wait until the cache has observed a resource version.

        Returns False if the version was not observed within the timeout.
        """
        cache = self._cache(destination)
        target = _version_key(version)
        try:
            async with asyncio.timeout(timeout):
                while _version_key(cache.resource_version) < target:
                    await cache.updated.wait()
        except TimeoutError:
            _LOGGER.warning(
                "Live state of %s did not reach version %s within %ss",
                destination,
                version,
                timeout,
            )
            return False
        return True

    def _notify(self, cache: _DestinationCache) -> None:
        cache.updated.set()
        cache.updated = asyncio.Event()

    def _handle(self, cache: _DestinationCache, event: WatchEvent) -> None:
        try:
            resource_id = ResourceId.from_manifest(event.object, cache.destination)
        except InputException as err:
            _LOGGER.warning("Ignoring malformed object in %s: %s", cache.destination, err)
            return
        version = resource_version(event.object)
        if _version_key(version) > _version_key(cache.resource_version):
            cache.resource_version = version or cache.resource_version
        if event.type == EventType.DELETED:
            cache.objects.pop(resource_id, None)
        else:
            cache.objects[resource_id] = event.object
        _LOGGER.debug("Observed %s %s at version %s", event.type, resource_id, version)
        self._fire_event(ChangeEvent(type=event.type, id=resource_id, object=event.object))
        self._notify(cache)

    async def _relist(self, cache: _DestinationCache) -> None:
        objects, version = await self._client.list(cache.destination)
        current: dict[ResourceId, dict[str, Any]] = {}
        for obj in objects:
            try:
                current[ResourceId.from_manifest(obj, cache.destination)] = obj
            except InputException as err:
                _LOGGER.warning(
                    "Ignoring malformed object in %s: %s", cache.destination, err
                )
        events: list[ChangeEvent] = []
        if cache.synced:
            for resource_id, obj in current.items():
                if (previous := cache.objects.get(resource_id)) is None:
                    events.append(ChangeEvent(EventType.ADDED, resource_id, obj))
                elif resource_version(previous) != resource_version(obj):
                    events.append(ChangeEvent(EventType.MODIFIED, resource_id, obj))
            for resource_id, previous in cache.objects.items():
                if resource_id not in current:
                    events.append(ChangeEvent(EventType.DELETED, resource_id, previous))
        cache.objects = current
        cache.resource_version = version
        cache.synced = True
        cache.connected = True
        cache.disconnected_at = None
        _LOGGER.info(
            "Listed %d objects in %s at version %s (%d changes)",
            len(current),
            cache.destination,
            version,
            len(events),
        )
        for event in events:
            self._fire_event(event)
        self._notify(cache)

    async def _run(self, cache: _DestinationCache) -> None:
        backoff = Backoff(self._config.relist_backoff)
        while True:
            if cache.connected:
                try:
                    async for event in self._client.watch(
                        cache.destination, cache.resource_version
                    ):
                        self._handle(cache, event)
                    raise ClusterConnectionError(
                        f"Watch of {cache.destination} closed"
                    )
                except ClusterConnectionError as err:
                    _LOGGER.warning("Watch of %s failed: %s", cache.destination, err)
                    cache.connected = False
                    cache.disconnected_at = time.monotonic()
            try:
                await self._relist(cache)
            except ClusterConnectionError as err:
                delay = backoff.failure()
                _LOGGER.warning(
                    "Relist of %s failed (attempt %d), retrying in %0.1fs: %s",
                    cache.destination,
                    backoff.failures,
                    delay,
                    err,
                )
                await asyncio.sleep(delay)
            else:
                backoff.reset()

    async def close(self) -> None:
        """Stop observing every destination."""
        tasks = [cache.task for cache in self._caches.values() if cache.task]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._caches.clear()
