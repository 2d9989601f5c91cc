"""Self-Heal Loop.

On a timer, compares the live state of every Application with `selfHeal`
enabled against what was most recently applied to it, and starts a sync of
that applied state when a resource has drifted.

A pending sync (the desired revision differs from the applied one) is not
drift; it is left to the normal sync path.
"""

import asyncio
from collections.abc import Awaitable, Callable
import logging
from typing import Any

from .cluster import ClusterObserver
from .config import SelfHealConfig
from .diff_engine import classify_drift
from .exceptions import ClusterConnectionError, StaleCacheError
from .manifest import Application
from .resolver import ResolvedState
from .store import Store
from .sync_controller import AppliedState
from .task import get_task_service

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "SelfHealLoop",
]

HealCallback = Callable[[str, ResolvedState], Awaitable[Any]]


def destinations_of(app: Application, resolved: ResolvedState) -> list[str]:
    """Return every destination an Application's resources are applied to."""
    found = {resource.id.destination for resource in resolved.resources}
    found.add(app.destination.server)
    return sorted(found)


class SelfHealLoop:
    """Periodically reverts drift of live objects from their applied state."""

    def __init__(
        self,
        store: Store,
        observer: ClusterObserver,
        config: SelfHealConfig,
        heal: HealCallback,
        busy: Callable[[str], bool],
    ) -> None:
        """Initialize SelfHealLoop.

        Args:
            store: Holds the Applications and their applied and target state
            observer: Provides the live state
            config: The configuration for the loop
            heal: Starts a sync of an Application to a resolved state
            busy: Returns True while an Application has a non-terminal operation
        """
        self._store = store
        self._observer = observer
        self._config = config
        self._heal = heal
        self._busy = busy
        self._shutdown_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    async def check_once(self) -> list[str]:
        """Check every Application once, returning the names that were healed."""
        healed = []
        for app in self._store.list_applications():
            if not app.sync_policy.self_heal or self._busy(app.name):
                continue
            if (applied := self._store.get_artifact(app.name, AppliedState)) is None:
                continue
            target = self._store.get_artifact(app.name, ResolvedState)
            if target is not None and target.revision_key != applied.resolved.revision_key:
                _LOGGER.debug("Skipping %s with a pending sync", app.name)
                continue
            try:
                view = self._observer.view(*destinations_of(app, applied.resolved))
                drifted = classify_drift(applied, view, app.sync_policy)
            except (StaleCacheError, ClusterConnectionError) as err:
                _LOGGER.debug("Skipping %s: %s", app.name, err)
                continue
            if not drifted:
                continue
            _LOGGER.info(
                "Application %s drifted (%s), healing",
                app.name,
                ", ".join(str(resource_id) for resource_id in drifted),
            )
            await self._heal(app.name, applied.resolved)
            healed.append(app.name)
        return healed

    async def run(self) -> None:
        """Run checks at the configured interval until closed."""
        _LOGGER.info("Starting self-heal loop (interval %ss)", self._config.interval)
        while not self._shutdown_event.is_set():
            await self.check_once()
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=self._config.interval
                )
            except TimeoutError:
                pass
        _LOGGER.info("Self-heal loop stopped")

    def start(self) -> None:
        """Start the loop as a background task."""
        if self._task is None:
            self._shutdown_event.clear()
            self._task = get_task_service().create_background_task(
                self.run(), name="self-heal"
            )

    async def close(self) -> None:
        """Stop the loop and wait for it to exit."""
        if self._task is None:
            return
        self._shutdown_event.set()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
