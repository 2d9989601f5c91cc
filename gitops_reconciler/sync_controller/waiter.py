"""
Provides a utility for waiting on sync hooks to finish or fail.
"""

import asyncio
from dataclasses import dataclass
import logging
from typing import Any

from gitops_reconciler.cluster import ChangeEvent, ClusterObserver
from gitops_reconciler.exceptions import ClusterConnectionError, StaleCacheError
from gitops_reconciler.health import HealthStatus, assess
from gitops_reconciler.manifest import ResourceId, resource_version

from .operation import ResultPhase

_LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 300


def _version_key(version: str | None) -> int:
    try:
        return int(version or 0)
    except ValueError:
        return 0


def hook_phase(obj: dict[str, Any] | None) -> ResultPhase:
    """Return the phase of a hook object from its live state.

    Pods are judged by their phase alone since a running Pod is not yet done.
    Every other kind is done once it is Healthy or Degraded.
    """
    if obj is None:
        return ResultPhase.RUNNING
    if obj.get("kind") == "Pod":
        phase = (obj.get("status") or {}).get("phase")
        if phase == "Succeeded":
            return ResultPhase.SUCCEEDED
        if phase == "Failed":
            return ResultPhase.FAILED
        return ResultPhase.RUNNING
    health = assess(obj)
    if health == HealthStatus.HEALTHY:
        return ResultPhase.SUCCEEDED
    if health == HealthStatus.DEGRADED:
        return ResultPhase.FAILED
    return ResultPhase.RUNNING


@dataclass
class HookResolutionEvent:
    """Event representing the resolution of a single hook."""

    resource_id: ResourceId
    phase: ResultPhase
    message: str | None = None
    timed_out: bool = False

    @property
    def success(self) -> bool:
        """Return True if the hook finished successfully."""
        return self.phase == ResultPhase.SUCCEEDED


class HookWaiter:
    """
    Manages watching multiple hook objects for completion or failure using the
    ClusterObserver.
    """

    def __init__(
        self,
        observer: ClusterObserver,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        """
        Initialize the HookWaiter.

        Args:
            observer: The ClusterObserver used to watch hook objects.
            timeout_seconds: Timeout for each individual hook.
        """
        self._observer = observer
        self._timeout_seconds = timeout_seconds
        self._hooks: dict[ResourceId, str | None] = {}

    def add(self, resource_id: ResourceId, min_version: str | None = None) -> None:
        """Add a hook to watch.

        Only live objects at or after `min_version` are considered, so a
        previous run of the same hook is never mistaken for this one.
        """
        if resource_id in self._hooks:
            raise ValueError(f"Hook {resource_id} already added.")
        _LOGGER.debug("Adding hook %s (version >= %s)", resource_id, min_version)
        self._hooks[resource_id] = min_version

    def _check(self, resource_id: ResourceId, min_version: str | None) -> ResultPhase:
        obj = self._observer.get(resource_id)
        if obj is None or _version_key(resource_version(obj)) < _version_key(min_version):
            return ResultPhase.RUNNING
        return hook_phase(obj)

    async def _wait_single(
        self, resource_id: ResourceId, min_version: str | None
    ) -> HookResolutionEvent:
        changed = asyncio.Event()

        def callback(event: ChangeEvent) -> None:
            if event.id == resource_id:
                changed.set()

        remove_listener = self._observer.add_listener(callback)
        try:
            async with asyncio.timeout(self._timeout_seconds):
                while True:
                    changed.clear()
                    phase = self._check(resource_id, min_version)
                    if phase != ResultPhase.RUNNING:
                        break
                    await changed.wait()
        except TimeoutError:
            _LOGGER.warning(
                "Hook %s TIMEOUT after %s seconds.", resource_id, self._timeout_seconds
            )
            return HookResolutionEvent(
                resource_id=resource_id,
                phase=ResultPhase.FAILED,
                message=f"Timed out after {self._timeout_seconds}s",
                timed_out=True,
            )
        except (StaleCacheError, ClusterConnectionError) as err:
            _LOGGER.warning("Hook %s could not be observed: %s", resource_id, err)
            return HookResolutionEvent(
                resource_id=resource_id, phase=ResultPhase.FAILED, message=str(err)
            )
        finally:
            remove_listener()
        _LOGGER.debug("Hook %s resolved as %s.", resource_id, phase)
        message = "Hook failed" if phase == ResultPhase.FAILED else None
        return HookResolutionEvent(resource_id=resource_id, phase=phase, message=message)

    async def wait(self) -> dict[ResourceId, HookResolutionEvent]:
        """Wait for every added hook to reach a terminal phase or time out."""
        if not self._hooks:
            return {}
        events = await asyncio.gather(
            *(
                self._wait_single(resource_id, min_version)
                for resource_id, min_version in self._hooks.items()
            )
        )
        return {event.resource_id: event for event in events}
