"""Source Controller module.

This controller polls the version-controlled sources of all Applications for
new revisions. It provides downstream controllers with immutable
`RevisionSnapshot` artifacts through listener callbacks.

Key Concepts:
    - Source: a git repository (remote, local working tree or in memory)
    - SourceWatcher: tracks the last observed commit of one target revision
    - RevisionSnapshot: the repository contents at one commit

Every watcher is polled independently: a failing source is retried with
exponential backoff and never delays the polling of other sources.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
import logging
import time

from gitops_reconciler.backoff import Backoff
from gitops_reconciler.config import SourceControllerConfig
from gitops_reconciler.exceptions import FetchError
from gitops_reconciler.task import get_task_service

from .artifact import RevisionSnapshot
from .source import SourceRegistry
from .watcher import SourceWatcher

_LOGGER = logging.getLogger(__name__)


@dataclass
class SourceEvent:
    """A new revision or a persistent failure of one source."""

    key: tuple[str, str]
    """The (repository URL, target revision) that was polled."""

    snapshot: RevisionSnapshot | None = None
    """The new revision, if any."""

    error: FetchError | None = None
    """Set once failures exceed the threshold, cleared by a later event."""

    recovered: bool = False
    """True when a source that had surfaced an error succeeded again."""


@dataclass
class _WatchState:
    watcher: SourceWatcher
    backoff: Backoff
    next_poll: float = 0.0
    surfaced: bool = False


class SourceController:
    """Controller polling desired state sources for new revisions."""

    def __init__(
        self, registry: SourceRegistry, config: SourceControllerConfig
    ) -> None:
        """Initialize the source controller.

        Args:
            registry: Finds the source for a repository URL
            config: The configuration for the controller
        """
        self._registry = registry
        self._config = config
        self._watches: dict[tuple[str, str], _WatchState] = {}
        self._listeners: list[Callable[[SourceEvent], None]] = []
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def registry(self) -> SourceRegistry:
        return self._registry

    def add_listener(self, callback: Callable[[SourceEvent], None]) -> Callable[[], None]:
        """Register a callback for source events, returning a remove function."""

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        self._listeners.append(callback)
        return remove

    def _fire_event(self, event: SourceEvent) -> None:
        for cb in list(self._listeners):
            try:
                cb(event)
            except Exception:
                _LOGGER.exception("Source listener callback failed for %s", event.key)

    def watch(
        self, url: str, target_revision: str, last_revision: str | None = None
    ) -> None:
        """Start watching a repository revision.

        When `last_revision` is given that revision is treated as already
        observed and the next poll happens after the poll interval.
        """
        key = (url, target_revision)
        if key in self._watches:
            return
        _LOGGER.info("Watching source %s@%s", url, target_revision)
        state = _WatchState(
            watcher=SourceWatcher(self._registry, url, target_revision),
            backoff=Backoff(self._config.backoff),
        )
        if last_revision is not None:
            state.watcher.last_revision = last_revision
            state.next_poll = time.monotonic() + self._config.poll_interval
        self._watches[key] = state
        self._wakeup.set()

    @property
    def watched(self) -> list[tuple[str, str]]:
        return list(self._watches)

    def unwatch(self, url: str, target_revision: str) -> None:
        """Stop watching a repository revision."""
        self._watches.pop((url, target_revision), None)

    def refresh(self, url: str, target_revision: str) -> None:
        """Poll a source now and report its current revision even if unchanged."""
        if (state := self._watches.get((url, target_revision))) is None:
            return
        state.watcher.reset()
        state.next_poll = 0.0
        self._wakeup.set()

    def invalidate(self, url: str, target_revision: str) -> None:
        """Report the revision of a source again on its next successful poll.

        Unlike `refresh` the polling schedule, including any backoff, is kept.
        """
        if (state := self._watches.get((url, target_revision))) is not None:
            state.watcher.reset()

    async def poll_once(self) -> None:
        """Poll every watcher that is due."""
        now = time.monotonic()
        due = [state for state in self._watches.values() if state.next_poll <= now]
        if due:
            await asyncio.gather(*(self._poll(state) for state in due))

    async def _poll(self, state: _WatchState) -> None:
        watcher = state.watcher
        try:
            snapshot = await watcher.poll()
        except FetchError as err:
            delay = state.backoff.failure()
            state.next_poll = time.monotonic() + delay
            _LOGGER.warning(
                "Fetch of %s@%s failed (attempt %d), retrying in %0.1fs: %s",
                watcher.url,
                watcher.target_revision,
                state.backoff.failures,
                delay,
                err,
            )
            if state.backoff.failures >= self._config.failure_threshold:
                state.surfaced = True
                self._fire_event(SourceEvent(key=watcher.key, error=err))
            return
        recovered = state.surfaced
        state.surfaced = False
        state.backoff.reset()
        state.next_poll = time.monotonic() + self._config.poll_interval
        if snapshot is not None or recovered:
            self._fire_event(
                SourceEvent(key=watcher.key, snapshot=snapshot, recovered=recovered)
            )

    async def _run(self) -> None:
        _LOGGER.info("Starting source polling loop")
        while True:
            self._wakeup.clear()
            await self.poll_once()
            if self._watches:
                timeout = max(
                    min(state.next_poll for state in self._watches.values())
                    - time.monotonic(),
                    0.0,
                )
            else:
                timeout = self._config.poll_interval
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        """Start the polling loop as a background task."""
        if self._task is None:
            self._task = get_task_service().create_background_task(
                self._run(), name="source-controller"
            )

    async def close(self) -> None:
        """Stop the polling loop."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
