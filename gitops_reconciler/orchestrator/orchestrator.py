"""Application controller for gitops-reconciler.

This module provides the controller that wires the components together and
exposes the operations used to manage Applications:

    Source Watcher -> Resolver -> (Observer) -> Diff Engine -> Sync Executor

The controller owns the per-Application bookkeeping: the resolved state that
is currently targeted, the operation in flight and the errors that have not
been resolved yet. Everything else lives in the components.

At most one operation per Application is running. A new operation waits for
the previous one to be terminal, and supersedes it when it targets a different
revision. Requests for the revision of the operation in flight are coalesced
onto it.
"""

import asyncio
from dataclasses import dataclass, field, replace
import logging

from gitops_reconciler.cluster import ClusterClient, ClusterObserver
from gitops_reconciler.config import ControllerConfig
from gitops_reconciler.diff_engine import ActionPlan, diff
from gitops_reconciler.exceptions import (
    ApplicationNotFoundError,
    ClusterConnectionError,
    FetchError,
    ObjectNotFoundError,
    ReconcilerException,
    ResolutionError,
    StaleCacheError,
)
from gitops_reconciler.health import HealthStatus, aggregate
from gitops_reconciler.history import RevisionHistory
from gitops_reconciler.manifest import Application, SyncPolicy, sync_options
from gitops_reconciler.ratelimit import RateLimiter
from gitops_reconciler.resolver import ResolvedState, Resolver
from gitops_reconciler.self_heal import SelfHealLoop, destinations_of
from gitops_reconciler.source_controller import (
    RevisionSnapshot,
    SourceController,
    SourceEvent,
    SourceRegistry,
)
from gitops_reconciler.store import (
    ApplicationStatus,
    InMemoryStore,
    Store,
    SyncStatus,
)
from gitops_reconciler.sync_controller import (
    SUPERSEDED,
    AppliedState,
    OperationOrigin,
    OperationPhase,
    SyncExecutor,
    SyncOperation,
)
from gitops_reconciler.task import get_task_service

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "ApplicationController",
]


@dataclass
class _AppState:
    """Bookkeeping for one Application."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    """Guards operation state transitions."""

    resolving: asyncio.Lock = field(default_factory=asyncio.Lock)
    operation: SyncOperation | None = None
    """The most recently requested operation."""

    task: asyncio.Task[None] | None = None
    source_error: str | None = None
    resolution_error: str | None = None
    desired_revision: str | None = None
    head_key: str | None = None
    """Revision key of the newest state resolved from the source."""

    source_keys: set[tuple[str, str]] = field(default_factory=set)

    @property
    def busy(self) -> bool:
        return self.operation is not None and not self.operation.terminal


class ApplicationController:
    """Keeps Applications synchronized with their desired state.

    The controller is responsible for:
    - Watching the sources of every Application and its children
    - Resolving new revisions and starting automated syncs
    - Running manual syncs and rollbacks
    - Reporting the status of every Application
    """

    def __init__(
        self,
        client: ClusterClient,
        registry: SourceRegistry,
        config: ControllerConfig | None = None,
        store: Store | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            client: The managed environment
            registry: Finds the source of every repository URL
            config: Configuration of the controller and its components
            store: Holds Applications and their derived state
        """
        self.config = config or ControllerConfig()
        self.store = store or InMemoryStore()
        self.client = client
        self.sources = SourceController(registry, self.config.source)
        self.resolver = Resolver(registry, self.config.resolver)
        self.observer = ClusterObserver(client, self.config.observer)
        self.rate_limiter = RateLimiter(
            self.config.sync.rate_limit_qps, self.config.sync.rate_limit_burst
        )
        self.executor = SyncExecutor(
            client, self.observer, self.store, self.rate_limiter, self.config.sync
        )
        self.history = RevisionHistory(self.config.history)
        self.self_heal = SelfHealLoop(
            self.store,
            self.observer,
            self.config.self_heal,
            heal=self._heal,
            busy=self._busy,
        )
        self._apps: dict[str, _AppState] = {}
        self._watchers: dict[tuple[str, str], set[str]] = {}
        self._remove_listener = self.sources.add_listener(self._on_source_event)
        self._started = False

    @property
    def registry(self) -> SourceRegistry:
        return self.sources.registry

    async def start(self) -> None:
        """Start the source polling and self-heal loops."""
        if self._started:
            return
        _LOGGER.info("Starting application controller")
        self.sources.start()
        self.self_heal.start()
        self._started = True

    async def stop(self) -> None:
        """Stop all loops and cancel operations in flight."""
        _LOGGER.info("Stopping application controller")
        await self.self_heal.close()
        await self.sources.close()
        tasks = []
        for state in self._apps.values():
            if state.operation is not None:
                state.operation.supersede()
            if state.task is not None and not state.task.done():
                tasks.append(state.task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.observer.close()
        self._started = False
        _LOGGER.info("Application controller stopped")

    def _get_app(self, name: str) -> Application:
        if (app := self.store.get_application(name)) is None:
            raise ApplicationNotFoundError(f"Application {name} not found")
        return app

    def _busy(self, name: str) -> bool:
        state = self._apps.get(name)
        return state is not None and state.busy

    async def add_application(self, app: Application) -> None:
        """Add an Application, or replace its definition.

        The current revision of its source is resolved right away. When the
        source can't be reached it is retried by the polling loop.
        """
        existing = self.store.get_application(app.name)
        state = self._apps.setdefault(app.name, _AppState())
        if existing is not None and existing != app:
            _LOGGER.info("Updating Application %s", app.name)
            state.head_key = None
            if existing.source.source_key != app.source.source_key:
                self._unwatch(app.name, {existing.source.source_key})
        self.store.add_application(app)
        await self.observer.observe(app.destination.server)

        url, target_revision = app.source.source_key
        try:
            snapshot = await self.registry.fetch_latest(url, target_revision)
        except FetchError as err:
            _LOGGER.warning("Initial fetch of %s failed: %s", app.name, err)
            self._watch(app.name, url, target_revision)
            self._refresh_status(app.name)
            return
        self._watch(app.name, url, target_revision, snapshot.revision_id)
        await self._handle_revision(app.name, snapshot)

    async def remove_application(self, name: str, cascade: bool = False) -> None:
        """Remove an Application.

        With `cascade` every live object it owns is deleted, except objects
        protected with `Prune=false`.
        """
        app = self._get_app(name)
        state = self._apps[name]
        if state.operation is not None:
            state.operation.supersede()
        if state.task is not None:
            await asyncio.gather(state.task, return_exceptions=True)
        if cascade:
            await self._delete_owned(app)
        self._unwatch(name, set(state.source_keys))
        self.store.remove_application(name)
        self.history.forget(name)
        del self._apps[name]
        _LOGGER.info("Removed Application %s", name)

    async def _delete_owned(self, app: Application) -> None:
        destinations = {app.destination.server}
        for cls in (AppliedState, ResolvedState):
            if (artifact := self.store.get_artifact(app.name, cls)) is not None:
                resolved = artifact.resolved if isinstance(artifact, AppliedState) else artifact
                destinations.update(destinations_of(app, resolved))
        owned = self.observer.view(*destinations).owned(app.name)
        for resource_id, obj in owned.items():
            if sync_options(obj).get("Prune", "").lower() == "false":
                _LOGGER.info("Keeping %s protected by Prune=false", resource_id)
                continue
            await self.rate_limiter.acquire()
            try:
                await self.client.delete(resource_id)
            except ObjectNotFoundError:
                _LOGGER.debug("Resource %s already deleted", resource_id)
                continue
            _LOGGER.info("Deleted %s owned by %s", resource_id, app.name)

    async def set_sync_policy(self, name: str, policy: SyncPolicy) -> None:
        """Replace the sync policy of an Application.

        Enabling automated sync starts a sync if the targeted state has not
        been applied yet.
        """
        app = self._get_app(name)
        self.store.add_application(replace(app, sync_policy=policy))
        _LOGGER.info("Updated sync policy of %s", name)
        if not policy.automated or app.sync_policy.automated:
            self._refresh_status(name)
            return
        target = self.store.get_artifact(name, ResolvedState)
        applied = self.store.get_artifact(name, AppliedState)
        if target is not None and (
            applied is None or applied.resolved.revision_key != target.revision_key
        ):
            await self._start_operation(name, target, OperationOrigin.AUTOMATED)
        self._refresh_status(name)

    async def trigger_sync(
        self, name: str, revision: str | None = None, wait: bool = True
    ) -> SyncOperation:
        """Synchronize an Application to its latest or a specific revision.

        Raises:
            ApplicationNotFoundError: If the Application is unknown.
            FetchError: If the source could not be fetched.
            ResolutionError: If the revision could not be resolved.
        """
        app = self._get_app(name)
        state = self._apps[name]
        url, target_revision = app.source.source_key
        snapshot = await self.registry.fetch_latest(url, revision or target_revision)
        resolved = await self._resolve(name, app, snapshot)
        if revision is None:
            state.head_key = resolved.revision_key
        self.store.set_artifact(name, resolved)
        operation = await self._start_operation(name, resolved, OperationOrigin.MANUAL)
        if wait:
            await operation.wait()
        return operation

    async def rollback(self, name: str, revision: str, wait: bool = True) -> SyncOperation:
        """Synchronize an Application to a revision recorded in its history.

        The Application stays at that revision until a newer revision is
        observed from its source.

        Raises:
            ApplicationNotFoundError: If the Application is unknown.
            RevisionNotFoundError: If the revision is not in the history.
        """
        self._get_app(name)
        record = self.history.get(name, revision)
        _LOGGER.info("Rolling back %s to %s", name, revision)
        self.store.set_artifact(name, record.resolved)
        operation = await self._start_operation(
            name, record.resolved, OperationOrigin.ROLLBACK
        )
        if wait:
            await operation.wait()
        return operation

    async def refresh(self, name: str) -> None:
        """Resolve the current revision of an Application's source now."""
        app = self._get_app(name)
        state = self._apps[name]
        try:
            snapshot = await self.registry.fetch_latest(*app.source.source_key)
        except FetchError as err:
            state.source_error = str(err)
            self._refresh_status(name)
            raise
        state.source_error = None
        await self._handle_revision(name, snapshot)

    def get_status(self, name: str) -> ApplicationStatus:
        """Return the current status of an Application."""
        self._get_app(name)
        return self._refresh_status(name)

    def _watch(
        self,
        name: str,
        url: str,
        target_revision: str,
        last_revision: str | None = None,
    ) -> None:
        key = (url, target_revision)
        self._watchers.setdefault(key, set()).add(name)
        self._apps[name].source_keys.add(key)
        self.sources.watch(url, target_revision, last_revision)

    def _unwatch(self, name: str, keys: set[tuple[str, str]]) -> None:
        state = self._apps.get(name)
        for key in keys:
            if state is not None:
                state.source_keys.discard(key)
            if (names := self._watchers.get(key)) is None:
                continue
            names.discard(name)
            if not names:
                del self._watchers[key]
                self.sources.unwatch(*key)

    def _watch_tree(self, name: str, resolved: ResolvedState) -> None:
        """Watch the sources of child Applications fetched from other revisions."""
        if resolved.tree is None:
            return
        root = resolved.tree
        wanted = {(root.url, root.target_revision)}
        for node in root.walk()[1:]:
            if node.url == root.url and node.revision_id == root.revision_id:
                continue
            key = (node.url, node.target_revision)
            wanted.add(key)
            if key not in self._apps[name].source_keys:
                self._watch(name, node.url, node.target_revision, node.revision_id)
        self._unwatch(name, self._apps[name].source_keys - wanted)

    def _retry_child(self, name: str, err: FetchError) -> None:
        """Re-resolve an Application once an unavailable child source succeeds.

        The child source is polled with backoff and its failures surface
        through source events like those of the Application itself.
        """
        if err.target_revision is None:
            return
        key = (err.url, err.target_revision)
        if key in self._apps[name].source_keys:
            self.sources.invalidate(*key)
            return
        self._watch(name, *key)

    def _on_source_event(self, event: SourceEvent) -> None:
        for name in sorted(self._watchers.get(event.key, ())):
            if (state := self._apps.get(name)) is None:
                continue
            if event.error is not None:
                _LOGGER.error("Source of %s is failing: %s", name, event.error)
                state.source_error = str(event.error)
                self._refresh_status(name)
                continue
            if event.recovered:
                _LOGGER.info("Source of %s recovered", name)
                state.source_error = None
            get_task_service().create_task(
                self._on_new_revision(name, event), name=f"revision-{name}"
            )

    async def _on_new_revision(self, name: str, event: SourceEvent) -> None:
        if (app := self.store.get_application(name)) is None:
            return
        snapshot = event.snapshot
        if snapshot is None or event.key != app.source.source_key:
            try:
                snapshot = await self.registry.fetch_latest(*app.source.source_key)
            except FetchError as err:
                _LOGGER.warning("Fetch of %s failed: %s", name, err)
                self._apps[name].source_error = str(err)
                self._refresh_status(name)
                return
        await self._handle_revision(name, snapshot)

    async def _resolve(
        self, name: str, app: Application, snapshot: RevisionSnapshot
    ) -> ResolvedState:
        state = self._apps[name]
        state.desired_revision = snapshot.revision_id
        try:
            resolved = await self.resolver.resolve(app, snapshot)
        except ResolutionError as err:
            _LOGGER.error("Unable to resolve %s at %s: %s", name, snapshot.revision_id, err)
            state.resolution_error = str(err)
            self._refresh_status(name)
            raise
        except FetchError as err:
            _LOGGER.warning("Child source of %s is unavailable: %s", name, err)
            self._retry_child(name, err)
            raise
        state.resolution_error = None
        state.source_error = None
        self._watch_tree(name, resolved)
        for destination in destinations_of(app, resolved):
            await self.observer.observe(destination)
        return resolved

    async def _handle_revision(self, name: str, snapshot: RevisionSnapshot) -> None:
        """Resolve a revision of an Application's source and act on it."""
        state = self._apps[name]
        async with state.resolving:
            if (app := self.store.get_application(name)) is None:
                return
            try:
                resolved = await self._resolve(name, app, snapshot)
            except (ResolutionError, FetchError):
                return
            if resolved.revision_key == state.head_key:
                _LOGGER.debug("Revision %s of %s already handled", resolved.revision_key, name)
                self._refresh_status(name)
                return
            state.head_key = resolved.revision_key
            self.store.set_artifact(name, resolved)
            if app.sync_policy.automated:
                await self._start_operation(name, resolved, OperationOrigin.AUTOMATED)
            self._refresh_status(name)

    async def _heal(self, name: str, resolved: ResolvedState) -> None:
        await self._start_operation(name, resolved, OperationOrigin.SELF_HEAL)

    async def _start_operation(
        self, name: str, resolved: ResolvedState, origin: OperationOrigin
    ) -> SyncOperation:
        state = self._apps[name]
        async with state.lock:
            current = state.operation
            if current is not None and not current.terminal and not current.superseded:
                if current.revision_key == resolved.revision_key:
                    _LOGGER.debug("Coalescing %s sync of %s onto %s", origin, name, current)
                    return current
                _LOGGER.info("Superseding %s", current)
                current.supersede()
            operation = SyncOperation(
                app_name=name,
                revision_id=resolved.revision_id,
                resolved=resolved,
                origin=origin,
            )
            previous = state.task
            state.operation = operation
            state.task = get_task_service().create_task(
                self._run_operation(name, operation, previous),
                name=f"sync-{name}-{operation.id}",
            )
        _LOGGER.info("Queued %s sync %s of %s", origin, operation.id, name)
        return operation

    async def _run_operation(
        self,
        name: str,
        operation: SyncOperation,
        previous: asyncio.Task[None] | None,
    ) -> None:
        try:
            if previous is not None:
                await asyncio.gather(previous, return_exceptions=True)
            if (app := self.store.get_application(name)) is None:
                operation.finish(OperationPhase.FAILED, "Application was removed")
                return
            async with get_task_service().worker():
                await self._execute(app, operation)
            self.history.record(name, operation.resolved, operation)
            if operation.origin == OperationOrigin.ROLLBACK and (
                operation.phase == OperationPhase.SUCCEEDED
            ):
                self.history.set_current(name, operation.revision_id)
        finally:
            if not operation.terminal:
                operation.finish(OperationPhase.FAILED, "Operation aborted")
            if name in self._apps:
                self._refresh_status(name)

    async def _execute(self, app: Application, operation: SyncOperation) -> None:
        if operation.superseded:
            operation.finish(OperationPhase.FAILED, SUPERSEDED)
            return
        try:
            view = self.observer.view(*destinations_of(app, operation.resolved))
            plan = diff(operation.resolved, view, app.sync_policy)
        except (StaleCacheError, ClusterConnectionError) as err:
            _LOGGER.error("Unable to plan %s: %s", operation, err)
            operation.plan([])
            operation.finish(OperationPhase.FAILED, str(err))
            return
        try:
            await self.executor.execute(operation, plan, app)
        except ReconcilerException as err:
            _LOGGER.error("%s failed: %s", operation, err)
            operation.finish(OperationPhase.FAILED, str(err))

    def _refresh_status(self, name: str) -> ApplicationStatus:
        """Compute the status of an Application from its current state."""
        app = self._get_app(name)
        state = self._apps[name]
        status = ApplicationStatus(
            current_revision=self.history.current(name),
            desired_revision=state.desired_revision,
            last_operation=state.operation,
        )
        errors: list[str] = []
        if state.resolution_error:
            errors.append(state.resolution_error)
        if state.source_error:
            errors.append(state.source_error)

        if (target := self.store.get_artifact(name, ResolvedState)) is not None:
            try:
                view = self.observer.view(*destinations_of(app, target))
                plan: ActionPlan = diff(target, view, app.sync_policy)
            except (StaleCacheError, ClusterConnectionError) as err:
                errors.append(str(err))
            else:
                status.resources = plan.resources
                status.sync_status = plan.sync_status
                status.health_status = aggregate(
                    [
                        resource.health
                        for resource in plan.resources
                        if not resource.requires_pruning
                    ]
                )

        operation = state.operation
        if (
            operation is not None
            and operation.phase == OperationPhase.FAILED
            and not operation.superseded
            and operation.message
        ):
            errors.append(operation.message)

        if state.source_error:
            status.sync_status = SyncStatus.UNKNOWN
        if state.resolution_error:
            status.health_status = HealthStatus.DEGRADED
        status.error = errors[0] if errors else None
        self.store.update_status(name, status)
        return status
