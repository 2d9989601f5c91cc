"""
Sync Executor implementation.

The executor performs the actions of an `ActionPlan` for one `SyncOperation`
against the managed environment.

Waves run in ascending order and a wave fully completes before the next one
starts. Within a wave:
    1. PreSync hooks are created and awaited.
    2. Resource actions run concurrently, bounded by `action_concurrency`.
    3. PostSync hooks are created and awaited.

A failing blocking hook aborts the remaining waves. A resource that fails
permanently is recorded and its siblings continue, unless the Application's
failure policy is `stop`. SyncFail hooks run after an operation fails.

Dependencies:
    - ClusterClient: performs the writes.
    - ClusterObserver: provides live state and hook completion.
    - RateLimiter: shared by every writer.
    - Store: holds the AppliedState of every Application.
"""

import asyncio
from collections.abc import Callable
import copy
from dataclasses import dataclass, field
import logging
from typing import Any

from gitops_reconciler.backoff import Backoff
from gitops_reconciler.cluster import ClusterClient, ClusterObserver
from gitops_reconciler.config import BackoffConfig, SyncConfig
from gitops_reconciler.context import trace_context
from gitops_reconciler.diff_engine import ActionPlan, ActionType, SyncAction
from gitops_reconciler.exceptions import (
    ApplyError,
    ClusterConnectionError,
    ConflictError,
    ObjectNotFoundError,
    RateLimitedError,
    StaleCacheError,
)
from gitops_reconciler.health import HealthStatus, assess
from gitops_reconciler.manifest import (
    LAST_APPLIED_ANNOTATION,
    Application,
    FailurePolicy,
    HookType,
    ResourceId,
    RetryPolicy,
    resource_version,
)
from gitops_reconciler.ratelimit import RateLimiter
from gitops_reconciler.store import Store

from .artifact import AppliedState
from .operation import (
    SUPERSEDED,
    HookResult,
    OperationPhase,
    ResourceResult,
    ResultPhase,
    SyncOperation,
)
from .waiter import HookWaiter

_LOGGER = logging.getLogger(__name__)

# Seconds to wait for the observer to see our own writes before finishing
OBSERVE_TIMEOUT = 10


@dataclass
class _Run:
    """State of one executing operation."""

    operation: SyncOperation
    app: Application
    halted: bool = False
    failed: bool = False
    versions: dict[str, str] = field(default_factory=dict)

    @property
    def stopped(self) -> bool:
        return self.halted or self.operation.superseded

    def observed(self, destination: str, version: str | None) -> None:
        if version is None:
            return
        current = self.versions.get(destination)
        if current is None or _version_key(version) > _version_key(current):
            self.versions[destination] = version


def _version_key(version: str | None) -> int:
    try:
        return int(version or 0)
    except ValueError:
        return 0


def _retry_backoff(policy: RetryPolicy) -> Backoff:
    return Backoff(
        BackoffConfig(
            base=policy.backoff.duration,
            factor=policy.backoff.factor,
            cap=policy.backoff.max_duration,
        )
    )


def _prepare(action: SyncAction) -> dict[str, Any]:
    """Return the manifest to write, annotated with its last applied hash."""
    manifest = copy.deepcopy(action.manifest)
    metadata = manifest.setdefault("metadata", {})
    annotations = metadata.get("annotations") or {}
    if action.hash:
        annotations[LAST_APPLIED_ANNOTATION] = action.hash
    metadata["annotations"] = annotations
    return manifest


class SyncExecutor:
    """Applies action plans to the managed environment."""

    def __init__(
        self,
        client: ClusterClient,
        observer: ClusterObserver,
        store: Store,
        rate_limiter: RateLimiter,
        config: SyncConfig,
    ) -> None:
        """Initialize SyncExecutor."""
        self._client = client
        self._observer = observer
        self._store = store
        self._rate_limiter = rate_limiter
        self._config = config
        self._listeners: list[Callable[[SyncOperation, SyncAction], None]] = []

    def add_action_listener(
        self, callback: Callable[[SyncOperation, SyncAction], None]
    ) -> Callable[[], None]:
        """Register a callback invoked when an action or hook starts."""

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        self._listeners.append(callback)
        return remove

    def _fire_action(self, operation: SyncOperation, action: SyncAction) -> None:
        for cb in list(self._listeners):
            try:
                cb(operation, action)
            except Exception:
                _LOGGER.exception("Action listener callback failed for %s", action.id)

    async def execute(
        self, operation: SyncOperation, plan: ActionPlan, app: Application
    ) -> SyncOperation:
        """Run a sync operation to completion."""
        if operation.superseded:
            operation.finish(OperationPhase.FAILED, SUPERSEDED)
            return operation
        operation.plan(plan.actions)
        operation.start()
        run = _Run(operation=operation, app=app)
        previous = self._store.get_artifact(app.name, AppliedState)
        self._store.set_artifact(
            app.name,
            AppliedState(
                revision_id=operation.revision_id,
                resolved=operation.resolved,
                hashes=dict(previous.hashes) if previous else {},
            ),
        )
        _LOGGER.info(
            "Starting %s with %d actions (origin %s)",
            operation,
            len(plan.actions),
            operation.origin,
        )
        message: str | None = None
        with trace_context(f"Sync '{app.name}' {operation.revision_id}"):
            try:
                async with asyncio.timeout(self._config.operation_timeout):
                    await self._run_waves(run, plan)
            except TimeoutError:
                message = f"Operation timed out after {self._config.operation_timeout}s"
                _LOGGER.error("%s: %s", operation, message)
                run.failed = True
                self._mark_timed_out(operation)
            self._skip_remaining(run, plan)
            if run.failed and not operation.superseded:
                await self._run_sync_fail_hooks(run, plan)
            await self._wait_observed(run)

        if operation.superseded:
            operation.finish(OperationPhase.FAILED, SUPERSEDED)
        elif run.failed:
            if message is None:
                message = self._failure_message(operation)
            operation.finish(OperationPhase.FAILED, message)
        else:
            operation.finish(
                OperationPhase.SUCCEEDED,
                f"Successfully synced {len(operation.resource_results)} resources",
            )
        if operation.phase == OperationPhase.FAILED:
            _LOGGER.error("%s", operation)
        else:
            _LOGGER.info("%s", operation)
        return operation

    def _failure_message(self, operation: SyncOperation) -> str:
        hooks = [
            str(result)
            for result in operation.hook_results
            if result.phase == ResultPhase.FAILED and result.blocking
        ]
        if hooks:
            return "; ".join(hooks)
        resources = [str(result) for result in operation.failed_resources]
        return "; ".join(resources) or "Sync failed"

    def _mark_timed_out(self, operation: SyncOperation) -> None:
        for result in operation.resource_results.values():
            if result.phase in (ResultPhase.PENDING, ResultPhase.RUNNING):
                result.phase = ResultPhase.FAILED
                result.message = "Timed out"
                result.health = HealthStatus.DEGRADED
        for hook in operation.hook_results:
            if hook.phase == ResultPhase.RUNNING:
                hook.phase = ResultPhase.FAILED
                hook.message = "Timed out"
                hook.health = HealthStatus.DEGRADED

    async def _wait_observed(self, run: _Run) -> None:
        for destination, version in run.versions.items():
            await self._observer.wait_for_version(destination, version, OBSERVE_TIMEOUT)

    async def _run_waves(self, run: _Run, plan: ActionPlan) -> None:
        for wave in plan.waves:
            if run.stopped:
                break
            with trace_context(f"Wave {wave}"):
                actions = plan.in_wave(wave)
                hooks = [a for a in actions if a.type == ActionType.HOOK and a.hook]
                pre_sync = [a for a in hooks if a.hook and a.hook.hook_type == HookType.PRE_SYNC]
                post_sync = [a for a in hooks if a.hook and a.hook.hook_type == HookType.POST_SYNC]
                writes = [a for a in actions if a.type != ActionType.HOOK]

                if pre_sync and not await self._run_hooks(run, pre_sync):
                    run.failed = True
                    break
                if run.stopped:
                    break
                if not await self._run_actions(run, writes):
                    run.failed = True
                    if run.halted:
                        break
                    continue
                if run.stopped:
                    break
                if post_sync and not await self._run_hooks(run, post_sync):
                    run.failed = True
                    break

    def _skip_remaining(self, run: _Run, plan: ActionPlan) -> None:
        """Record every resource and hook that was not reached as skipped."""
        reason = SUPERSEDED if run.operation.superseded else "Not started"
        for result in run.operation.resource_results.values():
            if result.phase == ResultPhase.PENDING:
                result.phase = ResultPhase.SKIPPED
                result.message = reason
        started = {hook.id for hook in run.operation.hook_results}
        for action in plan.actions:
            if (
                action.hook is None
                or action.hook.hook_type == HookType.SYNC_FAIL
                or action.id in started
            ):
                continue
            run.operation.hook_results.append(
                HookResult(
                    id=action.id,
                    hook_type=action.hook.hook_type,
                    blocking=action.hook.blocking,
                    wave=action.wave,
                    phase=ResultPhase.SKIPPED,
                    message=reason,
                )
            )

    async def _run_actions(self, run: _Run, actions: list[SyncAction]) -> bool:
        """Run the resource actions of a wave, returning False if any failed."""
        semaphore = asyncio.Semaphore(self._config.action_concurrency)

        async def run_one(action: SyncAction) -> bool:
            async with semaphore:
                if run.stopped:
                    return True
                self._fire_action(run.operation, action)
                ok = await self._run_action(run, action)
                if not ok and run.app.sync_policy.failure_policy == FailurePolicy.STOP:
                    _LOGGER.warning(
                        "Stopping %s after failure of %s", run.operation, action.id
                    )
                    run.halted = True
                return ok

        results = await asyncio.gather(*(run_one(action) for action in actions))
        return all(results)

    async def _run_action(self, run: _Run, action: SyncAction) -> bool:
        result = run.operation.resource_results[action.id]
        result.phase = ResultPhase.RUNNING
        try:
            if action.type == ActionType.PRUNE:
                await self._prune(run, action, result)
            else:
                await self._apply(run, action, result)
        except (ApplyError, StaleCacheError, ClusterConnectionError) as err:
            _LOGGER.error("%s failed: %s", action, err)
            result.phase = ResultPhase.FAILED
            result.message = str(err)
            return False
        result.phase = ResultPhase.SUCCEEDED
        return True

    async def _apply(
        self, run: _Run, action: SyncAction, result: ResourceResult
    ) -> None:
        manifest = _prepare(action)
        live = self._observer.get(action.id)
        expected = resource_version(live) if live is not None else None
        retry = run.app.sync_policy.retry
        backoff = _retry_backoff(retry)
        conflicts = 0
        while True:
            result.attempts += 1
            await self._rate_limiter.acquire()
            try:
                obj = await self._client.apply(
                    action.id.destination, manifest, expected_version=expected
                )
                break
            except ConflictError as err:
                conflicts += 1
                if conflicts > self._config.max_conflict_retries:
                    raise
                _LOGGER.warning(
                    "Conflict applying %s (attempt %d), refetching: %s",
                    action.id,
                    result.attempts,
                    err,
                )
                current = await self._client.get(action.id)
                expected = resource_version(current) if current is not None else None
            except RateLimitedError as err:
                if backoff.failures >= retry.limit:
                    raise
                delay = backoff.failure()
                _LOGGER.warning(
                    "Rate limited applying %s (attempt %d), retrying in %0.1fs: %s",
                    action.id,
                    result.attempts,
                    delay,
                    err,
                )
                await asyncio.sleep(delay)
        run.observed(action.id.destination, resource_version(obj))
        result.health = assess(obj)
        result.message = "created" if action.type == ActionType.CREATE else "configured"
        if action.hash and (applied := self._store.get_artifact(run.app.name, AppliedState)):
            self._store.set_artifact(run.app.name, applied.with_hash(action.id, action.hash))

    async def _prune(self, run: _Run, action: SyncAction, result: ResourceResult) -> None:
        result.attempts += 1
        await self._rate_limiter.acquire()
        try:
            version = await self._client.delete(action.id)
        except ObjectNotFoundError:
            _LOGGER.debug("Resource %s already deleted", action.id)
            version = None
        run.observed(action.id.destination, version)
        result.health = HealthStatus.MISSING
        result.message = "pruned"
        if applied := self._store.get_artifact(run.app.name, AppliedState):
            self._store.set_artifact(run.app.name, applied.without(action.id))

    async def _run_hooks(self, run: _Run, hooks: list[SyncAction]) -> bool:
        """Create hooks and wait for them, returning False if a blocking hook failed."""
        waiter = HookWaiter(self._observer, self._config.hook_timeout)
        results: dict[ResourceId, HookResult] = {}
        for action in hooks:
            if action.hook is None:
                continue
            hook = HookResult(
                id=action.id,
                hook_type=action.hook.hook_type,
                blocking=action.hook.blocking,
                wave=action.wave,
            )
            run.operation.hook_results.append(hook)
            self._fire_action(run.operation, action)
            try:
                obj = await self._create_hook(run, action)
            except (ApplyError, StaleCacheError, ClusterConnectionError) as err:
                _LOGGER.error("Hook %s could not be created: %s", action.id, err)
                hook.phase = ResultPhase.FAILED
                hook.message = str(err)
                continue
            results[action.id] = hook
            waiter.add(action.id, resource_version(obj))

        for resource_id, event in (await waiter.wait()).items():
            hook = results[resource_id]
            hook.phase = event.phase
            hook.message = event.message
            if event.timed_out:
                hook.health = HealthStatus.DEGRADED

        ok = True
        for hook in run.operation.hook_results:
            if hook.id not in {action.id for action in hooks}:
                continue
            if hook.phase == ResultPhase.FAILED:
                if hook.blocking:
                    _LOGGER.error("Blocking %s", hook)
                    ok = False
                else:
                    _LOGGER.warning("Best effort %s", hook)
        return ok

    async def _create_hook(self, run: _Run, action: SyncAction) -> dict[str, Any]:
        """Delete any previous run of a hook and create it again."""
        if await self._client.get(action.id) is not None:
            _LOGGER.debug("Deleting previous run of hook %s", action.id)
            await self._rate_limiter.acquire()
            try:
                version = await self._client.delete(action.id)
                run.observed(action.id.destination, version)
            except ObjectNotFoundError:
                pass
        await self._rate_limiter.acquire()
        obj = await self._client.apply(action.id.destination, _prepare(action))
        run.observed(action.id.destination, resource_version(obj))
        return obj

    async def _run_sync_fail_hooks(self, run: _Run, plan: ActionPlan) -> None:
        hooks = [
            action
            for action in plan.actions
            if action.type == ActionType.HOOK
            and action.hook
            and action.hook.hook_type == HookType.SYNC_FAIL
        ]
        if not hooks:
            return
        _LOGGER.info("Running %d SyncFail hooks for %s", len(hooks), run.operation)
        await self._run_hooks(run, hooks)
