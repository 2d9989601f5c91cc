"""Diff Engine.

Compares the resolved desired state of an Application with live state and
produces the `ActionPlan` that would make them match. All functions in this
module are pure: they read live state through a `LiveView` and never write.

Both sides are normalized before comparison. Status, server managed metadata,
the last-applied annotation and any `ignoreDifferences` fields are dropped. A
resource is in sync when every remaining field of the desired definition has
the same value in the live object; the live object may carry additional
defaulted fields.
"""

from collections.abc import Generator, Iterable
import copy
from dataclasses import dataclass, field
import difflib
from enum import StrEnum
import logging
from typing import TYPE_CHECKING, Any

import yaml

from .cluster.observer import LiveView
from .exceptions import InputException
from .health import HealthStatus, assess
from .manifest import (
    HookSpec,
    IgnoreDifference,
    ResourceId,
    SyncPolicy,
    hook_spec,
    last_applied_hash,
    manifest_hash,
    normalized,
    sync_options,
    sync_wave,
)
from .resolver import ResolvedState
from .store.status import ResourceStatus, SyncStatus

if TYPE_CHECKING:
    from .sync_controller.artifact import AppliedState

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "ActionType",
    "SyncAction",
    "ActionPlan",
    "diff",
    "classify_drift",
    "render_diff",
]

_TRUNCATE = "[Diff truncated by gitops-reconciler]"


class ActionType(StrEnum):
    """The write needed to reconcile a resource."""

    CREATE = "create"
    UPDATE = "update"
    PRUNE = "prune"
    HOOK = "hook"


@dataclass(frozen=True)
class SyncAction:
    """One write to perform during a sync operation."""

    type: ActionType
    id: ResourceId
    wave: int = 0
    manifest: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    """The desired definition, or the live object for a prune."""

    hook: HookSpec | None = None
    hash: str | None = None
    """Hash of the desired definition that is applied."""

    def __str__(self) -> str:
        return f"{self.type} {self.id} (wave {self.wave})"


@dataclass
class ActionPlan:
    """The actions that reconcile an Application, and the status of its resources."""

    app_name: str
    revision_id: str
    actions: list[SyncAction] = field(default_factory=list)
    resources: list[ResourceStatus] = field(default_factory=list)

    @property
    def writes(self) -> list[SyncAction]:
        """Actions that change resources, excluding hooks."""
        return [action for action in self.actions if action.type != ActionType.HOOK]

    @property
    def waves(self) -> list[int]:
        """Every wave that has at least one action, ascending."""
        return sorted({action.wave for action in self.actions})

    def in_wave(self, wave: int) -> list[SyncAction]:
        return [action for action in self.actions if action.wave == wave]

    @property
    def sync_status(self) -> SyncStatus:
        if any(
            resource.sync_status == SyncStatus.OUT_OF_SYNC for resource in self.resources
        ):
            return SyncStatus.OUT_OF_SYNC
        if any(resource.sync_status == SyncStatus.UNKNOWN for resource in self.resources):
            return SyncStatus.UNKNOWN
        return SyncStatus.SYNCED


def _unescape(token: str) -> str:
    return token.replace("~1", "/").replace("~0", "~")


def remove_pointer(obj: dict[str, Any], pointer: str) -> None:
    """Remove the value an RFC 6901 JSON pointer refers to, if present."""
    if not pointer or not pointer.startswith("/"):
        return
    tokens = [_unescape(token) for token in pointer[1:].split("/")]
    parent: Any = obj
    for token in tokens[:-1]:
        if isinstance(parent, dict):
            parent = parent.get(token)
        elif isinstance(parent, list) and token.isdigit() and int(token) < len(parent):
            parent = parent[int(token)]
        else:
            return
    last = tokens[-1]
    if isinstance(parent, dict):
        parent.pop(last, None)
    elif isinstance(parent, list) and last.isdigit() and int(last) < len(parent):
        del parent[int(last)]


def comparable(
    manifest: dict[str, Any], rules: Iterable[IgnoreDifference] = ()
) -> dict[str, Any]:
    """Return the normalized form of an object used for comparison."""
    result = normalized(manifest)
    for rule in rules:
        if rule.matches(manifest):
            for pointer in rule.json_pointers:
                remove_pointer(result, pointer)
    return result


def is_subset(desired: Any, live: Any) -> bool:
    """Return True if every field of desired has the same value in live."""
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        return all(
            key in live and is_subset(value, live[key]) for key, value in desired.items()
        )
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(is_subset(d, l) for d, l in zip(desired, live))
    return bool(desired == live)


def project(live: Any, desired: Any) -> Any:
    """Restrict a live object to the fields present in the desired object."""
    if isinstance(desired, dict) and isinstance(live, dict):
        return {key: project(live[key], value) for key, value in desired.items() if key in live}
    if isinstance(desired, list) and isinstance(live, list) and len(desired) == len(live):
        return [project(l, d) for l, d in zip(live, desired)]
    return copy.deepcopy(live)


def live_hash(
    live: dict[str, Any], desired: dict[str, Any], rules: Iterable[IgnoreDifference] = ()
) -> str:
    """Hash the live object projected onto the fields of the desired object."""
    rules = list(rules)
    return manifest_hash(project(comparable(live, rules), comparable(desired, rules)))


def _wave_of(live: dict[str, Any]) -> int:
    try:
        return sync_wave(live)
    except InputException:
        return 0


def diff(resolved: ResolvedState, view: LiveView, policy: SyncPolicy) -> ActionPlan:
    """Compute the actions that reconcile live state with the resolved state.

    Raises:
        StaleCacheError: If live state can't be trusted.
    """
    plan = ActionPlan(app_name=resolved.app_name, revision_id=resolved.revision_id)
    rules = policy.ignore_differences
    hooks = []
    for resource in resolved.resources:
        if resource.hook is not None:
            hooks.append(resource)
            continue
        live = view.get(resource.id)
        status = ResourceStatus(id=resource.id, health=assess(live))
        if live is None:
            status.sync_status = SyncStatus.OUT_OF_SYNC
            status.message = "Resource is missing"
            action_type: ActionType | None = ActionType.CREATE
        elif is_subset(comparable(resource.manifest, rules), comparable(live, rules)):
            status.sync_status = SyncStatus.SYNCED
            action_type = None
        else:
            status.sync_status = SyncStatus.OUT_OF_SYNC
            status.message = "Live state differs from desired state"
            action_type = ActionType.UPDATE
        plan.resources.append(status)
        if action_type is not None:
            plan.actions.append(
                SyncAction(
                    type=action_type,
                    id=resource.id,
                    wave=resource.wave,
                    manifest=resource.manifest,
                    hash=resource.hash,
                )
            )

    desired_ids = resolved.ids
    for resource_id, live in view.owned(resolved.app_name).items():
        if resource_id in desired_ids:
            continue
        try:
            if hook_spec(live) is not None:
                continue
        except InputException:
            pass
        status = ResourceStatus(
            id=resource_id,
            sync_status=SyncStatus.OUT_OF_SYNC,
            health=assess(live),
            requires_pruning=True,
        )
        if not policy.prune:
            status.message = "Resource is no longer desired, pruning is disabled"
        elif sync_options(live).get("Prune", "").lower() == "false":
            status.message = "Resource is no longer desired, pruning is disabled by Prune=false"
        else:
            status.message = "Resource is no longer desired"
            plan.actions.append(
                SyncAction(
                    type=ActionType.PRUNE,
                    id=resource_id,
                    wave=_wave_of(live),
                    manifest=live,
                )
            )
        plan.resources.append(status)

    if plan.writes:
        for resource in hooks:
            plan.actions.append(
                SyncAction(
                    type=ActionType.HOOK,
                    id=resource.id,
                    wave=resource.wave,
                    manifest=resource.manifest,
                    hook=resource.hook,
                    hash=resource.hash,
                )
            )
    _LOGGER.debug(
        "Diff of %s at %s: %d actions (%d writes)",
        resolved.app_name,
        resolved.revision_id,
        len(plan.actions),
        len(plan.writes),
    )
    return plan


def classify_drift(
    applied: "AppliedState", view: LiveView, policy: SyncPolicy
) -> list[ResourceId]:
    """Return the resources whose live state no longer matches what was applied.

    Only resources whose applied hash matches the definition in the applied
    ResolvedState are considered; anything else has a pending sync instead.
    The hash recorded by this process takes precedence over the last-applied
    annotation of the live object, which is what survives a restart.
    """
    rules = policy.ignore_differences
    drifted = []
    for resource in applied.resolved.resources:
        if resource.hook is not None:
            continue
        live = view.get(resource.id)
        recorded = applied.hashes.get(resource.id)
        if recorded is None and live is not None:
            recorded = last_applied_hash(live)
        if recorded != resource.hash:
            continue
        if live is None:
            _LOGGER.debug("Applied resource %s is missing", resource.id)
            drifted.append(resource.id)
            continue
        expected = manifest_hash(comparable(resource.manifest, rules))
        if live_hash(live, resource.manifest, rules) != expected:
            _LOGGER.debug("Applied resource %s has drifted", resource.id)
            drifted.append(resource.id)
    return drifted


def _dump(obj: dict[str, Any] | None) -> list[str]:
    if obj is None:
        return []
    return yaml.dump(obj, sort_keys=False).splitlines(keepends=True)


def render_diff(
    plan: ActionPlan, view: LiveView, n: int = 3, limit_bytes: int = 0
) -> Generator[str, None, None]:
    """Generate unified diffs between live state and every planned write."""
    for action in plan.actions:
        live = view.get(action.id)
        if action.type == ActionType.PRUNE:
            before, after = (normalized(live) if live else None), None
        else:
            after = normalized(action.manifest)
            before = project(normalized(live), after) if live is not None else None
        diff_text = difflib.unified_diff(
            a=_dump(before),
            b=_dump(after),
            fromfile=f"live {action.id}",
            tofile=f"desired {action.id}",
            n=n,
        )
        size = 0
        for line in diff_text:
            size += len(line)
            if limit_bytes and size > limit_bytes:
                yield _TRUNCATE
                break
            yield line
