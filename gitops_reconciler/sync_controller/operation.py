"""Representation of a sync operation and its results."""

import asyncio
from dataclasses import dataclass, field
import datetime
from enum import StrEnum
import uuid

from gitops_reconciler.diff_engine import ActionType, SyncAction
from gitops_reconciler.health import HealthStatus
from gitops_reconciler.manifest import HookType, ResourceId
from gitops_reconciler.resolver import ResolvedState

__all__ = [
    "OperationPhase",
    "OperationOrigin",
    "ResultPhase",
    "ResourceResult",
    "HookResult",
    "SyncOperation",
]

SUPERSEDED = "Superseded"


class OperationPhase(StrEnum):
    """Lifecycle of a sync operation."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"

    @property
    def terminal(self) -> bool:
        return self in (OperationPhase.SUCCEEDED, OperationPhase.FAILED)


class OperationOrigin(StrEnum):
    """What started a sync operation."""

    MANUAL = "manual"
    AUTOMATED = "automated"
    SELF_HEAL = "self-heal"
    ROLLBACK = "rollback"


class ResultPhase(StrEnum):
    """Lifecycle of a single action or hook."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"


@dataclass
class ResourceResult:
    """Outcome of one resource action."""

    id: ResourceId
    action: ActionType
    wave: int = 0
    phase: ResultPhase = ResultPhase.PENDING
    message: str | None = None
    attempts: int = 0
    health: HealthStatus = HealthStatus.UNKNOWN

    def __str__(self) -> str:
        value = f"{self.action} {self.id}: {self.phase}"
        if self.message:
            return f"{value} ({self.message})"
        return value


@dataclass
class HookResult:
    """Outcome of one hook run."""

    id: ResourceId
    hook_type: HookType
    blocking: bool = True
    wave: int = 0
    phase: ResultPhase = ResultPhase.RUNNING
    message: str | None = None
    health: HealthStatus = HealthStatus.UNKNOWN

    def __str__(self) -> str:
        value = f"{self.hook_type} hook {self.id}: {self.phase}"
        if self.message:
            return f"{value} ({self.message})"
        return value


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass
class SyncOperation:
    """One attempt to make live state match a resolved state.

    An operation moves from Pending to Running to Succeeded or Failed. A
    running operation can be superseded by a newer revision, it then stops at
    the next action boundary and ends Failed with the message `Superseded`.
    """

    app_name: str
    revision_id: str
    resolved: ResolvedState = field(repr=False, compare=False)
    origin: OperationOrigin = OperationOrigin.MANUAL
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    actions: list[SyncAction] = field(default_factory=list, repr=False)
    phase: OperationPhase = OperationPhase.PENDING
    message: str | None = None
    resource_results: dict[ResourceId, ResourceResult] = field(default_factory=dict)
    hook_results: list[HookResult] = field(default_factory=list)
    started_at: datetime.datetime | None = None
    finished_at: datetime.datetime | None = None
    superseded: bool = False
    _done: asyncio.Event = field(
        default_factory=asyncio.Event, init=False, repr=False, compare=False
    )

    @property
    def terminal(self) -> bool:
        return self.phase.terminal

    @property
    def revision_key(self) -> str:
        return self.resolved.revision_key

    def plan(self, actions: list[SyncAction]) -> None:
        """Record the actions this operation will perform."""
        self.actions = list(actions)
        self.resource_results = {
            action.id: ResourceResult(id=action.id, action=action.type, wave=action.wave)
            for action in actions
            if action.type != ActionType.HOOK
        }

    def start(self) -> None:
        self.phase = OperationPhase.RUNNING
        self.started_at = _now()

    def supersede(self) -> None:
        """Ask a non-terminal operation to stop at the next action boundary."""
        if not self.terminal:
            self.superseded = True

    def finish(self, phase: OperationPhase, message: str | None = None) -> None:
        self.phase = phase
        self.message = message
        self.finished_at = _now()
        if self.started_at is None:
            self.started_at = self.finished_at
        self._done.set()

    async def wait(self) -> "SyncOperation":
        """Wait until the operation is terminal."""
        await self._done.wait()
        return self

    @property
    def failed_resources(self) -> list[ResourceResult]:
        return [
            result
            for result in self.resource_results.values()
            if result.phase == ResultPhase.FAILED
        ]

    def __str__(self) -> str:
        value = f"SyncOperation {self.id} of {self.app_name} at {self.revision_id}: {self.phase}"
        if self.message:
            return f"{value} ({self.message})"
        return value
