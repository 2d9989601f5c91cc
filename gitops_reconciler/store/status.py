"""Status information for Applications and the resources they manage."""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from gitops_reconciler.health import HealthStatus
from gitops_reconciler.manifest import ResourceId

if TYPE_CHECKING:
    from gitops_reconciler.sync_controller.operation import SyncOperation


class SyncStatus(StrEnum):
    """Whether live state matches the desired state."""

    SYNCED = "Synced"
    OUT_OF_SYNC = "OutOfSync"
    UNKNOWN = "Unknown"


@dataclass
class ResourceStatus:
    """Comparison and health result for a single resource."""

    id: ResourceId
    sync_status: SyncStatus = SyncStatus.UNKNOWN
    health: HealthStatus = HealthStatus.UNKNOWN
    requires_pruning: bool = False
    message: str | None = None

    def __str__(self) -> str:
        """Return a string representation of the status."""
        if self.message:
            return f"{self.id}: {self.sync_status}/{self.health} ({self.message})"
        return f"{self.id}: {self.sync_status}/{self.health}"


@dataclass
class ApplicationStatus:
    """The most recent known state of an Application."""

    sync_status: SyncStatus = SyncStatus.UNKNOWN
    health_status: HealthStatus = HealthStatus.UNKNOWN
    current_revision: str | None = None
    """The revision most recently applied, or rolled back to."""

    desired_revision: str | None = None
    """The newest revision observed from the source."""

    last_operation: "SyncOperation | None" = None
    error: str | None = None
    """The most recent unresolved error."""

    resources: list[ResourceStatus] = field(default_factory=list)

    def __str__(self) -> str:
        """Return a string representation of the status."""
        value = f"{self.sync_status}/{self.health_status}"
        if self.error:
            return f"{value}: {self.error}"
        return value
