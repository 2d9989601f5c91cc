"""Revision/Rollback Manager.

Keeps a bounded history of the ResolvedStates that were synchronized for each
Application so that any recorded revision can be applied again. The oldest
records are evicted first once the limit is reached.
"""

from collections import deque
from dataclasses import dataclass, field
import datetime
import logging

from .config import HistoryConfig
from .exceptions import RevisionNotFoundError
from .resolver import ResolvedState
from .sync_controller.operation import OperationPhase, SyncOperation

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "RevisionRecord",
    "RevisionHistory",
]


@dataclass
class RevisionRecord:
    """One synchronized revision of an Application."""

    revision_id: str
    resolved: ResolvedState = field(repr=False)
    operation: SyncOperation | None = field(default=None, repr=False)
    recorded_at: datetime.datetime = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )

    @property
    def succeeded(self) -> bool:
        return (
            self.operation is not None
            and self.operation.phase == OperationPhase.SUCCEEDED
        )


class RevisionHistory:
    """Bounded per-Application history of synchronized revisions."""

    def __init__(self, config: HistoryConfig | None = None) -> None:
        """Initialize RevisionHistory."""
        self._config = config or HistoryConfig()
        self._records: dict[str, deque[RevisionRecord]] = {}
        self._current: dict[str, str] = {}

    def record(
        self, app_name: str, resolved: ResolvedState, operation: SyncOperation
    ) -> RevisionRecord:
        """Record the outcome of a sync operation.

        A successful operation also moves the current revision pointer.
        """
        records = self._records.setdefault(
            app_name, deque(maxlen=self._config.limit)
        )
        record = RevisionRecord(
            revision_id=resolved.revision_id, resolved=resolved, operation=operation
        )
        if len(records) == records.maxlen:
            _LOGGER.debug(
                "Evicting revision %s of %s from history",
                records[0].revision_id,
                app_name,
            )
        records.append(record)
        if record.succeeded:
            self._current[app_name] = resolved.revision_id
        _LOGGER.debug(
            "Recorded revision %s of %s (%s)", resolved.revision_id, app_name, operation.phase
        )
        return record

    def get(self, app_name: str, revision_id: str) -> RevisionRecord:
        """Return the most recent record of a revision.

        Records of successful operations are preferred over failed ones.

        Raises:
            RevisionNotFoundError: If the revision is not in the history.
        """
        candidates = [
            record
            for record in reversed(self._records.get(app_name, ()))
            if record.revision_id == revision_id
        ]
        if not candidates:
            raise RevisionNotFoundError(
                f"Revision {revision_id} of Application {app_name} is not in the history"
            )
        for record in candidates:
            if record.succeeded:
                return record
        return candidates[0]

    def list(self, app_name: str) -> list[RevisionRecord]:
        """Return the records of an Application, oldest first."""
        return list(self._records.get(app_name, ()))

    def current(self, app_name: str) -> str | None:
        """Return the revision the Application currently runs."""
        return self._current.get(app_name)

    def set_current(self, app_name: str, revision_id: str) -> None:
        """Move the current revision pointer.

        Raises:
            RevisionNotFoundError: If the revision is not in the history.
        """
        self.get(app_name, revision_id)
        self._current[app_name] = revision_id

    def forget(self, app_name: str) -> None:
        """Drop the history of an Application."""
        self._records.pop(app_name, None)
        self._current.pop(app_name, None)
