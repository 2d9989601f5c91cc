"""Polls one source for new revisions."""

import logging

from .artifact import RevisionSnapshot
from .source import SourceRegistry

_LOGGER = logging.getLogger(__name__)


class SourceWatcher:
    """Watches a (repository, target revision) pair for new commits."""

    def __init__(self, registry: SourceRegistry, url: str, target_revision: str) -> None:
        """Initialize SourceWatcher."""
        self._registry = registry
        self.url = url
        self.target_revision = target_revision
        self.last_revision: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.url, self.target_revision)

    async def poll(self) -> RevisionSnapshot | None:
        """Return a snapshot if the target revision moved since the last poll.

        Raises:
            FetchError: If the source could not be reached.
        """
        revision_id = await self._registry.latest_revision(
            self.url, self.target_revision
        )
        if revision_id == self.last_revision:
            _LOGGER.debug("No change for %s@%s", self.url, self.target_revision)
            return None
        snapshot = await self._registry.fetch(self.url, revision_id)
        _LOGGER.info(
            "Observed new revision %s for %s@%s (previous %s)",
            revision_id,
            self.url,
            self.target_revision,
            self.last_revision,
        )
        self.last_revision = revision_id
        return snapshot

    def reset(self) -> None:
        """Forget the last observed revision so the next poll reports it again."""
        self.last_revision = None
