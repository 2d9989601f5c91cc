"""Desired state sources and the registry used to find them by URL."""

from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Callable
import logging

from gitops_reconciler.exceptions import FetchError

from .artifact import RevisionSnapshot, normalize_path

_LOGGER = logging.getLogger(__name__)

MAX_CACHED_SNAPSHOTS = 32


class Source(ABC):
    """A version-controlled source of desired state."""

    url: str

    @abstractmethod
    async def latest_revision(self, target_revision: str) -> str:
        """Return the commit identifier the target revision currently points at.

        Raises:
            FetchError: If the source could not be reached.
        """

    @abstractmethod
    async def fetch(self, revision_id: str) -> RevisionSnapshot:
        """Return the snapshot of the repository at a commit.

        Raises:
            FetchError: If the source could not be reached or read.
        """


class InMemorySource(Source):
    """A source whose revisions are pushed programmatically.

    Each call to `commit` records a new revision and moves the target revision
    (a branch name) to it.
    """

    def __init__(self, url: str) -> None:
        """Initialize InMemorySource."""
        self.url = url
        self._revisions: dict[str, dict[str, str]] = {}
        self._refs: dict[str, str] = {}
        self._counter = 0
        self.fail_with: str | None = None
        """When set, every request fails with this message."""

    def commit(
        self, files: dict[str, str], target_revision: str = "HEAD"
    ) -> str:
        """Record a new revision containing the files and return its id."""
        self._counter += 1
        revision_id = f"rev{self._counter}"
        self._revisions[revision_id] = {
            normalize_path(path): content for path, content in files.items()
        }
        self._refs[target_revision] = revision_id
        return revision_id

    def _check(self) -> None:
        if self.fail_with is not None:
            raise FetchError(self.url, self.fail_with)

    async def latest_revision(self, target_revision: str) -> str:
        self._check()
        if target_revision in self._revisions:
            return target_revision
        if (revision_id := self._refs.get(target_revision)) is None:
            raise FetchError(self.url, f"Unknown revision '{target_revision}'")
        return revision_id

    async def fetch(self, revision_id: str) -> RevisionSnapshot:
        self._check()
        if (files := self._revisions.get(revision_id)) is None:
            raise FetchError(self.url, f"Unknown revision '{revision_id}'")
        return RevisionSnapshot(url=self.url, revision_id=revision_id, files=dict(files))


class SourceRegistry:
    """Finds the Source for a repository URL and caches fetched snapshots.

    Snapshots are immutable so they are cached by (url, revision_id).
    """

    def __init__(self, factory: Callable[[str], Source] | None = None) -> None:
        """Initialize SourceRegistry.

        Args:
            factory: Creates a Source for URLs that were not registered.
        """
        self._sources: dict[str, Source] = {}
        self._default: Source | None = None
        self._factory = factory
        self._snapshots: OrderedDict[tuple[str, str], RevisionSnapshot] = OrderedDict()

    def register(self, source: Source) -> None:
        """Register the source used for its URL."""
        self._sources[source.url] = source

    def set_default(self, source: Source) -> None:
        """Use the source for every URL that was not registered."""
        self._default = source

    def get(self, url: str) -> Source:
        """Return the source for a URL."""
        if (source := self._sources.get(url)) is not None:
            return source
        if self._default is not None:
            return self._default
        if self._factory is not None:
            source = self._factory(url)
            self._sources[url] = source
            return source
        raise FetchError(url, "No source registered for repository")

    async def latest_revision(self, url: str, target_revision: str) -> str:
        """Return the commit identifier the target revision points at."""
        return await self.get(url).latest_revision(target_revision)

    async def fetch(self, url: str, revision_id: str) -> RevisionSnapshot:
        """Fetch a snapshot, serving repeated requests from the cache."""
        key = (url, revision_id)
        if (snapshot := self._snapshots.get(key)) is not None:
            self._snapshots.move_to_end(key)
            return snapshot
        snapshot = await self.get(url).fetch(revision_id)
        self._snapshots[key] = snapshot
        while len(self._snapshots) > MAX_CACHED_SNAPSHOTS:
            self._snapshots.popitem(last=False)
        _LOGGER.debug("Fetched snapshot %s", snapshot)
        return snapshot

    async def fetch_latest(self, url: str, target_revision: str) -> RevisionSnapshot:
        """Fetch the snapshot the target revision currently points at."""
        revision_id = await self.latest_revision(url, target_revision)
        return await self.fetch(url, revision_id)
