"""Git repository sources."""

import asyncio
import hashlib
import logging
import re
from pathlib import Path

import aiofiles
import git

from gitops_reconciler.exceptions import FetchError

from .artifact import MANIFEST_SUFFIXES, RevisionSnapshot
from .cache import GitCache, get_git_cache
from .source import Source

_LOGGER = logging.getLogger(__name__)

_COMMIT_RE = re.compile(r"^[0-9a-f]{40}$")
_DIRTY_MARKER = "-dirty-"


def _read_commit_tree(repo: git.Repo, revision_id: str) -> dict[str, str]:
    """Read every manifest file of a commit from the object database."""
    commit = repo.commit(revision_id)
    files: dict[str, str] = {}
    for item in commit.tree.traverse():
        if item.type != "blob" or not item.path.endswith(MANIFEST_SUFFIXES):
            continue
        files[item.path] = item.data_stream.read().decode("utf-8")
    return files


def _parse_ls_remote(output: str, target_revision: str) -> str | None:
    """Pick the commit for a revision from `git ls-remote` output.

    Annotated tags are listed twice, the peeled (^{}) entry is the commit.
    """
    candidates = [
        target_revision,
        f"refs/heads/{target_revision}",
        f"refs/tags/{target_revision}^{{}}",
        f"refs/tags/{target_revision}",
    ]
    refs: dict[str, str] = {}
    for line in output.splitlines():
        sha, _, ref = line.partition("\t")
        if sha and ref:
            refs[ref.strip()] = sha.strip()
    for candidate in candidates:
        if candidate in refs:
            return refs[candidate]
    return None


class GitSource(Source):
    """A remote git repository, cloned into the local cache."""

    def __init__(self, url: str, cache: GitCache | None = None) -> None:
        """Initialize GitSource."""
        self.url = url
        self._cache = cache or get_git_cache()
        self._lock = asyncio.Lock()

    async def latest_revision(self, target_revision: str) -> str:
        if _COMMIT_RE.match(target_revision):
            return target_revision
        try:
            output = await asyncio.to_thread(
                git.cmd.Git().ls_remote, self.url, target_revision
            )
        except git.exc.GitCommandError as err:
            raise FetchError(self.url, f"ls-remote failed: {err}") from err
        if (sha := _parse_ls_remote(output, target_revision)) is None:
            raise FetchError(self.url, f"Unknown revision '{target_revision}'")
        return sha

    def _clone_or_fetch(self) -> git.Repo:
        repo_path = self._cache.get_repo_path(self.url)
        if (repo_path / ".git").exists():
            _LOGGER.debug("Fetching existing repository at %s", repo_path)
            repo = git.Repo(str(repo_path))
            repo.remotes.origin.fetch(tags=True)
            return repo
        _LOGGER.info("Cloning repository %s to %s", self.url, repo_path)
        return git.Repo.clone_from(self.url, str(repo_path))

    def _fetch_sync(self, revision_id: str) -> dict[str, str]:
        repo = self._clone_or_fetch()
        return _read_commit_tree(repo, revision_id)

    async def fetch(self, revision_id: str) -> RevisionSnapshot:
        async with self._lock:
            try:
                files = await asyncio.to_thread(self._fetch_sync, revision_id)
            except (
                git.exc.GitError,
                git.exc.BadName,
                git.exc.BadObject,
                ValueError,
                UnicodeDecodeError,
            ) as err:
                raise FetchError(self.url, f"Git operation failed: {err}") from err
        _LOGGER.info("Fetched %s@%s (%d files)", self.url, revision_id, len(files))
        return RevisionSnapshot(url=self.url, revision_id=revision_id, files=files)


class LocalGitSource(Source):
    """A local git working tree.

    The revision of a clean tree is its HEAD commit. Uncommitted changes are
    included and produce a revision id derived from HEAD and the contents, so
    every edit is observed as a new revision.
    """

    def __init__(self, path: Path, url: str | None = None) -> None:
        """Initialize LocalGitSource."""
        try:
            self._repo = git.Repo(str(path), search_parent_directories=True)
        except (git.exc.InvalidGitRepositoryError, git.exc.NoSuchPathError) as err:
            raise FetchError(str(path), f"Not a git repository: {err}") from err
        self.root = Path(self._repo.working_tree_dir or path).resolve()
        self.url = url or f"file://{self.root}"
        self._dirty: dict[str, dict[str, str]] = {}

    async def _read_working_tree(self) -> dict[str, str]:
        files: dict[str, str] = {}
        paths = await asyncio.to_thread(
            lambda: sorted(
                p
                for p in self.root.rglob("*")
                if p.is_file()
                and p.suffix.lower() in MANIFEST_SUFFIXES
                and ".git" not in p.relative_to(self.root).parts
            )
        )
        for file_path in paths:
            try:
                async with aiofiles.open(file_path, mode="r", encoding="utf-8") as f:
                    files[file_path.relative_to(self.root).as_posix()] = await f.read()
            except (OSError, UnicodeDecodeError) as err:
                raise FetchError(self.url, f"Failed to read {file_path}: {err}") from err
        return files

    async def latest_revision(self, target_revision: str) -> str:
        try:
            head = self._repo.head.commit.hexsha
            dirty = self._repo.is_dirty(untracked_files=True)
        except ValueError as err:
            raise FetchError(self.url, f"Repository has no commits: {err}") from err
        branch = None if self._repo.head.is_detached else self._repo.active_branch.name
        if target_revision not in ("HEAD", "", head, branch):
            try:
                return self._repo.commit(target_revision).hexsha
            except (git.exc.BadName, ValueError) as err:
                raise FetchError(
                    self.url, f"Unknown revision '{target_revision}'"
                ) from err
        if not dirty:
            return head
        files = await self._read_working_tree()
        digest = hashlib.sha256()
        for path in sorted(files):
            digest.update(path.encode("utf-8"))
            digest.update(files[path].encode("utf-8"))
        revision_id = f"{head}{_DIRTY_MARKER}{digest.hexdigest()[:12]}"
        self._dirty = {revision_id: files}
        return revision_id

    async def fetch(self, revision_id: str) -> RevisionSnapshot:
        if (files := self._dirty.get(revision_id)) is None:
            if _DIRTY_MARKER in revision_id:
                raise FetchError(self.url, f"Working tree changed since {revision_id}")
            try:
                files = await asyncio.to_thread(
                    _read_commit_tree, self._repo, revision_id
                )
            except (
                git.exc.GitError,
                git.exc.BadName,
                git.exc.BadObject,
                ValueError,
                UnicodeDecodeError,
            ) as err:
                raise FetchError(self.url, f"Git operation failed: {err}") from err
        return RevisionSnapshot(url=self.url, revision_id=revision_id, files=dict(files))
