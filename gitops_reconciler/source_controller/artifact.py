"""Artifact representation."""

from dataclasses import dataclass, field
from pathlib import PurePosixPath

from gitops_reconciler.store.artifact import Artifact

MANIFEST_SUFFIXES = (".yaml", ".yml", ".json")


def normalize_path(path: str) -> str:
    """Normalize a repository relative path, e.g. './apps/' to 'apps'."""
    parts = [part for part in PurePosixPath(path).parts if part not in (".", "/")]
    return "/".join(parts)


@dataclass(frozen=True, kw_only=True)
class RevisionSnapshot(Artifact):
    """An immutable view of a repository at one revision.

    This object is produced when a source is polled and a new revision is
    observed. The files contain every manifest file in the repository keyed by
    its path relative to the repository root, and must not be modified.
    """

    url: str
    """URL of the repository, for informational/logging purposes."""

    revision_id: str
    """Commit identifier of the revision."""

    files: dict[str, str] = field(default_factory=dict, hash=False, compare=True)
    """Manifest file contents keyed by repository relative path."""

    def files_under(self, path: str) -> list[tuple[str, str]]:
        """Return the (path, content) of all files below a directory, sorted by path."""
        prefix = normalize_path(path)
        results = []
        for file_path in sorted(self.files):
            if prefix and not (
                file_path == prefix or file_path.startswith(prefix + "/")
            ):
                continue
            results.append((file_path, self.files[file_path]))
        return results

    def __str__(self) -> str:
        return f"{self.url}@{self.revision_id}"
