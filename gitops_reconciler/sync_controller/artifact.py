"""Artifact representation."""

from dataclasses import dataclass, field, replace

from gitops_reconciler.manifest import ResourceId
from gitops_reconciler.resolver import ResolvedState
from gitops_reconciler.store.artifact import Artifact


@dataclass(frozen=True, kw_only=True)
class AppliedState(Artifact):
    """What has been applied to the managed environment for an Application.

    The `resolved` state is the one most recently applied. `hashes` holds the
    hash of the definition last successfully applied for each resource, which
    may belong to an earlier revision when an operation partially failed.
    """

    revision_id: str
    resolved: ResolvedState
    hashes: dict[ResourceId, str] = field(default_factory=dict, hash=False)

    def with_hash(self, resource_id: ResourceId, value: str) -> "AppliedState":
        return replace(self, hashes={**self.hashes, resource_id: value})

    def without(self, resource_id: ResourceId) -> "AppliedState":
        hashes = dict(self.hashes)
        hashes.pop(resource_id, None)
        return replace(self, hashes=hashes)
