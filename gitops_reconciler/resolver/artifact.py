"""Artifact representation."""

from dataclasses import dataclass, field
from typing import Any

from gitops_reconciler.manifest import HookSpec, ResourceId
from gitops_reconciler.store.artifact import Artifact


@dataclass(frozen=True)
class DesiredResource:
    """One concrete resource definition produced by resolving a revision."""

    id: ResourceId
    manifest: dict[str, Any] = field(hash=False)
    wave: int = 0
    hook: HookSpec | None = None
    hash: str = ""
    """Hash of the canonical form of the manifest."""

    owner: str = ""
    """Name of the Application in the composition tree that declared it."""


@dataclass(frozen=True)
class CompositionNode:
    """An Application and the child Applications it declared."""

    name: str
    url: str
    revision_id: str
    target_revision: str = "HEAD"
    path: str = "."
    children: tuple["CompositionNode", ...] = ()

    def walk(self) -> list["CompositionNode"]:
        """Return this node and all descendants, depth first."""
        nodes = [self]
        for child in self.children:
            nodes.extend(child.walk())
        return nodes


@dataclass(frozen=True, kw_only=True)
class ResolvedState(Artifact):
    """The full desired state of an Application at one revision.

    This object is produced by the Resolver and is immutable; a new revision
    always produces a new ResolvedState.
    """

    app_name: str
    """Name of the root Application."""

    revision_id: str
    """Revision of the root Application's source."""

    resources: tuple[DesiredResource, ...] = ()
    """Resources in apply order."""

    tree: CompositionNode | None = None
    """The composition tree used to produce the resources."""

    @property
    def revision_key(self) -> str:
        """Identifier of every revision that contributed to this state."""
        if self.tree is None:
            return self.revision_id
        return "+".join(node.revision_id for node in self.tree.walk())

    def get(self, resource_id: ResourceId) -> DesiredResource | None:
        """Return the desired resource with the id, if any."""
        for resource in self.resources:
            if resource.id == resource_id:
                return resource
        return None

    @property
    def ids(self) -> set[ResourceId]:
        return {resource.id for resource in self.resources}
