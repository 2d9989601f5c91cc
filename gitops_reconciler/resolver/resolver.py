"""Desired State Resolver.

The resolver expands an Application at one revision into the ordered set of
concrete resources it describes:

1. Collect every document of every file under the source path.
2. Substitute `${name}` parameter placeholders.
3. Deep merge the overlay patches.
4. Validate each document against the schema of its kind.
5. Recursively resolve child Applications (composition), detecting cycles.
6. Default namespaces and label every resource with its owner.
7. Sort by (wave, kind order, namespace, name).
"""

import json
import logging
from typing import Any

import yaml

from gitops_reconciler.config import ResolverConfig
from gitops_reconciler.context import trace_context
from gitops_reconciler.exceptions import (
    CyclicReferenceError,
    FetchError,
    InputException,
    ResolutionError,
)
from gitops_reconciler.manifest import (
    CLUSTER_SCOPED_KINDS,
    INSTANCE_LABEL,
    Application,
    ResourceId,
    hook_spec,
    is_application,
    kind_order,
    manifest_hash,
    normalized,
    sync_wave,
)
from gitops_reconciler.source_controller import RevisionSnapshot, SourceRegistry
from gitops_reconciler.values import apply_patches, expand_placeholders

from .artifact import CompositionNode, DesiredResource, ResolvedState
from .schema import validate

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "Resolver",
]


def _order_key(resource: DesiredResource) -> tuple[int, int, str, str, str]:
    return (
        resource.wave,
        kind_order(resource.id.kind),
        resource.id.namespace or "",
        resource.id.name,
        resource.id.kind,
    )


def _parse_file(path: str, content: str) -> list[Any]:
    try:
        if path.endswith(".json"):
            doc = json.loads(content)
            return doc if isinstance(doc, list) else [doc]
        return list(yaml.safe_load_all(content))
    except (yaml.YAMLError, ValueError) as err:
        raise ResolutionError(f"Unable to parse {path}: {err}") from err


class Resolver:
    """Expands Applications into their concrete desired resources."""

    def __init__(self, registry: SourceRegistry, config: ResolverConfig) -> None:
        """Initialize Resolver.

        Args:
            registry: Fetches snapshots of child Applications in other repositories
            config: The configuration for the resolver
        """
        self._registry = registry
        self._config = config

    async def resolve(self, app: Application, snapshot: RevisionSnapshot) -> ResolvedState:
        """Resolve an Application against a snapshot of its source.

        Raises:
            ResolutionError: If the desired state could not be produced.
            FetchError: If the source of a child Application could not be fetched.
        """
        with trace_context(f"Resolve '{app.name}'"):
            collected: dict[ResourceId, DesiredResource] = {}
            tree = await self._resolve_app(app, snapshot, [], app, collected)
            resources = tuple(sorted(collected.values(), key=_order_key))
        _LOGGER.info(
            "Resolved Application %s at %s to %d resources",
            app.name,
            snapshot.revision_id,
            len(resources),
        )
        return ResolvedState(
            app_name=app.name,
            revision_id=snapshot.revision_id,
            resources=resources,
            tree=tree,
        )

    async def _resolve_app(
        self,
        app: Application,
        snapshot: RevisionSnapshot,
        ancestors: list[str],
        root: Application,
        collected: dict[ResourceId, DesiredResource],
    ) -> CompositionNode:
        if app.name in ancestors:
            raise CyclicReferenceError(ancestors[ancestors.index(app.name) :] + [app.name])
        if len(ancestors) >= self._config.max_depth:
            raise ResolutionError(
                f"Application composition deeper than {self._config.max_depth}: "
                + " -> ".join(ancestors + [app.name])
            )
        path = ancestors + [app.name]
        children = []
        for source_path, doc in self._load_documents(app, snapshot):
            if is_application(doc):
                try:
                    child = Application.parse_doc(doc)
                except InputException as err:
                    raise ResolutionError(
                        f"Invalid child Application in {source_path}: {err}"
                    ) from err
                _LOGGER.debug("Application %s declares child %s", app.name, child.name)
                child_snapshot = await self._child_snapshot(app, snapshot, child)
                children.append(
                    await self._resolve_app(child, child_snapshot, path, root, collected)
                )
                continue
            resource = self._desired_resource(doc, app, root, source_path)
            self._add(collected, resource)
        return CompositionNode(
            name=app.name,
            url=snapshot.url,
            revision_id=snapshot.revision_id,
            target_revision=app.source.target_revision,
            path=app.source.path,
            children=tuple(children),
        )

    async def _child_snapshot(
        self, parent: Application, snapshot: RevisionSnapshot, child: Application
    ) -> RevisionSnapshot:
        source = child.source
        if source.repo_url == snapshot.url and source.target_revision in (
            parent.source.target_revision,
            snapshot.revision_id,
            "HEAD",
        ):
            return snapshot
        _LOGGER.debug(
            "Fetching %s@%s for child Application %s",
            source.repo_url,
            source.target_revision,
            child.name,
        )
        try:
            return await self._registry.fetch_latest(
                source.repo_url, source.target_revision
            )
        except FetchError as err:
            raise FetchError(err.url, err.message, source.target_revision) from err

    def _load_documents(
        self, app: Application, snapshot: RevisionSnapshot
    ) -> list[tuple[str, dict[str, Any]]]:
        files = snapshot.files_under(app.source.path)
        if not files and app.source.path.strip("./"):
            raise ResolutionError(
                f"Path '{app.source.path}' of Application {app.name} not found in {snapshot}"
            )
        documents = []
        for file_path, content in files:
            for doc in _parse_file(file_path, content):
                if doc is None:
                    continue
                if not isinstance(doc, dict):
                    raise ResolutionError(
                        f"Expected a mapping in {file_path}, found {type(doc).__name__}"
                    )
                doc = expand_placeholders(doc, app.source.parameters, file_path)
                doc = apply_patches(doc, app.source.patches)
                validate(doc, file_path)
                documents.append((file_path, doc))
        return documents

    def _desired_resource(
        self,
        doc: dict[str, Any],
        app: Application,
        root: Application,
        source_path: str,
    ) -> DesiredResource:
        manifest = normalized(doc)
        metadata = manifest["metadata"]
        if manifest["kind"] in CLUSTER_SCOPED_KINDS:
            metadata.pop("namespace", None)
        elif not metadata.get("namespace"):
            metadata["namespace"] = app.destination.namespace
        labels = metadata.get("labels") or {}
        labels[INSTANCE_LABEL] = root.name
        metadata["labels"] = labels
        try:
            wave = sync_wave(manifest)
            hook = hook_spec(manifest)
        except InputException as err:
            raise ResolutionError(f"Invalid annotations in {source_path}: {err}") from err
        return DesiredResource(
            id=ResourceId.from_manifest(manifest, app.destination.server),
            manifest=manifest,
            wave=wave,
            hook=hook,
            hash=manifest_hash(manifest),
            owner=app.name,
        )

    def _add(
        self, collected: dict[ResourceId, DesiredResource], resource: DesiredResource
    ) -> None:
        if (existing := collected.get(resource.id)) is None:
            collected[resource.id] = resource
            return
        if existing.hash == resource.hash:
            _LOGGER.debug("Skipping duplicate definition of %s", resource.id)
            return
        raise ResolutionError(
            f"Conflicting definitions of {resource.id} declared by "
            f"{existing.owner} and {resource.owner}"
        )
