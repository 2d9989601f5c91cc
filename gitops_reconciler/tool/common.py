"""Common utilities for commands that run the controller locally.

The commands resolve Applications from a local git working tree. Every
repository URL referenced by an Application is served from that tree, and the
managed environment is an in memory cluster seeded with `--live` manifests.
"""

from argparse import ArgumentParser, BooleanOptionalAction
from dataclasses import replace
import logging
import pathlib
from typing import Any

from gitops_reconciler.cluster import InMemoryCluster
from gitops_reconciler.cluster.simulate import simulate_all
from gitops_reconciler.config import ControllerConfig
from gitops_reconciler.exceptions import InputException
from gitops_reconciler.manifest import (
    CLUSTER_SCOPED_KINDS,
    DEFAULT_DESTINATION,
    DEFAULT_NAMESPACE,
    Application,
)
from gitops_reconciler.orchestrator import (
    ApplicationController,
    load_applications,
    load_manifests,
)
from gitops_reconciler.source_controller import LocalGitSource, SourceRegistry

_LOGGER = logging.getLogger(__name__)


def add_path_flags(args: ArgumentParser) -> None:
    """Add flags selecting the Applications to load."""
    args.add_argument(
        "path",
        help="Path to a directory of Applications within a git working tree",
        type=pathlib.Path,
        default=pathlib.Path("."),
        nargs="?",
    )
    args.add_argument(
        "--app",
        "-a",
        dest="apps",
        action="append",
        help="Only include the Application with this name, may be repeated",
    )


def add_controller_flags(args: ArgumentParser) -> None:
    """Add flags configuring the local controller."""
    add_path_flags(args)
    args.add_argument(
        "--live",
        action="append",
        type=pathlib.Path,
        help="File or directory of manifests the cluster starts with, may be repeated",
    )
    args.add_argument(
        "--destination",
        default=DEFAULT_DESTINATION,
        help="Destination the --live manifests are seeded into",
    )
    args.add_argument(
        "--config",
        type=pathlib.Path,
        default=None,
        help="YAML file with the controller configuration",
    )
    args.add_argument(
        "--simulate",
        default=True,
        action=BooleanOptionalAction,
        help="Report applied workloads as rolled out and hook Jobs as complete",
    )


async def select_applications(
    path: pathlib.Path, apps: list[str] | None
) -> list[Application]:
    """Load the Applications under a path, filtered by name."""
    found = await load_applications(path)
    if apps:
        found = [app for app in found if app.name in apps]
        missing = set(apps) - {app.name for app in found}
        if missing:
            raise InputException(
                f"Applications not found in {path}: {', '.join(sorted(missing))}"
            )
    return found


def _live_object(manifest: dict[str, Any]) -> dict[str, Any]:
    if manifest.get("kind") in CLUSTER_SCOPED_KINDS:
        return manifest
    metadata = manifest.setdefault("metadata", {})
    metadata.setdefault("namespace", DEFAULT_NAMESPACE)
    return manifest


async def build_controller(
    path: pathlib.Path,
    live: list[pathlib.Path] | None,
    destination: str,
    config: pathlib.Path | None,
    simulate: bool,
) -> tuple[ApplicationController, InMemoryCluster]:
    """Create a controller resolving from the working tree at the path."""
    controller_config = (
        ControllerConfig.from_yaml_file(config) if config else ControllerConfig()
    )
    source = LocalGitSource(path)
    registry = SourceRegistry()
    registry.set_default(source)

    cluster = InMemoryCluster()
    for live_path in live or []:
        manifests = [_live_object(doc) for doc in await load_manifests(live_path)]
        _LOGGER.debug("Seeding %d live objects from %s", len(manifests), live_path)
        cluster.seed(destination, manifests)
    if simulate:
        simulate_all(cluster)
    return ApplicationController(cluster, registry, controller_config), cluster


async def add_manual(controller: ApplicationController, app: Application) -> None:
    """Add an Application with automated sync disabled."""
    policy = replace(app.sync_policy, automated=False, self_heal=False)
    await controller.add_application(replace(app, sync_policy=policy))
