"""gitops-reconciler diff action."""

import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import sys
from typing import Any, cast

from gitops_reconciler.diff_engine import ActionPlan, diff, render_diff
from gitops_reconciler.exceptions import ResolutionError
from gitops_reconciler.orchestrator import ApplicationController
from gitops_reconciler.resolver import ResolvedState
from gitops_reconciler.self_heal import destinations_of

from .common import add_controller_flags, add_manual, build_controller, select_applications
from .format import JsonFormatter, PrintFormatter, YamlListFormatter

_LOGGER = logging.getLogger(__name__)


def add_diff_flags(args: ArgumentParser) -> None:
    """Add shared diff flags."""
    args.add_argument(
        "--output",
        "-o",
        choices=["plan", "diff", "yaml", "json"],
        default="plan",
        help="Output format of the command",
    )
    args.add_argument(
        "--unified",
        "-u",
        type=int,
        default=3,
        help="output NUM (default 3) lines of unified context",
    )
    args.add_argument(
        "--limit-bytes",
        help="Maximum bytes for each diff output (0=unlimited)",
        type=int,
        default=0,
    )


async def compute_plan(controller: ApplicationController, name: str) -> ActionPlan:
    """Compute the action plan of an Application added to the controller."""
    app = controller.store.get_application(name)
    target = controller.store.get_artifact(name, ResolvedState)
    if app is None or target is None:
        status = controller.get_status(name)
        raise ResolutionError(status.error or f"Application {name} was not resolved")
    view = controller.observer.view(*destinations_of(app, target))
    return diff(target, view, app.sync_policy)


class DiffAction:
    """gitops-reconciler diff action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args: ArgumentParser = cast(
            ArgumentParser,
            subparsers.add_parser(
                "diff",
                help="Diff the desired state of Applications with live state",
                description=(
                    "The diff command resolves Applications from the local working "
                    "tree and prints the actions needed to make the live state match."
                ),
            ),
        )
        add_controller_flags(args)
        add_diff_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        path,
        apps: list[str] | None,
        live,
        destination: str,
        config,
        simulate: bool,
        output: str,
        unified: int,
        limit_bytes: int,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        found = await select_applications(path, apps)
        if not found:
            print(f"No Application objects found in {path}")
            return
        controller, _ = await build_controller(path, live, destination, config, simulate)
        try:
            plans = []
            for app in found:
                await add_manual(controller, app)
                plans.append(await compute_plan(controller, app.name))

            if output == "diff":
                for plan in plans:
                    view = controller.observer.view(
                        *{action.id.destination for action in plan.actions}
                    )
                    for line in render_diff(plan, view, n=unified, limit_bytes=limit_bytes):
                        sys.stdout.write(line if line.endswith("\n") else line + "\n")
                return

            results: list[dict[str, Any]] = [
                {
                    "app": plan.app_name,
                    "action": str(action.type),
                    "kind": action.id.kind,
                    "namespace": action.id.namespace or "",
                    "name": action.id.name,
                    "wave": action.wave,
                    "revision": plan.revision_id,
                }
                for plan in plans
                for action in plan.actions
            ]
            if output == "yaml":
                YamlListFormatter().print(results)
            elif output == "json":
                JsonFormatter().print(results)
            elif not results:
                print("All Applications are in sync")
            else:
                PrintFormatter(
                    ["app", "action", "kind", "namespace", "name", "wave"]
                ).print(results)
        finally:
            await controller.stop()
