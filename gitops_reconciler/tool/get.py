"""gitops-reconciler get action."""

import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
from typing import Any, cast

from .common import add_path_flags, select_applications
from .format import JsonFormatter, PrintFormatter, YamlFormatter

_LOGGER = logging.getLogger(__name__)


class GetApplicationAction:
    """Get details about Applications."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "applications",
                aliases=["apps", "app"],
                help="Get Application objects",
                description="Print information about local Application objects",
            ),
        )
        add_path_flags(args)
        args.add_argument(
            "--output",
            "-o",
            choices=["table", "wide", "yaml", "json"],
            default="table",
            help="Output format of the command",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        path,
        apps: list[str] | None,
        output: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        found = await select_applications(path, apps)
        if not found:
            print(f"No Application objects found in {path}")
            return

        if output in ("yaml", "json"):
            content = [app.compact_dict() for app in found]
            if output == "yaml":
                YamlFormatter().print(content)
            else:
                JsonFormatter().print(content)
            return

        cols = ["name", "namespace", "path", "revision", "destination"]
        if output == "wide":
            cols.extend(["repo", "automated", "prune", "self-heal"])
        results: list[dict[str, Any]] = []
        for app in found:
            results.append(
                {
                    "name": app.name,
                    "namespace": app.namespace,
                    "path": app.source.path,
                    "revision": app.source.target_revision,
                    "destination": f"{app.destination.server}/{app.destination.namespace}",
                    "repo": app.source.repo_url,
                    "automated": app.sync_policy.automated,
                    "prune": app.sync_policy.prune,
                    "self-heal": app.sync_policy.self_heal,
                }
            )
        PrintFormatter(cols).print(results)


class GetAction:
    """gitops-reconciler get action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "get",
                help="Print information about local Applications",
                description="Print information about local Applications",
            ),
        )
        subcmds = args.add_subparsers(
            title="Available commands",
            required=True,
        )
        GetApplicationAction.register(subcmds)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        # No-op given subcommands are always the dispatch target
