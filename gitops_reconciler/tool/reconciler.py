"""Command line tool for previewing how Applications in a local repository sync."""

import argparse
import asyncio
import logging
import sys
import traceback
from typing import Any

import yaml

from gitops_reconciler.config import ControllerConfig
from gitops_reconciler.exceptions import ReconcilerException
from gitops_reconciler.task import task_service_context

from . import diff, get, sync

_LOGGER = logging.getLogger(__name__)


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Command line utility for inspecting and previewing local Applications.",
    )
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    )

    subparsers = parser.add_subparsers(dest="command", help="Command", required=True)

    get.GetAction.register(subparsers)
    diff.DiffAction.register(subparsers)
    sync.SyncAction.register(subparsers)
    return parser


async def _run(action: Any, args: argparse.Namespace) -> None:
    config_path = getattr(args, "config", None)
    config = ControllerConfig.from_yaml_file(config_path) if config_path else ControllerConfig()
    with task_service_context(worker_pool_size=config.sync.worker_pool_size):
        await action.run(**vars(args))


def main() -> None:
    """gitops-reconciler command line tool main entry point."""

    def str_presenter(dumper: yaml.Dumper, data: Any) -> Any:
        """Represent multi-line yaml strings as you'd expect.

        See https://github.com/yaml/pyyaml/issues/240
        """
        return dumper.represent_scalar(
            "tag:yaml.org,2002:str", data, style="|" if data.count("\n") > 0 else None
        )

    yaml.add_representer(str, str_presenter)

    parser = _make_parser()
    args = parser.parse_args()

    if args.log_level:
        logging.basicConfig(level=args.log_level)

    action = args.cls()
    try:
        asyncio.run(_run(action, args))
    except ReconcilerException as err:
        if args.log_level == "DEBUG":
            traceback.print_exc(file=sys.stderr)
        print("gitops-reconciler error: ", err, file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
