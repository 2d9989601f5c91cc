"""gitops-reconciler sync action."""

import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
from typing import Any, cast

from gitops_reconciler.exceptions import ReconcilerException
from gitops_reconciler.store import ApplicationStatus
from gitops_reconciler.sync_controller import OperationPhase, SyncOperation

from .common import add_controller_flags, add_manual, build_controller, select_applications
from .format import JsonFormatter, PrintFormatter, YamlFormatter

_LOGGER = logging.getLogger(__name__)


def operation_dict(operation: SyncOperation, status: ApplicationStatus) -> dict[str, Any]:
    """Summarize an operation and the resulting status."""
    return {
        "application": operation.app_name,
        "revision": operation.revision_id,
        "phase": str(operation.phase),
        "message": operation.message,
        "syncStatus": str(status.sync_status),
        "healthStatus": str(status.health_status),
        "resources": [
            {
                "action": str(result.action),
                "resource": str(result.id),
                "wave": result.wave,
                "phase": str(result.phase),
                "message": result.message,
            }
            for result in operation.resource_results.values()
        ],
        "hooks": [
            {
                "hook": str(hook.hook_type),
                "resource": str(hook.id),
                "phase": str(hook.phase),
                "message": hook.message,
            }
            for hook in operation.hook_results
        ],
    }


class SyncAction:
    """gitops-reconciler sync action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args: ArgumentParser = cast(
            ArgumentParser,
            subparsers.add_parser(
                "sync",
                help="Preview a sync of Applications against an in memory cluster",
                description=(
                    "The sync command runs one sync operation per Application "
                    "against an in memory cluster seeded with the live manifests "
                    "and prints the result of every action."
                ),
            ),
        )
        add_controller_flags(args)
        args.add_argument(
            "--output",
            "-o",
            choices=["table", "yaml", "json"],
            default="table",
            help="Output format of the command",
        )
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
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        found = await select_applications(path, apps)
        if not found:
            print(f"No Application objects found in {path}")
            return
        controller, _ = await build_controller(path, live, destination, config, simulate)
        results: list[tuple[SyncOperation, ApplicationStatus]] = []
        try:
            for app in found:
                await add_manual(controller, app)
                operation = await controller.trigger_sync(app.name)
                results.append((operation, controller.get_status(app.name)))
        finally:
            await controller.stop()

        if output in ("yaml", "json"):
            content = [operation_dict(operation, status) for operation, status in results]
            if output == "yaml":
                YamlFormatter().print(content)
            else:
                JsonFormatter().print(content)
        else:
            self._print_table(results)
        failed = [
            operation.app_name
            for operation, _ in results
            if operation.phase == OperationPhase.FAILED
        ]
        if failed:
            raise ReconcilerException(f"Sync failed for {', '.join(failed)}")

    def _print_table(
        self, results: list[tuple[SyncOperation, ApplicationStatus]]
    ) -> None:
        rows: list[dict[str, Any]] = []
        for operation, _ in results:
            for result in operation.resource_results.values():
                rows.append(
                    {
                        "app": operation.app_name,
                        "wave": result.wave,
                        "action": result.action,
                        "resource": result.id,
                        "phase": result.phase,
                        "message": result.message or "",
                    }
                )
            for hook in operation.hook_results:
                rows.append(
                    {
                        "app": operation.app_name,
                        "wave": hook.wave,
                        "action": hook.hook_type,
                        "resource": hook.id,
                        "phase": hook.phase,
                        "message": hook.message or "",
                    }
                )
        if rows:
            PrintFormatter().print(rows)
            print()
        PrintFormatter().print(
            [
                {
                    "app": operation.app_name,
                    "revision": operation.revision_id,
                    "operation": operation.phase,
                    "sync": status.sync_status,
                    "health": status.health_status,
                    "message": status.error or operation.message or "",
                }
                for operation, status in results
            ]
        )
