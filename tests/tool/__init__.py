"""Test helpers for gitops-reconciler tools."""

import contextlib
import io
import sys
from unittest.mock import patch

from gitops_reconciler.tool import format as tool_format
from gitops_reconciler.tool.reconciler import main

RECONCILER_BIN = "gitops-reconciler"


def run_command(args: list[str]) -> str:
    """Run the command line tool in process and return what it printed."""
    stdout = io.StringIO()
    # The formatters bind sys.stdout as a default argument at import time, so
    # point those defaults at the capture buffer as well.
    with patch.object(sys, "argv", [RECONCILER_BIN] + args), contextlib.redirect_stdout(
        stdout
    ), patch.object(
        tool_format.PrintFormatter.print, "__defaults__", (stdout,)
    ), patch.object(
        tool_format.StructFormatter.print, "__defaults__", (stdout,)
    ):
        main()
    return stdout.getvalue()
