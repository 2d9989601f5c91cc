"""The sync controller module.

This module applies action plans to the managed environment as sync
operations, running hooks and waves in order.
"""

from .artifact import AppliedState
from .executor import SyncExecutor
from .operation import (
    SUPERSEDED,
    HookResult,
    OperationOrigin,
    OperationPhase,
    ResourceResult,
    ResultPhase,
    SyncOperation,
)
from .waiter import HookWaiter

__all__ = [
    "SUPERSEDED",
    "SyncExecutor",
    "SyncOperation",
    "OperationPhase",
    "OperationOrigin",
    "ResultPhase",
    "ResourceResult",
    "HookResult",
    "HookWaiter",
    "AppliedState",
]
