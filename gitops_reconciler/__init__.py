"""
gitops-reconciler keeps resources in a cluster synchronized with the desired
state described by Applications in git repositories.

The `orchestrator.ApplicationController` wires the components together:

- `source_controller` watches repositories for new revisions
- `resolver` expands Applications into concrete resources
- `cluster` observes live state of the managed environment
- `diff_engine` computes the actions that reconcile live with desired state
- `sync_controller` applies those actions in waves, running hooks
- `health` assesses the health of live objects
- `self_heal` reverts drift from the applied state
- `history` records synchronized revisions for rollback
"""

__all__ = [
    "cluster",
    "config",
    "diff_engine",
    "exceptions",
    "health",
    "history",
    "manifest",
    "orchestrator",
    "resolver",
    "self_heal",
    "source_controller",
    "store",
    "sync_controller",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
