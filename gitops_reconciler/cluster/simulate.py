"""Apply listeners simulating the controllers of a real cluster.

Attach them with `InMemoryCluster.add_apply_listener` so that objects written
by a sync report the status their controllers would eventually report.
"""

from collections.abc import Callable
from typing import Any

from gitops_reconciler.manifest import ResourceId

from .in_memory import ApplyListener, InMemoryCluster

__all__ = [
    "rollout",
    "job_runner",
    "simulate_all",
]


def _generation(obj: dict[str, Any]) -> int:
    return int((obj.get("metadata") or {}).get("generation", 1))


def _replicas(obj: dict[str, Any]) -> int:
    return int((obj.get("spec") or {}).get("replicas", 1))


def _workload_status(obj: dict[str, Any]) -> dict[str, Any] | None:
    kind = obj.get("kind")
    replicas = _replicas(obj)
    generation = _generation(obj)
    if kind == "Deployment":
        return {
            "observedGeneration": generation,
            "replicas": replicas,
            "updatedReplicas": replicas,
            "readyReplicas": replicas,
            "availableReplicas": replicas,
            "conditions": [{"type": "Available", "status": "True"}],
        }
    if kind == "StatefulSet":
        return {
            "observedGeneration": generation,
            "replicas": replicas,
            "readyReplicas": replicas,
            "currentRevision": f"rev-{generation}",
            "updateRevision": f"rev-{generation}",
        }
    if kind == "ReplicaSet":
        return {
            "observedGeneration": generation,
            "replicas": replicas,
            "availableReplicas": replicas,
        }
    if kind == "DaemonSet":
        return {
            "observedGeneration": generation,
            "desiredNumberScheduled": 1,
            "updatedNumberScheduled": 1,
            "numberAvailable": 1,
        }
    return None


def rollout(cluster: InMemoryCluster, resource_id: ResourceId, obj: dict[str, Any]) -> None:
    """Report every applied workload as fully rolled out."""
    if (status := _workload_status(obj)) is not None and obj.get("status") != status:
        cluster.set_status(resource_id, status)


def job_runner(
    succeed: bool | Callable[[dict[str, Any]], bool] = True,
) -> ApplyListener:
    """Return a listener finishing every applied Job and Pod.

    `succeed` may be a predicate deciding the outcome per object.
    """

    def listener(
        cluster: InMemoryCluster, resource_id: ResourceId, obj: dict[str, Any]
    ) -> None:
        if obj.get("kind") not in ("Job", "Pod") or obj.get("status"):
            return
        ok = succeed(obj) if callable(succeed) else succeed
        if obj["kind"] == "Pod":
            cluster.set_status(resource_id, {"phase": "Succeeded" if ok else "Failed"})
            return
        condition = "Complete" if ok else "Failed"
        cluster.set_status(
            resource_id,
            {
                "conditions": [{"type": condition, "status": "True"}],
                "succeeded" if ok else "failed": 1,
            },
        )

    return listener


def simulate_all(cluster: InMemoryCluster) -> None:
    """Attach the rollout and successful job runner listeners."""
    cluster.add_apply_listener(rollout)
    cluster.add_apply_listener(job_runner())
