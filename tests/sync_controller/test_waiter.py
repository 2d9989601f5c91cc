"""Tests for the hook waiter."""

import asyncio
from typing import Any

import pytest

from gitops_reconciler.cluster import ClusterObserver, InMemoryCluster
from gitops_reconciler.config import ObserverConfig
from gitops_reconciler.manifest import ResourceId
from gitops_reconciler.sync_controller import HookWaiter, ResultPhase
from gitops_reconciler.sync_controller.waiter import hook_phase

DESTINATION = "in-cluster"
JOB_ID = ResourceId("Job", "default", "migrate")


def _job() -> dict[str, Any]:
    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": {"name": "migrate", "namespace": "default"},
        "spec": {"template": {}},
    }


@pytest.mark.parametrize(
    ("obj", "expected"),
    [
        (None, ResultPhase.RUNNING),
        ({"kind": "Pod", "status": {"phase": "Running"}}, ResultPhase.RUNNING),
        ({"kind": "Pod", "status": {"phase": "Succeeded"}}, ResultPhase.SUCCEEDED),
        ({"kind": "Pod", "status": {"phase": "Failed"}}, ResultPhase.FAILED),
        ({"kind": "Job", "status": {}}, ResultPhase.RUNNING),
        (
            {"kind": "Job", "status": {"conditions": [{"type": "Complete", "status": "True"}]}},
            ResultPhase.SUCCEEDED,
        ),
        (
            {"kind": "Job", "status": {"conditions": [{"type": "Failed", "status": "True"}]}},
            ResultPhase.FAILED,
        ),
    ],
)
def test_hook_phase(obj: dict[str, Any] | None, expected: ResultPhase) -> None:
    """Test the phase of hook objects."""
    assert hook_phase(obj) == expected


async def test_wait_for_hook() -> None:
    """Test waiting for a hook to finish after a given version."""
    cluster = InMemoryCluster()
    observer = ClusterObserver(cluster, ObserverConfig())
    try:
        await observer.observe(DESTINATION)
        obj = await cluster.apply(DESTINATION, _job())
        # A finished previous run is not mistaken for the new one
        cluster.set_status(
            JOB_ID, {"conditions": [{"type": "Failed", "status": "True"}]}
        )
        waiter = HookWaiter(observer, timeout_seconds=2)
        waiter.add(JOB_ID, str(int(obj["metadata"]["resourceVersion"]) + 2))
        with pytest.raises(ValueError, match="already added"):
            waiter.add(JOB_ID)

        task = asyncio.create_task(waiter.wait())
        await asyncio.sleep(0.05)
        assert not task.done()

        await cluster.delete(JOB_ID)
        await cluster.apply(DESTINATION, _job())
        cluster.set_status(
            JOB_ID, {"conditions": [{"type": "Complete", "status": "True"}]}
        )
        events = await asyncio.wait_for(task, timeout=2)
        assert events[JOB_ID].success
        assert not events[JOB_ID].timed_out
    finally:
        await observer.close()


async def test_wait_timeout() -> None:
    """Test a hook that does not finish in time."""
    cluster = InMemoryCluster()
    observer = ClusterObserver(cluster, ObserverConfig())
    try:
        await observer.observe(DESTINATION)
        await cluster.apply(DESTINATION, _job())
        waiter = HookWaiter(observer, timeout_seconds=0.05)
        assert await waiter.wait() == {}
        waiter.add(JOB_ID)
        events = await waiter.wait()
        assert events[JOB_ID].phase == ResultPhase.FAILED
        assert events[JOB_ID].timed_out
        assert events[JOB_ID].message == "Timed out after 0.05s"
    finally:
        await observer.close()
