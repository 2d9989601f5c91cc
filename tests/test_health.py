"""Tests for health assessment."""

from typing import Any

import pytest

from gitops_reconciler.health import HealthStatus, aggregate, assess


def _deployment(status: dict[str, Any] | None, generation: int = 1, **spec: Any) -> dict[str, Any]:
    obj: dict[str, Any] = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "web", "generation": generation},
        "spec": {"replicas": 3, **spec},
    }
    if status is not None:
        obj["status"] = status
    return obj


def test_missing() -> None:
    """Test that an object that does not exist is Missing."""
    assert assess(None) == HealthStatus.MISSING


@pytest.mark.parametrize(
    ("obj", "expected"),
    [
        (_deployment(None), HealthStatus.PROGRESSING),
        (
            _deployment(
                {
                    "observedGeneration": 1,
                    "replicas": 3,
                    "updatedReplicas": 3,
                    "availableReplicas": 1,
                }
            ),
            HealthStatus.PROGRESSING,
        ),
        (
            _deployment(
                {
                    "observedGeneration": 1,
                    "replicas": 3,
                    "updatedReplicas": 3,
                    "availableReplicas": 3,
                }
            ),
            HealthStatus.HEALTHY,
        ),
        (
            _deployment(
                {
                    "observedGeneration": 1,
                    "replicas": 3,
                    "updatedReplicas": 3,
                    "availableReplicas": 3,
                },
                generation=2,
            ),
            HealthStatus.PROGRESSING,
        ),
        (
            _deployment(
                {
                    "observedGeneration": 1,
                    "conditions": [
                        {
                            "type": "Progressing",
                            "status": "False",
                            "reason": "ProgressDeadlineExceeded",
                        }
                    ],
                }
            ),
            HealthStatus.DEGRADED,
        ),
        (
            _deployment(
                {
                    "observedGeneration": 1,
                    "replicas": 3,
                    "updatedReplicas": 3,
                    "availableReplicas": 3,
                    "conditions": [{"type": "Available", "status": "True"}],
                }
            ),
            HealthStatus.HEALTHY,
        ),
        (
            _deployment(
                {
                    "observedGeneration": 1,
                    "replicas": 3,
                    "updatedReplicas": 3,
                    "availableReplicas": 3,
                    "conditions": [
                        {
                            "type": "Available",
                            "status": "False",
                            "reason": "MinimumReplicasUnavailable",
                        }
                    ],
                }
            ),
            HealthStatus.PROGRESSING,
        ),
        (
            _deployment(
                {
                    "observedGeneration": 1,
                    "replicas": 3,
                    "updatedReplicas": 3,
                    "availableReplicas": 3,
                    "conditions": [
                        {
                            "type": "Available",
                            "status": "False",
                            "reason": "ProgressDeadlineExceeded",
                        }
                    ],
                }
            ),
            HealthStatus.DEGRADED,
        ),
        (_deployment(None, paused=True), HealthStatus.SUSPENDED),
    ],
)
def test_deployment(obj: dict[str, Any], expected: HealthStatus) -> None:
    """Test Deployment rollout progression."""
    assert assess(obj) == expected


def test_stateful_set() -> None:
    """Test StatefulSet health waits for the update revision."""
    obj = {
        "kind": "StatefulSet",
        "metadata": {"name": "db", "generation": 1},
        "spec": {"replicas": 2},
        "status": {
            "observedGeneration": 1,
            "readyReplicas": 2,
            "currentRevision": "db-1",
            "updateRevision": "db-2",
        },
    }
    assert assess(obj) == HealthStatus.PROGRESSING
    obj["status"]["currentRevision"] = "db-2"
    assert assess(obj) == HealthStatus.HEALTHY


def test_daemon_set() -> None:
    """Test DaemonSet health."""
    obj = {
        "kind": "DaemonSet",
        "metadata": {"name": "agent"},
        "status": {
            "desiredNumberScheduled": 3,
            "updatedNumberScheduled": 3,
            "numberAvailable": 2,
        },
    }
    assert assess(obj) == HealthStatus.PROGRESSING
    obj["status"]["numberAvailable"] = 3
    assert assess(obj) == HealthStatus.HEALTHY


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        ({}, HealthStatus.PROGRESSING),
        ({"conditions": [{"type": "Complete", "status": "True"}]}, HealthStatus.HEALTHY),
        ({"conditions": [{"type": "Failed", "status": "True"}]}, HealthStatus.DEGRADED),
    ],
)
def test_job(status: dict[str, Any], expected: HealthStatus) -> None:
    """Test Job health from its conditions."""
    obj = {"kind": "Job", "metadata": {"name": "migrate"}, "status": status}
    assert assess(obj) == expected


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        ({"phase": "Pending"}, HealthStatus.PROGRESSING),
        ({"phase": "Running"}, HealthStatus.PROGRESSING),
        (
            {"phase": "Running", "conditions": [{"type": "Ready", "status": "True"}]},
            HealthStatus.HEALTHY,
        ),
        (
            {
                "phase": "Running",
                "containerStatuses": [
                    {"state": {"waiting": {"reason": "CrashLoopBackOff"}}}
                ],
            },
            HealthStatus.DEGRADED,
        ),
    ],
)
def test_pod(status: dict[str, Any], expected: HealthStatus) -> None:
    """Test Pod health."""
    obj = {"kind": "Pod", "metadata": {"name": "web-1"}, "status": status}
    assert assess(obj) == expected


def test_service() -> None:
    """Test that only LoadBalancer Services wait for an address."""
    service = {"kind": "Service", "metadata": {"name": "web"}, "spec": {}}
    assert assess(service) == HealthStatus.HEALTHY
    service["spec"]["type"] = "LoadBalancer"
    assert assess(service) == HealthStatus.PROGRESSING
    service["status"] = {"loadBalancer": {"ingress": [{"ip": "10.0.0.1"}]}}
    assert assess(service) == HealthStatus.HEALTHY


def test_persistent_volume_claim() -> None:
    """Test PersistentVolumeClaim health."""
    claim = {"kind": "PersistentVolumeClaim", "metadata": {"name": "data"}}
    assert assess(claim) == HealthStatus.PROGRESSING
    claim["status"] = {"phase": "Bound"}
    assert assess(claim) == HealthStatus.HEALTHY
    claim["status"] = {"phase": "Lost"}
    assert assess(claim) == HealthStatus.DEGRADED


def test_generic_conditions() -> None:
    """Test kinds without a dedicated rule use the Ready condition."""
    obj: dict[str, Any] = {"kind": "Certificate", "metadata": {"name": "tls"}}
    assert assess(obj) == HealthStatus.HEALTHY
    obj["status"] = {"conditions": [{"type": "Ready", "status": "False"}]}
    assert assess(obj) == HealthStatus.PROGRESSING
    obj["status"] = {
        "conditions": [{"type": "Ready", "status": "False", "reason": "IssueFailed"}]
    }
    assert assess(obj) == HealthStatus.DEGRADED
    obj["status"] = {"conditions": [{"type": "Ready", "status": "True"}]}
    assert assess(obj) == HealthStatus.HEALTHY


def test_malformed_status() -> None:
    """Test that a status the rules can't interpret is Unknown."""
    obj = _deployment({"observedGeneration": "soon"})
    assert assess(obj) == HealthStatus.UNKNOWN


def test_aggregate() -> None:
    """Test the worst status wins."""
    assert aggregate([]) == HealthStatus.HEALTHY
    assert aggregate([HealthStatus.HEALTHY, HealthStatus.SUSPENDED]) == HealthStatus.HEALTHY
    assert aggregate([HealthStatus.SUSPENDED]) == HealthStatus.SUSPENDED
    assert (
        aggregate([HealthStatus.HEALTHY, HealthStatus.MISSING, HealthStatus.PROGRESSING])
        == HealthStatus.PROGRESSING
    )
    assert (
        aggregate([HealthStatus.PROGRESSING, HealthStatus.DEGRADED, HealthStatus.UNKNOWN])
        == HealthStatus.DEGRADED
    )
