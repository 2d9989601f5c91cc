"""Health assessment of live objects.

Each supported kind has a pure function that inspects the `status` of a live
object and returns a `HealthStatus`. Kinds without a dedicated rule use a
generic rule based on `status.conditions`.
"""

from collections.abc import Callable, Iterable
from enum import StrEnum
import logging
from typing import Any

__all__ = [
    "HealthStatus",
    "assess",
    "aggregate",
]

_LOGGER = logging.getLogger(__name__)


class HealthStatus(StrEnum):
    """Health of a live object or an Application."""

    HEALTHY = "Healthy"
    PROGRESSING = "Progressing"
    DEGRADED = "Degraded"
    SUSPENDED = "Suspended"
    MISSING = "Missing"
    UNKNOWN = "Unknown"


# Worst first
_PRECEDENCE = [
    HealthStatus.DEGRADED,
    HealthStatus.PROGRESSING,
    HealthStatus.MISSING,
    HealthStatus.UNKNOWN,
    HealthStatus.HEALTHY,
    HealthStatus.SUSPENDED,
]

_POD_FAILURE_REASONS = {
    "CrashLoopBackOff",
    "ImagePullBackOff",
    "ErrImagePull",
    "InvalidImageName",
    "CreateContainerConfigError",
}

_DEPLOYMENT_FAILURE_REASONS = {
    "ProgressDeadlineExceeded",
    "ReplicaSetCreateError",
}

HealthCheck = Callable[[dict[str, Any]], HealthStatus]


def _spec(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.get("spec") or {}


def _status(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.get("status") or {}


def _condition(obj: dict[str, Any], condition_type: str) -> dict[str, Any] | None:
    for condition in _status(obj).get("conditions") or []:
        if condition.get("type") == condition_type:
            return condition
    return None


def _is_true(condition: dict[str, Any] | None) -> bool:
    return condition is not None and str(condition.get("status")) == "True"


def _generation_observed(obj: dict[str, Any]) -> bool:
    generation = (obj.get("metadata") or {}).get("generation")
    observed = _status(obj).get("observedGeneration")
    if generation is None or observed is None:
        return True
    return int(observed) >= int(generation)


def _deployment(obj: dict[str, Any]) -> HealthStatus:
    if _spec(obj).get("paused"):
        return HealthStatus.SUSPENDED
    status = _status(obj)
    if not status or not _generation_observed(obj):
        return HealthStatus.PROGRESSING
    progressing = _condition(obj, "Progressing")
    if progressing and progressing.get("reason") in _DEPLOYMENT_FAILURE_REASONS:
        return HealthStatus.DEGRADED
    available = _condition(obj, "Available")
    if (
        available is not None
        and not _is_true(available)
        and available.get("reason") in _DEPLOYMENT_FAILURE_REASONS
    ):
        return HealthStatus.DEGRADED
    desired = _spec(obj).get("replicas", 1)
    updated = status.get("updatedReplicas", 0)
    if updated < desired:
        return HealthStatus.PROGRESSING
    if status.get("replicas", 0) > updated:
        return HealthStatus.PROGRESSING
    if status.get("availableReplicas", 0) < updated:
        return HealthStatus.PROGRESSING
    # Counts can match before the controller reports availability
    if available is not None and not _is_true(available):
        return HealthStatus.PROGRESSING
    return HealthStatus.HEALTHY


def _stateful_set(obj: dict[str, Any]) -> HealthStatus:
    status = _status(obj)
    if not status or not _generation_observed(obj):
        return HealthStatus.PROGRESSING
    desired = _spec(obj).get("replicas", 1)
    if status.get("readyReplicas", 0) < desired:
        return HealthStatus.PROGRESSING
    update_revision = status.get("updateRevision")
    if update_revision and status.get("currentRevision") != update_revision:
        return HealthStatus.PROGRESSING
    return HealthStatus.HEALTHY


def _replica_set(obj: dict[str, Any]) -> HealthStatus:
    if _is_true(_condition(obj, "ReplicaFailure")):
        return HealthStatus.DEGRADED
    status = _status(obj)
    if not status or not _generation_observed(obj):
        return HealthStatus.PROGRESSING
    if status.get("availableReplicas", 0) < _spec(obj).get("replicas", 1):
        return HealthStatus.PROGRESSING
    return HealthStatus.HEALTHY


def _daemon_set(obj: dict[str, Any]) -> HealthStatus:
    status = _status(obj)
    if not status or not _generation_observed(obj):
        return HealthStatus.PROGRESSING
    desired = status.get("desiredNumberScheduled", 0)
    if status.get("updatedNumberScheduled", 0) < desired:
        return HealthStatus.PROGRESSING
    if status.get("numberAvailable", 0) < desired:
        return HealthStatus.PROGRESSING
    return HealthStatus.HEALTHY


def _job(obj: dict[str, Any]) -> HealthStatus:
    if _is_true(_condition(obj, "Failed")):
        return HealthStatus.DEGRADED
    if _is_true(_condition(obj, "Complete")):
        return HealthStatus.HEALTHY
    if _spec(obj).get("suspend"):
        return HealthStatus.SUSPENDED
    return HealthStatus.PROGRESSING


def _cron_job(obj: dict[str, Any]) -> HealthStatus:
    if _spec(obj).get("suspend"):
        return HealthStatus.SUSPENDED
    return HealthStatus.HEALTHY


def _pod(obj: dict[str, Any]) -> HealthStatus:
    status = _status(obj)
    phase = status.get("phase")
    if phase == "Succeeded":
        return HealthStatus.HEALTHY
    if phase == "Failed":
        return HealthStatus.DEGRADED
    for container in status.get("containerStatuses") or []:
        waiting = (container.get("state") or {}).get("waiting") or {}
        if waiting.get("reason") in _POD_FAILURE_REASONS:
            return HealthStatus.DEGRADED
    if phase == "Running":
        if _is_true(_condition(obj, "Ready")):
            return HealthStatus.HEALTHY
        return HealthStatus.PROGRESSING
    if phase == "Pending" or phase is None:
        return HealthStatus.PROGRESSING
    return HealthStatus.UNKNOWN


def _has_load_balancer_ingress(obj: dict[str, Any]) -> bool:
    return bool((_status(obj).get("loadBalancer") or {}).get("ingress"))


def _service(obj: dict[str, Any]) -> HealthStatus:
    if _spec(obj).get("type") != "LoadBalancer":
        return HealthStatus.HEALTHY
    if _has_load_balancer_ingress(obj):
        return HealthStatus.HEALTHY
    return HealthStatus.PROGRESSING


def _ingress(obj: dict[str, Any]) -> HealthStatus:
    if _has_load_balancer_ingress(obj):
        return HealthStatus.HEALTHY
    return HealthStatus.PROGRESSING


def _persistent_volume_claim(obj: dict[str, Any]) -> HealthStatus:
    phase = _status(obj).get("phase")
    if phase == "Bound":
        return HealthStatus.HEALTHY
    if phase == "Lost":
        return HealthStatus.DEGRADED
    return HealthStatus.PROGRESSING


def _application(obj: dict[str, Any]) -> HealthStatus:
    value = (_status(obj).get("health") or {}).get("status")
    if value is None:
        return HealthStatus.UNKNOWN
    try:
        return HealthStatus(value)
    except ValueError:
        _LOGGER.debug("Unknown Application health '%s'", value)
        return HealthStatus.UNKNOWN


def _generic(obj: dict[str, Any]) -> HealthStatus:
    """Assess objects using the conventional Ready/Available conditions."""
    for condition_type in ("Ready", "Available"):
        if (condition := _condition(obj, condition_type)) is None:
            continue
        if _is_true(condition):
            return HealthStatus.HEALTHY
        reason = str(condition.get("reason") or "")
        if "Fail" in reason or "Error" in reason:
            return HealthStatus.DEGRADED
        return HealthStatus.PROGRESSING
    return HealthStatus.HEALTHY


HEALTH_CHECKS: dict[str, HealthCheck] = {
    "Deployment": _deployment,
    "StatefulSet": _stateful_set,
    "ReplicaSet": _replica_set,
    "DaemonSet": _daemon_set,
    "Job": _job,
    "CronJob": _cron_job,
    "Pod": _pod,
    "Service": _service,
    "PersistentVolumeClaim": _persistent_volume_claim,
    "Ingress": _ingress,
    "Application": _application,
}


def assess(live: dict[str, Any] | None) -> HealthStatus:
    """Assess the health of a live object, `None` meaning it does not exist."""
    if live is None:
        return HealthStatus.MISSING
    check = HEALTH_CHECKS.get(live.get("kind", ""), _generic)
    try:
        return check(live)
    except (TypeError, ValueError, AttributeError) as err:
        _LOGGER.debug("Unable to assess health of %s: %s", live.get("kind"), err)
        return HealthStatus.UNKNOWN


def aggregate(statuses: Iterable[HealthStatus]) -> HealthStatus:
    """Return the worst health of a set of statuses, Healthy when empty."""
    worst = len(_PRECEDENCE)
    for status in statuses:
        worst = min(worst, _PRECEDENCE.index(status))
    if worst == len(_PRECEDENCE):
        return HealthStatus.HEALTHY
    return _PRECEDENCE[worst]
