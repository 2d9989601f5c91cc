"""Schema validation of resource definitions.

Validators are looked up by kind. Every document passes the generic checks
first, then the checks registered for its kind.
"""

from collections.abc import Callable
from typing import Any

from gitops_reconciler.exceptions import SchemaError

Validator = Callable[[dict[str, Any]], list[str]]


def _is_mapping(value: Any) -> bool:
    return isinstance(value, dict)


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _generic(doc: dict[str, Any]) -> list[str]:
    errors = []
    if not isinstance(doc.get("apiVersion"), str) or not doc["apiVersion"]:
        errors.append("apiVersion must be a non-empty string")
    if not isinstance(doc.get("kind"), str) or not doc["kind"]:
        errors.append("kind must be a non-empty string")
    metadata = doc.get("metadata")
    if not _is_mapping(metadata):
        errors.append("metadata must be a mapping")
    elif not isinstance(metadata.get("name"), str) or not metadata["name"]:
        errors.append("metadata.name must be a non-empty string")
    return errors


def _workload(doc: dict[str, Any]) -> list[str]:
    spec = doc.get("spec")
    if not _is_mapping(spec):
        return ["spec must be a mapping"]
    errors = []
    if not _is_mapping(spec.get("template")):
        errors.append("spec.template must be a mapping")
    if "replicas" in spec and not _is_count(spec["replicas"]):
        errors.append("spec.replicas must be a non-negative integer")
    return errors


def _job(doc: dict[str, Any]) -> list[str]:
    spec = doc.get("spec")
    if not _is_mapping(spec) or not _is_mapping(spec.get("template")):
        return ["spec.template must be a mapping"]
    return []


def _cron_job(doc: dict[str, Any]) -> list[str]:
    spec = doc.get("spec")
    if not _is_mapping(spec):
        return ["spec must be a mapping"]
    errors = []
    if not isinstance(spec.get("schedule"), str):
        errors.append("spec.schedule must be a string")
    if not _is_mapping(spec.get("jobTemplate")):
        errors.append("spec.jobTemplate must be a mapping")
    return errors


def _service(doc: dict[str, Any]) -> list[str]:
    spec = doc.get("spec") or {}
    if not _is_mapping(spec):
        return ["spec must be a mapping"]
    if "ports" not in spec:
        return []
    if not isinstance(spec["ports"], list):
        return ["spec.ports must be a list"]
    errors = []
    for index, port in enumerate(spec["ports"]):
        if not _is_mapping(port) or not _is_count(port.get("port")):
            errors.append(f"spec.ports[{index}].port must be a non-negative integer")
    return errors


def _application(doc: dict[str, Any]) -> list[str]:
    spec = doc.get("spec")
    if not _is_mapping(spec):
        return ["spec must be a mapping"]
    errors = []
    source = spec.get("source")
    if not _is_mapping(source) or not isinstance(source.get("repoURL"), str):
        errors.append("spec.source.repoURL must be a string")
    if "destination" in spec and not _is_mapping(spec["destination"]):
        errors.append("spec.destination must be a mapping")
    return errors


SCHEMAS: dict[str, Validator] = {
    "Deployment": _workload,
    "StatefulSet": _workload,
    "DaemonSet": _workload,
    "ReplicaSet": _workload,
    "Job": _job,
    "CronJob": _cron_job,
    "Service": _service,
    "Application": _application,
}


def validate(doc: dict[str, Any], source: str) -> None:
    """Validate a document, raising SchemaError naming every problem found."""
    if errors := _generic(doc):
        raise SchemaError(f"Invalid document in {source}: {'; '.join(errors)}")
    if (validator := SCHEMAS.get(doc["kind"])) is None:
        return
    if errors := validator(doc):
        name = doc["metadata"]["name"]
        raise SchemaError(
            f"Invalid {doc['kind']} '{name}' in {source}: {'; '.join(errors)}"
        )
