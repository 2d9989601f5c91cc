"""Representation of Applications and the resources they manage.

An `Application` is the declarative contract read from the version-controlled
source: where desired state lives, where it should be applied and how it should
be kept in sync. Resources themselves are kept as plain kubernetes style
dictionaries and are identified by a `ResourceId`.
"""

from dataclasses import dataclass, field
from enum import StrEnum
import copy
import hashlib
import json
import logging
from typing import Any, ClassVar

from mashumaro import DataClassDictMixin, field_options
from mashumaro.codecs.yaml import yaml_decode, yaml_encode
from mashumaro.config import BaseConfig

from .exceptions import InputException

__all__ = [
    "Application",
    "ApplicationSource",
    "ApplicationDestination",
    "SyncPolicy",
    "RetryPolicy",
    "IgnoreDifference",
    "ResourceId",
    "HookSpec",
    "HookType",
    "HookPolicy",
]

_LOGGER = logging.getLogger(__name__)


# Match a prefix of apiVersion to ensure we have the right type of object.
# We don't check specific versions for forward compatibility on upgrade.
APPLICATION_DOMAIN = "gitops.dev"
APPLICATION_KIND = "Application"
DEFAULT_DESTINATION = "in-cluster"
DEFAULT_NAMESPACE = "default"
DEFAULT_REVISION = "HEAD"

INSTANCE_LABEL = "gitops.dev/instance"
SYNC_WAVE_ANNOTATION = "gitops.dev/sync-wave"
HOOK_ANNOTATION = "gitops.dev/hook"
HOOK_POLICY_ANNOTATION = "gitops.dev/hook-policy"
SYNC_OPTIONS_ANNOTATION = "gitops.dev/sync-options"
LAST_APPLIED_ANNOTATION = "gitops.dev/last-applied-hash"

CLUSTER_SCOPED_KINDS = frozenset(
    {
        "Namespace",
        "CustomResourceDefinition",
        "ClusterRole",
        "ClusterRoleBinding",
        "PersistentVolume",
        "StorageClass",
    }
)

# Kinds that must exist before the kinds that follow them are applied. Kinds
# not listed sort after all of these.
KIND_ORDER = [
    "Namespace",
    "CustomResourceDefinition",
    "ServiceAccount",
    "ClusterRole",
    "ClusterRoleBinding",
    "Role",
    "RoleBinding",
    "ConfigMap",
    "Secret",
    "StorageClass",
    "PersistentVolume",
    "PersistentVolumeClaim",
    "Service",
    "Deployment",
    "StatefulSet",
    "DaemonSet",
    "ReplicaSet",
    "Pod",
    "Job",
    "CronJob",
    "Ingress",
]


def _check_version(doc: dict[str, Any], version: str) -> None:
    """Assert that the resource has the specified version."""
    if not (api_version := doc.get("apiVersion")):
        raise InputException(f"Invalid object missing apiVersion: {doc}")
    if not api_version.startswith(version):
        raise InputException(f"Invalid object expected '{version}': {doc}")


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    def compact_dict(self) -> dict[str, Any]:
        """Return a compact dictionary representation of the object."""
        return self.to_dict()

    @classmethod
    def parse_yaml(cls, content: str) -> "BaseManifest":
        """Parse a serialized manifest."""
        return yaml_decode(content, cls)

    def yaml(self) -> str:
        """Return a YAML string representation of the object."""
        return yaml_encode(self, self.__class__)  # type: ignore[return-value]

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


@dataclass(frozen=True)
class ResourceId:
    """Identifier for a resource in a destination cluster."""

    kind: str
    namespace: str | None
    name: str
    destination: str = DEFAULT_DESTINATION

    def __lt__(self, other: "ResourceId") -> bool:
        return self.sort_key < other.sort_key

    @property
    def sort_key(self) -> tuple[str, str, str, str]:
        return (self.destination, self.kind, self.namespace or "", self.name)

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"

    @classmethod
    def from_manifest(
        cls, manifest: dict[str, Any], destination: str = DEFAULT_DESTINATION
    ) -> "ResourceId":
        """Build the identity of a kubernetes style object."""
        if not (kind := manifest.get("kind")):
            raise InputException(f"Invalid object missing kind: {manifest}")
        metadata = manifest.get("metadata") or {}
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid object missing metadata.name: {manifest}")
        namespace = None if kind in CLUSTER_SCOPED_KINDS else metadata.get("namespace")
        return cls(kind=kind, namespace=namespace, name=name, destination=destination)


@dataclass
class ApplicationSource(BaseManifest):
    """Location of the desired state of an Application."""

    repo_url: str = field(metadata=field_options(alias="repoURL"))
    """URL of the git repository."""

    target_revision: str = field(
        metadata=field_options(alias="targetRevision"), default=DEFAULT_REVISION
    )
    """Branch, tag or commit to track."""

    path: str = "."
    """Directory within the repository holding the manifests."""

    parameters: dict[str, str] = field(default_factory=dict)
    """Values substituted into `${name}` placeholders."""

    patches: list[dict[str, Any]] = field(default_factory=list)
    """Overlays deep merged into matching documents."""

    @property
    def source_key(self) -> tuple[str, str]:
        """Identifier of the repository and revision being tracked."""
        return (self.repo_url, self.target_revision)


@dataclass
class ApplicationDestination(BaseManifest):
    """Where an Application's resources are applied."""

    server: str = DEFAULT_DESTINATION
    """The destination cluster."""

    namespace: str = DEFAULT_NAMESPACE
    """Namespace used for resources that do not declare one."""


@dataclass
class IgnoreDifference(BaseManifest):
    """Fields excluded from the comparison of desired and live objects."""

    kind: str = "*"
    """Kind of object the rule applies to, `*` matches every kind."""

    group: str | None = None
    """Optional API group the rule applies to."""

    name: str | None = None
    """Optional object name the rule applies to."""

    namespace: str | None = None
    """Optional object namespace the rule applies to."""

    json_pointers: list[str] = field(
        metadata=field_options(alias="jsonPointers"), default_factory=list
    )
    """RFC 6901 pointers to the ignored fields."""

    def matches(self, manifest: dict[str, Any]) -> bool:
        """Return True if this rule applies to the object."""
        if self.kind not in ("*", "", manifest.get("kind")):
            return False
        if self.group is not None:
            api_version = manifest.get("apiVersion", "")
            group = api_version.split("/")[0] if "/" in api_version else ""
            if group != self.group:
                return False
        metadata = manifest.get("metadata") or {}
        if self.name is not None and metadata.get("name") != self.name:
            return False
        if self.namespace is not None and metadata.get("namespace") != self.namespace:
            return False
        return True


@dataclass
class RetryBackoff(BaseManifest):
    """Backoff between retried writes, in seconds."""

    duration: float = 1.0
    factor: float = 2.0
    max_duration: float = field(
        metadata=field_options(alias="maxDuration"), default=30.0
    )


@dataclass
class RetryPolicy(BaseManifest):
    """Retry policy for transient write failures."""

    limit: int = 5
    backoff: RetryBackoff = field(default_factory=RetryBackoff)


class FailurePolicy(StrEnum):
    """What happens to the remaining actions when a resource fails to apply."""

    CONTINUE = "continue"
    STOP = "stop"


@dataclass
class SyncPolicy(BaseManifest):
    """Controls when and how an Application is synchronized."""

    automated: bool = False
    """Sync automatically when a new revision is observed."""

    prune: bool = False
    """Delete owned resources that are no longer desired."""

    self_heal: bool = field(metadata=field_options(alias="selfHeal"), default=False)
    """Revert changes made to live objects outside of the source."""

    ignore_differences: list[IgnoreDifference] = field(
        metadata=field_options(alias="ignoreDifferences"), default_factory=list
    )
    """Fields excluded from comparison."""

    failure_policy: FailurePolicy = field(
        metadata=field_options(alias="failurePolicy"), default=FailurePolicy.CONTINUE
    )
    """Whether a permanent apply failure stops the remaining actions."""

    retry: RetryPolicy = field(default_factory=RetryPolicy)
    """Retry policy for transient write failures."""


@dataclass
class Application(BaseManifest):
    """A representation of a declaratively synchronized Application."""

    kind: ClassVar[str] = APPLICATION_KIND
    """The kind of the object."""

    name: str
    """The name of the Application."""

    namespace: str
    """The namespace that owns the Application object."""

    source: ApplicationSource
    """Where the desired state is read from."""

    destination: ApplicationDestination = field(
        default_factory=ApplicationDestination
    )
    """Where resources are applied."""

    sync_policy: SyncPolicy = field(
        metadata=field_options(alias="syncPolicy"), default_factory=SyncPolicy
    )
    """How the Application is kept in sync."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Application":
        """Parse an Application from a kubernetes style resource object."""
        _check_version(doc, APPLICATION_DOMAIN)
        if doc.get("kind") != APPLICATION_KIND:
            raise InputException(f"Invalid {cls} unexpected kind: {doc}")
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid {cls} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid {cls} missing metadata.name: {doc}")
        if not (spec := doc.get("spec")):
            raise InputException(f"Invalid {cls} missing spec: {doc}")
        if not (source := spec.get("source")):
            raise InputException(f"Invalid {cls} missing spec.source: {doc}")
        if not source.get("repoURL"):
            raise InputException(f"Invalid {cls} missing spec.source.repoURL: {doc}")
        try:
            return cls(
                name=name,
                namespace=metadata.get("namespace", DEFAULT_NAMESPACE),
                source=ApplicationSource.from_dict(source),
                destination=ApplicationDestination.from_dict(
                    spec.get("destination") or {}
                ),
                sync_policy=SyncPolicy.from_dict(spec.get("syncPolicy") or {}),
            )
        except (ValueError, TypeError) as err:
            raise InputException(f"Invalid {cls} {name}: {err}") from err

    @property
    def namespaced_name(self) -> str:
        """Return the namespace and name concatenated as an id."""
        return f"{self.namespace}/{self.name}"


def is_application(doc: dict[str, Any]) -> bool:
    """Check if the object is an Application."""
    return doc.get("kind") == APPLICATION_KIND and doc.get("apiVersion", "").startswith(
        APPLICATION_DOMAIN
    )


class HookType(StrEnum):
    """When a hook runs relative to the resources of its wave."""

    PRE_SYNC = "PreSync"
    POST_SYNC = "PostSync"
    SYNC_FAIL = "SyncFail"


class HookPolicy(StrEnum):
    """Effect of a failed hook on the sync operation."""

    BLOCKING = "blocking"
    BEST_EFFORT = "best-effort"


@dataclass(frozen=True)
class HookSpec:
    """Hook settings parsed from a resource's annotations."""

    hook_type: HookType
    policy: HookPolicy = HookPolicy.BLOCKING

    @property
    def blocking(self) -> bool:
        return self.policy == HookPolicy.BLOCKING


def _annotations(manifest: dict[str, Any]) -> dict[str, str]:
    return (manifest.get("metadata") or {}).get("annotations") or {}


def _labels(manifest: dict[str, Any]) -> dict[str, str]:
    return (manifest.get("metadata") or {}).get("labels") or {}


def sync_wave(manifest: dict[str, Any]) -> int:
    """Return the sync wave of an object, defaulting to 0."""
    value = _annotations(manifest).get(SYNC_WAVE_ANNOTATION)
    if value is None:
        return 0
    try:
        return int(value)
    except (TypeError, ValueError) as err:
        raise InputException(
            f"Invalid {SYNC_WAVE_ANNOTATION} annotation '{value}'"
        ) from err


def hook_spec(manifest: dict[str, Any]) -> HookSpec | None:
    """Return the hook settings of an object or None if it is not a hook."""
    annotations = _annotations(manifest)
    if not (value := annotations.get(HOOK_ANNOTATION)):
        return None
    try:
        hook_type = HookType(value)
    except ValueError as err:
        raise InputException(f"Invalid {HOOK_ANNOTATION} annotation '{value}'") from err
    policy_value = annotations.get(HOOK_POLICY_ANNOTATION, HookPolicy.BLOCKING)
    try:
        policy = HookPolicy(policy_value)
    except ValueError as err:
        raise InputException(
            f"Invalid {HOOK_POLICY_ANNOTATION} annotation '{policy_value}'"
        ) from err
    return HookSpec(hook_type=hook_type, policy=policy)


def sync_options(manifest: dict[str, Any]) -> dict[str, str]:
    """Return the per-object sync options, e.g. {'Prune': 'false'}."""
    value = _annotations(manifest).get(SYNC_OPTIONS_ANNOTATION)
    if not value:
        return {}
    options = {}
    for item in value.split(","):
        key, _, option = item.strip().partition("=")
        if key:
            options[key] = option
    return options


def owner_of(manifest: dict[str, Any]) -> str | None:
    """Return the name of the Application that owns an object."""
    return _labels(manifest).get(INSTANCE_LABEL)


def last_applied_hash(manifest: dict[str, Any]) -> str | None:
    """Return the last applied hash annotation of a live object."""
    return _annotations(manifest).get(LAST_APPLIED_ANNOTATION)


def resource_version(manifest: dict[str, Any]) -> str | None:
    """Return the server assigned version of a live object."""
    return (manifest.get("metadata") or {}).get("resourceVersion")


def manifest_hash(manifest: dict[str, Any]) -> str:
    """Hash the canonical JSON form of an object."""
    content = json.dumps(manifest, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def kind_order(kind: str) -> int:
    """Return the apply order for a kind."""
    try:
        return KIND_ORDER.index(kind)
    except ValueError:
        return len(KIND_ORDER)


# Metadata assigned by the managed environment, never part of the desired state.
SERVER_METADATA_FIELDS = (
    "uid",
    "resourceVersion",
    "generation",
    "creationTimestamp",
    "deletionTimestamp",
    "managedFields",
    "selfLink",
)


def normalized(manifest: dict[str, Any]) -> dict[str, Any]:
    """Return a copy without status, server managed metadata and the last-applied annotation."""
    result = copy.deepcopy(manifest)
    result.pop("status", None)
    metadata = result.get("metadata")
    if isinstance(metadata, dict):
        for key in SERVER_METADATA_FIELDS:
            metadata.pop(key, None)
        annotations = metadata.get("annotations")
        if isinstance(annotations, dict):
            annotations.pop(LAST_APPLIED_ANNOTATION, None)
            if not annotations:
                del metadata["annotations"]
    return result
