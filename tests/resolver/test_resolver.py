"""Tests for the desired state resolver."""

import textwrap

import pytest

from gitops_reconciler.config import ResolverConfig
from gitops_reconciler.exceptions import (
    CyclicReferenceError,
    FetchError,
    ResolutionError,
    SchemaError,
)
from gitops_reconciler.manifest import (
    INSTANCE_LABEL,
    Application,
    ApplicationDestination,
    ApplicationSource,
    HookType,
    ResourceId,
)
from gitops_reconciler.resolver import Resolver
from gitops_reconciler.source_controller import (
    InMemorySource,
    RevisionSnapshot,
    SourceRegistry,
)

URL = "https://git.example.com/apps.git"
OTHER_URL = "https://git.example.com/platform.git"

NAMESPACE = """\
apiVersion: v1
kind: Namespace
metadata:
  name: guestbook
"""

CONFIG_MAP = """\
apiVersion: v1
kind: ConfigMap
metadata:
  name: settings
data:
  color: ${color:=blue}
"""

DEPLOYMENT = """\
apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
  namespace: frontend
spec:
  replicas: 1
  template:
    spec:
      containers:
      - name: web
        image: nginx:${tag}
"""

MIGRATION = """\
apiVersion: batch/v1
kind: Job
metadata:
  name: migrate
  annotations:
    gitops.dev/sync-wave: "-1"
    gitops.dev/hook: PreSync
spec:
  template: {}
"""


def _child(name: str, path: str, repo_url: str = URL, revision: str = "HEAD") -> str:
    return textwrap.dedent(
        f"""\
        apiVersion: gitops.dev/v1alpha1
        kind: Application
        metadata:
          name: {name}
        spec:
          source:
            repoURL: {repo_url}
            targetRevision: {revision}
            path: {path}
        """
    )


def _app(path: str = "apps/guestbook", **source: object) -> Application:
    return Application(
        name="guestbook",
        namespace="gitops",
        source=ApplicationSource(repo_url=URL, path=path, **source),  # type: ignore[arg-type]
        destination=ApplicationDestination(namespace="guestbook"),
    )


def _snapshot(files: dict[str, str]) -> RevisionSnapshot:
    return RevisionSnapshot(url=URL, revision_id="rev1", files=files)


@pytest.fixture(name="registry")
def registry_fixture() -> SourceRegistry:
    return SourceRegistry()


@pytest.fixture(name="resolver")
def resolver_fixture(registry: SourceRegistry) -> Resolver:
    return Resolver(registry, ResolverConfig())


async def test_resolve_order_and_defaults(resolver: Resolver) -> None:
    """Test resources are sorted by wave and kind with namespaces defaulted."""
    snapshot = _snapshot(
        {
            "apps/guestbook/deployment.yaml": DEPLOYMENT,
            "apps/guestbook/config.yaml": "---\n" + CONFIG_MAP + "---\n",
            "apps/guestbook/namespace.yml": NAMESPACE,
            "apps/guestbook/hooks/migrate.yaml": MIGRATION,
            "apps/other/ignored.yaml": NAMESPACE.replace("guestbook", "other"),
        }
    )
    resolved = await resolver.resolve(
        _app(parameters={"tag": "1.25"}), snapshot
    )
    assert resolved.app_name == "guestbook"
    assert resolved.revision_id == "rev1"
    assert resolved.revision_key == "rev1"
    assert [resource.id for resource in resolved.resources] == [
        ResourceId("Job", "guestbook", "migrate"),
        ResourceId("Namespace", None, "guestbook"),
        ResourceId("ConfigMap", "guestbook", "settings"),
        ResourceId("Deployment", "frontend", "web"),
    ]

    job = resolved.resources[0]
    assert job.wave == -1
    assert job.hook
    assert job.hook.hook_type == HookType.PRE_SYNC

    config_map = resolved.get(ResourceId("ConfigMap", "guestbook", "settings"))
    assert config_map
    assert config_map.manifest["data"] == {"color": "blue"}
    assert config_map.owner == "guestbook"
    assert config_map.hash

    deployment = resolved.get(ResourceId("Deployment", "frontend", "web"))
    assert deployment
    container = deployment.manifest["spec"]["template"]["spec"]["containers"][0]
    assert container["image"] == "nginx:1.25"

    for resource in resolved.resources:
        assert resource.manifest["metadata"]["labels"][INSTANCE_LABEL] == "guestbook"


async def test_resolve_is_deterministic(resolver: Resolver) -> None:
    """Test that the same revision always resolves to the same state."""
    snapshot = _snapshot({"apps/guestbook/config.yaml": CONFIG_MAP})
    first = await resolver.resolve(_app(), snapshot)
    second = await resolver.resolve(_app(), snapshot)
    assert first.resources == second.resources
    assert [r.hash for r in first.resources] == [r.hash for r in second.resources]


async def test_resolve_patches(resolver: Resolver) -> None:
    """Test overlays are merged before validation."""
    snapshot = _snapshot({"apps/guestbook/deployment.yaml": DEPLOYMENT})
    app = _app(
        parameters={"tag": "1.25"},
        patches=[
            {"target": {"kind": "Deployment"}, "patch": {"spec": {"replicas": 3}}}
        ],
    )
    resolved = await resolver.resolve(app, snapshot)
    assert resolved.resources[0].manifest["spec"]["replicas"] == 3


async def test_unresolved_parameter(resolver: Resolver) -> None:
    """Test a placeholder without a value."""
    snapshot = _snapshot({"apps/guestbook/deployment.yaml": DEPLOYMENT})
    with pytest.raises(ResolutionError, match="Unresolved parameter"):
        await resolver.resolve(_app(), snapshot)


async def test_schema_error(resolver: Resolver) -> None:
    """Test a definition that fails the validation of its kind."""
    snapshot = _snapshot(
        {
            "apps/guestbook/deployment.yaml": textwrap.dedent(
                """\
                apiVersion: apps/v1
                kind: Deployment
                metadata:
                  name: web
                spec:
                  replicas: -1
                """
            )
        }
    )
    with pytest.raises(SchemaError, match="spec.template must be a mapping") as exc_info:
        await resolver.resolve(_app(), snapshot)
    assert "spec.replicas must be a non-negative integer" in str(exc_info.value)


@pytest.mark.parametrize(
    ("content", "match"),
    [
        ("kind: [", "Unable to parse"),
        ("- a\n- b\n", "Expected a mapping"),
        ("kind: ConfigMap\nmetadata:\n  name: x\n", "apiVersion must be a non-empty string"),
        (
            CONFIG_MAP.replace("name: settings", "name: settings\n  annotations:\n    gitops.dev/sync-wave: soon"),
            "Invalid annotations",
        ),
    ],
)
async def test_invalid_documents(resolver: Resolver, content: str, match: str) -> None:
    """Test documents that can't be resolved."""
    snapshot = _snapshot({"apps/guestbook/doc.yaml": content})
    with pytest.raises(ResolutionError, match=match):
        await resolver.resolve(_app(), snapshot)


async def test_missing_path(resolver: Resolver) -> None:
    """Test an Application whose path does not exist."""
    with pytest.raises(ResolutionError, match="Path 'apps/missing' of Application guestbook not found"):
        await resolver.resolve(_app(path="apps/missing"), _snapshot({}))

    # The repository root may be empty
    resolved = await resolver.resolve(_app(path="."), _snapshot({}))
    assert resolved.resources == ()


async def test_child_applications(resolver: Resolver) -> None:
    """Test resources of child Applications are included once."""
    shared = CONFIG_MAP.replace("settings", "shared")
    snapshot = _snapshot(
        {
            "apps/guestbook/children.yaml": _child("frontend", "apps/frontend")
            + "---\n"
            + _child("backend", "apps/backend"),
            "apps/frontend/shared.yaml": shared,
            "apps/frontend/web.yaml": NAMESPACE.replace("guestbook", "web"),
            "apps/backend/shared.yaml": shared,
        }
    )
    resolved = await resolver.resolve(_app(), snapshot)
    assert resolved.ids == {
        ResourceId("Namespace", None, "web"),
        ResourceId("ConfigMap", "default", "shared"),
    }
    assert resolved.tree
    assert [node.name for node in resolved.tree.walk()] == [
        "guestbook",
        "frontend",
        "backend",
    ]
    assert resolved.revision_key == "rev1+rev1+rev1"
    for resource in resolved.resources:
        # Resources are owned by the root of the composition
        assert resource.manifest["metadata"]["labels"][INSTANCE_LABEL] == "guestbook"


async def test_conflicting_definitions(resolver: Resolver) -> None:
    """Test two Applications declaring different definitions of one resource."""
    snapshot = _snapshot(
        {
            "apps/guestbook/children.yaml": _child("frontend", "apps/frontend")
            + "---\n"
            + _child("backend", "apps/backend"),
            "apps/frontend/shared.yaml": CONFIG_MAP,
            "apps/backend/shared.yaml": CONFIG_MAP.replace("${color:=blue}", "red"),
        }
    )
    with pytest.raises(ResolutionError, match="Conflicting definitions of ConfigMap/default/settings"):
        await resolver.resolve(_app(), snapshot)


async def test_cyclic_reference(resolver: Resolver) -> None:
    """Test an Application composition that refers back to itself."""
    snapshot = _snapshot(
        {
            "apps/guestbook/child.yaml": _child("frontend", "apps/frontend"),
            "apps/frontend/parent.yaml": _child("guestbook", "apps/guestbook"),
        }
    )
    with pytest.raises(CyclicReferenceError) as exc_info:
        await resolver.resolve(_app(), snapshot)
    assert exc_info.value.cycle == ["guestbook", "frontend", "guestbook"]
    assert "guestbook -> frontend -> guestbook" in str(exc_info.value)


async def test_max_depth(registry: SourceRegistry) -> None:
    """Test the limit on nested compositions."""
    resolver = Resolver(registry, ResolverConfig(max_depth=1))
    snapshot = _snapshot(
        {
            "apps/guestbook/child.yaml": _child("frontend", "apps/frontend"),
            "apps/frontend/config.yaml": CONFIG_MAP,
        }
    )
    with pytest.raises(ResolutionError, match="deeper than 1: guestbook -> frontend"):
        await resolver.resolve(_app(), snapshot)


async def test_child_in_other_repository(
    resolver: Resolver, registry: SourceRegistry
) -> None:
    """Test a child Application whose source is another repository."""
    other = InMemorySource(OTHER_URL)
    other.commit({"base/config.yaml": NAMESPACE})
    other.commit({"base/config.yaml": NAMESPACE.replace("guestbook", "platform")})
    registry.register(other)

    snapshot = _snapshot(
        {"apps/guestbook/child.yaml": _child("platform", "base", repo_url=OTHER_URL)}
    )
    resolved = await resolver.resolve(_app(), snapshot)
    assert resolved.ids == {ResourceId("Namespace", None, "platform")}
    assert resolved.revision_key == "rev1+rev2"

    other.fail_with = "connection refused"
    registry_without_cache = SourceRegistry()
    registry_without_cache.register(other)
    with pytest.raises(FetchError, match="connection refused"):
        await Resolver(registry_without_cache, ResolverConfig()).resolve(
            _app(), snapshot
        )
