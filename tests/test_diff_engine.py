"""Tests for the diff engine."""

import copy
from collections.abc import AsyncGenerator
from typing import Any

import pytest

from gitops_reconciler.cluster import ClusterObserver, InMemoryCluster
from gitops_reconciler.cluster.observer import LiveView
from gitops_reconciler.config import ObserverConfig
from gitops_reconciler.diff_engine import (
    ActionType,
    classify_drift,
    comparable,
    diff,
    is_subset,
    remove_pointer,
    render_diff,
)
from gitops_reconciler.health import HealthStatus
from gitops_reconciler.manifest import (
    INSTANCE_LABEL,
    LAST_APPLIED_ANNOTATION,
    IgnoreDifference,
    ResourceId,
    SyncPolicy,
    hook_spec,
    manifest_hash,
    sync_wave,
)
from gitops_reconciler.resolver import DesiredResource, ResolvedState
from gitops_reconciler.store.status import SyncStatus
from gitops_reconciler.sync_controller.artifact import AppliedState

APP = "guestbook"
DESTINATION = "in-cluster"
WEB_ID = ResourceId("Deployment", "default", "web")
SETTINGS_ID = ResourceId("ConfigMap", "default", "settings")
OLD_ID = ResourceId("ConfigMap", "default", "old")
HOOK_ID = ResourceId("Job", "default", "migrate")


def _labels(manifest: dict[str, Any]) -> dict[str, Any]:
    manifest["metadata"].setdefault("labels", {})[INSTANCE_LABEL] = APP
    return manifest


def _deployment(replicas: int = 3) -> dict[str, Any]:
    return _labels(
        {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": "web", "namespace": "default"},
            "spec": {"replicas": replicas, "template": {"spec": {}}},
        }
    )


def _config_map(name: str = "settings", **annotations: str) -> dict[str, Any]:
    manifest = _labels(
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": name, "namespace": "default"},
            "data": {"color": "blue"},
        }
    )
    if annotations:
        manifest["metadata"]["annotations"] = annotations
    return manifest


def _hook() -> dict[str, Any]:
    return _labels(
        {
            "apiVersion": "batch/v1",
            "kind": "Job",
            "metadata": {
                "name": "migrate",
                "namespace": "default",
                "annotations": {
                    "gitops.dev/hook": "PreSync",
                    "gitops.dev/sync-wave": "-1",
                },
            },
            "spec": {"template": {}},
        }
    )


def _resolved(*manifests: dict[str, Any]) -> ResolvedState:
    return ResolvedState(
        app_name=APP,
        revision_id="rev1",
        resources=tuple(
            DesiredResource(
                id=ResourceId.from_manifest(manifest),
                manifest=manifest,
                wave=sync_wave(manifest),
                hook=hook_spec(manifest),
                hash=manifest_hash(manifest),
                owner=APP,
            )
            for manifest in manifests
        ),
    )


def _live(manifest: dict[str, Any], **extra: Any) -> dict[str, Any]:
    """Return an object as stored by the server, with defaulted fields."""
    obj = copy.deepcopy(manifest)
    obj["metadata"].update({"uid": "1234", "resourceVersion": "1"})
    for key, value in extra.items():
        obj[key] = {**obj.get(key, {}), **value}
    return obj


@pytest.fixture(name="cluster")
def cluster_fixture() -> InMemoryCluster:
    return InMemoryCluster()


@pytest.fixture(name="observer")
async def observer_fixture(
    cluster: InMemoryCluster,
) -> AsyncGenerator[ClusterObserver, None]:
    observer = ClusterObserver(cluster, ObserverConfig())
    yield observer
    await observer.close()


async def _view(observer: ClusterObserver) -> LiveView:
    await observer.observe(DESTINATION)
    return observer.view(DESTINATION)


async def test_create_missing(observer: ClusterObserver) -> None:
    """Test that a missing resource is created."""
    view = await _view(observer)
    plan = diff(_resolved(_config_map(), _deployment()), view, SyncPolicy())

    assert [(action.type, action.id) for action in plan.actions] == [
        (ActionType.CREATE, SETTINGS_ID),
        (ActionType.CREATE, WEB_ID),
    ]
    assert plan.writes == plan.actions
    assert plan.sync_status == SyncStatus.OUT_OF_SYNC
    assert plan.app_name == APP
    assert plan.revision_id == "rev1"
    for status in plan.resources:
        assert status.sync_status == SyncStatus.OUT_OF_SYNC
        assert status.health == HealthStatus.MISSING
        assert status.message == "Resource is missing"


async def test_in_sync_with_defaulted_fields(
    cluster: InMemoryCluster, observer: ClusterObserver
) -> None:
    """Test that fields defaulted by the server are not differences."""
    cluster.seed(
        DESTINATION,
        [
            _live(
                _deployment(),
                spec={"progressDeadlineSeconds": 600},
                status={"observedGeneration": 1, "availableReplicas": 3},
            ),
            _live(_config_map()),
        ],
    )
    view = await _view(observer)
    plan = diff(_resolved(_config_map(), _deployment()), view, SyncPolicy())
    assert plan.actions == []
    assert plan.sync_status == SyncStatus.SYNCED
    assert [status.sync_status for status in plan.resources] == [
        SyncStatus.SYNCED,
        SyncStatus.SYNCED,
    ]


async def test_update_changed(
    cluster: InMemoryCluster, observer: ClusterObserver
) -> None:
    """Test that a changed field produces an update."""
    cluster.seed(DESTINATION, [_live(_deployment(replicas=10))])
    view = await _view(observer)
    plan = diff(_resolved(_deployment()), view, SyncPolicy())
    assert len(plan.actions) == 1
    action = plan.actions[0]
    assert action.type == ActionType.UPDATE
    assert action.id == WEB_ID
    assert action.manifest["spec"]["replicas"] == 3
    assert action.hash == manifest_hash(_deployment())
    assert str(action) == "update Deployment/default/web (wave 0)"
    assert plan.resources[0].message == "Live state differs from desired state"


async def test_apply_then_diff_is_empty(
    cluster: InMemoryCluster, observer: ClusterObserver
) -> None:
    """Test that applying the plan leaves nothing to do."""
    view = await _view(observer)
    resolved = _resolved(_config_map(), _deployment())
    plan = diff(resolved, view, SyncPolicy())
    version = "0"
    for action in plan.writes:
        obj = await cluster.apply(DESTINATION, action.manifest)
        version = obj["metadata"]["resourceVersion"]
    assert await observer.wait_for_version(DESTINATION, version, timeout=1)

    plan = diff(resolved, view, SyncPolicy())
    assert plan.actions == []
    assert plan.sync_status == SyncStatus.SYNCED


async def test_ignore_differences(
    cluster: InMemoryCluster, observer: ClusterObserver
) -> None:
    """Test that ignored fields are not compared."""
    cluster.seed(DESTINATION, [_live(_deployment(replicas=10))])
    view = await _view(observer)
    policy = SyncPolicy(
        ignore_differences=[
            IgnoreDifference(kind="Deployment", json_pointers=["/spec/replicas"])
        ]
    )
    plan = diff(_resolved(_deployment()), view, policy)
    assert plan.actions == []
    assert plan.sync_status == SyncStatus.SYNCED


@pytest.mark.parametrize(
    ("policy", "annotations", "expected_actions", "message"),
    [
        (
            SyncPolicy(prune=False),
            {},
            [],
            "Resource is no longer desired, pruning is disabled",
        ),
        (
            SyncPolicy(prune=True),
            {},
            [(ActionType.PRUNE, OLD_ID)],
            "Resource is no longer desired",
        ),
        (
            SyncPolicy(prune=True),
            {"gitops.dev/sync-options": "Prune=false"},
            [],
            "Resource is no longer desired, pruning is disabled by Prune=false",
        ),
    ],
)
async def test_prune(
    cluster: InMemoryCluster,
    observer: ClusterObserver,
    policy: SyncPolicy,
    annotations: dict[str, str],
    expected_actions: list[tuple[ActionType, ResourceId]],
    message: str,
) -> None:
    """Test owned resources that are no longer desired."""
    cluster.seed(
        DESTINATION,
        [
            _live(_config_map()),
            _live(_config_map("old", **annotations)),
            # Not owned by the Application
            {
                "apiVersion": "v1",
                "kind": "ConfigMap",
                "metadata": {"name": "unrelated", "namespace": "default"},
            },
        ],
    )
    view = await _view(observer)
    plan = diff(_resolved(_config_map()), view, policy)
    assert [(action.type, action.id) for action in plan.actions] == expected_actions
    assert plan.sync_status == SyncStatus.OUT_OF_SYNC
    pruned = [status for status in plan.resources if status.requires_pruning]
    assert [status.id for status in pruned] == [OLD_ID]
    assert pruned[0].message == message


async def test_hooks_only_with_writes(
    cluster: InMemoryCluster, observer: ClusterObserver
) -> None:
    """Test that hooks run only when the operation changes something."""
    cluster.seed(DESTINATION, [_live(_config_map())])
    view = await _view(observer)

    plan = diff(_resolved(_hook(), _config_map()), view, SyncPolicy())
    assert plan.actions == []

    plan = diff(_resolved(_hook(), _config_map(), _deployment()), view, SyncPolicy())
    assert [(action.type, action.id) for action in plan.actions] == [
        (ActionType.CREATE, WEB_ID),
        (ActionType.HOOK, HOOK_ID),
    ]
    assert [action.id for action in plan.writes] == [WEB_ID]
    assert plan.waves == [-1, 0]
    hook = plan.in_wave(-1)[0]
    assert hook.hook
    assert hook.hook.blocking
    # Hooks are not part of the resource statuses
    assert [status.id for status in plan.resources] == [SETTINGS_ID, WEB_ID]


async def test_classify_drift(
    cluster: InMemoryCluster, observer: ClusterObserver
) -> None:
    """Test finding resources changed after they were applied."""
    deployment = _deployment()
    config_map = _config_map()
    cluster.seed(
        DESTINATION,
        [_live(deployment, status={"availableReplicas": 3}), _live(config_map)],
    )
    view = await _view(observer)
    resolved = _resolved(deployment, config_map)
    applied = AppliedState(
        revision_id="rev1",
        resolved=resolved,
        hashes={WEB_ID: manifest_hash(deployment), SETTINGS_ID: manifest_hash(config_map)},
    )
    assert classify_drift(applied, view, SyncPolicy()) == []

    cluster.mutate(WEB_ID, {"spec": {"replicas": 10}})
    version = cluster.remove(SETTINGS_ID)
    assert await observer.wait_for_version(DESTINATION, version, timeout=1)
    assert classify_drift(applied, view, SyncPolicy()) == [WEB_ID, SETTINGS_ID]

    # Changes to ignored fields are not drift
    policy = SyncPolicy(
        ignore_differences=[IgnoreDifference(json_pointers=["/spec/replicas"])]
    )
    assert classify_drift(applied, view, policy) == [SETTINGS_ID]

    # Resources without a successful apply of this definition have a pending sync
    assert classify_drift(applied.without(WEB_ID), view, SyncPolicy()) == [SETTINGS_ID]
    assert (
        classify_drift(applied.with_hash(SETTINGS_ID, "other"), view, SyncPolicy())
        == [WEB_ID]
    )


async def test_classify_drift_last_applied_annotation(
    cluster: InMemoryCluster, observer: ClusterObserver
) -> None:
    """Test drift of resources applied by an earlier controller process."""
    deployment = _deployment()
    config_map = _config_map()
    applied_web = _live(deployment)
    applied_web["metadata"]["annotations"] = {
        LAST_APPLIED_ANNOTATION: manifest_hash(deployment)
    }
    cluster.seed(DESTINATION, [applied_web, _live(config_map)])
    view = await _view(observer)
    applied = AppliedState(revision_id="rev1", resolved=_resolved(deployment, config_map))
    assert classify_drift(applied, view, SyncPolicy()) == []

    cluster.mutate(SETTINGS_ID, {"data": {"color": "red"}})
    updated = cluster.mutate(WEB_ID, {"spec": {"replicas": 10}})
    assert await observer.wait_for_version(
        DESTINATION, updated["metadata"]["resourceVersion"], timeout=1
    )
    # The ConfigMap carries no marker of a previous apply
    assert classify_drift(applied, view, SyncPolicy()) == [WEB_ID]

    # A hash recorded by this process takes precedence over the annotation
    assert classify_drift(applied.with_hash(WEB_ID, "other"), view, SyncPolicy()) == []


async def test_render_diff(
    cluster: InMemoryCluster, observer: ClusterObserver
) -> None:
    """Test rendering unified diffs of the planned writes."""
    cluster.seed(
        DESTINATION,
        [_live(_deployment(replicas=10), spec={"progressDeadlineSeconds": 600})],
    )
    view = await _view(observer)
    plan = diff(_resolved(_deployment(), _config_map()), view, SyncPolicy())

    lines = list(render_diff(plan, view))
    assert "--- live Deployment/default/web\n" in lines
    assert "+++ desired Deployment/default/web\n" in lines
    assert "-  replicas: 10\n" in lines
    assert "+  replicas: 3\n" in lines
    # Fields only present in live state are not shown
    assert not any("progressDeadlineSeconds" in line for line in lines)
    # Created resources diff against nothing
    assert "+kind: ConfigMap\n" in lines

    # Each resource is truncated separately
    truncated = list(render_diff(plan, view, limit_bytes=100))
    assert truncated.count("[Diff truncated by gitops-reconciler]") == 2
    assert len(truncated) < len(lines)


def test_remove_pointer() -> None:
    """Test removing fields by JSON pointer."""
    obj: dict[str, Any] = {
        "spec": {
            "containers": [{"name": "web", "image": "nginx"}],
            "a/b": 1,
            "c~d": 2,
        }
    }
    remove_pointer(obj, "/spec/containers/0/image")
    remove_pointer(obj, "/spec/a~1b")
    remove_pointer(obj, "/spec/c~0d")
    remove_pointer(obj, "/spec/missing/field")
    remove_pointer(obj, "/spec/containers/5")
    remove_pointer(obj, "not-a-pointer")
    assert obj == {"spec": {"containers": [{"name": "web"}]}}


def test_is_subset() -> None:
    """Test the comparison of desired and live values."""
    assert is_subset({"a": 1}, {"a": 1, "b": 2})
    assert not is_subset({"a": 1, "b": 2}, {"a": 1})
    assert is_subset({"l": [{"x": 1}]}, {"l": [{"x": 1, "y": 2}]})
    assert not is_subset({"l": [1]}, {"l": [1, 2]})
    assert not is_subset({"a": {"b": 1}}, {"a": "b"})
    assert is_subset("x", "x")


def test_comparable() -> None:
    """Test the normalized form used for comparison."""
    live = _live(_deployment(), status={"availableReplicas": 3})
    rules = [IgnoreDifference(kind="Deployment", json_pointers=["/spec/replicas"])]
    result = comparable(live, rules)
    assert "status" not in result
    assert "uid" not in result["metadata"]
    assert "replicas" not in result["spec"]
    assert live["spec"]["replicas"] == 3
