"""Tests for the cluster observer."""

import asyncio
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest

from gitops_reconciler.cluster import ChangeEvent, ClusterObserver, EventType, InMemoryCluster
from gitops_reconciler.config import BackoffConfig, ObserverConfig
from gitops_reconciler.exceptions import ClusterConnectionError, StaleCacheError
from gitops_reconciler.manifest import ResourceId

DESTINATION = "in-cluster"
WEB_ID = ResourceId("ConfigMap", "default", "web")
API_ID = ResourceId("ConfigMap", "default", "api")


def _config_map(name: str, value: str = "1", owner: str | None = None) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": name, "namespace": "default"}
    if owner:
        metadata["labels"] = {"gitops.dev/instance": owner}
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": metadata,
        "data": {"value": value},
    }


async def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


@pytest.fixture(name="cluster")
def cluster_fixture() -> InMemoryCluster:
    cluster = InMemoryCluster()
    cluster.seed(DESTINATION, [_config_map("web", owner="guestbook")])
    return cluster


@pytest.fixture(name="observer")
async def observer_fixture(
    cluster: InMemoryCluster,
) -> AsyncGenerator[ClusterObserver, None]:
    observer = ClusterObserver(
        cluster,
        ObserverConfig(
            max_staleness=60,
            relist_backoff=BackoffConfig(base=0.01, cap=0.05, jitter=0),
        ),
    )
    yield observer
    await observer.close()


async def test_initial_list(observer: ClusterObserver) -> None:
    """Test that observing a destination lists its objects."""
    await observer.observe(DESTINATION)
    assert observer.is_fresh(DESTINATION)
    obj = observer.get(WEB_ID)
    assert obj
    assert obj["data"] == {"value": "1"}
    assert observer.get(API_ID) is None
    assert list(observer.objects(DESTINATION)) == [WEB_ID]


async def test_unobserved_destination(observer: ClusterObserver) -> None:
    """Test reads of a destination that is not observed."""
    with pytest.raises(ClusterConnectionError, match="not observed"):
        observer.get(ResourceId("ConfigMap", "default", "web", destination="other"))
    assert not observer.is_fresh("other")


async def test_watch_updates_cache(
    observer: ClusterObserver, cluster: InMemoryCluster
) -> None:
    """Test changes are streamed into the cache and to listeners."""
    await observer.observe(DESTINATION)
    events: list[ChangeEvent] = []
    remove = observer.add_listener(events.append)

    obj = await cluster.apply(DESTINATION, _config_map("api"))
    assert await observer.wait_for_version(
        DESTINATION, obj["metadata"]["resourceVersion"], timeout=1
    )
    assert observer.get(API_ID) is not None

    cluster.remove(WEB_ID)
    await wait_for(lambda: observer.get(WEB_ID) is None)

    assert [(event.type, event.id) for event in events] == [
        (EventType.ADDED, API_ID),
        (EventType.DELETED, WEB_ID),
    ]
    remove()


async def test_wait_for_version_timeout(observer: ClusterObserver) -> None:
    """Test waiting for a version that is never observed."""
    await observer.observe(DESTINATION)
    assert not await observer.wait_for_version(DESTINATION, "100", timeout=0.05)


async def test_relist_after_disconnect(
    observer: ClusterObserver, cluster: InMemoryCluster
) -> None:
    """Test changes missed while disconnected are reported after a relist."""
    await observer.observe(DESTINATION)
    events: list[ChangeEvent] = []
    observer.add_listener(events.append)

    cluster.disconnect(DESTINATION, unreachable=True)
    cluster.remove(WEB_ID)
    cluster.seed(DESTINATION, [_config_map("api")])

    # The cache is served within the staleness window
    await asyncio.sleep(0.05)
    assert observer.get(WEB_ID) is not None

    cluster.reconnect(DESTINATION)
    await wait_for(lambda: observer.get(API_ID) is not None)

    assert observer.get(WEB_ID) is None
    assert {(event.type, event.id) for event in events} == {
        (EventType.DELETED, WEB_ID),
        (EventType.ADDED, API_ID),
    }


async def test_stale_cache(cluster: InMemoryCluster) -> None:
    """Test reads fail once a disconnected cache is older than the window."""
    observer = ClusterObserver(
        cluster,
        ObserverConfig(
            max_staleness=0.05,
            relist_backoff=BackoffConfig(base=0.01, cap=0.05, jitter=0),
        ),
    )
    try:
        await observer.observe(DESTINATION)
        cluster.disconnect(DESTINATION, unreachable=True)
        await asyncio.sleep(0.2)
        with pytest.raises(StaleCacheError, match="stale"):
            observer.get(WEB_ID)
        with pytest.raises(StaleCacheError):
            observer.view(DESTINATION).owned("guestbook")
        assert not observer.is_fresh(DESTINATION)

        cluster.reconnect(DESTINATION)
        await wait_for(lambda: observer.is_fresh(DESTINATION))
        assert observer.get(WEB_ID) is not None
    finally:
        await observer.close()


async def test_initial_list_failure(cluster: InMemoryCluster) -> None:
    """Test a destination that is unreachable when first observed."""
    observer = ClusterObserver(
        cluster,
        ObserverConfig(relist_backoff=BackoffConfig(base=0.01, cap=0.05, jitter=0)),
    )
    cluster.disconnect(DESTINATION, unreachable=True)
    try:
        await observer.observe(DESTINATION)
        with pytest.raises(StaleCacheError, match="has not been synchronized"):
            observer.get(WEB_ID)

        cluster.reconnect(DESTINATION)
        await wait_for(lambda: observer.is_fresh(DESTINATION))
        assert observer.get(WEB_ID) is not None
    finally:
        await observer.close()


async def test_view_owned(observer: ClusterObserver, cluster: InMemoryCluster) -> None:
    """Test the objects of a view owned by an Application."""
    cluster.seed(DESTINATION, [_config_map("api", owner="other")])
    await observer.observe(DESTINATION)
    view = observer.view(DESTINATION)
    assert list(view.owned("guestbook")) == [WEB_ID]
    assert list(view.owned("other")) == [API_ID]
    assert view.get(WEB_ID) is not None


async def test_subscribe(observer: ClusterObserver, cluster: InMemoryCluster) -> None:
    """Test subscribing to change events."""
    await observer.observe(DESTINATION)
    subscription = observer.subscribe()
    next_event = asyncio.create_task(anext(subscription))
    await asyncio.sleep(0)
    await cluster.apply(DESTINATION, _config_map("api"))
    event = await asyncio.wait_for(next_event, timeout=1)
    assert event.id == API_ID
    await subscription.aclose()
