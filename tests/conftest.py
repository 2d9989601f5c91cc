"""Fixtures shared by the gitops-reconciler tests."""

from collections.abc import AsyncGenerator

import pytest

from gitops_reconciler.cluster import InMemoryCluster
from gitops_reconciler.config import ControllerConfig
from gitops_reconciler.orchestrator import ApplicationController
from gitops_reconciler.source_controller import InMemorySource, SourceRegistry

REPO_URL = "https://git.example.com/apps.git"


@pytest.fixture(name="source")
def source_fixture() -> InMemorySource:
    """An in memory repository that tests commit manifests to."""
    return InMemorySource(REPO_URL)


@pytest.fixture(name="registry")
def registry_fixture(source: InMemorySource) -> SourceRegistry:
    """A registry serving the in memory repository."""
    registry = SourceRegistry()
    registry.register(source)
    return registry


@pytest.fixture(name="cluster")
def cluster_fixture() -> InMemoryCluster:
    """An empty in memory cluster."""
    return InMemoryCluster()


@pytest.fixture(name="config")
def config_fixture() -> ControllerConfig:
    """Controller configuration with short timeouts."""
    config = ControllerConfig()
    config.sync.hook_timeout = 5
    config.sync.operation_timeout = 10
    config.sync.rate_limit_qps = 1000
    config.sync.rate_limit_burst = 1000
    return config


@pytest.fixture(name="controller")
async def controller_fixture(
    cluster: InMemoryCluster, registry: SourceRegistry, config: ControllerConfig
) -> AsyncGenerator[ApplicationController, None]:
    """An ApplicationController that is stopped after the test."""
    controller = ApplicationController(cluster, registry, config)
    yield controller
    await controller.stop()
