"""Shared fixtures for the taskgraph test suite."""

import logging

import pytest

from taskgraph.project import ProjectResolver
from taskgraph.store import TaskStore
from taskgraph.taskgraph_logging import observability_hooks, performance_monitor
from taskgraph.tasks import TaskGraphManager


@pytest.fixture(autouse=True)
def isolated_globals():
    """Reset process-wide registries between tests."""
    TaskStore.reset_registry()
    performance_monitor.reset()
    yield
    TaskStore.reset_registry()
    performance_monitor.reset()
    observability_hooks.hooks.clear()
    logging.getLogger("taskgraph").handlers.clear()


@pytest.fixture
def resolver(tmp_path):
    """A resolver over a fresh data directory."""
    return ProjectResolver(tmp_path / "data")


@pytest.fixture
def root(resolver):
    """Storage root of a project named 'alpha'."""
    return resolver.resolve("alpha")


@pytest.fixture
def source_root(tmp_path):
    """Directory against which related-file paths resolve."""
    path = tmp_path / "source"
    path.mkdir()
    return path


@pytest.fixture
def manager(source_root):
    """Task graph manager with short lock bounds."""
    return TaskGraphManager(source_root=source_root, lock_timeout=2.0, retry_interval=0.01, max_retries=500)
