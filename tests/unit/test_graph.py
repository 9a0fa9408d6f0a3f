"""Unit tests for dependency graph helpers."""

import pytest

from taskgraph.errors import CyclicDependencyError, ValidationError
from taskgraph.graph import ensure_acyclic, find_cycle, resolve_references, unmet_dependencies
from taskgraph.models import Task, TaskInput, TaskStatus


def task(task_id, name=None, deps=(), status=TaskStatus.PENDING):
    return Task(id=task_id, name=name or task_id, description="d", dependencies=list(deps), status=status)


class TestFindCycle:
    """Test cases for find_cycle."""

    def test_acyclic_graph(self):
        """A DAG has no cycle."""
        edges = {"a": [], "b": ["a"], "c": ["a", "b"]}

        assert find_cycle(edges) is None

    def test_self_loop(self):
        """A node depending on itself is a cycle."""
        assert find_cycle({"a": ["a"]}) == ["a", "a"]

    def test_reports_closed_path(self):
        """The returned path starts and ends on the same node."""
        edges = {"a": ["b"], "b": ["c"], "c": ["a"], "d": []}

        cycle = find_cycle(edges)

        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}
        for current, following in zip(cycle, cycle[1:]):
            assert following in edges[current]

    def test_ignores_unknown_nodes(self):
        """Edges to nodes outside the graph do not count."""
        assert find_cycle({"a": ["missing"]}) is None

    def test_deep_chain_does_not_recurse(self):
        """Long chains are handled iteratively."""
        edges = {f"n{i}": [f"n{i + 1}"] for i in range(5000)}
        edges["n5000"] = []

        assert find_cycle(edges) is None


class TestEnsureAcyclic:
    """Test cases for ensure_acyclic."""

    def test_names_the_cycle(self):
        """The error message uses task names and keeps ids on the error."""
        tasks = [task("1", "Design", deps=["2"]), task("2", "Build", deps=["1"])]

        with pytest.raises(CyclicDependencyError) as exc:
            ensure_acyclic(tasks)

        assert "Design" in str(exc.value) and "Build" in str(exc.value)
        assert set(exc.value.cycle) == {"1", "2"}
        assert exc.value.to_dict()["cycle"] == exc.value.cycle


class TestResolveReferences:
    """Test cases for resolve_references."""

    def test_batch_names_win(self):
        """A name in the batch resolves to the new task's id."""
        existing = [task("old", "Setup")]
        inputs = [TaskInput(name="Setup", description="d"), TaskInput(name="Use", description="d", dependencies=["Setup"])]

        resolved = resolve_references(inputs, ["new-1", "new-2"], existing)

        assert resolved == [[], ["new-1"]]

    def test_existing_names_and_ids(self):
        """Existing tasks can be referenced by name or by id."""
        existing = [task("id-1", "Setup"), task("id-2", "Schema")]
        inputs = [TaskInput(name="Use", description="d", dependencies=["Setup", "id-2", "Setup"])]

        resolved = resolve_references(inputs, ["new-1"], existing)

        assert resolved == [["id-1", "id-2"]]

    def test_open_task_wins_over_completed_namesake(self):
        """A pending task is preferred over a completed one with the same name."""
        existing = [task("done", "Setup", status=TaskStatus.COMPLETED), task("open", "Setup")]
        inputs = [TaskInput(name="Use", description="d", dependencies=["Setup"])]

        assert resolve_references(inputs, ["new"], existing) == [["open"]]

    def test_unknown_reference(self):
        """Unknown references are rejected."""
        inputs = [TaskInput(name="Use", description="d", dependencies=["Nope"])]

        with pytest.raises(ValidationError) as exc:
            resolve_references(inputs, ["new"], [])

        assert "Nope" in str(exc.value)


class TestUnmetDependencies:
    """Test cases for unmet_dependencies."""

    def test_lists_unfinished_and_missing(self):
        """Pending and missing dependencies both block."""
        done = task("a", status=TaskStatus.COMPLETED)
        pending = task("b")
        target = task("c", deps=["a", "b", "gone"])

        by_id = {t.id: t for t in (done, pending, target)}

        assert unmet_dependencies(target, by_id) == ["b", "gone"]
