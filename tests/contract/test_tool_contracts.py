"""Contract tests for tool payloads.

Every rejected call returns the same error shape so callers can branch on
it without parsing messages.
"""

import asyncio
from unittest.mock import patch

import pytest

import main
from taskgraph.config import Settings
from taskgraph.errors import (
    BackupError,
    ConflictError,
    CorruptStoreError,
    CyclicDependencyError,
    InvariantViolation,
    LockTimeoutError,
    NotFoundError,
    ProjectRequiredError,
    ValidationError,
)

ERROR_KEYS = {"error", "error_type", "retryable", "suggestion", "next_suggested_step"}


@pytest.fixture
def server(tmp_path, source_root):
    main.configure(Settings(data_dir=tmp_path / "data", source_root=source_root))
    yield main
    main.configure(Settings(data_dir=tmp_path / "data"))


class TestErrorPayloads:
    """Test cases for the structured error shape."""

    @pytest.mark.parametrize("error,next_step", [
        (ProjectRequiredError(), "switch_project"),
        (NotFoundError("Task", "t1"), "list_tasks"),
        (NotFoundError("Workflow", "w1"), "workflow_status"),
        (InvariantViolation("blocked", blocked_by=["t0"]), "execute_task"),
        (InvariantViolation("completed"), "get_task_detail"),
        (CyclicDependencyError(["a", "b", "a"]), "get_task_detail"),
        (ValidationError("bad"), "get_task_detail"),
        (ConflictError("dup"), "get_task_detail"),
        (CorruptStoreError("/x/tasks.json", "bad json"), "get_task_detail"),
        (BackupError("disk full"), "get_task_detail"),
    ])
    def test_error_shape(self, server, error, next_step):
        """Each error carries the common keys and a next step."""
        with patch.object(server.manager, "list_tasks", side_effect=error):
            payload = server.list_tasks(project="alpha")

        assert ERROR_KEYS <= set(payload)
        assert payload["error_type"] == type(error).__name__
        assert payload["next_suggested_step"] == next_step
        assert payload["retryable"] is False

    def test_lock_timeout_is_retryable(self, server):
        """Lock timeouts suggest retrying the same tool."""
        with patch.object(server.manager, "insert_batch", side_effect=LockTimeoutError("/x/tasks.json.lock", 2.0)):
            payload = server.split_tasks(tasks=[{"name": "a", "description": "b"}], project="alpha")

        assert payload["retryable"] is True
        assert payload["next_suggested_step"] == "split_tasks"

    def test_cycle_payload_lists_ids(self, server):
        """Cycle errors expose the offending ids."""
        payload = server.split_tasks(
            tasks=[
                {"name": "a", "description": "d", "dependencies": ["b"]},
                {"name": "b", "description": "d", "dependencies": ["a"]},
            ],
            project="alpha",
        )

        assert payload["error_type"] == "CyclicDependencyError"
        assert len(payload["cycle"]) == 3

    def test_unexpected_errors_propagate(self, server):
        """Errors outside the taxonomy are logged and re-raised."""
        with patch.object(server.manager, "list_tasks", side_effect=RuntimeError("boom")):
            with patch("main.log_error_with_context") as mock_log:
                with pytest.raises(RuntimeError):
                    server.list_tasks(project="alpha")

        mock_log.assert_called_once()
        assert mock_log.call_args[0][1]["operation"] == "list_tasks"


class TestSuccessPayloads:
    """Test cases for success payload keys."""

    def test_split_tasks_keys(self, server):
        """Planning reports what changed and what to do next."""
        payload = server.split_tasks(tasks=[{"name": "a", "description": "b"}], project="alpha")

        assert {"update_mode", "created", "updated", "removed", "reclassified", "backup_file",
                "project", "next_suggested_step"} <= set(payload)
        task = payload["created"][0]
        assert {"id", "name", "description", "status", "dependencies", "related_files",
                "created_at", "updated_at", "completed_at", "summary"} <= set(task)
        assert task["created_at"].endswith("Z")

    def test_tools_are_registered(self):
        """The MCP server exposes every tool."""
        names = {tool.name for tool in asyncio.run(main.mcp.list_tools())}

        assert {
            "switch_project", "get_current_project", "list_projects",
            "split_tasks", "list_tasks", "query_task", "get_task_detail", "update_task",
            "execute_task", "verify_task", "delete_task", "clear_all_tasks",
            "workflow_status", "workflow_continuation", "update_workflow_step", "cleanup_workflows",
        } <= names
