"""Integration tests for the MCP tool surface.

These tests drive the tool functions in main.py end to end against a
temporary data directory: planning, execution, verification, workflows,
project isolation and clearing.
"""

import json
from unittest.mock import MagicMock, patch

import pytest

import main
from taskgraph.config import Settings


@pytest.fixture
def server(tmp_path, source_root):
    """Reconfigure the server against a fresh data directory."""
    main.configure(Settings(
        data_dir=tmp_path / "data",
        source_root=source_root,
        lock_timeout=2.0,
        lock_retry_interval=0.01,
        lock_max_retries=500,
    ))
    yield main
    main.configure(Settings(data_dir=tmp_path / "data"))


def plan_feature(server):
    return server.split_tasks(
        tasks=[
            {"name": "Design schema", "description": "Design the database schema"},
            {"name": "Write API", "description": "Implement the API", "dependencies": ["Design schema"],
             "verification_criteria": "All endpoints tested"},
        ],
        global_note="Feature: accounts",
    )


def ids_by_name(server):
    return {task["name"]: task["id"] for task in server.list_tasks()["tasks"]}


class TestProjectTools:
    """Test cases for project selection."""

    def test_no_project_points_to_switch_project(self, server):
        """Calls without any project ask for switch_project."""
        result = server.list_tasks()

        assert result["error_type"] == "ProjectRequiredError"
        assert result["next_suggested_step"] == "switch_project"

    def test_switch_project(self, server):
        """Switching creates the project and reports its counts."""
        result = server.switch_project("My Project")

        assert result["project"] == "My Project"
        assert result["task_count"] == 0
        assert result["next_suggested_step"] == "split_tasks"
        assert server.get_current_project()["project"] == "My Project"
        assert server.get_current_project()["source"] == "session"

    def test_projects_are_isolated(self, server):
        """Tasks planned in one project never appear in another."""
        server.switch_project("alpha")
        plan_feature(server)

        server.switch_project("beta")
        assert server.list_tasks()["tasks"] == []
        assert len(server.list_tasks(project="alpha")["tasks"]) == 2

        projects = {entry["project"]: entry for entry in server.list_projects()["projects"]}
        assert projects["alpha"]["task_count"] == 2
        assert projects["beta"]["task_count"] == 0
        assert projects["beta"]["is_current"] is True

    def test_each_client_keeps_its_own_project(self, server):
        """Two connected clients switching projects never see each other's choice."""
        first, second = MagicMock(), MagicMock()

        def as_client(client, tool, *args):
            with patch.object(server.mcp, "get_context", return_value=MagicMock(session=client)):
                return tool(*args)

        as_client(first, server.switch_project, "alpha")
        as_client(second, server.switch_project, "beta")
        as_client(first, plan_feature, server)

        assert as_client(first, server.get_current_project)["project"] == "alpha"
        assert as_client(second, server.get_current_project)["project"] == "beta"
        assert as_client(second, server.list_tasks)["tasks"] == []
        assert len(as_client(first, server.list_tasks)["tasks"]) == 2
        assert "[pending] Design schema" in as_client(first, server.resource_tasks)
        assert server.get_current_project()["project"] is None

    def test_new_client_starts_without_a_project(self, server):
        """A client that never switched gets no project from another client or from direct calls."""
        server.switch_project("alpha")
        client = MagicMock()

        with patch.object(server.mcp, "get_context", return_value=MagicMock(session=client)):
            result = server.list_tasks()

        assert result["error_type"] == "ProjectRequiredError"
        assert server.get_current_project()["project"] == "alpha"

    def test_list_projects_reports_corrupt_store(self, server):
        """A corrupt project is listed with its error instead of failing the call."""
        root = server.resolver.resolve("broken")
        root.tasks_file.write_text("{oops", encoding="utf-8")

        projects = {entry["project"]: entry for entry in server.list_projects()["projects"]}

        assert projects["broken"]["task_count"] is None
        assert "corrupt" in projects["broken"]["error"]


class TestTaskLifecycle:
    """Test cases for the plan -> execute -> verify flow."""

    def test_full_flow(self, server):
        """A task is executed, verified and unblocks its dependent."""
        server.switch_project("alpha")
        planned = plan_feature(server)
        assert len(planned["created"]) == 2
        assert planned["next_suggested_step"] == "execute_task"

        ids = ids_by_name(server)
        blocked = server.execute_task(ids["Write API"])
        assert blocked["error_type"] == "InvariantViolation"
        assert blocked["blocked_by"] == [ids["Design schema"]]

        started = server.execute_task(ids["Design schema"])
        assert started["task"]["status"] == "in_progress"
        assert started["continuation"]["next_tool"] == "verify_task"
        assert started["continuation"]["next_tool_params"]["task_id"] == ids["Design schema"]
        assert started["continuation"]["next_tool_params"]["task_name"] == "Design schema"

        verified = server.verify_task(ids["Design schema"], 92, "Schema designed and reviewed")
        assert verified["passed"] is True
        assert verified["task"]["status"] == "completed"
        assert verified["workflow"]["status"] == "completed"
        assert verified["continuation"]["reason"] == "Workflow completed"

        detail = server.get_task_detail(ids["Write API"])
        assert detail["execution"]["can_execute"] is True

    def test_failed_verification_retries_step(self, server):
        """A low score fails the verify step and a later pass completes it."""
        server.switch_project("alpha")
        plan_feature(server)
        task_id = ids_by_name(server)["Design schema"]
        server.execute_task(task_id)

        failed = server.verify_task(task_id, 50, "Missing indexes")
        assert failed["passed"] is False
        assert failed["task"]["status"] == "in_progress"
        assert failed["workflow"]["status"] == "paused"
        assert failed["continuation"]["should_proceed"] is False
        assert failed["next_suggested_step"] == "verify_task"

        status = server.workflow_status(task_id=task_id)
        assert status["state_transfers"][-1]["data"] == {"previous_score": 50, "issues": "Missing indexes"}

        passed = server.verify_task(task_id, 85, "Indexes added")
        assert passed["passed"] is True
        assert passed["workflow"]["status"] == "completed"

    @pytest.mark.parametrize("score,summary", [(150, "Indexes added"), (90, "  ")])
    def test_rejected_verification_keeps_workflow_paused(self, server, score, summary):
        """Invalid verification input leaves a failed verify step as it was."""
        server.switch_project("alpha")
        plan_feature(server)
        task_id = ids_by_name(server)["Design schema"]
        server.execute_task(task_id)
        server.verify_task(task_id, 50, "Missing indexes")

        rejected = server.verify_task(task_id, score, summary)

        assert rejected["error_type"] == "ValidationError"
        workflow = server.workflow_status(task_id=task_id)["workflow"]
        assert workflow["status"] == "paused"
        assert workflow["steps"][1]["status"] == "failed"
        assert workflow["steps"][1]["error"] == "Score 50 is below the passing score"
        assert server.get_task_detail(task_id)["task"]["status"] == "in_progress"

    def test_rejected_verification_of_pending_task(self, server):
        """Verifying a task that never started changes nothing."""
        server.switch_project("alpha")
        plan_feature(server)
        task_id = ids_by_name(server)["Design schema"]

        rejected = server.verify_task(task_id, 90, "Looks done")

        assert rejected["error_type"] == "InvariantViolation"
        assert server.workflow_status()["active"] == []

    def test_execute_twice_returns_existing_workflow(self, server):
        """Executing an in-progress task reuses its workflow."""
        server.switch_project("alpha")
        plan_feature(server)
        task_id = ids_by_name(server)["Design schema"]

        first = server.execute_task(task_id)
        second = server.execute_task(task_id)

        assert second["workflow"]["workflow_id"] == first["workflow"]["workflow_id"]
        assert "already in progress" in second["message"]

    def test_query_update_delete(self, server):
        """Search, edit and delete go through the same project."""
        server.switch_project("alpha")
        plan_feature(server)
        ids = ids_by_name(server)

        found = server.query_task("api")
        assert [task["name"] for task in found["tasks"]] == ["Write API"]

        edited = server.update_task(ids["Write API"], notes="Use REST")
        assert edited["task"]["notes"] == "Use REST"

        refused = server.delete_task(ids["Design schema"])
        assert refused["error_type"] == "InvariantViolation"

        deleted = server.delete_task(ids["Write API"])
        assert deleted["deleted"]["id"] == ids["Write API"]

    def test_clear_all_tasks(self, server):
        """Clearing needs confirmation and backs up completed tasks."""
        server.switch_project("alpha")
        plan_feature(server)
        task_id = ids_by_name(server)["Design schema"]
        server.execute_task(task_id)
        server.verify_task(task_id, 100, "Done")

        refused = server.clear_all_tasks()
        assert refused["error_type"] == "ValidationError"

        cleared = server.clear_all_tasks(confirm=True)
        assert cleared["removed"] == 2
        assert cleared["backed_up"] == 1
        backup = json.loads(open(cleared["backup_file"], encoding="utf-8").read())
        assert backup["tasks"][0]["id"] == task_id
        assert server.list_tasks()["tasks"] == []

    def test_resource_lists_tasks(self, server):
        """The tasks resource renders the active project."""
        assert "No active project" in server.resource_tasks()

        server.switch_project("alpha")
        assert "no tasks yet" in server.resource_tasks()

        plan_feature(server)
        text = server.resource_tasks()
        assert "[pending] Design schema" in text
        assert "Depends on:" in text


class TestWorkflowTools:
    """Test cases for the workflow tools."""

    def test_status_and_manual_steps(self, server):
        """Workflows can be inspected and advanced by hand."""
        server.switch_project("alpha")
        plan_feature(server)
        task_id = ids_by_name(server)["Design schema"]
        workflow_id = server.execute_task(task_id)["workflow"]["workflow_id"]

        overview = server.workflow_status()
        assert [wf["workflow_id"] for wf in overview["active"]] == [workflow_id]
        assert overview["counts"]["in_progress"] == 1

        rejected = server.update_workflow_step(workflow_id, 0, "completed")
        assert rejected["updated"] is False

        advanced = server.update_workflow_step(workflow_id, 1, "completed", output={"manual": True})
        assert advanced["updated"] is True
        assert advanced["workflow"]["status"] == "completed"

        detail = server.workflow_status(workflow_id=workflow_id)
        assert detail["monitoring"]["completed_steps"] == 2

    def test_unknown_workflow(self, server):
        """Unknown workflow ids are reported, not raised."""
        assert server.workflow_status(workflow_id="missing")["error_type"] == "NotFoundError"
        assert server.workflow_continuation("missing")["reason"] == "Workflow not found"

    def test_cleanup(self, server):
        """Cleanup with age zero evicts every workflow."""
        server.switch_project("alpha")
        plan_feature(server)
        server.execute_task(ids_by_name(server)["Design schema"])

        result = server.cleanup_workflows(max_age_ms=0)

        assert result["removed"] == 1
        assert server.workflow_status()["active"] == []
