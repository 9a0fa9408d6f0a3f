"""MCP server exposing project-isolated task graph and workflow tools."""

from __future__ import annotations

import logging
import threading
import weakref
from contextlib import contextmanager
from functools import wraps
from typing import Any, Dict, Iterator, List, Optional

from mcp.server.fastmcp import FastMCP

from taskgraph.config import Settings
from taskgraph.errors import (
    CorruptStoreError,
    InvariantViolation,
    LockTimeoutError,
    NotFoundError,
    ProjectRequiredError,
    TaskGraphError,
)
from taskgraph.models import TaskStatus, WorkflowStatus
from taskgraph.project import ProjectResolver, ProjectSession, StorageRoot
from taskgraph.taskgraph_logging import log_error_with_context, setup_logging
from taskgraph.tasks import TaskGraphManager
from taskgraph.workflow import WorkflowOrchestrator, summarize

mcp = FastMCP("taskgraph")

logger = logging.getLogger("taskgraph.server")

EXECUTE_TOOL = "execute_task"
VERIFY_TOOL = "verify_task"
EXECUTION_WORKFLOW = (EXECUTE_TOOL, VERIFY_TOOL)

settings: Settings
resolver: ProjectResolver
manager: TaskGraphManager
orchestrator: WorkflowOrchestrator

# Current-project state per connected MCP client session
_client_sessions: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()
_client_sessions_lock = threading.Lock()


def configure(new_settings: Optional[Settings] = None) -> Settings:
    """(Re)build the server components from settings."""
    global settings, resolver, manager, orchestrator
    settings = new_settings or Settings.from_env()
    _client_sessions.clear()
    resolver = ProjectResolver(settings.data_dir, default_project=settings.default_project)
    manager = TaskGraphManager.from_settings(settings)
    orchestrator = WorkflowOrchestrator()
    return settings


configure()


def _next_step_for(error: TaskGraphError, tool_name: str) -> str:
    if isinstance(error, ProjectRequiredError):
        return "switch_project"
    if isinstance(error, NotFoundError):
        return "workflow_status" if error.kind == "Workflow" else "list_tasks"
    if isinstance(error, LockTimeoutError):
        return tool_name
    if isinstance(error, InvariantViolation) and error.blocked_by:
        return EXECUTE_TOOL
    return "get_task_detail"


def _client_session() -> Optional[ProjectSession]:
    """Session of the MCP client making the current request, if any."""
    try:
        client = mcp.get_context().session
    except ValueError:
        # Called outside a request, e.g. directly from Python
        return None
    with _client_sessions_lock:
        session = _client_sessions.get(client)
        if session is None:
            session = _client_sessions[client] = ProjectSession()
            logger.debug("Bound a new project session to an MCP client")
        return session


@contextmanager
def client_scope() -> Iterator[Optional[ProjectSession]]:
    """Bind the requesting client's project session for the duration of a call."""
    session = _client_session()
    if session is None:
        yield None
        return
    with resolver.session_scope(session):
        yield session


def tool_errors(func):
    """Turn task graph errors into structured error payloads."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            with client_scope():
                return func(*args, **kwargs)
        except TaskGraphError as e:
            logger.warning(f"{func.__name__} rejected: {e}")
            payload = e.to_dict()
            payload["next_suggested_step"] = _next_step_for(e, func.__name__)
            return payload
        except Exception as e:
            log_error_with_context(e, {"operation": func.__name__, "arguments": kwargs})
            raise

    return wrapper


def _root(project: Optional[str]) -> StorageRoot:
    return resolver.resolve(project)


def _status_counts(tasks) -> Dict[str, int]:
    counts = {status.value: 0 for status in TaskStatus}
    for task in tasks:
        counts[task.status.value] += 1
    return counts


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


@mcp.tool()
@tool_errors
def switch_project(project: str) -> Dict[str, Any]:
    """Switch the active project for subsequent calls.

    Every project keeps its tasks in its own storage directory; tools that take
    an optional 'project' argument use the active project when it is omitted."""

    root = resolver.set_current_project(project)
    tasks = manager.list_tasks(root)
    return {
        "project": root.project,
        "storage_path": str(root.path),
        "task_count": len(tasks),
        "status_counts": _status_counts(tasks),
        "next_suggested_step": "list_tasks" if tasks else "split_tasks",
    }


@mcp.tool()
@tool_errors
def get_current_project() -> Dict[str, Any]:
    """Report which project calls without a 'project' argument will use."""

    current = resolver.get_current_project()
    project = current or settings.default_project
    return {
        "project": project,
        "source": "session" if current else ("default" if project else None),
        "data_dir": str(settings.data_dir),
        "next_suggested_step": "list_tasks" if project else "switch_project",
    }


@mcp.tool()
@tool_errors
def list_projects() -> Dict[str, Any]:
    """List every project that has a storage directory, with task counts."""

    projects = resolver.list_projects()
    for entry in projects:
        entry["task_count"] = 0
        if not entry["has_tasks"]:
            continue
        store = manager.store(StorageRoot(project=entry["project"], path=resolver.data_root / entry["project"]))
        try:
            entry["task_count"] = len(store.load())
        except CorruptStoreError as e:
            entry["task_count"] = None
            entry["error"] = str(e)
    return {"data_dir": str(resolver.data_root), "projects": projects}


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@mcp.tool()
@tool_errors
def split_tasks(
    tasks: List[Dict[str, Any]],
    update_mode: str = "append",
    global_note: Optional[str] = None,
    project: Optional[str] = None,
) -> Dict[str, Any]:
    """Plan a batch of tasks with dependencies.

    Each task needs 'name' and 'description' and may carry 'notes',
    'dependencies' (names or ids of other tasks), 'related_files'
    (objects with 'path', 'type' in CREATE/TO_MODIFY/REFERENCE/DEPENDENCY/OTHER,
    optional 'description', 'line_start', 'line_end'),
    'implementation_guide' and 'verification_criteria'.

    update_mode:
    - 'append': add the batch, keeping every existing task
    - 'overwrite': replace all unfinished tasks, keeping completed ones
    - 'selective': update unfinished tasks with the same name, add the rest
    - 'clearAllTasks': back up completed tasks, clear everything, then add
    """

    root = _root(project)
    result = manager.insert_batch(root, tasks, update_mode=update_mode, global_note=global_note)
    payload = result.to_dict()
    payload["project"] = root.project
    payload["next_suggested_step"] = EXECUTE_TOOL
    payload["workflow_tip"] = "Pick a pending task whose dependencies are completed and call execute_task"
    return payload


@mcp.tool()
@tool_errors
def list_tasks(status: str = "all", project: Optional[str] = None) -> Dict[str, Any]:
    """List the tasks of a project. status: all, pending, in_progress or completed."""

    root = _root(project)
    tasks = manager.list_tasks(root, status=status)
    return {
        "project": root.project,
        "status": status,
        "tasks": [task.to_dict() for task in tasks],
        "status_counts": _status_counts(tasks if status == "all" else manager.list_tasks(root)),
    }


@mcp.tool()
@tool_errors
def query_task(
    query: str,
    is_id: bool = False,
    page: int = 1,
    page_size: int = 5,
    project: Optional[str] = None,
) -> Dict[str, Any]:
    """Search tasks by id or by keywords in their name and description."""

    root = _root(project)
    result = manager.search_tasks(root, query, is_id=is_id, page=page, page_size=page_size)
    payload = result.to_dict()
    payload["project"] = root.project
    return payload


@mcp.tool()
@tool_errors
def get_task_detail(task_id: str, project: Optional[str] = None) -> Dict[str, Any]:
    """Show a task with its dependency state and its latest workflow."""

    root = _root(project)
    task = manager.get_task(root, task_id)
    check = manager.can_execute(root, task_id)
    workflow = orchestrator.find_by_task_id(task_id)
    return {
        "project": root.project,
        "task": task.to_dict(),
        "execution": check.to_dict(),
        "workflow": workflow.to_dict() if workflow else None,
        "continuation": orchestrator.generate_continuation(workflow.workflow_id).to_dict() if workflow else None,
    }


@mcp.tool()
@tool_errors
def update_task(
    task_id: str,
    name: Optional[str] = None,
    description: Optional[str] = None,
    notes: Optional[str] = None,
    dependencies: Optional[List[str]] = None,
    related_files: Optional[List[Dict[str, Any]]] = None,
    implementation_guide: Optional[str] = None,
    verification_criteria: Optional[str] = None,
    project: Optional[str] = None,
) -> Dict[str, Any]:
    """Edit a task that is not completed. Only the given fields change."""

    root = _root(project)
    fields = {
        "name": name,
        "description": description,
        "notes": notes,
        "dependencies": dependencies,
        "related_files": related_files,
        "implementation_guide": implementation_guide,
        "verification_criteria": verification_criteria,
    }
    task = manager.update_task(root, task_id, **{k: v for k, v in fields.items() if v is not None})
    return {"project": root.project, "task": task.to_dict()}


@mcp.tool()
@tool_errors
def execute_task(task_id: str, project: Optional[str] = None) -> Dict[str, Any]:
    """Start working on a task.

    The task must be pending with every dependency completed. It moves to
    in_progress and an execute_task -> verify_task workflow is opened; call
    verify_task once the implementation is done."""

    root = _root(project)
    task = manager.get_task(root, task_id)

    if task.status is TaskStatus.IN_PROGRESS:
        workflow = orchestrator.find_by_task_id(task_id)
        if workflow is None or not workflow.is_active:
            workflow = _open_execution_workflow(root, task)
        return {
            "project": root.project,
            "task": task.to_dict(),
            "workflow": workflow.to_dict(),
            "continuation": orchestrator.generate_continuation(workflow.workflow_id).to_dict(),
            "message": f"Task '{task.name}' is already in progress",
            "next_suggested_step": VERIFY_TOOL,
        }

    task = manager.update_status(root, task_id, TaskStatus.IN_PROGRESS)
    workflow = _open_execution_workflow(root, task)
    return {
        "project": root.project,
        "task": task.to_dict(),
        "workflow": workflow.to_dict(),
        "continuation": orchestrator.generate_continuation(workflow.workflow_id).to_dict(),
        "next_suggested_step": VERIFY_TOOL,
        "workflow_tip": "Implement the task following its guide, then call verify_task with a score and summary",
    }


def _open_execution_workflow(root: StorageRoot, task):
    workflow = orchestrator.create(task.id, root.project, EXECUTION_WORKFLOW)
    orchestrator.update_step_status(workflow.workflow_id, 0, WorkflowStatus.COMPLETED, output={"task_id": task.id})
    orchestrator.record_state_transfer(
        workflow.workflow_id,
        EXECUTE_TOOL,
        VERIFY_TOOL,
        {"task_name": task.name, "verification_criteria": task.verification_criteria},
    )
    return orchestrator.get(workflow.workflow_id)


@mcp.tool()
@tool_errors
def verify_task(task_id: str, score: int, summary: str, project: Optional[str] = None) -> Dict[str, Any]:
    """Verify an in-progress task.

    score >= 80 completes the task with the summary as its completion record;
    a lower score keeps it in progress and the summary should list what to fix."""

    root = _root(project)
    workflow = orchestrator.find_by_task_id(task_id)
    step_index = None
    if workflow is not None and workflow.is_active and workflow.current and workflow.current.tool == VERIFY_TOOL:
        step_index = workflow.current_step

    # Rejected verifications leave the workflow untouched
    result = manager.verify_task(root, task_id, score, summary)

    if step_index is not None:
        if workflow.current.status is WorkflowStatus.FAILED:
            orchestrator.update_step_status(workflow.workflow_id, step_index, WorkflowStatus.IN_PROGRESS)
        if result.passed:
            orchestrator.update_step_status(
                workflow.workflow_id, step_index, WorkflowStatus.COMPLETED, output={"score": score}
            )
        else:
            orchestrator.update_step_status(
                workflow.workflow_id,
                step_index,
                WorkflowStatus.FAILED,
                output={"score": score},
                error=f"Score {score} is below the passing score",
            )
            orchestrator.record_state_transfer(
                workflow.workflow_id, VERIFY_TOOL, VERIFY_TOOL, {"previous_score": score, "issues": summary}
            )

    payload = result.to_dict()
    payload["project"] = root.project
    if workflow is not None:
        payload["workflow"] = orchestrator.get(workflow.workflow_id).to_dict()
        payload["continuation"] = orchestrator.generate_continuation(workflow.workflow_id).to_dict()
    payload["next_suggested_step"] = EXECUTE_TOOL if result.passed else VERIFY_TOOL
    return payload


@mcp.tool()
@tool_errors
def delete_task(task_id: str, project: Optional[str] = None) -> Dict[str, Any]:
    """Delete a task that is not completed and that no other task depends on."""

    root = _root(project)
    task = manager.delete_task(root, task_id)
    return {"project": root.project, "deleted": task.to_dict()}


@mcp.tool()
@tool_errors
def clear_all_tasks(confirm: bool = False, project: Optional[str] = None) -> Dict[str, Any]:
    """Remove every task of a project after backing up the completed ones.

    Requires confirm=True."""

    root = _root(project)
    result = manager.clear_all(root, confirm=confirm)
    payload = result.to_dict()
    payload["project"] = root.project
    payload["next_suggested_step"] = "split_tasks"
    return payload


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------


@mcp.tool()
@tool_errors
def workflow_status(workflow_id: Optional[str] = None, task_id: Optional[str] = None) -> Dict[str, Any]:
    """Inspect a workflow by id or task id, or list active workflows when neither is given."""

    if workflow_id is None and task_id is None:
        active = orchestrator.get_active_workflows()
        return {
            "active": [workflow.to_dict() for workflow in active],
            "counts": summarize(orchestrator.repository.values()),
        }

    if workflow_id is not None:
        workflow = orchestrator.get(workflow_id)
    else:
        workflow = orchestrator.find_by_task_id(task_id)
        if workflow is None:
            raise NotFoundError("Workflow for task", task_id)

    monitoring = orchestrator.get_monitoring_data(workflow.workflow_id)
    return {
        "workflow": workflow.to_dict(),
        "monitoring": monitoring.to_dict() if monitoring else None,
        "state_transfers": [
            record.to_dict() for record in orchestrator.get_state_transfer_history(workflow.workflow_id)
        ],
        "continuation": orchestrator.generate_continuation(workflow.workflow_id).to_dict(),
    }


@mcp.tool()
@tool_errors
def workflow_continuation(workflow_id: str) -> Dict[str, Any]:
    """Recommend the next tool call for a workflow."""

    return orchestrator.generate_continuation(workflow_id).to_dict()


@mcp.tool()
@tool_errors
def update_workflow_step(
    workflow_id: str,
    step_index: int,
    status: str,
    output: Optional[Any] = None,
    error: Optional[str] = None,
) -> Dict[str, Any]:
    """Report the outcome of the current workflow step.

    status: in_progress (retry a failed step), completed or failed."""

    updated = orchestrator.update_step_status(workflow_id, step_index, status, output=output, error=error)
    return {
        "updated": updated,
        "workflow": orchestrator.get(workflow_id).to_dict(),
        "continuation": orchestrator.generate_continuation(workflow_id).to_dict(),
    }


@mcp.tool()
@tool_errors
def cleanup_workflows(max_age_ms: Optional[int] = None) -> Dict[str, Any]:
    """Evict workflows idle for at least max_age_ms (default from configuration)."""

    age = settings.workflow_max_age_ms if max_age_ms is None else max_age_ms
    removed = orchestrator.cleanup_expired_workflows(age)
    return {"removed": removed, "max_age_ms": age, "counts": summarize(orchestrator.repository.values())}


@mcp.resource("taskgraph://tasks")
def resource_tasks() -> str:
    """Resource view of the active project's tasks."""

    with client_scope():
        try:
            root = resolver.resolve()
        except ProjectRequiredError:
            return "No active project. Call switch_project or set TASKGRAPH_PROJECT."
        tasks = manager.list_tasks(root)
    if not tasks:
        return f"Project '{root.project}' has no tasks yet."

    lines = [f"Tasks of project '{root.project}'"]
    for task in tasks:
        lines.append(f"- [{task.status.value}] {task.name} ({task.id})")
        if task.dependencies:
            lines.append(f"  Depends on: {', '.join(task.dependencies)}")
    return "\n".join(lines)


def main() -> None:
    setup_logging(settings.log_level, settings.log_file)
    logger.info(f"Serving task graphs from {settings.data_dir}")
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
