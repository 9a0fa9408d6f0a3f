"""Workflow orchestration for multi-step task execution.

A workflow tracks an ordered sequence of tool invocations bound to one task,
for example ``execute_task`` followed by ``verify_task``. The orchestrator
advances it one step at a time, records the data handed from one tool to the
next, and recommends which tool to call next. Workflows live in process
memory behind a :class:`WorkflowRepository` and are reaped by
:meth:`WorkflowOrchestrator.cleanup_expired_workflows`.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Union

from .config import DEFAULT_WORKFLOW_MAX_AGE_MS
from .errors import ConflictError, NotFoundError, ValidationError
from .models import (
    Continuation,
    StateTransferRecord,
    WorkflowInstance,
    WorkflowMonitoring,
    WorkflowStatus,
    WorkflowStep,
    utc_now,
)
from .taskgraph_logging import log_workflow_transition, observability_hooks

logger = logging.getLogger("taskgraph.workflow")


class WorkflowRepository(Protocol):
    def get(self, workflow_id: str) -> Optional[WorkflowInstance]: ...

    def put(self, workflow: WorkflowInstance) -> None: ...

    def delete(self, workflow_id: str) -> None: ...

    def values(self) -> List[WorkflowInstance]: ...

    def append_transfer(self, record: StateTransferRecord) -> None: ...

    def transfers(self, workflow_id: str) -> List[StateTransferRecord]: ...

    def clear(self) -> None: ...


class InMemoryWorkflowRepository:
    """Map-backed workflow repository; state is lost on restart."""

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowInstance] = {}
        self._transfers: Dict[str, List[StateTransferRecord]] = {}

    def get(self, workflow_id: str) -> Optional[WorkflowInstance]:
        return self._workflows.get(workflow_id)

    def put(self, workflow: WorkflowInstance) -> None:
        self._workflows[workflow.workflow_id] = workflow

    def delete(self, workflow_id: str) -> None:
        self._workflows.pop(workflow_id, None)
        self._transfers.pop(workflow_id, None)

    def values(self) -> List[WorkflowInstance]:
        return list(self._workflows.values())

    def append_transfer(self, record: StateTransferRecord) -> None:
        self._transfers.setdefault(record.workflow_id, []).append(record)

    def transfers(self, workflow_id: str) -> List[StateTransferRecord]:
        return list(self._transfers.get(workflow_id, []))

    def clear(self) -> None:
        self._workflows.clear()
        self._transfers.clear()


class WorkflowOrchestrator:
    """Step-by-step state machine over workflow instances."""

    def __init__(
        self,
        repository: Optional[WorkflowRepository] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository: WorkflowRepository = repository if repository is not None else InMemoryWorkflowRepository()
        self._clock = clock or utc_now
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(self, task_id: str, project: str, tool_sequence: Sequence[str]) -> WorkflowInstance:
        """Start a workflow for ``task_id``; the first step begins immediately."""
        if not task_id:
            raise ValidationError("A workflow needs a task id")
        if any(not tool or not str(tool).strip() for tool in tool_sequence):
            raise ValidationError("Workflow steps must name a tool")

        with self._lock:
            active = self._active_for_task(task_id)
            if active is not None:
                raise ConflictError(
                    f"Task '{task_id}' already has an active workflow ({active.workflow_id})"
                )

            now = self._clock()
            workflow_id = str(uuid.uuid4())
            steps = [
                WorkflowStep(
                    id=f"{workflow_id}-step-{index}",
                    name=tool,
                    tool=tool,
                    status=WorkflowStatus.IN_PROGRESS if index == 0 else WorkflowStatus.PENDING,
                    started_at=now if index == 0 else None,
                )
                for index, tool in enumerate(tool_sequence)
            ]
            workflow = WorkflowInstance(
                workflow_id=workflow_id,
                task_id=task_id,
                project=project,
                steps=steps,
                created_at=now,
                updated_at=now,
            )
            self.repository.put(workflow)

        logger.info(f"Created workflow {workflow_id} for task '{task_id}': {' -> '.join(tool_sequence)}")
        observability_hooks.log_event(
            "workflow_created",
            project=project,
            workflow_id=workflow_id,
            task_id=task_id,
            steps=list(tool_sequence),
        )
        return workflow

    def get(self, workflow_id: str) -> WorkflowInstance:
        workflow = self.repository.get(workflow_id)
        if workflow is None:
            raise NotFoundError("Workflow", workflow_id)
        return workflow

    def find_by_task_id(self, task_id: str) -> Optional[WorkflowInstance]:
        """The active workflow of a task, else its most recently updated one."""
        with self._lock:
            active = self._active_for_task(task_id)
            if active is not None:
                return active
            matches = [wf for wf in self.repository.values() if wf.task_id == task_id]
            return max(matches, key=lambda wf: wf.updated_at) if matches else None

    def get_active_workflows(self) -> List[WorkflowInstance]:
        with self._lock:
            return [wf for wf in self.repository.values() if wf.is_active]

    def update_step_status(
        self,
        workflow_id: str,
        step_index: int,
        status: Union[str, WorkflowStatus],
        output: Any = None,
        error: Optional[str] = None,
    ) -> bool:
        """Apply a transition to the current step.

        Returns ``False`` without changing anything when the transition is not
        allowed: an out-of-range index, a step other than the current one, a
        finished workflow, or a repeated completion. ``completed`` advances to
        the next step or finishes the workflow; ``failed`` pauses it; moving a
        failed step back to ``in_progress`` retries it.
        """
        try:
            status = WorkflowStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown step status '{status}'")

        with self._lock:
            workflow = self.get(workflow_id)
            if workflow.status is WorkflowStatus.COMPLETED or workflow.status is WorkflowStatus.FAILED:
                return False
            if not 0 <= step_index < len(workflow.steps) or step_index != workflow.current_step:
                return False

            step = workflow.steps[step_index]
            if not _transition_allowed(step.status, status):
                return False

            now = self._clock()
            step.status = status
            step.output = output
            step.error = error if status is WorkflowStatus.FAILED else None

            if status is WorkflowStatus.IN_PROGRESS:
                step.started_at = now
                step.ended_at = None
                step.duration_ms = None
            else:
                step.ended_at = now
                if step.started_at is not None:
                    step.duration_ms = (now - step.started_at).total_seconds() * 1000

            if status is WorkflowStatus.COMPLETED and step_index < len(workflow.steps) - 1:
                workflow.current_step = step_index + 1
                following = workflow.steps[workflow.current_step]
                following.status = WorkflowStatus.IN_PROGRESS
                following.started_at = now

            workflow.status = workflow.derive_status()
            workflow.updated_at = now
            self.repository.put(workflow)

        log_workflow_transition(workflow_id, step_index, status.value, project=workflow.project,
                                workflow_status=workflow.status.value)
        return True

    # ------------------------------------------------------------------
    # Guidance and state transfer
    # ------------------------------------------------------------------

    def generate_continuation(self, workflow_id: str) -> Continuation:
        """Recommend the next tool call for a workflow. Never mutates state."""
        with self._lock:
            workflow = self.repository.get(workflow_id)
            if workflow is None:
                return Continuation(
                    should_proceed=False,
                    reason="Workflow not found",
                    fallback_action="Create new workflow",
                )

            current = workflow.current
            if current is None:
                return Continuation(
                    should_proceed=False,
                    reason="No current step found",
                    fallback_action="Review workflow configuration",
                )

            if workflow.status is WorkflowStatus.COMPLETED:
                return Continuation(
                    should_proceed=False,
                    reason="Workflow completed",
                    fallback_action="Start new workflow if needed",
                )

            if current.status is WorkflowStatus.FAILED:
                return Continuation(
                    should_proceed=False,
                    reason=f'Step "{current.name}" failed: {current.error}',
                    fallback_action="Fix issues and retry step",
                )

            params: Dict[str, Any] = {}
            for record in self.repository.transfers(workflow_id):
                if record.target_tool == current.tool:
                    params.update(record.data)
            params.update(
                task_id=workflow.task_id,
                project=workflow.project,
                workflow_id=workflow.workflow_id,
            )

            conditions = []
            if workflow.current_step > 0:
                previous = workflow.steps[workflow.current_step - 1]
                conditions.append(f'Step "{previous.name}" completed')
            conditions.append(f'Step "{current.name}" must be completed before the workflow advances')

            return Continuation(
                should_proceed=True,
                reason=f'Ready to proceed to step "{current.name}"',
                next_tool=current.tool,
                next_tool_params=params,
                conditions=conditions,
            )

    def record_state_transfer(
        self,
        workflow_id: str,
        source_tool: str,
        target_tool: str,
        data: Dict[str, Any],
    ) -> StateTransferRecord:
        """Record data handed from one tool to another within a workflow."""
        with self._lock:
            workflow = self.get(workflow_id)
            record = StateTransferRecord(
                workflow_id=workflow_id,
                source_tool=source_tool,
                target_tool=target_tool,
                data=dict(data or {}),
                timestamp=self._clock(),
            )
            self.repository.append_transfer(record)
            workflow.updated_at = record.timestamp
            self.repository.put(workflow)

        logger.debug(f"State transfer {source_tool} -> {target_tool} recorded for workflow {workflow_id}")
        return record

    def get_state_transfer_history(self, workflow_id: str) -> List[StateTransferRecord]:
        with self._lock:
            return self.repository.transfers(workflow_id)

    # ------------------------------------------------------------------
    # Monitoring and housekeeping
    # ------------------------------------------------------------------

    def get_monitoring_data(self, workflow_id: str) -> Optional[WorkflowMonitoring]:
        with self._lock:
            workflow = self.repository.get(workflow_id)
            if workflow is None:
                return None

            total = len(workflow.steps)
            completed = sum(1 for step in workflow.steps if step.status is WorkflowStatus.COMPLETED)
            failed = sum(1 for step in workflow.steps if step.status is WorkflowStatus.FAILED)
            durations = [step.duration_ms for step in workflow.steps if step.duration_ms is not None]

            return WorkflowMonitoring(
                workflow_id=workflow_id,
                total_steps=total,
                completed_steps=completed,
                failed_steps=failed,
                average_step_duration_ms=sum(durations) / len(durations) if durations else 0.0,
                total_duration_ms=(workflow.updated_at - workflow.created_at).total_seconds() * 1000,
                error_rate=failed / total if total else 0.0,
                last_activity=workflow.updated_at,
            )

    def cleanup_expired_workflows(self, max_age_ms: int = DEFAULT_WORKFLOW_MAX_AGE_MS) -> int:
        """Evict workflows not updated for at least ``max_age_ms``.

        Their state transfers go with them. Returns the number evicted.
        """
        if max_age_ms < 0:
            raise ValidationError("max_age_ms must not be negative")

        with self._lock:
            cutoff = self._clock() - timedelta(milliseconds=max_age_ms)
            expired = [wf.workflow_id for wf in self.repository.values() if wf.updated_at <= cutoff]
            for workflow_id in expired:
                self.repository.delete(workflow_id)

        if expired:
            logger.info(f"Cleaned up {len(expired)} expired workflows")
        return len(expired)

    def _active_for_task(self, task_id: str) -> Optional[WorkflowInstance]:
        for workflow in self.repository.values():
            if workflow.task_id == task_id and workflow.is_active:
                return workflow
        return None


def _transition_allowed(current: WorkflowStatus, target: WorkflowStatus) -> bool:
    if current is WorkflowStatus.IN_PROGRESS:
        return target in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED)
    if current is WorkflowStatus.FAILED:
        return target in (WorkflowStatus.IN_PROGRESS, WorkflowStatus.COMPLETED)
    return False


def summarize(workflows: Iterable[WorkflowInstance]) -> Dict[str, int]:
    """Count workflows by status."""
    counts = {status.value: 0 for status in WorkflowStatus}
    for workflow in workflows:
        counts[workflow.status.value] += 1
    return counts
