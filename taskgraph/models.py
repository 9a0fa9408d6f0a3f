"""Data models for the task graph backend.

This module contains the core data structures used throughout the system:
tasks and their related files, workflow instances and their steps, state
transfer records, and the small result records returned by the task graph
manager.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def isoformat(moment: datetime) -> str:
    """Render an aware datetime the way it is persisted."""
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    return isoformat(utc_now())


class TaskStatus(str, Enum):
    """Lifecycle of a task. Transitions only move forward."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)


_STATUS_ORDER = [TaskStatus.PENDING, TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED]

# Filters accepted by list_tasks
STATUS_FILTERS = ("all", "pending", "in_progress", "completed")


class RelatedFileType(str, Enum):
    """Relationship between a task and a file."""

    TO_MODIFY = "TO_MODIFY"
    REFERENCE = "REFERENCE"
    CREATE = "CREATE"
    DEPENDENCY = "DEPENDENCY"
    OTHER = "OTHER"


class UpdateMode(str, Enum):
    """How insert_batch combines a new batch with the existing collection."""

    APPEND = "append"
    OVERWRITE = "overwrite"
    SELECTIVE = "selective"
    CLEAR_ALL_TASKS = "clearAllTasks"


class WorkflowStatus(str, Enum):
    """Status of a workflow step or of a whole workflow."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class RelatedFile:
    """A file a task creates, modifies or reads."""

    path: str
    type: RelatedFileType
    description: Optional[str] = None
    line_start: Optional[int] = None
    line_end: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "path": self.path,
            "type": self.type.value,
            "description": self.description,
            "line_start": self.line_start,
            "line_end": self.line_end,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelatedFile":
        """Create from dictionary representation."""
        return cls(
            path=data["path"],
            type=RelatedFileType(data["type"]),
            description=data.get("description"),
            line_start=data.get("line_start"),
            line_end=data.get("line_end"),
        )

    def resolve(self, source_root: Path) -> Path:
        """Resolve the file path against the project's source root."""
        candidate = Path(self.path).expanduser()
        if candidate.is_absolute():
            return candidate
        return source_root / candidate


@dataclass(slots=True)
class Task:
    """A unit of planned work with an id, status and dependency edges."""

    id: str
    name: str
    description: str
    status: TaskStatus = TaskStatus.PENDING
    notes: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)
    related_files: List[RelatedFile] = field(default_factory=list)
    implementation_guide: Optional[str] = None
    verification_criteria: Optional[str] = None
    analysis_result: Optional[str] = None
    summary: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    completed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "notes": self.notes,
            "dependencies": list(self.dependencies),
            "related_files": [item.to_dict() for item in self.related_files],
            "implementation_guide": self.implementation_guide,
            "verification_criteria": self.verification_criteria,
            "analysis_result": self.analysis_result,
            "summary": self.summary,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Create from dictionary representation."""
        dependencies: List[str] = []
        for entry in data.get("dependencies", []):
            # Older collections stored {"task_id": ...} objects
            if isinstance(entry, dict):
                entry = entry["task_id"]
            dependencies.append(str(entry))
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description", ""),
            status=TaskStatus(data.get("status", TaskStatus.PENDING.value)),
            notes=data.get("notes"),
            dependencies=dependencies,
            related_files=[RelatedFile.from_dict(item) for item in data.get("related_files", [])],
            implementation_guide=data.get("implementation_guide"),
            verification_criteria=data.get("verification_criteria"),
            analysis_result=data.get("analysis_result"),
            summary=data.get("summary"),
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            completed_at=data.get("completed_at"),
        )

    def touch(self) -> None:
        self.updated_at = utc_now_iso()

    @property
    def is_completed(self) -> bool:
        return self.status is TaskStatus.COMPLETED

    def validate(self) -> List[str]:
        """Validate task data and return any issues."""
        issues = []

        if not self.id:
            issues.append("Task ID is required")
        if not self.name or not self.name.strip():
            issues.append("Task name is required")
        if not self.description or not self.description.strip():
            issues.append("Task description is required")
        if self.id in self.dependencies:
            issues.append("Task cannot depend on itself")
        if self.summary and not self.is_completed:
            issues.append("Only completed tasks carry a summary")
        for item in self.related_files:
            if not item.path or not item.path.strip():
                issues.append("Related file path cannot be empty")
            if item.line_start is not None and item.line_end is not None and item.line_end < item.line_start:
                issues.append(f"Related file '{item.path}' has line_end before line_start")

        return issues


@dataclass(slots=True)
class TaskInput:
    """A task as planned by the caller, before ids and references are resolved."""

    name: str
    description: str
    notes: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)
    related_files: List[RelatedFile] = field(default_factory=list)
    implementation_guide: Optional[str] = None
    verification_criteria: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskInput":
        """Create from the argument shape accepted by split_tasks."""
        return cls(
            name=data["name"],
            description=data["description"],
            notes=data.get("notes"),
            dependencies=list(data.get("dependencies") or []),
            related_files=[RelatedFile.from_dict(item) for item in data.get("related_files") or []],
            implementation_guide=data.get("implementation_guide"),
            verification_criteria=data.get("verification_criteria"),
        )


@dataclass(slots=True)
class BatchResult:
    """Outcome of insert_batch."""

    update_mode: UpdateMode
    created: List[Task] = field(default_factory=list)
    updated: List[Task] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    reclassified: List[str] = field(default_factory=list)
    backup_file: Optional[Path] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "update_mode": self.update_mode.value,
            "created": [task.to_dict() for task in self.created],
            "updated": [task.to_dict() for task in self.updated],
            "removed": list(self.removed),
            "reclassified": list(self.reclassified),
            "backup_file": str(self.backup_file) if self.backup_file else None,
        }


@dataclass(slots=True)
class ClearResult:
    """Outcome of clear_all."""

    removed: int
    backed_up: int
    backup_file: Optional[Path] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "removed": self.removed,
            "backed_up": self.backed_up,
            "backup_file": str(self.backup_file) if self.backup_file else None,
        }


@dataclass(slots=True)
class ExecutionCheck:
    """Whether a task's dependencies allow it to start."""

    task_id: str
    can_execute: bool
    blocked_by: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "can_execute": self.can_execute,
            "blocked_by": list(self.blocked_by),
        }


@dataclass(slots=True)
class SearchPage:
    """One page of search_tasks results."""

    tasks: List[Task]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return max(1, -(-self.total // self.page_size))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tasks": [task.to_dict() for task in self.tasks],
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
        }


@dataclass(slots=True)
class VerificationResult:
    """Outcome of verify_task."""

    task: Task
    score: int
    passed: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"task": self.task.to_dict(), "score": self.score, "passed": self.passed}


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class WorkflowStep:
    """A single tool invocation inside a workflow."""

    id: str
    name: str
    tool: str
    status: WorkflowStatus = WorkflowStatus.PENDING
    output: Any = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "name": self.name,
            "tool": self.tool,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "started_at": isoformat(self.started_at) if self.started_at else None,
            "ended_at": isoformat(self.ended_at) if self.ended_at else None,
            "duration_ms": self.duration_ms,
        }


@dataclass(slots=True)
class WorkflowInstance:
    """A tracked, ordered sequence of tool invocations bound to one task."""

    workflow_id: str
    task_id: str
    project: str
    steps: List[WorkflowStep]
    current_step: int = 0
    status: WorkflowStatus = WorkflowStatus.IN_PROGRESS
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "workflow_id": self.workflow_id,
            "task_id": self.task_id,
            "project": self.project,
            "steps": [step.to_dict() for step in self.steps],
            "current_step": self.current_step,
            "status": self.status.value,
            "metadata": dict(self.metadata),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }

    @property
    def current(self) -> Optional[WorkflowStep]:
        if 0 <= self.current_step < len(self.steps):
            return self.steps[self.current_step]
        return None

    @property
    def is_active(self) -> bool:
        return self.status in (WorkflowStatus.IN_PROGRESS, WorkflowStatus.PAUSED)

    def derive_status(self) -> WorkflowStatus:
        """Compute the workflow status from its steps."""
        if self.steps and all(step.status is WorkflowStatus.COMPLETED for step in self.steps):
            return WorkflowStatus.COMPLETED
        current = self.current
        if current is not None and current.status is WorkflowStatus.FAILED:
            return WorkflowStatus.PAUSED
        return WorkflowStatus.IN_PROGRESS


@dataclass(slots=True)
class StateTransferRecord:
    """Data one workflow step handed to the next."""

    workflow_id: str
    source_tool: str
    target_tool: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "source_tool": self.source_tool,
            "target_tool": self.target_tool,
            "data": dict(self.data),
            "timestamp": isoformat(self.timestamp),
        }


@dataclass(slots=True)
class Continuation:
    """Recommendation of which tool to invoke next, and with what arguments."""

    should_proceed: bool
    reason: str
    next_tool: Optional[str] = None
    next_tool_params: Optional[Dict[str, Any]] = None
    conditions: List[str] = field(default_factory=list)
    fallback_action: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "should_proceed": self.should_proceed,
            "reason": self.reason,
            "next_tool": self.next_tool,
            "next_tool_params": dict(self.next_tool_params) if self.next_tool_params is not None else None,
            "conditions": list(self.conditions),
            "fallback_action": self.fallback_action,
        }


@dataclass(slots=True)
class WorkflowMonitoring:
    """Progress and error metrics for one workflow."""

    workflow_id: str
    total_steps: int
    completed_steps: int
    failed_steps: int
    average_step_duration_ms: float
    total_duration_ms: float
    error_rate: float
    last_activity: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "total_steps": self.total_steps,
            "completed_steps": self.completed_steps,
            "failed_steps": self.failed_steps,
            "average_step_duration_ms": self.average_step_duration_ms,
            "total_duration_ms": self.total_duration_ms,
            "error_rate": self.error_rate,
            "last_activity": isoformat(self.last_activity),
        }
