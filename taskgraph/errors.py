"""Error taxonomy for the task graph backend.

Every error raised by the core derives from :class:`TaskGraphError` so the
tool layer can turn it into a structured payload. Errors are never logged and
swallowed inside the core; they propagate to the caller.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


class TaskGraphError(Exception):
    """Base class for all task graph errors."""

    retryable: bool = False
    suggestion: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the error payload returned by tools."""
        return {
            "error": str(self),
            "error_type": type(self).__name__,
            "retryable": self.retryable,
            "suggestion": self.suggestion,
        }


class ValidationError(TaskGraphError, ValueError):
    """Malformed input; the call is rejected and nothing is applied."""

    suggestion = "Check the arguments and call the tool again"


class NotFoundError(TaskGraphError, LookupError):
    """Unknown task or workflow id."""

    suggestion = "Use list_tasks or query_task to find valid ids"

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} '{identifier}' not found")
        self.kind = kind
        self.identifier = identifier


class ConflictError(TaskGraphError):
    """The request clashes with existing state (duplicate name, active workflow)."""

    suggestion = "Use selective or overwrite mode, or pick a different name"


class InvariantViolation(TaskGraphError):
    """A lifecycle or graph rule would be broken."""

    suggestion = "Inspect the task status and dependencies with get_task_detail"

    def __init__(self, message: str, blocked_by: Optional[List[str]] = None):
        super().__init__(message)
        self.blocked_by = list(blocked_by or [])

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        if self.blocked_by:
            payload["blocked_by"] = list(self.blocked_by)
        return payload


class CyclicDependencyError(InvariantViolation):
    """A batch or edit would introduce a dependency cycle."""

    suggestion = "Remove one of the dependencies that forms the cycle"

    def __init__(self, cycle: Sequence[str], labels: Optional[Dict[str, str]] = None):
        self.cycle = list(cycle)
        names = [labels.get(node, node) if labels else node for node in self.cycle]
        super().__init__("Dependency cycle detected: " + " -> ".join(names))

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["cycle"] = list(self.cycle)
        return payload


class LockTimeoutError(TaskGraphError):
    """The project lock could not be acquired within the bounded wait."""

    retryable = True
    suggestion = "Another call is writing to this project; retry shortly"

    def __init__(self, lock_path: str, timeout: float):
        super().__init__(f"Lock timeout after {timeout:.1f}s: {lock_path}")
        self.lock_path = lock_path
        self.timeout = timeout


class CorruptStoreError(TaskGraphError):
    """The task collection file exists but cannot be parsed."""

    suggestion = "Inspect or restore the tasks file manually; it is never auto-repaired"

    def __init__(self, path: str, reason: str):
        super().__init__(f"Task store at {path} is corrupt: {reason}")
        self.path = path
        self.reason = reason


class BackupError(TaskGraphError):
    """Writing the completed-task backup failed; the clear was not performed."""

    suggestion = "Check that the memory directory is writable"


class ProjectRequiredError(TaskGraphError):
    """No project was given and none is active for this call sequence."""

    suggestion = "Pass the 'project' argument or call switch_project first"

    def __init__(self, message: Optional[str] = None):
        super().__init__(
            message
            or "No project specified. Provide the 'project' argument or set an active project."
        )
