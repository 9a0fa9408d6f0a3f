"""Task graph manager.

Owns the task collection of each project: planning batches, status
transitions, edits, deletion and clearing. Every write is fully validated
first and then persisted once inside :meth:`TaskStore.transaction`, so a
rejected call leaves the collection untouched.
"""

from __future__ import annotations

import dataclasses
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from .config import Settings
from .errors import ConflictError, InvariantViolation, NotFoundError, ValidationError
from .graph import ensure_acyclic, resolve_reference, resolve_references, unmet_dependencies
from .models import (
    STATUS_FILTERS,
    BatchResult,
    ClearResult,
    ExecutionCheck,
    RelatedFile,
    RelatedFileType,
    SearchPage,
    Task,
    TaskInput,
    TaskStatus,
    UpdateMode,
    VerificationResult,
)
from .project import StorageRoot
from .store import TaskStore
from .taskgraph_logging import (
    log_batch_insert,
    log_error_with_context,
    log_operation,
    log_performance,
    log_task_deletion,
    log_task_status_change,
    log_tasks_cleared,
)

logger = logging.getLogger("taskgraph.tasks")

VERIFICATION_PASS_SCORE = 80
DEFAULT_PAGE_SIZE = 5
MAX_PAGE_SIZE = 20

EDITABLE_FIELDS = (
    "name",
    "description",
    "notes",
    "dependencies",
    "related_files",
    "implementation_guide",
    "verification_criteria",
)


class TaskGraphManager:
    """Lifecycle and dependency rules for the tasks of a project."""

    def __init__(
        self,
        source_root: Optional[Union[str, Path]] = None,
        lock_timeout: Optional[float] = None,
        retry_interval: Optional[float] = None,
        max_retries: Optional[int] = None,
    ):
        self._source_root = Path(source_root).resolve() if source_root else None
        self._lock_options: Dict[str, Any] = {}
        if lock_timeout is not None:
            self._lock_options["lock_timeout"] = lock_timeout
        if retry_interval is not None:
            self._lock_options["retry_interval"] = retry_interval
        if max_retries is not None:
            self._lock_options["max_retries"] = max_retries

    @classmethod
    def from_settings(cls, settings: Settings) -> "TaskGraphManager":
        return cls(
            source_root=settings.source_root,
            lock_timeout=settings.lock_timeout,
            retry_interval=settings.lock_retry_interval,
            max_retries=settings.lock_max_retries,
        )

    @property
    def source_root(self) -> Path:
        """Base directory for relative related-file paths."""
        return self._source_root or Path.cwd()

    def store(self, root: StorageRoot) -> TaskStore:
        return TaskStore.for_root(root, **self._lock_options)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_tasks(self, root: StorageRoot, status: str = "all") -> List[Task]:
        """List tasks, optionally filtered by status."""
        if status not in STATUS_FILTERS:
            raise ValidationError(
                f"Unknown status filter '{status}'. Expected one of: {', '.join(STATUS_FILTERS)}"
            )
        tasks = self.store(root).load()
        if status == "all":
            return tasks
        return [task for task in tasks if task.status.value == status]

    def get_task(self, root: StorageRoot, task_id: str) -> Task:
        for task in self.store(root).load():
            if task.id == task_id:
                return task
        raise NotFoundError("Task", task_id)

    def search_tasks(
        self,
        root: StorageRoot,
        query: str,
        is_id: bool = False,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> SearchPage:
        """Find tasks by id, or by keywords in their name and description."""
        if not query or not query.strip():
            raise ValidationError("Query cannot be empty")
        if page < 1:
            raise ValidationError("Page must be 1 or greater")
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValidationError(f"Page size must be between 1 and {MAX_PAGE_SIZE}")

        tasks = self.store(root).load()
        if is_id:
            matches = [task for task in tasks if task.id == query.strip()]
        else:
            keywords = query.lower().split()
            matches = [
                task for task in tasks
                if all(word in f"{task.name} {task.description}".lower() for word in keywords)
            ]

        start = (page - 1) * page_size
        return SearchPage(
            tasks=matches[start:start + page_size],
            total=len(matches),
            page=page,
            page_size=page_size,
        )

    def can_execute(self, root: StorageRoot, task_id: str) -> ExecutionCheck:
        """Check whether every dependency of a task is completed."""
        tasks = self.store(root).load()
        by_id = {task.id: task for task in tasks}
        task = by_id.get(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        if task.is_completed:
            return ExecutionCheck(task_id=task_id, can_execute=False)
        blocked = unmet_dependencies(task, by_id)
        return ExecutionCheck(task_id=task_id, can_execute=not blocked, blocked_by=blocked)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    @log_performance("insert_batch")
    def insert_batch(
        self,
        root: StorageRoot,
        tasks: Sequence[Union[TaskInput, Dict[str, Any]]],
        update_mode: Union[str, UpdateMode] = UpdateMode.APPEND,
        global_note: Optional[str] = None,
    ) -> BatchResult:
        """Add a planned batch of tasks to the collection.

        The combination with existing tasks depends on ``update_mode``:
        ``append`` adds, ``overwrite`` replaces every non-completed task,
        ``selective`` updates same-name tasks in place and adds the rest, and
        ``clearAllTasks`` backs up completed tasks, empties the collection and
        then adds the batch.
        """
        try:
            mode = _parse_update_mode(update_mode)
            inputs = _parse_inputs(tasks)

            with log_operation("insert_batch", project=root.project, update_mode=mode.value, count=len(inputs)):
                store = self.store(root)
                with store.transaction() as collection:
                    if mode is UpdateMode.CLEAR_ALL_TASKS:
                        survivors: List[Task] = []
                    elif mode is UpdateMode.OVERWRITE:
                        survivors = [task for task in collection if task.is_completed]
                    else:
                        survivors = list(collection)
                    kept = {task.id for task in survivors}
                    removed = [task.id for task in collection if task.id not in kept]

                    open_by_name = {task.name.strip(): task for task in survivors if not task.is_completed}
                    targets: List[Optional[Task]] = []
                    for item in inputs:
                        match = open_by_name.get(item.name.strip())
                        if match is not None and mode is not UpdateMode.SELECTIVE:
                            raise ConflictError(
                                f"A pending or in-progress task named '{item.name}' already exists ({match.id})"
                            )
                        targets.append(match)

                    ids = [target.id if target else str(uuid.uuid4()) for target in targets]
                    dependencies = resolve_references(inputs, ids, survivors)

                    created: List[Task] = []
                    updated: List[Task] = []
                    replacements: Dict[str, Task] = {}
                    for item, task_id, deps, target in zip(inputs, ids, dependencies, targets):
                        if target is None:
                            task = Task(
                                id=task_id,
                                name=item.name.strip(),
                                description=item.description,
                                notes=item.notes,
                                dependencies=deps,
                                related_files=[dataclasses.replace(entry) for entry in item.related_files],
                                implementation_guide=item.implementation_guide,
                                verification_criteria=item.verification_criteria,
                                analysis_result=global_note,
                            )
                            created.append(task)
                        else:
                            task = dataclasses.replace(
                                target,
                                description=item.description,
                                notes=item.notes,
                                dependencies=deps,
                                related_files=[dataclasses.replace(entry) for entry in item.related_files],
                                implementation_guide=item.implementation_guide,
                                verification_criteria=item.verification_criteria,
                                analysis_result=global_note if global_note is not None else target.analysis_result,
                            )
                            task.touch()
                            updated.append(task)
                            replacements[task.id] = task
                        _raise_for_issues(task)

                    result = [replacements.get(task.id, task) for task in survivors] + created
                    ensure_acyclic(result)
                    result_by_id = {task.id: task for task in result}
                    for task in updated:
                        blocked = unmet_dependencies(task, result_by_id)
                        if task.status is TaskStatus.IN_PROGRESS and blocked:
                            raise InvariantViolation(
                                f"Task '{task.name}' is in progress; it cannot gain unfinished dependencies",
                                blocked_by=blocked,
                            )
                    reclassified = self.reclassify_related_files(created + updated)

                    backup_file = None
                    if mode is UpdateMode.CLEAR_ALL_TASKS:
                        completed = [task for task in collection if task.is_completed]
                        if completed:
                            backup_file = store.backup_completed(completed)

                    collection[:] = result

                log_batch_insert(
                    root.project,
                    mode.value,
                    created=len(created),
                    updated=len(updated),
                    removed=len(removed),
                    backup_file=str(backup_file) if backup_file else None,
                )
                logger.info(
                    f"Inserted batch into project '{root.project}' ({mode.value}): "
                    f"{len(created)} created, {len(updated)} updated, {len(removed)} removed"
                )
                return BatchResult(
                    update_mode=mode,
                    created=created,
                    updated=updated,
                    removed=removed,
                    reclassified=reclassified,
                    backup_file=backup_file,
                )

        except Exception as e:
            log_error_with_context(e, {
                "operation": "insert_batch",
                "project": root.project,
                "update_mode": str(update_mode),
                "count": len(tasks) if hasattr(tasks, "__len__") else None,
            })
            raise

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @log_performance("update_status")
    def update_status(
        self,
        root: StorageRoot,
        task_id: str,
        new_status: Union[str, TaskStatus],
        summary: Optional[str] = None,
        verification: bool = False,
    ) -> Task:
        """Move a task forward in its lifecycle."""
        try:
            status = _parse_status(new_status)
            with log_operation("update_status", project=root.project, task_id=task_id, new_status=status.value):
                with self.store(root).transaction() as collection:
                    task, old_status = self._transition(collection, task_id, status, summary, verification)

                log_task_status_change(root.project, task_id, old_status.value, status.value)
                return task

        except Exception as e:
            log_error_with_context(e, {
                "operation": "update_status",
                "project": root.project,
                "task_id": task_id,
                "new_status": str(new_status),
                "verification": verification,
            })
            raise

    @log_performance("verify_task")
    def verify_task(self, root: StorageRoot, task_id: str, score: int, summary: str) -> VerificationResult:
        """Record a verification of an in-progress task.

        A score of 80 or more completes the task with ``summary``; a lower
        score leaves it in progress.
        """
        try:
            if isinstance(score, bool) or not isinstance(score, int) or not 0 <= score <= 100:
                raise ValidationError("Score must be an integer between 0 and 100")
            if not summary or not summary.strip():
                raise ValidationError("A verification summary is required")

            with log_operation("verify_task", project=root.project, task_id=task_id, score=score):
                passed = score >= VERIFICATION_PASS_SCORE
                with self.store(root).transaction() as collection:
                    task = _find(collection, task_id)
                    if task.status is not TaskStatus.IN_PROGRESS:
                        raise InvariantViolation(
                            f"Task '{task.name}' is {task.status.value}; only in-progress tasks can be verified"
                        )
                    if passed:
                        task, _ = self._transition(
                            collection, task_id, TaskStatus.COMPLETED, summary.strip(), verification=True
                        )

                if passed:
                    log_task_status_change(
                        root.project, task_id, TaskStatus.IN_PROGRESS.value, TaskStatus.COMPLETED.value, score=score
                    )
                else:
                    logger.info(f"Task '{task_id}' scored {score}, below {VERIFICATION_PASS_SCORE}; left in progress")
                return VerificationResult(task=task, score=score, passed=passed)

        except Exception as e:
            log_error_with_context(e, {
                "operation": "verify_task",
                "project": root.project,
                "task_id": task_id,
                "score": score,
            })
            raise

    def _transition(
        self,
        collection: List[Task],
        task_id: str,
        status: TaskStatus,
        summary: Optional[str],
        verification: bool,
    ):
        by_id = {task.id: task for task in collection}
        task = by_id.get(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)

        if status.rank <= task.status.rank:
            raise InvariantViolation(
                f"Cannot move task '{task.name}' from {task.status.value} to {status.value}; "
                "status only moves forward"
            )
        if summary is not None and status is not TaskStatus.COMPLETED:
            raise ValidationError("A summary can only be given when completing a task")
        if verification and status is TaskStatus.COMPLETED and not (summary and summary.strip()):
            raise ValidationError("Completing a task through verification requires a summary")

        blocked = unmet_dependencies(task, by_id)
        if blocked:
            names = ", ".join(by_id[dep].name if dep in by_id else dep for dep in blocked)
            raise InvariantViolation(
                f"Task '{task.name}' is blocked by unfinished dependencies: {names}",
                blocked_by=blocked,
            )

        old_status = task.status
        task.status = status
        task.touch()
        if status is TaskStatus.COMPLETED:
            task.summary = summary
            task.completed_at = task.updated_at
            self.reclassify_related_files(t for t in collection if not t.is_completed)
        return task, old_status

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    @log_performance("update_task")
    def update_task(self, root: StorageRoot, task_id: str, **fields: Any) -> Task:
        """Edit the caller-owned fields of a task that is not completed."""
        try:
            unknown = sorted(set(fields) - set(EDITABLE_FIELDS))
            if unknown:
                raise ValidationError(f"Fields cannot be edited: {', '.join(unknown)}")
            if not fields:
                raise ValidationError(f"Nothing to update. Editable fields: {', '.join(EDITABLE_FIELDS)}")

            with log_operation("update_task", project=root.project, task_id=task_id, fields=sorted(fields)):
                with self.store(root).transaction() as collection:
                    target = _find(collection, task_id)
                    if target.is_completed:
                        raise InvariantViolation(f"Task '{target.name}' is completed and can no longer be edited")

                    changes = dict(fields)
                    if "name" in changes:
                        name = (changes["name"] or "").strip()
                        for other in collection:
                            if other.id != task_id and not other.is_completed and other.name.strip() == name:
                                raise ConflictError(f"A pending or in-progress task named '{name}' already exists")
                        changes["name"] = name
                    if "related_files" in changes:
                        changes["related_files"] = _parse_related_files(changes["related_files"] or [])
                    if "dependencies" in changes:
                        changes["dependencies"] = _resolve_existing(changes["dependencies"] or [], collection)

                    task = dataclasses.replace(target, **changes)
                    task.touch()
                    _raise_for_issues(task)

                    result = [task if item.id == task_id else item for item in collection]
                    ensure_acyclic(result)
                    if task.status is TaskStatus.IN_PROGRESS:
                        blocked = unmet_dependencies(task, {item.id: item for item in result})
                        if blocked:
                            raise InvariantViolation(
                                f"Task '{task.name}' is in progress; it cannot gain unfinished dependencies",
                                blocked_by=blocked,
                            )
                    if "related_files" in changes:
                        self.reclassify_related_files([task])
                    collection[:] = result

                logger.info(f"Updated task '{task_id}' in project '{root.project}': {', '.join(sorted(fields))}")
                return task

        except Exception as e:
            log_error_with_context(e, {
                "operation": "update_task",
                "project": root.project,
                "task_id": task_id,
                "fields": sorted(fields),
            })
            raise

    @log_performance("delete_task")
    def delete_task(self, root: StorageRoot, task_id: str) -> Task:
        """Remove a task that is not completed and that nothing depends on."""
        try:
            with log_operation("delete_task", project=root.project, task_id=task_id):
                with self.store(root).transaction() as collection:
                    task = _find(collection, task_id)
                    if task.is_completed:
                        raise InvariantViolation(f"Task '{task.name}' is completed and cannot be deleted")
                    dependents = [item.id for item in collection if task_id in item.dependencies]
                    if dependents:
                        raise InvariantViolation(
                            f"Task '{task.name}' cannot be deleted; other tasks depend on it",
                            blocked_by=dependents,
                        )
                    collection[:] = [item for item in collection if item.id != task_id]

                log_task_deletion(root.project, task_id, name=task.name)
                return task

        except Exception as e:
            log_error_with_context(e, {"operation": "delete_task", "project": root.project, "task_id": task_id})
            raise

    @log_performance("clear_all")
    def clear_all(self, root: StorageRoot, confirm: bool = False) -> ClearResult:
        """Back up completed tasks, then remove every task of the project."""
        if confirm is not True:
            raise ValidationError("Clearing all tasks requires confirm=True")

        try:
            with log_operation("clear_all", project=root.project):
                store = self.store(root)
                with store.transaction() as collection:
                    if not collection:
                        return ClearResult(removed=0, backed_up=0)
                    completed = [task for task in collection if task.is_completed]
                    backup_file = store.backup_completed(completed) if completed else None
                    removed = len(collection)
                    collection.clear()

                log_tasks_cleared(root.project, removed, str(backup_file) if backup_file else None)
                return ClearResult(removed=removed, backed_up=len(completed), backup_file=backup_file)

        except Exception as e:
            log_error_with_context(e, {"operation": "clear_all", "project": root.project})
            raise

    # ------------------------------------------------------------------
    # Related files
    # ------------------------------------------------------------------

    def reclassify_related_files(self, tasks: Iterable[Task]) -> List[str]:
        """Mark CREATE targets that already exist on disk as TO_MODIFY.

        Returns the ids of the tasks that changed.
        """
        changed: List[str] = []
        for task in tasks:
            if task.is_completed:
                continue
            touched = False
            for item in task.related_files:
                if item.type is RelatedFileType.CREATE and item.resolve(self.source_root).exists():
                    item.type = RelatedFileType.TO_MODIFY
                    touched = True
            if touched:
                task.touch()
                changed.append(task.id)
                logger.debug(f"Reclassified CREATE targets of task '{task.id}' that already exist")
        return changed


def _find(collection: List[Task], task_id: str) -> Task:
    for task in collection:
        if task.id == task_id:
            return task
    raise NotFoundError("Task", task_id)


def _raise_for_issues(task: Task) -> None:
    issues = task.validate()
    if issues:
        raise ValidationError(f"Invalid task '{task.name}': " + "; ".join(issues))


def _parse_update_mode(value: Union[str, UpdateMode]) -> UpdateMode:
    try:
        return UpdateMode(value)
    except ValueError:
        allowed = ", ".join(mode.value for mode in UpdateMode)
        raise ValidationError(f"Unknown update mode '{value}'. Expected one of: {allowed}")


def _parse_status(value: Union[str, TaskStatus]) -> TaskStatus:
    try:
        return TaskStatus(value)
    except ValueError:
        allowed = ", ".join(status.value for status in TaskStatus)
        raise ValidationError(f"Unknown task status '{value}'. Expected one of: {allowed}")


def _parse_inputs(tasks: Sequence[Union[TaskInput, Dict[str, Any]]]) -> List[TaskInput]:
    if not tasks:
        raise ValidationError("A batch must contain at least one task")

    inputs: List[TaskInput] = []
    for index, item in enumerate(tasks):
        if isinstance(item, TaskInput):
            inputs.append(item)
            continue
        try:
            inputs.append(TaskInput.from_dict(item))
        except KeyError as e:
            raise ValidationError(f"Task {index} is missing required field {e}")
        except (TypeError, ValueError, AttributeError) as e:
            raise ValidationError(f"Task {index} is malformed: {e}")

    seen = set()
    for item in inputs:
        name = (item.name or "").strip()
        if not name:
            raise ValidationError("Every task needs a name")
        if name in seen:
            raise ValidationError(f"Task name '{name}' appears more than once in the batch")
        seen.add(name)
    return inputs


def _parse_related_files(items: Sequence[Union[RelatedFile, Dict[str, Any]]]) -> List[RelatedFile]:
    parsed: List[RelatedFile] = []
    for item in items:
        if isinstance(item, RelatedFile):
            parsed.append(dataclasses.replace(item))
            continue
        try:
            parsed.append(RelatedFile.from_dict(item))
        except KeyError as e:
            raise ValidationError(f"Related file is missing required field {e}")
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Related file is malformed: {e}")
    return parsed


def _resolve_existing(refs: Sequence[str], collection: List[Task]) -> List[str]:
    names: Dict[str, str] = {}
    for task in sorted(collection, key=lambda t: t.is_completed, reverse=True):
        names[task.name.strip()] = task.id
    known_ids = {task.id for task in collection}

    resolved: List[str] = []
    for ref in refs:
        task_id = resolve_reference(ref, {}, names, known_ids)
        if task_id is None:
            raise ValidationError(f"Unknown dependency '{ref}'")
        if task_id not in resolved:
            resolved.append(task_id)
    return resolved
