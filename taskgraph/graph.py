"""Dependency graph helpers: reference resolution and cycle detection."""

from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .errors import CyclicDependencyError, ValidationError
from .models import Task, TaskInput


def resolve_references(
    inputs: Sequence[TaskInput],
    new_ids: Sequence[str],
    existing: Iterable[Task],
) -> List[List[str]]:
    """Turn the dependency references of a planned batch into task ids.

    A reference is matched against names in the batch first, then names of
    existing tasks, then ids. Unknown references raise ``ValidationError``.
    """
    batch_names = {item.name.strip(): task_id for item, task_id in zip(inputs, new_ids)}

    existing = list(existing)
    existing_names: Dict[str, str] = {}
    # Non-completed tasks win when a completed task shares their name
    for task in sorted(existing, key=lambda t: t.is_completed, reverse=True):
        existing_names[task.name.strip()] = task.id
    known_ids = {task.id for task in existing} | set(new_ids)

    resolved: List[List[str]] = []
    for item in inputs:
        ids: List[str] = []
        for ref in item.dependencies:
            task_id = resolve_reference(ref, batch_names, existing_names, known_ids)
            if task_id is None:
                raise ValidationError(f"Task '{item.name}' depends on unknown task '{ref}'")
            if task_id not in ids:
                ids.append(task_id)
        resolved.append(ids)
    return resolved


def resolve_reference(
    ref: str,
    batch_names: Mapping[str, str],
    existing_names: Mapping[str, str],
    known_ids: Iterable[str],
) -> Optional[str]:
    key = str(ref).strip()
    if key in batch_names:
        return batch_names[key]
    if key in existing_names:
        return existing_names[key]
    if key in known_ids:
        return key
    return None


def find_cycle(edges: Mapping[str, Sequence[str]]) -> Optional[List[str]]:
    """Return one dependency cycle as a closed path, or ``None``.

    ``edges`` maps a task id to the ids it depends on. Edges pointing at
    unknown nodes are ignored.
    """
    white, grey, black = 0, 1, 2
    color = {node: white for node in edges}

    for start in edges:
        if color[start] != white:
            continue
        path: List[str] = [start]
        stack = [iter(edges[start])]
        color[start] = grey
        while stack:
            advanced = False
            for neighbour in stack[-1]:
                if neighbour not in color:
                    continue
                if color[neighbour] == grey:
                    return path[path.index(neighbour):] + [neighbour]
                if color[neighbour] == white:
                    color[neighbour] = grey
                    path.append(neighbour)
                    stack.append(iter(edges[neighbour]))
                    advanced = True
                    break
            if not advanced:
                color[path.pop()] = black
                stack.pop()
    return None


def ensure_acyclic(tasks: Iterable[Task]) -> None:
    """Raise ``CyclicDependencyError`` if the collection contains a cycle."""
    tasks = list(tasks)
    cycle = find_cycle({task.id: task.dependencies for task in tasks})
    if cycle:
        raise CyclicDependencyError(cycle, labels={task.id: task.name for task in tasks})


def unmet_dependencies(task: Task, tasks_by_id: Mapping[str, Task]) -> List[str]:
    """Ids of the dependencies of ``task`` that are not completed."""
    blocked = []
    for dep_id in task.dependencies:
        dependency = tasks_by_id.get(dep_id)
        if dependency is None or not dependency.is_completed:
            blocked.append(dep_id)
    return blocked
