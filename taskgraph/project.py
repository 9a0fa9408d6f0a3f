"""Project resolution and isolation.

Maps a logical project name to a dedicated storage root under the data
directory. The "current project" is kept on a :class:`ProjectSession`, one per
caller, and the session for the running call is bound through a context
variable, so one caller switching projects never leaks into another caller's
calls. Resolution fails closed: without an explicit, current, or configured
default project it raises :class:`ProjectRequiredError` rather than falling
back to a shared directory.
"""

from __future__ import annotations

import logging
import re
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .errors import ProjectRequiredError, TaskGraphError, ValidationError

logger = logging.getLogger("taskgraph.project")

TASKS_FILE_NAME = "tasks.json"
MEMORY_DIR_NAME = "memory"
LOCK_SUFFIX = ".lock"
MAX_PROJECT_NAME_LENGTH = 100

_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def sanitize_project_name(name: str) -> str:
    """Turn a project name into a filesystem-safe directory name."""
    if name is None:
        raise ValidationError("Project name cannot be empty")
    sanitized = _UNSAFE_CHARS.sub("_", name.strip())
    sanitized = re.sub(r"\s+", "_", sanitized)
    sanitized = re.sub(r"_{2,}", "_", sanitized)
    sanitized = sanitized.strip("_")[:MAX_PROJECT_NAME_LENGTH]
    if not sanitized or set(sanitized) == {"."}:
        raise ValidationError(f"Project name '{name}' does not contain any usable characters")
    return sanitized


@dataclass(frozen=True, slots=True)
class StorageRoot:
    """The isolated storage directory of one project."""

    project: str
    path: Path

    @property
    def tasks_file(self) -> Path:
        return self.path / TASKS_FILE_NAME

    @property
    def memory_dir(self) -> Path:
        return self.path / MEMORY_DIR_NAME

    @property
    def lock_file(self) -> Path:
        return self.path / (TASKS_FILE_NAME + LOCK_SUFFIX)


class ProjectSession:
    """Current-project state for one caller's sequence of calls."""

    def __init__(self, current_project: Optional[str] = None):
        self.current_project = current_project


_active_session: ContextVar[Optional[ProjectSession]] = ContextVar(
    "taskgraph_active_session", default=None
)


class ProjectResolver:
    """Resolve project names to isolated storage roots under ``data_root``."""

    def __init__(self, data_root: Path | str, default_project: Optional[str] = None):
        self.data_root = Path(data_root).expanduser().resolve()
        self.default_project = default_project
        # Used when no caller session is bound, e.g. a single embedded caller
        self._fallback_session = ProjectSession()
        self._cache: Dict[str, StorageRoot] = {}
        self._cache_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Current project
    # ------------------------------------------------------------------

    @property
    def session(self) -> ProjectSession:
        """The session bound to the running call, or the resolver's own."""
        return _active_session.get() or self._fallback_session

    @contextmanager
    def session_scope(self, session: ProjectSession) -> Iterator[ProjectSession]:
        """Bind ``session`` as the caller session for the duration of a block."""
        token = _active_session.set(session)
        try:
            yield session
        finally:
            _active_session.reset(token)

    @contextmanager
    def project_scope(self, project: Optional[str]) -> Iterator[Optional[str]]:
        """Run a block with ``project`` as the current project.

        A derived session is bound so the caller's own session is untouched
        once the block exits. ``None`` leaves the current project as it is.
        """
        if project is None:
            yield self.get_current_project()
            return
        sanitize_project_name(project)
        with self.session_scope(ProjectSession(project)):
            yield project

    def set_current_project(self, name: str) -> StorageRoot:
        """Switch the caller's current project and return its storage root."""
        key = sanitize_project_name(name)
        session = self.session
        previous = session.current_project
        session.current_project = name
        with self._cache_lock:
            self._cache.pop(key, None)
            if previous is not None:
                self._cache.pop(_safe_key(previous), None)
        logger.info(f"Current project switched from '{previous}' to '{name}'")
        return self.resolve(name)

    def get_current_project(self) -> Optional[str]:
        """Current project of the running call sequence, if one was set."""
        return self.session.current_project

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, explicit_project: Optional[str] = None) -> StorageRoot:
        """Resolve the storage root for a call.

        Order: explicit argument, current project, configured default.
        """
        project = explicit_project or self.get_current_project() or self.default_project
        if not project:
            raise ProjectRequiredError()

        key = sanitize_project_name(project)
        with self._cache_lock:
            cached = self._cache.get(key)
            if cached is not None and cached.path.is_dir():
                return cached

            root = StorageRoot(project=project, path=self.data_root / key)
            try:
                root.path.mkdir(parents=True, exist_ok=True)
                root.memory_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.error(f"Failed to create storage root {root.path}: {e}")
                raise TaskGraphError(f"Could not initialize storage for project '{project}': {e}")
            self._cache[key] = root

        logger.debug(f"Resolved project '{project}' to {root.path}")
        return root

    def list_projects(self) -> List[Dict[str, object]]:
        """List project directories under the data root."""
        projects: List[Dict[str, object]] = []
        if not self.data_root.exists():
            return projects
        current = self.get_current_project()
        current_key = _safe_key(current) if current else None
        for path in sorted(p for p in self.data_root.iterdir() if p.is_dir()):
            tasks_file = path / TASKS_FILE_NAME
            projects.append(
                {
                    "project": path.name,
                    "path": str(path),
                    "has_tasks": tasks_file.exists(),
                    "is_current": path.name == current_key,
                }
            )
        return projects

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()


def _safe_key(name: str) -> Optional[str]:
    try:
        return sanitize_project_name(name)
    except ValidationError:
        return None
