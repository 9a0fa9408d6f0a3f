"""Durable, lock-guarded persistence of one project's task collection.

The collection lives in ``tasks.json`` as ``{"tasks": [...]}``. Writes are
atomic (temporary file, fsync, rename) so readers see either the old or the
new collection. Mutations go through :meth:`TaskStore.transaction`, which
holds the project lock across the whole read-modify-write cycle and saves
once on success.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, List, TypeVar

from filelock import FileLock, Timeout

from .config import DEFAULT_LOCK_MAX_RETRIES, DEFAULT_LOCK_RETRY_INTERVAL, DEFAULT_LOCK_TIMEOUT
from .errors import BackupError, CorruptStoreError, LockTimeoutError
from .models import Task, utc_now_iso
from .project import StorageRoot

logger = logging.getLogger("taskgraph.store")

T = TypeVar("T")

BACKUP_PREFIX = "tasks_memory_"


def serialize_tasks(tasks: List[Task]) -> str:
    """Render a collection exactly as it is written to disk."""
    payload = {"tasks": [task.to_dict() for task in tasks]}
    return json.dumps(payload, indent=2, ensure_ascii=False) + "\n"


def _atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class TaskStore:
    """File-backed store for the tasks of a single storage root."""

    _registry: Dict[Path, "TaskStore"] = {}
    _registry_lock = threading.Lock()

    def __init__(
        self,
        root: StorageRoot,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        retry_interval: float = DEFAULT_LOCK_RETRY_INTERVAL,
        max_retries: int = DEFAULT_LOCK_MAX_RETRIES,
    ):
        self.root = root
        self.lock_timeout = lock_timeout
        self.retry_interval = retry_interval
        self.max_retries = max_retries
        self._thread_lock = threading.RLock()
        self._file_lock = FileLock(str(root.lock_file))

    @classmethod
    def for_root(cls, root: StorageRoot, **lock_options) -> "TaskStore":
        """Return the shared store for ``root``, creating it on first use.

        One store serves a root for the life of the process so every caller
        shares its thread lock. Lock options only apply when the store is
        created; later calls with different options get the existing store
        and a warning.
        """
        key = root.path.resolve()
        with cls._registry_lock:
            store = cls._registry.get(key)
            if store is None:
                store = cls(root, **lock_options)
                cls._registry[key] = store
                return store
            ignored = {
                name: value for name, value in lock_options.items() if getattr(store, name) != value
            }
            if ignored:
                logger.warning(
                    f"Store for {key} already exists; keeping its lock options and ignoring {ignored}"
                )
            return store

    @classmethod
    def reset_registry(cls) -> None:
        with cls._registry_lock:
            cls._registry.clear()

    @property
    def path(self) -> Path:
        return self.root.tasks_file

    # ------------------------------------------------------------------
    # Read / write
    # ------------------------------------------------------------------

    def load(self) -> List[Task]:
        """Load the collection. A missing file is an empty collection."""
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CorruptStoreError(str(self.path), str(e))

        if not isinstance(raw, dict) or not isinstance(raw.get("tasks"), list):
            raise CorruptStoreError(str(self.path), "expected an object with a 'tasks' list")

        tasks: List[Task] = []
        for index, item in enumerate(raw["tasks"]):
            if not isinstance(item, dict):
                raise CorruptStoreError(str(self.path), f"task entry {index} is not an object")
            try:
                tasks.append(Task.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                raise CorruptStoreError(str(self.path), f"task entry {index} is invalid: {e}")
        return tasks

    def save(self, tasks: List[Task]) -> None:
        """Atomically replace the collection on disk."""
        _atomic_write(self.path, serialize_tasks(tasks))
        logger.debug(f"Saved {len(tasks)} tasks to {self.path}")

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def _acquire(self) -> None:
        deadline = time.monotonic() + self.lock_timeout
        attempts = 0

        def wait() -> float:
            return max(0.0, min(self.retry_interval, deadline - time.monotonic()))

        def exhausted() -> bool:
            return attempts >= self.max_retries or time.monotonic() >= deadline

        while not self._thread_lock.acquire(timeout=wait()):
            attempts += 1
            if exhausted():
                raise LockTimeoutError(str(self.root.lock_file), self.lock_timeout)

        while True:
            try:
                self._file_lock.acquire(timeout=wait())
                return
            except Timeout:
                attempts += 1
                if exhausted():
                    self._thread_lock.release()
                    raise LockTimeoutError(str(self.root.lock_file), self.lock_timeout)

    def _release(self) -> None:
        try:
            self._file_lock.release()
        finally:
            self._thread_lock.release()

    @contextmanager
    def locked(self) -> Iterator["TaskStore"]:
        """Hold the project lock for the duration of a block. Re-entrant."""
        self._acquire()
        try:
            yield self
        finally:
            self._release()

    def with_lock(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` while holding the project lock."""
        with self.locked():
            return fn()

    @contextmanager
    def transaction(self) -> Iterator[List[Task]]:
        """Lock, load, yield the mutable collection, save on normal exit.

        Nothing is written when the block raises.
        """
        with self.locked():
            tasks = self.load()
            yield tasks
            self.save(tasks)

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def backup_completed(self, tasks: List[Task]) -> Path:
        """Write ``tasks`` to a new backup file in the memory directory."""
        stamp = utc_now_iso().replace(":", "-").replace(".", "-")
        content = serialize_tasks(tasks)
        try:
            self.root.memory_dir.mkdir(parents=True, exist_ok=True)
            suffix = 0
            while True:
                name = f"{BACKUP_PREFIX}{stamp}{'_' + str(suffix) if suffix else ''}.json"
                target = self.root.memory_dir / name
                try:
                    with open(target, "x", encoding="utf-8") as handle:
                        handle.write(content)
                        handle.flush()
                        os.fsync(handle.fileno())
                    break
                except FileExistsError:
                    suffix += 1
        except OSError as e:
            raise BackupError(f"Failed to back up completed tasks to {self.root.memory_dir}: {e}")

        logger.info(f"Backed up {len(tasks)} completed tasks to {target}")
        return target

    def list_backups(self) -> List[Path]:
        """Backup files, oldest first."""
        if not self.root.memory_dir.exists():
            return []
        backups = [p for p in self.root.memory_dir.glob(f"{BACKUP_PREFIX}*.json") if p.is_file()]
        return sorted(backups, key=lambda p: (p.stat().st_mtime, p.name))

