"""Environment-driven configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .errors import ValidationError

DATA_DIR_ENV = "TASKGRAPH_DATA_DIR"
PROJECT_ENV = "TASKGRAPH_PROJECT"
SOURCE_ROOT_ENV = "TASKGRAPH_SOURCE_ROOT"
LOCK_TIMEOUT_ENV = "TASKGRAPH_LOCK_TIMEOUT"
LOCK_RETRY_INTERVAL_ENV = "TASKGRAPH_LOCK_RETRY_INTERVAL"
LOCK_MAX_RETRIES_ENV = "TASKGRAPH_LOCK_MAX_RETRIES"
WORKFLOW_MAX_AGE_ENV = "TASKGRAPH_WORKFLOW_MAX_AGE_MS"
LOG_LEVEL_ENV = "TASKGRAPH_LOG_LEVEL"
LOG_FILE_ENV = "TASKGRAPH_LOG_FILE"

DEFAULT_DATA_DIR_NAME = ".taskgraph"
DEFAULT_LOCK_TIMEOUT = 10.0
DEFAULT_LOCK_RETRY_INTERVAL = 0.1
DEFAULT_LOCK_MAX_RETRIES = 100
DEFAULT_WORKFLOW_MAX_AGE_MS = 24 * 60 * 60 * 1000


@dataclass(frozen=True, slots=True)
class Settings:
    """Runtime settings for the server and its core components."""

    data_dir: Path
    default_project: Optional[str] = None
    source_root: Optional[Path] = None
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    lock_retry_interval: float = DEFAULT_LOCK_RETRY_INTERVAL
    lock_max_retries: int = DEFAULT_LOCK_MAX_RETRIES
    workflow_max_age_ms: int = DEFAULT_WORKFLOW_MAX_AGE_MS
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from environment variables."""
        env = os.environ if environ is None else environ

        data_dir_value = env.get(DATA_DIR_ENV)
        if data_dir_value:
            data_dir = Path(data_dir_value).expanduser()
            if not data_dir.is_absolute():
                data_dir = Path.cwd() / data_dir
        else:
            data_dir = Path.cwd() / DEFAULT_DATA_DIR_NAME

        source_root_value = env.get(SOURCE_ROOT_ENV)
        log_file_value = env.get(LOG_FILE_ENV)

        return cls(
            data_dir=data_dir.resolve(),
            default_project=env.get(PROJECT_ENV) or None,
            source_root=Path(source_root_value).expanduser().resolve() if source_root_value else None,
            lock_timeout=_parse_number(env, LOCK_TIMEOUT_ENV, DEFAULT_LOCK_TIMEOUT, float),
            lock_retry_interval=_parse_number(env, LOCK_RETRY_INTERVAL_ENV, DEFAULT_LOCK_RETRY_INTERVAL, float),
            lock_max_retries=_parse_number(env, LOCK_MAX_RETRIES_ENV, DEFAULT_LOCK_MAX_RETRIES, int),
            workflow_max_age_ms=_parse_number(env, WORKFLOW_MAX_AGE_ENV, DEFAULT_WORKFLOW_MAX_AGE_MS, int),
            log_level=(env.get(LOG_LEVEL_ENV) or "INFO").upper(),
            log_file=Path(log_file_value).expanduser() if log_file_value else None,
        )


def _parse_number(env: Mapping[str, str], name: str, default, kind):
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = kind(raw)
    except ValueError:
        raise ValidationError(f"Environment variable {name} must be a {kind.__name__}, got '{raw}'")
    if value < 0:
        raise ValidationError(f"Environment variable {name} must not be negative, got '{raw}'")
    return value
