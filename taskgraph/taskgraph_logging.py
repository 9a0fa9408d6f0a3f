"""Logging and observability utilities for the task graph backend.

This module provides structured logging, performance monitoring,
and observability hooks for task and workflow operations.
"""

from __future__ import annotations

import json
import sys
import time
import logging as std_logging
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union


def setup_logging(log_level: Union[str, int] = std_logging.INFO, log_file: Optional[Path] = None) -> None:
    """Setup structured logging for the ``taskgraph`` logger hierarchy.

    Console output goes to stderr because stdout carries the MCP protocol.
    """

    logger = std_logging.getLogger("taskgraph")
    logger.setLevel(log_level)

    # Clear existing handlers
    logger.handlers.clear()

    detailed_formatter = std_logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(funcName)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    json_formatter = JsonFormatter()

    console_handler = std_logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(detailed_formatter)
    logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = std_logging.FileHandler(log_file)
        file_handler.setLevel(std_logging.DEBUG)
        file_handler.setFormatter(json_formatter)
        logger.addHandler(file_handler)

    logger.info("taskgraph logging initialized")


class JsonFormatter(std_logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: std_logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_entry.update(record.extra_fields)

        return json.dumps(log_entry, default=str)


class PerformanceMonitor:
    """Monitor performance metrics for task graph operations."""

    def __init__(self):
        self.metrics: Dict[str, List[Dict[str, Any]]] = {}

    def record_metric(self, name: str, value: Any, tags: Optional[Dict[str, str]] = None) -> None:
        """Record a performance metric."""
        metric = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "name": name,
            "value": value,
            "tags": tags or {}
        }

        self.metrics.setdefault(name, []).append(metric)

        logger = std_logging.getLogger("taskgraph.performance")
        logger.debug(f"Metric recorded: {name}={value}", extra={"extra_fields": metric})

    def get_metrics(self, name: Optional[str] = None) -> Dict[str, List[Dict[str, Any]]]:
        """Get recorded metrics."""
        if name:
            return {name: self.metrics.get(name, [])}
        return self.metrics.copy()

    def reset(self) -> None:
        self.metrics.clear()


# Global performance monitor instance
performance_monitor = PerformanceMonitor()


def log_performance(operation_name: str):
    """Decorator to log performance metrics for operations."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.perf_counter()
            logger = std_logging.getLogger("taskgraph.performance")

            try:
                logger.debug(f"Starting operation: {operation_name}")

                result = func(*args, **kwargs)

                duration = time.perf_counter() - start_time
                performance_monitor.record_metric(
                    f"{operation_name}_duration",
                    duration,
                    {"status": "success"}
                )

                logger.info(
                    f"Completed operation: {operation_name} in {duration:.3f}s",
                    extra={"extra_fields": {
                        "operation": operation_name,
                        "duration": duration,
                        "status": "success"
                    }}
                )

                return result

            except Exception as e:
                # Failed operations are timed too
                duration = time.perf_counter() - start_time
                performance_monitor.record_metric(
                    f"{operation_name}_duration",
                    duration,
                    {"status": "error", "error_type": type(e).__name__}
                )

                logger.warning(
                    f"Failed operation: {operation_name} after {duration:.3f}s - {str(e)}",
                    extra={"extra_fields": {
                        "operation": operation_name,
                        "duration": duration,
                        "status": "error",
                        "error_type": type(e).__name__,
                        "error_message": str(e)
                    }}
                )

                raise

        return wrapper
    return decorator


@contextmanager
def log_operation(operation_name: str, **extra_fields):
    """Context manager to log operations with custom fields."""
    logger = std_logging.getLogger("taskgraph.operations")
    start_time = time.perf_counter()

    logger.debug(f"Starting operation: {operation_name}", extra={"extra_fields": {
        "operation": operation_name,
        "status": "started",
        **extra_fields
    }})

    try:
        yield

        duration = time.perf_counter() - start_time
        logger.debug(f"Completed operation: {operation_name} in {duration:.3f}s", extra={"extra_fields": {
            "operation": operation_name,
            "status": "completed",
            "duration": duration,
            **extra_fields
        }})

    except Exception as e:
        duration = time.perf_counter() - start_time
        logger.warning(f"Failed operation: {operation_name} after {duration:.3f}s - {str(e)}", extra={"extra_fields": {
            "operation": operation_name,
            "status": "failed",
            "duration": duration,
            "error_type": type(e).__name__,
            "error_message": str(e),
            **extra_fields
        }})

        raise


class ObservabilityHooks:
    """Observability hooks for task and workflow events."""

    def __init__(self):
        self.hooks: Dict[str, List[Callable[..., None]]] = {}
        self.logger = std_logging.getLogger("taskgraph.observability")

    def register_hook(self, event_type: str, callback: Callable[..., None]) -> None:
        """Register a callback for a specific event type."""
        self.hooks.setdefault(event_type, []).append(callback)
        self.logger.debug(f"Registered hook for event: {event_type}")

    def unregister_hook(self, event_type: str, callback: Callable[..., None]) -> None:
        callbacks = self.hooks.get(event_type, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def trigger_hooks(self, event_type: str, **data) -> None:
        """Trigger all callbacks for a specific event type."""
        if event_type in self.hooks:
            self.logger.debug(f"Triggering {len(self.hooks[event_type])} hooks for event: {event_type}")
            for hook in self.hooks[event_type]:
                try:
                    hook(**data)
                except Exception as e:
                    # A broken observer must not fail the operation it observes
                    self.logger.error(f"Hook failed for event {event_type}: {e}")

    def log_event(self, event_type: str, project: Optional[str] = None, **data) -> None:
        """Log an event and trigger hooks."""
        event_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "project": project,
            **data
        }

        self.logger.info(f"Event: {event_type}", extra={"extra_fields": event_data})

        # Hooks receive the payload without event_type to avoid a duplicate argument
        hook_data = {k: v for k, v in event_data.items() if k != "event_type"}
        self.trigger_hooks(event_type, **hook_data)


# Global observability hooks instance
observability_hooks = ObservabilityHooks()


def log_error_with_context(error: Exception, context: Dict[str, Any], **extra_fields):
    """Log an error with rich context information."""
    logger = std_logging.getLogger("taskgraph.errors")

    error_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error_type": type(error).__name__,
        "error_message": str(error),
        "context": context,
        **extra_fields
    }

    logger.error(
        f"Error in {context.get('operation', 'unknown operation')}: {str(error)}",
        extra={"extra_fields": error_data},
        exc_info=True
    )


# Convenience functions for common events
def log_batch_insert(project: str, update_mode: str, created: int, updated: int, removed: int, **extra_fields):
    """Log a planning batch commit."""
    observability_hooks.log_event(
        "tasks_batch_inserted",
        project=project,
        update_mode=update_mode,
        created=created,
        updated=updated,
        removed=removed,
        **extra_fields
    )


def log_task_status_change(project: str, task_id: str, old_status: str, new_status: str, **extra_fields):
    """Log a task status transition."""
    observability_hooks.log_event(
        "task_status_changed",
        project=project,
        task_id=task_id,
        old_status=old_status,
        new_status=new_status,
        **extra_fields
    )


def log_task_deletion(project: str, task_id: str, **extra_fields):
    """Log a task deletion."""
    observability_hooks.log_event("task_deleted", project=project, task_id=task_id, **extra_fields)


def log_tasks_cleared(project: str, removed: int, backup_file: Optional[str], **extra_fields):
    """Log a destructive clear."""
    observability_hooks.log_event(
        "tasks_cleared",
        project=project,
        removed=removed,
        backup_file=backup_file,
        **extra_fields
    )


def log_workflow_transition(workflow_id: str, step_index: int, status: str, project: Optional[str] = None, **extra_fields):
    """Log a workflow step transition."""
    observability_hooks.log_event(
        "workflow_step_updated",
        project=project,
        workflow_id=workflow_id,
        step_index=step_index,
        status=status,
        **extra_fields
    )
