"""taskgraph MCP server - core functionality package."""

# No imports at package level to avoid circular import issues
# Import modules directly where needed

__all__ = [
    "config",
    "errors",
    "graph",
    "models",
    "project",
    "store",
    "taskgraph_logging",
    "tasks",
    "workflow",
]
