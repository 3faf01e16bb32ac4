"""Task execution and round-synchronous workflow scheduling."""

from .executor import TaskExecutor
from .scheduler import ExecutionState, WorkflowScheduler

__all__ = [
    "TaskExecutor",
    "ExecutionState",
    "WorkflowScheduler",
]
