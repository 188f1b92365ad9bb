"""Application layer: the task manager orchestrator."""

from tasklattice.application.task_manager import (
    ChildSpec,
    InvalidTaskError,
    TaskManager,
    TaskManagerError,
    TaskNotFoundError,
    TaskWriteResult,
)

__all__ = [
    "ChildSpec",
    "InvalidTaskError",
    "TaskManager",
    "TaskManagerError",
    "TaskNotFoundError",
    "TaskWriteResult",
]
