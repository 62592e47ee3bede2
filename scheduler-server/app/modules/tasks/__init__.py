"""Task module: domain models, lifecycle tables and errors.

The service lives in ``app.modules.tasks.service``; it is not re-exported here
because the SQL repositories import this package's models.
"""

from .exceptions import (
    InvalidTaskError,
    ScriptUnavailableError,
    TaskError,
    TaskNotFoundError,
    TaskNotRetryableError,
)
from .models import (
    TargetType,
    Task,
    TaskStatistics,
    TaskStatus,
    TaskSummary,
    TaskType,
    calculate_progress,
)

__all__ = [
    "InvalidTaskError",
    "ScriptUnavailableError",
    "TargetType",
    "Task",
    "TaskError",
    "TaskNotFoundError",
    "TaskNotRetryableError",
    "TaskStatistics",
    "TaskStatus",
    "TaskSummary",
    "TaskType",
    "calculate_progress",
]
