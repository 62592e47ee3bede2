"""SQLAlchemy-backed repository implementations."""

from .device_repository import SqlDeviceRepository
from .execution_repository import SqlExecutionRepository
from .script_repository import SqlScriptRepository
from .task_repository import SqlTaskRepository

__all__ = [
    "SqlDeviceRepository",
    "SqlExecutionRepository",
    "SqlScriptRepository",
    "SqlTaskRepository",
]
