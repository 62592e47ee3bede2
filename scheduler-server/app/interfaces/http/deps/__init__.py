"""Reusable FastAPI dependencies."""

from .database import get_db_session
from .engine import (
    get_app_container,
    get_cancellation_handler,
    get_dispatcher,
    get_task_service,
    get_tracker,
)

__all__ = [
    "get_db_session",
    "get_app_container",
    "get_cancellation_handler",
    "get_dispatcher",
    "get_task_service",
    "get_tracker",
]
