"""Scheduling engine dependency providers."""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.container import ApplicationContainer, get_container
from app.modules.executions.tracker import ExecutionTracker
from app.modules.scheduling.cancellation import CancellationHandler
from app.modules.scheduling.dispatcher import TaskDispatcher
from app.modules.tasks.service import TaskService

from .database import get_db_session


def get_app_container() -> ApplicationContainer:
    return get_container()


def get_dispatcher(container: ApplicationContainer = Depends(get_app_container)) -> TaskDispatcher:
    return container.dispatcher


def get_cancellation_handler(container: ApplicationContainer = Depends(get_app_container)) -> CancellationHandler:
    return container.cancellation


def get_tracker(container: ApplicationContainer = Depends(get_app_container)) -> ExecutionTracker:
    return container.tracker


def get_task_service(
    db: AsyncSession = Depends(get_db_session),
    container: ApplicationContainer = Depends(get_app_container),
) -> TaskService:
    return TaskService.with_session(db, container.policy)


__all__ = [
    "get_app_container",
    "get_cancellation_handler",
    "get_dispatcher",
    "get_task_service",
    "get_tracker",
]
