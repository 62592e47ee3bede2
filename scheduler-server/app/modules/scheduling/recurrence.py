"""Cron based due-time computation for recurring tasks."""

from __future__ import annotations

import logging
from datetime import datetime

from croniter import croniter

from app.modules.tasks.models import Task, TaskType
from app.modules.tasks.repository import TaskRepository

from .exceptions import InvalidCronExpression

logger = logging.getLogger(__name__)


def is_valid_cron(expression: str | None) -> bool:
    if not expression:
        return False
    return bool(croniter.is_valid(expression))


def next_due_time(cron_expression: str, after: datetime) -> datetime:
    """Return the first fire time of ``cron_expression`` strictly after ``after``."""
    if not is_valid_cron(cron_expression):
        raise InvalidCronExpression(f"invalid cron expression: {cron_expression!r}")
    return croniter(cron_expression, after).get_next(datetime)


async def rearm_if_recurring(repository: TaskRepository, task: Task, now: datetime) -> datetime | None:
    """Put a finished recurring task back to Pending at its next due time."""
    if task.task_type is not TaskType.RECURRING or not task.cron_expression:
        return None
    try:
        next_due = next_due_time(task.cron_expression, now)
    except InvalidCronExpression as exc:
        logger.error("周期任务 %s 无法计算下次执行时间: %s", task.id, exc)
        return None
    if not await repository.rearm_recurring(task.id, next_due=next_due, now=now):
        return None
    logger.info("周期任务 %s 下次执行时间 %s", task.id, next_due.isoformat())
    return next_due
