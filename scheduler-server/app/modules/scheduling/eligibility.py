"""Decides which tasks are due, expired or retry-eligible at a point in time."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import SchedulerSettings
from app.infrastructure.database.repositories.task_repository import SqlTaskRepository
from app.modules.tasks.models import Task, TaskStatus, TaskType


@dataclass(slots=True)
class EligibilityPolicy:
    expiration_grace: timedelta = timedelta(hours=1)
    global_retry_cap: int = 5
    backoff_base: int = 10
    backoff_max: int = 300

    @classmethod
    def from_settings(cls, settings: SchedulerSettings) -> "EligibilityPolicy":
        return cls(
            expiration_grace=timedelta(seconds=settings.expiration_grace_seconds),
            global_retry_cap=settings.global_retry_cap,
            backoff_base=settings.retry_backoff_base,
            backoff_max=settings.retry_backoff_max,
        )

    def effective_retry_cap(self, script_max_retries: int) -> int:
        return max(0, min(script_max_retries, self.global_retry_cap))

    def is_retryable(self, retry_count: int, script_max_retries: int) -> bool:
        return retry_count < self.effective_retry_cap(script_max_retries)

    def retry_delay(self, retry_count: int) -> timedelta:
        """Exponential backoff before attempt ``retry_count + 1``."""
        seconds = min(self.backoff_max, (2 ** retry_count) * self.backoff_base)
        return timedelta(seconds=seconds)

    def is_expired(self, task: Task, now: datetime) -> bool:
        if task.task_type is not TaskType.SCHEDULED or task.status is not TaskStatus.PENDING:
            return False
        if task.scheduled_time is None:
            return False
        return task.scheduled_time < now - self.expiration_grace

    def is_due(self, task: Task, now: datetime, *, script_valid: bool = True) -> bool:
        if task.status is not TaskStatus.PENDING or not task.valid or not script_valid:
            return False
        if task.task_type is TaskType.IMMEDIATE:
            return True
        return task.scheduled_time is not None and task.scheduled_time <= now


def selection_key(task: Task) -> tuple[int, datetime]:
    return (-task.priority, task.created_at)


@dataclass(slots=True)
class DueSelection:
    due: list[Task] = field(default_factory=list)
    expired: list[Task] = field(default_factory=list)


class EligibilityEvaluator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        policy: EligibilityPolicy | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.policy = policy or EligibilityPolicy()

    async def evaluate(self, now: datetime, limit: int = 100) -> DueSelection:
        """Split the due candidates into dispatchable and expired tasks.

        The store applies the due predicate (including script validity); the
        expiration rule and ordering are applied here so the result does not
        depend on how a backend sorts ties.
        """
        async with self._session_factory() as session:
            models = await SqlTaskRepository(session).list_due_candidates(now, limit)
        selection = DueSelection()
        for task in sorted((Task.from_orm(model) for model in models), key=selection_key):
            if self.policy.is_expired(task, now):
                selection.expired.append(task)
            elif self.policy.is_due(task, now):
                selection.due.append(task)
        return selection

    async def due_tasks(self, now: datetime, limit: int = 100) -> list[Task]:
        return (await self.evaluate(now, limit)).due

    async def retryable_tasks(self, limit: int = 100) -> list[Task]:
        """Failed tasks whose manual-retry counter is still under the effective cap."""
        async with self._session_factory() as session:
            rows = await SqlTaskRepository(session).list_failed_with_script_limits(limit)
        return [
            Task.from_orm(model)
            for model, script_max_retries in rows
            if self.policy.is_retryable(model.retry_count or 0, script_max_retries)
        ]
