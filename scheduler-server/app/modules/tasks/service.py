"""Domain service for task definitions, queries and manual retries."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.db.models import Task as TaskModel
from app.infrastructure.database.repositories.execution_repository import SqlExecutionRepository
from app.infrastructure.database.repositories.script_repository import SqlScriptRepository
from app.infrastructure.database.repositories.task_repository import SqlTaskRepository
from app.modules.executions.models import ExecutionRecord, ExecutionStats
from app.modules.executions.repository import ExecutionRepository
from app.modules.scheduling.eligibility import EligibilityPolicy
from app.modules.scheduling.recurrence import is_valid_cron, next_due_time
from app.modules.scripts.repository import ScriptRepository

from .exceptions import (
    InvalidTaskError,
    ScriptUnavailableError,
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
)
from .repository import TaskRepository


@dataclass(slots=True)
class TaskCreateInput:
    name: str
    script_id: str
    task_type: TaskType = TaskType.IMMEDIATE
    target_type: TargetType = TargetType.ALL
    description: Optional[str] = None
    target_group_id: Optional[str] = None
    target_device_ids: list[str] = field(default_factory=list)
    parameters: dict[str, Any] = field(default_factory=dict)
    scheduled_time: Optional[datetime] = None
    cron_expression: Optional[str] = None
    priority: Optional[int] = None
    max_retries: Optional[int] = None


@dataclass(slots=True)
class TaskService:
    repository: TaskRepository
    records: ExecutionRepository
    scripts: ScriptRepository
    policy: EligibilityPolicy = field(default_factory=EligibilityPolicy)

    @classmethod
    def with_session(cls, session: AsyncSession, policy: EligibilityPolicy | None = None) -> "TaskService":
        return cls(
            SqlTaskRepository(session),
            SqlExecutionRepository(session),
            SqlScriptRepository(session),
            policy or EligibilityPolicy(),
        )

    async def create_task(self, data: TaskCreateInput, now: Optional[datetime] = None) -> Task:
        now = now or utcnow()
        script = await self.scripts.get_by_id(data.script_id)
        if script is None or not script.valid:
            raise ScriptUnavailableError(f"script {data.script_id} is not available")

        scheduled_time, cron_expression = self._schedule_for(data, now)
        target_group_id, target_device_ids = self._targets_for(data)

        model = await self.repository.create_task(
            name=data.name,
            description=data.description,
            script_id=data.script_id,
            task_type=data.task_type.value,
            target_type=data.target_type.value,
            target_group_id=target_group_id,
            target_device_ids=target_device_ids,
            parameters=data.parameters,
            scheduled_time=scheduled_time,
            cron_expression=cron_expression,
            priority=data.priority if data.priority is not None else script.priority,
            max_retries=data.max_retries if data.max_retries is not None else script.max_retries,
        )
        return self._to_domain(model)

    async def get_task(self, task_id: str) -> Task:
        model = await self.repository.get_task(task_id)
        if model is None:
            raise TaskNotFoundError(task_id)
        return self._to_domain(model)

    async def list_tasks(
        self, *, status: Optional[TaskStatus] = None, limit: int = 50, offset: int = 0
    ) -> TaskSummary:
        models, total = await self.repository.list_tasks(
            status=status.value if status else None, limit=limit, offset=offset
        )
        return TaskSummary(total=total, tasks=[self._to_domain(model) for model in models])

    async def list_executions(self, task_id: str, run_number: Optional[int] = None) -> list[ExecutionRecord]:
        await self.get_task(task_id)
        models = await self.records.list_for_task(task_id, run_number=run_number)
        return [ExecutionRecord.from_orm(model) for model in models]

    async def execution_stats(self, task_id: str) -> ExecutionStats:
        await self.get_task(task_id)
        return ExecutionStats.from_counts(await self.records.count_by_status(task_id))

    async def statistics(self, now: Optional[datetime] = None) -> TaskStatistics:
        now = now or utcnow()
        by_status = await self.repository.count_by_status()
        return TaskStatistics(
            total=sum(by_status.values()),
            by_status=by_status,
            by_type=await self.repository.count_by_type(),
            created_today=await self.repository.count_created_since(datetime.combine(now.date(), time.min)),
            active_recurring=await self.repository.count_active_recurring(),
        )

    async def retry_task(self, task_id: str, now: Optional[datetime] = None) -> Task:
        """Manually re-queue a Failed task for a fresh run."""
        now = now or utcnow()
        task = await self.get_task(task_id)
        if task.status is not TaskStatus.FAILED:
            raise TaskNotRetryableError(f"task {task_id} is {task.status.value}, only failed tasks can be retried")

        script = await self.scripts.get_by_id(task.script_id)
        if script is None or not script.valid:
            raise ScriptUnavailableError(f"script {task.script_id} is not available")
        if not self.policy.is_retryable(task.retry_count, min(script.max_retries, task.max_retries)):
            raise TaskNotRetryableError(f"task {task_id} exhausted its retries ({task.retry_count})")

        scheduled_time = None if task.task_type is TaskType.IMMEDIATE else now
        if not await self.repository.reset_for_retry(task_id, scheduled_time=scheduled_time):
            raise TaskNotRetryableError(f"task {task_id} changed state, retry rejected")
        return await self.get_task(task_id)

    @staticmethod
    def _schedule_for(data: TaskCreateInput, now: datetime) -> tuple[Optional[datetime], Optional[str]]:
        if data.task_type is TaskType.IMMEDIATE:
            if data.cron_expression:
                raise InvalidTaskError("cron expression is only allowed for recurring tasks")
            return None, None
        if data.task_type is TaskType.SCHEDULED:
            if data.scheduled_time is None:
                raise InvalidTaskError("scheduled tasks require scheduled_time")
            if data.cron_expression:
                raise InvalidTaskError("cron expression is only allowed for recurring tasks")
            return data.scheduled_time, None
        cron_expression = data.cron_expression
        if cron_expression is None or not is_valid_cron(cron_expression):
            raise InvalidTaskError(f"invalid cron expression: {cron_expression!r}")
        return data.scheduled_time or next_due_time(cron_expression, now), cron_expression

    @staticmethod
    def _targets_for(data: TaskCreateInput) -> tuple[Optional[str], Optional[list[str]]]:
        if data.target_type is TargetType.GROUP:
            if not data.target_group_id:
                raise InvalidTaskError("group target requires target_group_id")
            return data.target_group_id, None
        if data.target_type is TargetType.SPECIFIC:
            device_ids = [device_id for device_id in data.target_device_ids if device_id]
            if not device_ids:
                raise InvalidTaskError("specific target requires at least one device id")
            return None, device_ids
        return None, None

    @staticmethod
    def _to_domain(model: TaskModel) -> Task:
        return Task.from_orm(model)
