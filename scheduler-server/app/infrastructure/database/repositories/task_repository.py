"""SQLAlchemy implementation for TaskRepository.

Status changes are issued as guarded ``UPDATE ... WHERE status IN (...)``
statements; callers inspect the returned flag to learn whether their
transition won.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable, Sequence

from sqlalchemy import case, delete, desc, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import Script as ScriptModel
from app.db.models import ScriptExecutionRecord as RecordModel
from app.db.models import Task as TaskModel
from app.modules.tasks.models import TERMINAL_TASK_STATUSES, TaskStatus, TaskType, sources_of

_TERMINAL = tuple(status.value for status in TERMINAL_TASK_STATUSES)


def _from(target: TaskStatus) -> list[str]:
    return sorted(status.value for status in sources_of(target))


class SqlTaskRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create_task(
        self,
        *,
        name: str,
        script_id: str,
        task_type: str,
        target_type: str,
        priority: int,
        max_retries: int,
        description: str | None = None,
        target_group_id: str | None = None,
        target_device_ids: Sequence[str] | None = None,
        parameters: dict[str, Any] | None = None,
        scheduled_time: datetime | None = None,
        cron_expression: str | None = None,
        valid: bool = True,
        created_at: datetime | None = None,
    ) -> TaskModel:
        task = TaskModel(
            name=name,
            description=description,
            script_id=script_id,
            task_type=task_type,
            status=TaskStatus.PENDING.value,
            target_type=target_type,
            target_group_id=target_group_id,
            target_device_ids=json.dumps(list(target_device_ids)) if target_device_ids is not None else None,
            parameters=json.dumps(parameters or {}),
            scheduled_time=scheduled_time,
            cron_expression=cron_expression,
            priority=priority,
            max_retries=max_retries,
            valid=valid,
        )
        if created_at is not None:
            task.created_at = created_at
        self.session.add(task)
        await self.session.flush()
        await self.session.refresh(task)
        return task

    async def get_task(self, task_id: str) -> TaskModel | None:
        stmt = (
            select(TaskModel)
            .where(TaskModel.id == task_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def list_tasks(
        self, *, status: str | None, limit: int, offset: int
    ) -> tuple[Sequence[TaskModel], int]:
        stmt = select(TaskModel).order_by(desc(TaskModel.created_at))
        count_stmt = select(func.count(TaskModel.id))
        if status:
            stmt = stmt.where(TaskModel.status == status)
            count_stmt = count_stmt.where(TaskModel.status == status)
        stmt = stmt.offset(offset).limit(limit)
        result = await self.session.execute(stmt)
        total = (await self.session.execute(count_stmt)).scalar() or 0
        return result.scalars().all(), int(total)

    async def list_due_candidates(self, now: datetime, limit: int) -> Sequence[TaskModel]:
        """Pending, valid tasks of valid scripts whose due time has come."""
        stmt = (
            select(TaskModel)
            .join(ScriptModel, ScriptModel.id == TaskModel.script_id)
            .where(
                TaskModel.status == TaskStatus.PENDING.value,
                TaskModel.valid.is_(True),
                TaskModel.cancel_requested.is_(False),
                ScriptModel.valid.is_(True),
                (TaskModel.task_type == TaskType.IMMEDIATE.value)
                | (
                    TaskModel.task_type.in_([TaskType.SCHEDULED.value, TaskType.RECURRING.value])
                    & TaskModel.scheduled_time.is_not(None)
                    & (TaskModel.scheduled_time <= now)
                ),
            )
            .order_by(desc(TaskModel.priority), TaskModel.created_at.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_failed_with_script_limits(self, limit: int) -> Sequence[tuple[TaskModel, int]]:
        stmt = (
            select(TaskModel, ScriptModel.max_retries)
            .join(ScriptModel, ScriptModel.id == TaskModel.script_id)
            .where(TaskModel.status == TaskStatus.FAILED.value, TaskModel.valid.is_(True))
            .order_by(desc(TaskModel.priority), TaskModel.created_at.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [(row[0], int(row[1])) for row in result.all()]

    async def list_cancel_requested(self, limit: int) -> list[str]:
        stmt = (
            select(TaskModel.id)
            .where(TaskModel.cancel_requested.is_(True))
            .order_by(TaskModel.created_at.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def start_run(
        self, task_id: str, *, run_number: int, total_devices: int, now: datetime
    ) -> bool:
        stmt = (
            update(TaskModel)
            .where(TaskModel.id == task_id, TaskModel.status.in_(_from(TaskStatus.RUNNING)))
            .values(
                status=TaskStatus.RUNNING.value,
                run_number=run_number,
                total_devices=total_devices,
                success_devices=0,
                failed_devices=0,
                start_time=now,
                end_time=None,
                failure_reason=None,
            )
            .execution_options(synchronize_session=False)
        )
        return await self._won(stmt)

    async def mark_failed(
        self,
        task_id: str,
        *,
        reason: str,
        now: datetime,
        from_statuses: Iterable[TaskStatus] = (TaskStatus.PENDING,),
    ) -> bool:
        stmt = (
            update(TaskModel)
            .where(
                TaskModel.id == task_id,
                TaskModel.status.in_(
                    [status.value for status in from_statuses if status in sources_of(TaskStatus.FAILED)]
                ),
            )
            .values(
                status=TaskStatus.FAILED.value,
                last_run_status=TaskStatus.FAILED.value,
                failure_reason=reason,
                end_time=now,
            )
            .execution_options(synchronize_session=False)
        )
        return await self._won(stmt)

    async def increment_outcome(self, task_id: str, *, run_number: int, success: bool) -> bool:
        column = TaskModel.success_devices if success else TaskModel.failed_devices
        stmt = (
            update(TaskModel)
            .where(
                TaskModel.id == task_id,
                TaskModel.status == TaskStatus.RUNNING.value,
                TaskModel.run_number == run_number,
                (TaskModel.success_devices + TaskModel.failed_devices) < TaskModel.total_devices,
            )
            .values({column: column + 1})
            .execution_options(synchronize_session=False)
        )
        return await self._won(stmt)

    async def complete_if_finished(self, task_id: str, *, run_number: int, now: datetime) -> bool:
        outcome = case(
            (TaskModel.failed_devices == 0, TaskStatus.COMPLETED.value),
            else_=TaskStatus.FAILED.value,
        )
        stmt = (
            update(TaskModel)
            .where(
                TaskModel.id == task_id,
                TaskModel.status == TaskStatus.RUNNING.value,
                TaskModel.run_number == run_number,
                TaskModel.total_devices > 0,
                (TaskModel.success_devices + TaskModel.failed_devices) == TaskModel.total_devices,
            )
            .values(status=outcome, last_run_status=outcome, end_time=now)
            .execution_options(synchronize_session=False)
        )
        return await self._won(stmt)

    async def rearm_recurring(self, task_id: str, *, next_due: datetime, now: datetime) -> bool:
        stmt = (
            update(TaskModel)
            .where(
                TaskModel.id == task_id,
                TaskModel.task_type == TaskType.RECURRING.value,
                TaskModel.status.in_(_from(TaskStatus.PENDING)),
            )
            .values(
                status=TaskStatus.PENDING.value,
                scheduled_time=next_due,
                last_execution_time=now,
            )
            .execution_options(synchronize_session=False)
        )
        return await self._won(stmt)

    async def request_cancel(self, task_id: str) -> bool:
        stmt = (
            update(TaskModel)
            .where(TaskModel.id == task_id, TaskModel.status.in_(_from(TaskStatus.CANCELLED)))
            .values(cancel_requested=True)
            .execution_options(synchronize_session=False)
        )
        return await self._won(stmt)

    async def clear_cancel_request(self, task_id: str) -> None:
        stmt = (
            update(TaskModel)
            .where(TaskModel.id == task_id)
            .values(cancel_requested=False)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def cancel(self, task_id: str, *, now: datetime) -> bool:
        stmt = (
            update(TaskModel)
            .where(TaskModel.id == task_id, TaskModel.status.in_(_from(TaskStatus.CANCELLED)))
            .values(
                status=TaskStatus.CANCELLED.value,
                last_run_status=TaskStatus.CANCELLED.value,
                end_time=now,
                cancel_requested=False,
            )
            .execution_options(synchronize_session=False)
        )
        return await self._won(stmt)

    async def reset_for_retry(
        self, task_id: str, *, scheduled_time: datetime | None
    ) -> bool:
        values: dict[str, Any] = {
            "status": TaskStatus.PENDING.value,
            "retry_count": TaskModel.retry_count + 1,
            "failure_reason": None,
            "end_time": None,
        }
        if scheduled_time is not None:
            values["scheduled_time"] = scheduled_time
        stmt = (
            update(TaskModel)
            .where(TaskModel.id == task_id, TaskModel.status == TaskStatus.FAILED.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return await self._won(stmt)

    async def count_by_status(self) -> dict[str, int]:
        stmt = select(TaskModel.status, func.count(TaskModel.id)).group_by(TaskModel.status)
        result = await self.session.execute(stmt)
        return {status: int(count) for status, count in result.all()}

    async def count_by_type(self) -> dict[str, int]:
        stmt = select(TaskModel.task_type, func.count(TaskModel.id)).group_by(TaskModel.task_type)
        result = await self.session.execute(stmt)
        return {task_type: int(count) for task_type, count in result.all()}

    async def count_created_since(self, since: datetime) -> int:
        stmt = select(func.count(TaskModel.id)).where(TaskModel.created_at >= since)
        return int((await self.session.execute(stmt)).scalar() or 0)

    async def count_active_recurring(self) -> int:
        stmt = select(func.count(TaskModel.id)).where(
            TaskModel.task_type == TaskType.RECURRING.value,
            TaskModel.valid.is_(True),
            TaskModel.status != TaskStatus.CANCELLED.value,
        )
        return int((await self.session.execute(stmt)).scalar() or 0)

    async def delete_finished_before(self, threshold: datetime) -> int:
        """Remove finished one-shot tasks (and their records) that ended before ``threshold``."""
        stmt = select(TaskModel.id).where(
            TaskModel.status.in_(_TERMINAL),
            TaskModel.task_type != TaskType.RECURRING.value,
            TaskModel.end_time.is_not(None),
            TaskModel.end_time < threshold,
        )
        task_ids = list((await self.session.execute(stmt)).scalars().all())
        if not task_ids:
            return 0
        await self.session.execute(
            delete(RecordModel)
            .where(RecordModel.task_id.in_(task_ids))
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(
            delete(TaskModel)
            .where(TaskModel.id.in_(task_ids))
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    async def _won(self, stmt) -> bool:
        result = await self.session.execute(stmt)
        return (result.rowcount or 0) > 0
