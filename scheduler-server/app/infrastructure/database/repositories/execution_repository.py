"""SQLAlchemy implementation for ExecutionRepository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import Script as ScriptModel
from app.db.models import ScriptExecutionRecord as RecordModel
from app.db.models import Task as TaskModel
from app.modules.executions.models import (
    OPEN_EXECUTION_STATUSES,
    TERMINAL_EXECUTION_STATUSES,
    ExecutionStatus,
    sources_of,
)
from app.modules.tasks.models import TaskStatus

_OPEN = tuple(status.value for status in OPEN_EXECUTION_STATUSES)
_TERMINAL = tuple(status.value for status in TERMINAL_EXECUTION_STATUSES)


def _from(target: ExecutionStatus) -> list[str]:
    return sorted(status.value for status in sources_of(target))


class SqlExecutionRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create_record(
        self,
        *,
        task_id: str | None,
        script_id: str,
        device_id: str,
        run_number: int,
        instruction_id: str,
        available_at: datetime,
        retry_count: int = 0,
        parameters: dict[str, Any] | None = None,
    ) -> RecordModel:
        record = RecordModel(
            task_id=task_id,
            script_id=script_id,
            device_id=device_id,
            run_number=run_number,
            status=ExecutionStatus.PENDING.value,
            retry_count=retry_count,
            instruction_id=instruction_id,
            parameters=json.dumps(parameters or {}),
            available_at=available_at,
        )
        self.session.add(record)
        await self.session.flush()
        return record

    async def get_by_instruction(self, instruction_id: str) -> RecordModel | None:
        stmt = (
            select(RecordModel)
            .where(RecordModel.instruction_id == instruction_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def list_for_task(
        self,
        task_id: str,
        *,
        run_number: int | None = None,
        device_id: str | None = None,
        status: str | None = None,
    ) -> Sequence[RecordModel]:
        stmt = select(RecordModel).where(RecordModel.task_id == task_id)
        if run_number is not None:
            stmt = stmt.where(RecordModel.run_number == run_number)
        if device_id is not None:
            stmt = stmt.where(RecordModel.device_id == device_id)
        if status is not None:
            stmt = stmt.where(RecordModel.status == status)
        stmt = stmt.order_by(
            RecordModel.run_number.asc(), RecordModel.created_at.asc(), RecordModel.retry_count.asc()
        ).execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def device_ids_for_run(self, task_id: str, run_number: int) -> set[str]:
        stmt = select(RecordModel.device_id).where(
            RecordModel.task_id == task_id, RecordModel.run_number == run_number
        )
        result = await self.session.execute(stmt)
        return set(result.scalars().all())

    async def count_devices_in_run(self, task_id: str, run_number: int) -> int:
        stmt = select(func.count(func.distinct(RecordModel.device_id))).where(
            RecordModel.task_id == task_id, RecordModel.run_number == run_number
        )
        return int((await self.session.execute(stmt)).scalar() or 0)

    async def list_deliverable(self, task_id: str, now: datetime) -> Sequence[RecordModel]:
        stmt = (
            select(RecordModel)
            .where(
                RecordModel.task_id == task_id,
                RecordModel.status == ExecutionStatus.PENDING.value,
                RecordModel.available_at <= now,
            )
            .order_by(RecordModel.created_at.asc())
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_tasks_with_deliverable(self, now: datetime, limit: int) -> list[str]:
        """Running tasks that still hold Pending records ready for delivery."""
        stmt = (
            select(RecordModel.task_id)
            .join(TaskModel, TaskModel.id == RecordModel.task_id)
            .where(
                TaskModel.status == TaskStatus.RUNNING.value,
                RecordModel.status == ExecutionStatus.PENDING.value,
                RecordModel.available_at <= now,
            )
            .group_by(RecordModel.task_id)
            .order_by(func.min(RecordModel.available_at))
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [task_id for task_id in result.scalars().all() if task_id is not None]

    async def list_running_with_timeout(self, limit: int) -> Sequence[tuple[RecordModel, int]]:
        stmt = (
            select(RecordModel, ScriptModel.timeout)
            .join(ScriptModel, ScriptModel.id == RecordModel.script_id)
            .where(
                RecordModel.status == ExecutionStatus.RUNNING.value,
                RecordModel.start_time.is_not(None),
            )
            .order_by(RecordModel.start_time.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [(row[0], int(row[1])) for row in result.all()]

    async def mark_running(self, instruction_id: str, *, now: datetime) -> bool:
        stmt = (
            update(RecordModel)
            .where(
                RecordModel.instruction_id == instruction_id,
                RecordModel.status.in_(_from(ExecutionStatus.RUNNING)),
            )
            .values(status=ExecutionStatus.RUNNING.value, start_time=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return (result.rowcount or 0) > 0

    async def finish(
        self,
        record: RecordModel,
        *,
        status: ExecutionStatus,
        now: datetime,
        error_message: str | None,
        output: str | None,
    ) -> bool:
        """Move an open record into ``status``; returns False if it was already terminal."""
        started = record.start_time or now
        stmt = (
            update(RecordModel)
            .where(RecordModel.id == record.id, RecordModel.status.in_(_from(status)))
            .values(
                status=status.value,
                start_time=started,
                end_time=now,
                duration=max((now - started).total_seconds(), 0.0),
                error_message=error_message if status is ExecutionStatus.FAILED else None,
                output=output,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return (result.rowcount or 0) > 0

    async def cancel_open(self, record_ids: Iterable[str], *, now: datetime) -> int:
        ids = list(record_ids)
        if not ids:
            return 0
        stmt = (
            update(RecordModel)
            .where(RecordModel.id.in_(ids), RecordModel.status.in_(_from(ExecutionStatus.CANCELLED)))
            .values(status=ExecutionStatus.CANCELLED.value, end_time=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return int(result.rowcount or 0)

    async def list_open_for_task(self, task_id: str) -> Sequence[RecordModel]:
        stmt = (
            select(RecordModel)
            .where(RecordModel.task_id == task_id, RecordModel.status.in_(_OPEN))
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def count_by_status(self, task_id: str) -> dict[str, int]:
        stmt = (
            select(RecordModel.status, func.count(RecordModel.id))
            .where(RecordModel.task_id == task_id)
            .group_by(RecordModel.status)
        )
        result = await self.session.execute(stmt)
        return {status: int(count) for status, count in result.all()}

    async def delete_older_than(self, threshold: datetime) -> int:
        """Purge terminal records created before ``threshold``.

        Only the current run of a running task is kept, since its records
        still feed the task counters; earlier runs of recurring tasks go.
        """
        current_run = (
            select(TaskModel.id)
            .where(
                TaskModel.id == RecordModel.task_id,
                TaskModel.status == TaskStatus.RUNNING.value,
                TaskModel.run_number == RecordModel.run_number,
            )
            .correlate(RecordModel)
            .exists()
        )
        stmt = (
            delete(RecordModel)
            .where(
                RecordModel.status.in_(_TERMINAL),
                RecordModel.created_at < threshold,
                ~current_run,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return int(result.rowcount or 0)
