"""Applies execution results to records and folds them into task aggregates.

Record transitions are compare-and-set on the record's current status, so a
result, a timeout and a cancellation racing for the same record resolve to a
single winner. Task counters are incremented in SQL, guarded by the task
still running the same run and the counters staying within ``total_devices``.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.clock import utcnow
from app.db.models import ScriptExecutionRecord as RecordModel
from app.infrastructure.database.repositories.execution_repository import SqlExecutionRepository
from app.infrastructure.database.repositories.script_repository import SqlScriptRepository
from app.infrastructure.database.repositories.task_repository import SqlTaskRepository
from app.modules.scheduling.eligibility import EligibilityPolicy
from app.modules.scheduling.exceptions import DuplicateResultError
from app.modules.scheduling.recurrence import rearm_if_recurring
from app.modules.tasks.models import Task, TaskStatus

from .models import (
    ExecutionOutcome,
    ExecutionRecord,
    ExecutionStatus,
    can_transition,
    generate_instruction_id,
)

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_MESSAGE = "script execution failed"
TIMEOUT_MESSAGE = "execution timed out"


class ExecutionTracker:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        policy: EligibilityPolicy | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.policy = policy or EligibilityPolicy()

    async def mark_running(self, instruction_id: str, now: Optional[datetime] = None) -> bool:
        """Delivery acknowledged: Pending -> Running."""
        now = now or utcnow()
        async with self._session_factory() as session:
            moved = await SqlExecutionRepository(session).mark_running(instruction_id, now=now)
            await session.commit()
        return moved

    async def on_result(
        self,
        instruction_id: str,
        outcome: ExecutionOutcome,
        *,
        error_message: Optional[str] = None,
        output: Optional[str] = None,
        device_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ExecutionRecord | None:
        """Apply a device result.

        Returns the updated record, or ``None`` when the instruction is
        unknown, belongs to another device, or the record was already
        terminal (duplicate results are logged and dropped).
        """
        now = now or utcnow()
        status = outcome.status
        if status is ExecutionStatus.FAILED and not error_message:
            error_message = TIMEOUT_MESSAGE if outcome is ExecutionOutcome.TIMEOUT else DEFAULT_FAILURE_MESSAGE

        retry_instruction: str | None = None
        async with self._session_factory() as session:
            records = SqlExecutionRepository(session)
            record = await records.get_by_instruction(instruction_id)
            if record is None:
                logger.warning("收到未知指令 %s 的执行结果", instruction_id)
                return None
            if device_id is not None and record.device_id != device_id:
                logger.warning("设备 %s 试图上报不属于自己的指令 %s", device_id, instruction_id)
                return None

            try:
                await self._finish(records, record, status, now, error_message, output)
            except DuplicateResultError as exc:
                logger.info("忽略重复结果: %s", exc)
                await session.rollback()
                return None

            if record.task_id is not None:
                retry_instruction = await self._settle(session, record, status, now)
            await session.commit()
            updated = await records.get_by_instruction(instruction_id)

        if retry_instruction is not None:
            await self._discard_retry_if_task_closed(retry_instruction, now)
        return ExecutionRecord.from_orm(updated) if updated is not None else None

    async def record_delivery_failure(
        self, instruction_id: str, reason: str, now: Optional[datetime] = None
    ) -> ExecutionRecord | None:
        return await self.on_result(
            instruction_id,
            ExecutionOutcome.FAILURE,
            error_message=f"delivery failed: {reason}",
            now=now,
        )

    async def sweep_timeouts(self, now: Optional[datetime] = None, limit: int = 500) -> int:
        """Fail Running records that outlived their script's timeout window."""
        now = now or utcnow()
        async with self._session_factory() as session:
            rows = await SqlExecutionRepository(session).list_running_with_timeout(limit)
        overdue = [
            record.instruction_id
            for record, timeout in rows
            if record.start_time is not None and record.start_time + timedelta(seconds=timeout) <= now
        ]
        applied = 0
        for instruction_id in overdue:
            if await self.on_result(instruction_id, ExecutionOutcome.TIMEOUT, now=now) is not None:
                applied += 1
        if applied:
            logger.info("超时扫描: %s 条执行记录标记为失败", applied)
        return applied

    @staticmethod
    async def _finish(
        records: SqlExecutionRepository,
        record: RecordModel,
        status: ExecutionStatus,
        now: datetime,
        error_message: Optional[str],
        output: Optional[str],
    ) -> None:
        if not can_transition(ExecutionStatus(record.status), status) or not await records.finish(
            record, status=status, now=now, error_message=error_message, output=output
        ):
            raise DuplicateResultError(
                f"instruction {record.instruction_id} already terminal ({record.status})"
            )

    async def _settle(
        self,
        session: AsyncSession,
        record: RecordModel,
        status: ExecutionStatus,
        now: datetime,
    ) -> str | None:
        """Retry or count a freshly terminal record; returns a new retry instruction id."""
        tasks = SqlTaskRepository(session)
        task_model = await tasks.get_task(record.task_id)
        if task_model is None:
            return None
        task = Task.from_orm(task_model)

        if (
            status is ExecutionStatus.FAILED
            and task.status is TaskStatus.RUNNING
            and record.run_number == task.run_number
        ):
            script = await SqlScriptRepository(session).get_by_id(record.script_id)
            script_max_retries = script.max_retries if script is not None else 0
            if self.policy.is_retryable(record.retry_count or 0, script_max_retries):
                return await self._schedule_retry(session, record, now)

        counted = await tasks.increment_outcome(
            task.id, run_number=record.run_number, success=status is ExecutionStatus.SUCCESS
        )
        if not counted:
            logger.debug("任务 %s 不在运行中，记录 %s 不计入统计", task.id, record.id)
            return None

        if await tasks.complete_if_finished(task.id, run_number=record.run_number, now=now):
            finished = await tasks.get_task(task.id)
            if finished is not None:
                finished_task = Task.from_orm(finished)
                logger.info(
                    "任务 %s 第 %s 轮结束: %s (成功 %s, 失败 %s, 共 %s)",
                    task.id,
                    finished_task.run_number,
                    finished_task.status.value,
                    finished_task.success_devices,
                    finished_task.failed_devices,
                    finished_task.total_devices,
                )
                await rearm_if_recurring(tasks, finished_task, now)
        return None

    async def _schedule_retry(self, session: AsyncSession, record: RecordModel, now: datetime) -> str:
        retry_count = (record.retry_count or 0) + 1
        try:
            parameters = json.loads(record.parameters) if record.parameters else {}
        except json.JSONDecodeError:
            parameters = {}
        retry = await SqlExecutionRepository(session).create_record(
            task_id=record.task_id,
            script_id=record.script_id,
            device_id=record.device_id,
            run_number=record.run_number,
            instruction_id=generate_instruction_id(),
            available_at=now + self.policy.retry_delay(record.retry_count or 0),
            retry_count=retry_count,
            parameters=parameters,
        )
        logger.info(
            "设备 %s 执行任务 %s 失败，安排第 %s 次重试 (%s)",
            record.device_id,
            record.task_id,
            retry_count,
            retry.instruction_id,
        )
        return retry.instruction_id

    async def _discard_retry_if_task_closed(self, instruction_id: str, now: datetime) -> None:
        # a cancellation may have committed between our read of the task and our commit
        async with self._session_factory() as session:
            records = SqlExecutionRepository(session)
            retry = await records.get_by_instruction(instruction_id)
            if retry is None or retry.task_id is None:
                return
            task = await SqlTaskRepository(session).get_task(retry.task_id)
            if task is not None and TaskStatus(task.status) is TaskStatus.RUNNING:
                return
            await records.cancel_open([retry.id], now=now)
            await session.commit()
