"""Task cancellation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.clock import utcnow
from app.infrastructure.database.repositories.execution_repository import SqlExecutionRepository
from app.infrastructure.database.repositories.task_repository import SqlTaskRepository
from app.infrastructure.locks import LockKey, LockManager
from app.modules.executions.models import ExecutionRecord, ExecutionStatus, generate_instruction_id
from app.modules.tasks.exceptions import TaskNotFoundError
from app.modules.tasks.models import TaskStatus

from .delivery import DeliveryChannel, build_stop_payload
from .exceptions import ConcurrentTransitionConflict, DeliveryError

logger = logging.getLogger(__name__)

CANCEL_REASON = "task cancelled"


@dataclass(slots=True)
class CancellationResult:
    task_id: str
    cancelled: bool
    deferred: bool = False
    records_cancelled: int = 0
    status: Optional[str] = None
    stopped_devices: list[str] = field(default_factory=list)


class CancellationHandler:
    """Cancels a task and every open record of it in one transaction.

    Takes the same per-task lock as the dispatcher. If the lock stays busy for
    ``lock_wait`` seconds the task is flagged and the scheduler loop applies
    the cancellation on its next tick.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: LockManager,
        channel: DeliveryChannel | None = None,
        *,
        lock_wait: float = 5.0,
    ) -> None:
        self._session_factory = session_factory
        self._locks = locks
        self._channel = channel
        self._lock_wait = lock_wait

    async def cancel(
        self, task_id: str, now: Optional[datetime] = None, *, wait: Optional[float] = None
    ) -> CancellationResult:
        now = now or utcnow()
        wait = self._lock_wait if wait is None else wait
        try:
            async with self._locks.hold(LockKey.for_task(task_id), wait=wait):
                result, running = await self._cancel_locked(task_id, now)
        except ConcurrentTransitionConflict as exc:
            return await self._defer(task_id, exc)

        if running:
            result.stopped_devices = await self._stop_devices(running)
        return result

    async def apply_deferred(self, now: Optional[datetime] = None, limit: int = 100) -> int:
        """Retry cancellations that were deferred because of lock contention."""
        now = now or utcnow()
        async with self._session_factory() as session:
            task_ids = await SqlTaskRepository(session).list_cancel_requested(limit)
        applied = 0
        for task_id in task_ids:
            try:
                result = await self.cancel(task_id, now, wait=0)
            except TaskNotFoundError:
                continue
            if result.cancelled:
                applied += 1
        return applied

    async def _cancel_locked(
        self, task_id: str, now: datetime
    ) -> tuple[CancellationResult, list[ExecutionRecord]]:
        async with self._session_factory() as session:
            tasks = SqlTaskRepository(session)
            records = SqlExecutionRepository(session)
            model = await tasks.get_task(task_id)
            if model is None:
                raise TaskNotFoundError(task_id)

            status = TaskStatus(model.status)
            if status.is_terminal:
                if model.cancel_requested:
                    await tasks.clear_cancel_request(task_id)
                    await session.commit()
                return CancellationResult(task_id=task_id, cancelled=False, status=status.value), []

            open_records = [ExecutionRecord.from_orm(record) for record in await records.list_open_for_task(task_id)]
            cancelled_records = await records.cancel_open([record.id for record in open_records], now=now)
            if not await tasks.cancel(task_id, now=now):
                await session.rollback()
                current = await tasks.get_task(task_id)
                return (
                    CancellationResult(
                        task_id=task_id,
                        cancelled=False,
                        status=current.status if current is not None else None,
                    ),
                    [],
                )
            await session.commit()

        logger.info("任务 %s 已取消, 同时取消 %s 条执行记录", task_id, cancelled_records)
        running = [record for record in open_records if record.status is ExecutionStatus.RUNNING]
        return (
            CancellationResult(
                task_id=task_id,
                cancelled=True,
                records_cancelled=cancelled_records,
                status=TaskStatus.CANCELLED.value,
            ),
            running,
        )

    async def _defer(self, task_id: str, exc: ConcurrentTransitionConflict) -> CancellationResult:
        async with self._session_factory() as session:
            tasks = SqlTaskRepository(session)
            model = await tasks.get_task(task_id)
            if model is None:
                raise TaskNotFoundError(task_id)
            flagged = await tasks.request_cancel(task_id)
            await session.commit()
        logger.info("任务 %s 正在调度中，取消请求推迟到下一轮: %s", task_id, exc)
        return CancellationResult(
            task_id=task_id,
            cancelled=False,
            deferred=flagged,
            status=model.status,
        )

    async def _stop_devices(self, running: list[ExecutionRecord]) -> list[str]:
        if self._channel is None:
            return []
        stopped: list[str] = []
        for record in running:
            try:
                await self._channel.dispatch(
                    record.device_id,
                    generate_instruction_id(),
                    build_stop_payload(record, CANCEL_REASON),
                )
            except DeliveryError as exc:
                logger.info("通知设备 %s 停止指令 %s 失败: %s", record.device_id, record.instruction_id, exc)
                continue
            stopped.append(record.device_id)
        return stopped
