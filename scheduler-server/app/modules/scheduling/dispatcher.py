"""Dispatches due tasks: one execution record per target device, then delivery."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.clock import utcnow
from app.infrastructure.database.repositories.execution_repository import SqlExecutionRepository
from app.infrastructure.database.repositories.script_repository import SqlScriptRepository
from app.infrastructure.database.repositories.task_repository import SqlTaskRepository
from app.infrastructure.locks import LockKey, LockManager
from app.modules.devices.service import DeviceService
from app.modules.executions.models import ExecutionRecord, generate_instruction_id
from app.modules.executions.tracker import ExecutionTracker
from app.modules.scripts.models import Script
from app.modules.tasks.models import Task, TaskStatus
from app.modules.tasks.repository import TaskRepository

from .delivery import DeliveryChannel, build_execute_payload
from .exceptions import (
    ConcurrentTransitionConflict,
    DeliveryError,
    NoEligibleTargets,
    TargetResolutionError,
)
from .recurrence import rearm_if_recurring
from .resolver import DeviceDirectory, TargetResolver

logger = logging.getLogger(__name__)

NO_ELIGIBLE_TARGETS = "no eligible targets"
SCRIPT_UNAVAILABLE = "script unavailable"

DirectoryFactory = Callable[[AsyncSession], DeviceDirectory]


@dataclass(slots=True)
class DispatchResult:
    task_id: str
    status: str
    run_number: Optional[int] = None
    records_created: int = 0
    delivered: int = 0
    delivery_failures: int = 0
    reason: Optional[str] = None


class TaskDispatcher:
    """Creates per-device records for a due task and hands them to the channel.

    Everything happens under the task's lock. Records and the Pending ->
    Running transition commit together; delivery is per record afterwards, so
    a crash mid-delivery leaves Pending records that ``deliver_pending`` picks
    up on a later tick.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: LockManager,
        channel: DeliveryChannel,
        tracker: ExecutionTracker,
        *,
        directory_factory: DirectoryFactory = DeviceService.with_session,
    ) -> None:
        self._session_factory = session_factory
        self._locks = locks
        self._channel = channel
        self._tracker = tracker
        self._directory_factory = directory_factory

    async def dispatch_task(self, task_id: str, now: Optional[datetime] = None) -> DispatchResult:
        """Dispatch one task.

        Raises ``TargetResolutionError`` after marking the task Failed when its
        target group cannot be resolved.
        """
        now = now or utcnow()
        try:
            async with self._locks.hold(LockKey.for_task(task_id)):
                return await self._dispatch_locked(task_id, now)
        except ConcurrentTransitionConflict as exc:
            logger.info("任务 %s 正由其他调度处理，本轮跳过: %s", task_id, exc)
            return DispatchResult(task_id=task_id, status="locked", reason=str(exc))

    async def deliver_pending(self, task_id: str, now: Optional[datetime] = None) -> DispatchResult:
        now = now or utcnow()
        try:
            async with self._locks.hold(LockKey.for_task(task_id)):
                delivered, failures = await self._deliver(task_id, now)
        except ConcurrentTransitionConflict as exc:
            logger.debug("任务 %s 正由其他调度处理，本轮跳过投递: %s", task_id, exc)
            return DispatchResult(task_id=task_id, status="locked", reason=str(exc))
        return DispatchResult(
            task_id=task_id, status="delivered", delivered=delivered, delivery_failures=failures
        )

    async def deliver_due(self, now: Optional[datetime] = None, limit: int = 100) -> int:
        """Deliver Pending records (retries, interrupted dispatches) of Running tasks."""
        now = now or utcnow()
        async with self._session_factory() as session:
            task_ids = await SqlExecutionRepository(session).list_tasks_with_deliverable(now, limit)
        handed = 0
        for task_id in task_ids:
            result = await self.deliver_pending(task_id, now)
            handed += result.delivered + result.delivery_failures
        return handed

    async def _dispatch_locked(self, task_id: str, now: datetime) -> DispatchResult:
        async with self._session_factory() as session:
            tasks = SqlTaskRepository(session)
            model = await tasks.get_task(task_id)
            if model is None:
                return DispatchResult(task_id=task_id, status="skipped", reason="task not found")
            task = Task.from_orm(model)

            if task.status is TaskStatus.RUNNING:
                run_number = task.run_number
                created = 0
            elif task.status is not TaskStatus.PENDING or task.cancel_requested:
                return DispatchResult(task_id=task_id, status="skipped", reason=task.status.value)
            else:
                script = await SqlScriptRepository(session).get_by_id(task.script_id)
                if script is None or not script.valid:
                    await tasks.mark_failed(task.id, reason=SCRIPT_UNAVAILABLE, now=now)
                    await session.commit()
                    logger.warning("任务 %s 的脚本 %s 不可用", task.id, task.script_id)
                    return DispatchResult(task_id=task_id, status="failed", reason=SCRIPT_UNAVAILABLE)

                try:
                    targets = await self._resolve(session, task)
                except TargetResolutionError as exc:
                    await self._fail(tasks, task, str(exc), now)
                    await session.commit()
                    logger.error("任务 %s 目标解析失败: %s", task.id, exc)
                    raise
                except NoEligibleTargets as exc:
                    await self._fail(tasks, task, str(exc), now)
                    await session.commit()
                    logger.info("任务 %s 没有可执行的设备", task.id)
                    return DispatchResult(task_id=task_id, status="failed", reason=str(exc))

                run_number = task.run_number + 1
                created = await self._create_records(session, task, targets, run_number, now)
                total = await SqlExecutionRepository(session).count_devices_in_run(task.id, run_number)
                if not await tasks.start_run(task.id, run_number=run_number, total_devices=total, now=now):
                    await session.rollback()
                    return DispatchResult(task_id=task_id, status="skipped", reason="task state changed")
                await session.commit()
                logger.info(
                    "任务 %s 第 %s 轮开始执行: %s 台设备, 新建 %s 条执行记录",
                    task.id,
                    run_number,
                    total,
                    created,
                )

        delivered, failures = await self._deliver(task_id, now)
        return DispatchResult(
            task_id=task_id,
            status="dispatched",
            run_number=run_number,
            records_created=created,
            delivered=delivered,
            delivery_failures=failures,
        )

    async def _resolve(self, session: AsyncSession, task: Task) -> list[str]:
        resolver = TargetResolver(self._directory_factory(session))
        targets = await resolver.resolve(task)
        if not targets:
            raise NoEligibleTargets(NO_ELIGIBLE_TARGETS)
        return targets

    @staticmethod
    async def _fail(tasks: TaskRepository, task: Task, reason: str, now: datetime) -> None:
        if await tasks.mark_failed(task.id, reason=reason, now=now):
            failed = await tasks.get_task(task.id)
            if failed is not None:
                await rearm_if_recurring(tasks, Task.from_orm(failed), now)

    @staticmethod
    async def _create_records(
        session: AsyncSession,
        task: Task,
        targets: list[str],
        run_number: int,
        now: datetime,
    ) -> int:
        records = SqlExecutionRepository(session)
        existing = await records.device_ids_for_run(task.id, run_number)
        created = 0
        for device_id in targets:
            if device_id in existing:
                continue
            await records.create_record(
                task_id=task.id,
                script_id=task.script_id,
                device_id=device_id,
                run_number=run_number,
                instruction_id=generate_instruction_id(),
                available_at=now,
                parameters=task.parameters,
            )
            existing.add(device_id)
            created += 1
        return created

    async def _deliver(self, task_id: str, now: datetime) -> tuple[int, int]:
        async with self._session_factory() as session:
            model = await SqlTaskRepository(session).get_task(task_id)
            if model is None or TaskStatus(model.status) is not TaskStatus.RUNNING:
                return 0, 0
            task = Task.from_orm(model)
            script_model = await SqlScriptRepository(session).get_by_id(task.script_id)
            pending = [
                ExecutionRecord.from_orm(record)
                for record in await SqlExecutionRepository(session).list_deliverable(task_id, now)
            ]

        delivered = failures = 0
        for record in pending:
            if script_model is None:
                failures += 1
                await self._tracker.record_delivery_failure(record.instruction_id, SCRIPT_UNAVAILABLE, now=now)
                continue
            payload = build_execute_payload(task, Script.from_orm(script_model), record)
            try:
                await self._channel.dispatch(record.device_id, record.instruction_id, payload)
            except DeliveryError as exc:
                failures += 1
                logger.warning("指令 %s 投递到设备 %s 失败: %s", record.instruction_id, record.device_id, exc)
                await self._tracker.record_delivery_failure(record.instruction_id, str(exc), now=now)
            else:
                delivered += 1
                await self._tracker.mark_running(record.instruction_id, now=now)
        return delivered, failures
