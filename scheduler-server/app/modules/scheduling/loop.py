"""Periodic scheduler driver.

Each tick runs, in order: deferred cancellations, expiration of overdue
scheduled tasks, dispatch of due tasks, delivery of pending records of running
tasks, the timeout sweep and (every ``housekeeping_every`` ticks) the purge of
old records. A failing step is logged and the remaining steps still run.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.clock import utcnow
from app.core.config import SchedulerSettings
from app.infrastructure.database.repositories.execution_repository import SqlExecutionRepository
from app.infrastructure.database.repositories.task_repository import SqlTaskRepository
from app.modules.executions.tracker import ExecutionTracker

from .cancellation import CancellationHandler
from .dispatcher import TaskDispatcher
from .eligibility import EligibilityEvaluator
from .exceptions import TargetResolutionError

logger = logging.getLogger(__name__)

EXPIRED_REASON = "expired"


@dataclass(slots=True)
class TickReport:
    started_at: datetime
    cancelled: int = 0
    expired: int = 0
    dispatched: int = 0
    failed: int = 0
    skipped: int = 0
    delivered: int = 0
    timed_out: int = 0
    purged_records: int = 0
    purged_tasks: int = 0
    errors: list[str] = field(default_factory=list)


class SchedulerLoop:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        evaluator: EligibilityEvaluator,
        dispatcher: TaskDispatcher,
        tracker: ExecutionTracker,
        cancellation: CancellationHandler,
        settings: SchedulerSettings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._evaluator = evaluator
        self._dispatcher = dispatcher
        self._tracker = tracker
        self._cancellation = cancellation
        self._settings = settings or SchedulerSettings()
        self._task: asyncio.Task | None = None
        self._running = False
        self._ticks = 0

    @property
    def is_running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="task-scheduler")
        logger.info("调度循环已启动, 间隔 %.1fs", self._settings.tick_interval)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("调度循环已停止")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except Exception:  # pylint: disable=broad-except
                logger.exception("调度循环执行失败")
            await asyncio.sleep(self._settings.tick_interval)

    async def tick(self, now: Optional[datetime] = None) -> TickReport:
        now = now or utcnow()
        report = TickReport(started_at=now)
        self._ticks += 1

        await self._step(report, "cancel", self._apply_cancellations(report, now))
        await self._step(report, "dispatch", self._dispatch_due(report, now))
        await self._step(report, "deliver", self._deliver_pending(report, now))
        await self._step(report, "timeouts", self._sweep_timeouts(report, now))
        if self._ticks % self._settings.housekeeping_every == 0:
            await self._step(report, "housekeeping", self.purge(now, report))

        if report.dispatched or report.expired or report.timed_out or report.errors:
            logger.info(
                "调度轮次完成: 派发 %s, 过期 %s, 超时 %s, 错误 %s",
                report.dispatched,
                report.expired,
                report.timed_out,
                len(report.errors),
            )
        return report

    async def _step(self, report: TickReport, name: str, coro) -> None:
        try:
            await coro
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("调度步骤 %s 失败", name)
            report.errors.append(f"{name}: {exc}")

    async def _apply_cancellations(self, report: TickReport, now: datetime) -> None:
        report.cancelled = await self._cancellation.apply_deferred(now, limit=self._settings.batch_size)

    async def _dispatch_due(self, report: TickReport, now: datetime) -> None:
        selection = await self._evaluator.evaluate(now, limit=self._settings.batch_size)

        for task in selection.expired:
            async with self._session_factory() as session:
                expired = await SqlTaskRepository(session).mark_failed(task.id, reason=EXPIRED_REASON, now=now)
                await session.commit()
            if expired:
                report.expired += 1
                logger.warning("定时任务 %s 已过期 (计划时间 %s)", task.id, task.scheduled_time)

        for task in selection.due:
            try:
                result = await self._dispatcher.dispatch_task(task.id, now)
            except TargetResolutionError as exc:
                report.failed += 1
                report.errors.append(f"{task.id}: {exc}")
                continue
            if result.status == "dispatched":
                report.dispatched += 1
            elif result.status == "failed":
                report.failed += 1
            else:
                report.skipped += 1

    async def _deliver_pending(self, report: TickReport, now: datetime) -> None:
        report.delivered = await self._dispatcher.deliver_due(now, limit=self._settings.batch_size)

    async def _sweep_timeouts(self, report: TickReport, now: datetime) -> None:
        report.timed_out = await self._tracker.sweep_timeouts(now)

    async def purge(self, now: Optional[datetime] = None, report: TickReport | None = None) -> tuple[int, int]:
        """Delete finished tasks and terminal records older than the retention window."""
        now = now or utcnow()
        threshold = now - timedelta(days=self._settings.retention_days)
        async with self._session_factory() as session:
            tasks = await SqlTaskRepository(session).delete_finished_before(threshold)
            records = await SqlExecutionRepository(session).delete_older_than(threshold)
            await session.commit()
        if tasks or records:
            logger.info("清理过期数据: 任务 %s, 执行记录 %s", tasks, records)
        if report is not None:
            report.purged_tasks = tasks
            report.purged_records = records
        return tasks, records
