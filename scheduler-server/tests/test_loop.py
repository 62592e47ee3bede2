"""Tests for app/modules/scheduling/loop.py"""
from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from app.core.clock import utcnow
from app.core.config import SchedulerSettings
from app.infrastructure.database.repositories import SqlTaskRepository
from app.infrastructure.locks import LockKey
from app.modules.executions.models import ExecutionOutcome, ExecutionStatus
from app.modules.scheduling.loop import EXPIRED_REASON, SchedulerLoop
from app.modules.tasks.models import TaskStatus, TaskType


@pytest.fixture
def scheduler_settings():
    return SchedulerSettings(tick_interval=0.05, housekeeping_every=1, retention_days=7)


@pytest.fixture
def scheduler_loop(session_factory, evaluator, dispatcher, tracker, cancellation, scheduler_settings):
    return SchedulerLoop(
        session_factory=session_factory,
        evaluator=evaluator,
        dispatcher=dispatcher,
        tracker=tracker,
        cancellation=cancellation,
        settings=scheduler_settings,
    )


@pytest.mark.asyncio
class TestTick:
    async def test_tick_expires_overdue_and_dispatches_due(self, seed, scheduler_loop, channel, now):
        await seed.devices("d1", "d2")
        script_id = await seed.script()
        overdue = await seed.task(script_id, task_type=TaskType.SCHEDULED, scheduled_time=now - timedelta(hours=3))
        due = await seed.task(script_id, task_type=TaskType.SCHEDULED, scheduled_time=now - timedelta(seconds=5))
        future = await seed.task(script_id, task_type=TaskType.SCHEDULED, scheduled_time=now + timedelta(hours=1))

        report = await scheduler_loop.tick(now)

        assert report.expired == 1
        assert report.dispatched == 1
        assert report.errors == []
        expired_task = await seed.get_task(overdue)
        assert expired_task.status is TaskStatus.FAILED
        assert expired_task.failure_reason == EXPIRED_REASON
        assert (await seed.get_task(due)).status is TaskStatus.RUNNING
        assert (await seed.get_task(future)).status is TaskStatus.PENDING
        assert len(channel.sent) == 2

    async def test_tick_applies_deferred_cancellation(self, seed, scheduler_loop, cancellation, locks, now):
        task_id = await seed.task(await seed.script())
        async with locks.hold(LockKey.for_task(task_id)):
            await cancellation.cancel(task_id, now, wait=0)

        report = await scheduler_loop.tick(now)

        assert report.cancelled == 1
        assert report.dispatched == 0
        assert (await seed.get_task(task_id)).status is TaskStatus.CANCELLED

    async def test_tick_times_out_and_redelivers(self, seed, scheduler_loop, dispatcher, channel, now):
        await seed.devices("d1")
        task_id = await seed.task(await seed.script(timeout=30, max_retries=1))
        await dispatcher.dispatch_task(task_id, now)

        first = await scheduler_loop.tick(now + timedelta(seconds=31))
        assert first.timed_out == 1

        second = await scheduler_loop.tick(now + timedelta(seconds=45))
        assert second.delivered == 1
        statuses = [record.status for record in await seed.records(task_id)]
        assert statuses == [ExecutionStatus.FAILED, ExecutionStatus.RUNNING]
        assert len(channel.sent) == 2

    async def test_failing_step_does_not_stop_the_tick(self, seed, scheduler_loop, evaluator, now, monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(evaluator, "evaluate", broken)

        report = await scheduler_loop.tick(now)

        assert any("database unavailable" in error for error in report.errors)
        assert report.timed_out == 0


@pytest.mark.asyncio
class TestHousekeeping:
    async def test_purge_removes_old_finished_work(
        self, seed, scheduler_loop, dispatcher, tracker, session_factory, now
    ):
        await seed.devices("d1")
        script_id = await seed.script()
        old_time = now - timedelta(days=30)
        old_task = await seed.task(script_id, created_at=old_time)
        await dispatcher.dispatch_task(old_task, old_time)
        record = (await seed.records(old_task))[0]
        await tracker.on_result(record.instruction_id, ExecutionOutcome.SUCCESS, now=old_time)
        fresh_task = await seed.task(script_id)

        tasks, _ = await scheduler_loop.purge(now)

        assert tasks == 1
        async with session_factory() as session:
            repository = SqlTaskRepository(session)
            assert await repository.get_task(old_task) is None
            assert await repository.get_task(fresh_task) is not None

    async def test_purge_drops_old_recurring_runs_but_keeps_current_run(
        self, seed, scheduler_loop, dispatcher, tracker, now
    ):
        await seed.devices("d1", "d2")
        task_id = await seed.task(
            await seed.script(),
            task_type=TaskType.RECURRING,
            cron_expression="*/5 * * * *",
            scheduled_time=now - timedelta(minutes=2),
        )
        await dispatcher.dispatch_task(task_id, now)
        for record in await seed.records(task_id, run_number=1):
            await tracker.on_result(record.instruction_id, ExecutionOutcome.SUCCESS, now=now)

        second_run = now + timedelta(minutes=5)
        await dispatcher.dispatch_task(task_id, second_run)
        current = {record.device_id: record for record in await seed.records(task_id, run_number=2)}
        await tracker.on_result(current["d1"].instruction_id, ExecutionOutcome.SUCCESS, now=second_run)

        tasks, records = await scheduler_loop.purge(utcnow() + timedelta(days=365))

        assert (tasks, records) == (0, 2)
        remaining = await seed.records(task_id)
        assert {record.run_number for record in remaining} == {2}
        assert len(remaining) == 2

        await tracker.on_result(current["d2"].instruction_id, ExecutionOutcome.SUCCESS, now=second_run)
        task = await seed.get_task(task_id)
        assert task.last_run_status == TaskStatus.COMPLETED.value
        assert (task.success_devices, task.total_devices) == (2, 2)


@pytest.mark.asyncio
class TestLifecycle:
    async def test_start_and_stop(self, scheduler_loop):
        await scheduler_loop.start()
        assert scheduler_loop.is_running
        await asyncio.sleep(0.1)
        await scheduler_loop.stop()
        assert not scheduler_loop.is_running
