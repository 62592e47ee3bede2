"""Tests for app/modules/scheduling/cancellation.py"""
from __future__ import annotations

import asyncio

import pytest

from app.infrastructure.locks import LockKey
from app.modules.executions.models import ExecutionOutcome, ExecutionStatus
from app.modules.scheduling.delivery import MESSAGE_STOP_SCRIPT
from app.modules.tasks import TaskNotFoundError
from app.modules.tasks.models import TaskStatus


async def running_task(seed, dispatcher, now, devices=("d1", "d2")):
    await seed.devices(*devices)
    task_id = await seed.task(await seed.script(max_retries=0))
    await dispatcher.dispatch_task(task_id, now)
    return task_id


@pytest.mark.asyncio
class TestCancellation:
    async def test_cancel_running_task_cancels_open_records(self, seed, dispatcher, cancellation, channel, now):
        task_id = await running_task(seed, dispatcher, now)

        result = await cancellation.cancel(task_id, now)

        assert result.cancelled
        assert result.records_cancelled == 2
        assert sorted(result.stopped_devices) == ["d1", "d2"]
        task = await seed.get_task(task_id)
        assert task.status is TaskStatus.CANCELLED
        assert task.end_time == now
        assert {record.status for record in await seed.records(task_id)} == {ExecutionStatus.CANCELLED}
        stops = channel.of_type(MESSAGE_STOP_SCRIPT)
        assert len(stops) == 2

    async def test_cancel_pending_task(self, seed, cancellation, channel, now):
        task_id = await seed.task(await seed.script())

        result = await cancellation.cancel(task_id, now)

        assert result.cancelled
        assert result.records_cancelled == 0
        assert channel.sent == []

    async def test_terminal_records_are_untouched(self, seed, dispatcher, tracker, cancellation, now):
        task_id = await running_task(seed, dispatcher, now)
        records = {record.device_id: record for record in await seed.records(task_id)}
        await tracker.on_result(records["d1"].instruction_id, ExecutionOutcome.SUCCESS, now=now)

        result = await cancellation.cancel(task_id, now)

        assert result.records_cancelled == 1
        statuses = {record.device_id: record.status for record in await seed.records(task_id)}
        assert statuses == {"d1": ExecutionStatus.SUCCESS, "d2": ExecutionStatus.CANCELLED}

    async def test_result_after_cancel_is_ignored(self, seed, dispatcher, tracker, cancellation, now):
        task_id = await running_task(seed, dispatcher, now)
        record = (await seed.records(task_id))[0]
        await cancellation.cancel(task_id, now)

        assert await tracker.on_result(record.instruction_id, ExecutionOutcome.SUCCESS, now=now) is None

        task = await seed.get_task(task_id)
        assert task.status is TaskStatus.CANCELLED
        assert task.success_devices == 0

    async def test_concurrent_cancels_apply_once(self, seed, dispatcher, cancellation, now):
        task_id = await running_task(seed, dispatcher, now)

        results = await asyncio.gather(cancellation.cancel(task_id, now), cancellation.cancel(task_id, now))

        assert sorted(result.cancelled for result in results) == [False, True]
        assert all(result.status == TaskStatus.CANCELLED.value for result in results)

    async def test_cancel_finished_task_is_a_noop(self, seed, dispatcher, tracker, cancellation, now):
        task_id = await running_task(seed, dispatcher, now, devices=("d1",))
        record = (await seed.records(task_id))[0]
        await tracker.on_result(record.instruction_id, ExecutionOutcome.SUCCESS, now=now)

        result = await cancellation.cancel(task_id, now)

        assert not result.cancelled
        assert result.status == TaskStatus.COMPLETED.value
        assert (await seed.get_task(task_id)).status is TaskStatus.COMPLETED

    async def test_unknown_task_raises(self, cancellation, now):
        with pytest.raises(TaskNotFoundError):
            await cancellation.cancel("missing", now)


@pytest.mark.asyncio
class TestDeferredCancellation:
    async def test_busy_lock_defers_until_next_pass(self, seed, cancellation, evaluator, locks, now):
        task_id = await seed.task(await seed.script())

        async with locks.hold(LockKey.for_task(task_id)):
            result = await cancellation.cancel(task_id, now, wait=0)

        assert result.deferred
        assert not result.cancelled
        task = await seed.get_task(task_id)
        assert task.cancel_requested
        assert task.status is TaskStatus.PENDING
        assert await evaluator.due_tasks(now) == []

        assert await cancellation.apply_deferred(now) == 1
        task = await seed.get_task(task_id)
        assert task.status is TaskStatus.CANCELLED
        assert not task.cancel_requested

    async def test_deferred_flag_cleared_when_task_already_finished(
        self, seed, dispatcher, tracker, cancellation, locks, now
    ):
        task_id = await running_task(seed, dispatcher, now, devices=("d1",))
        record = (await seed.records(task_id))[0]

        async with locks.hold(LockKey.for_task(task_id)):
            deferred = await cancellation.cancel(task_id, now, wait=0)
        await tracker.on_result(record.instruction_id, ExecutionOutcome.SUCCESS, now=now)

        assert deferred.deferred
        assert await cancellation.apply_deferred(now) == 0
        task = await seed.get_task(task_id)
        assert task.status is TaskStatus.COMPLETED
        assert not task.cancel_requested
