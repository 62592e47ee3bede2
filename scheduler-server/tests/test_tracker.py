"""Tests for app/modules/executions/tracker.py"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest

from app.modules.executions.models import ExecutionOutcome, ExecutionStatus, can_transition, sources_of
from app.modules.executions.tracker import DEFAULT_FAILURE_MESSAGE, TIMEOUT_MESSAGE
from app.modules.tasks.models import TaskStatus, TaskType


async def dispatched_task(seed, dispatcher, now, devices=("d1", "d2", "d3"), **script_fields):
    await seed.devices(*devices)
    script_id = await seed.script(**script_fields)
    task_id = await seed.task(script_id)
    await dispatcher.dispatch_task(task_id, now)
    records = {record.device_id: record for record in await seed.records(task_id)}
    return task_id, records


class TestRecordTransitions:
    def test_only_open_records_can_finish(self):
        assert sources_of(ExecutionStatus.SUCCESS) == {ExecutionStatus.PENDING, ExecutionStatus.RUNNING}
        assert sources_of(ExecutionStatus.RUNNING) == {ExecutionStatus.PENDING}
        assert not can_transition(ExecutionStatus.CANCELLED, ExecutionStatus.SUCCESS)
        assert can_transition(ExecutionStatus.PENDING, ExecutionStatus.FAILED)


@pytest.mark.asyncio
class TestAcknowledgements:
    async def test_late_ack_does_not_reopen_finished_record(self, seed, dispatcher, tracker, now):
        _, records = await dispatched_task(seed, dispatcher, now, devices=("d1",))
        instruction_id = records["d1"].instruction_id
        await tracker.on_result(instruction_id, ExecutionOutcome.SUCCESS, now=now)

        assert await tracker.mark_running(instruction_id, now=now) is False

        (record,) = await seed.records(records["d1"].task_id)
        assert record.status is ExecutionStatus.SUCCESS


@pytest.mark.asyncio
class TestResults:
    async def test_mixed_results_fail_the_task(self, seed, dispatcher, tracker, now):
        task_id, records = await dispatched_task(seed, dispatcher, now, max_retries=0)

        await tracker.on_result(records["d1"].instruction_id, ExecutionOutcome.SUCCESS, now=now)
        await tracker.on_result(records["d2"].instruction_id, ExecutionOutcome.SUCCESS, now=now)
        failed = await tracker.on_result(records["d3"].instruction_id, ExecutionOutcome.FAILURE, now=now)

        assert failed.status is ExecutionStatus.FAILED
        assert failed.error_message == DEFAULT_FAILURE_MESSAGE
        task = await seed.get_task(task_id)
        assert task.status is TaskStatus.FAILED
        assert (task.success_devices, task.failed_devices, task.total_devices) == (2, 1, 3)
        assert task.progress == 100.0
        assert task.end_time == now

    async def test_all_success_completes_the_task(self, seed, dispatcher, tracker, now):
        task_id, records = await dispatched_task(seed, dispatcher, now, devices=("d1", "d2"))

        later = now + timedelta(seconds=42)
        for record in records.values():
            updated = await tracker.on_result(record.instruction_id, ExecutionOutcome.SUCCESS, output="ok", now=later)
            assert updated.duration == 42.0
            assert updated.output == "ok"

        task = await seed.get_task(task_id)
        assert task.status is TaskStatus.COMPLETED
        assert task.last_run_status == TaskStatus.COMPLETED.value

    async def test_progress_is_partial_while_running(self, seed, dispatcher, tracker, now):
        task_id, records = await dispatched_task(seed, dispatcher, now)

        await tracker.on_result(records["d1"].instruction_id, ExecutionOutcome.SUCCESS, now=now)

        task = await seed.get_task(task_id)
        assert task.status is TaskStatus.RUNNING
        assert task.progress == 33.33

    async def test_duplicate_result_is_ignored(self, seed, dispatcher, tracker, now):
        task_id, records = await dispatched_task(seed, dispatcher, now, devices=("d1", "d2"))
        instruction_id = records["d1"].instruction_id

        first = await tracker.on_result(instruction_id, ExecutionOutcome.SUCCESS, now=now)
        second = await tracker.on_result(instruction_id, ExecutionOutcome.FAILURE, now=now)

        assert first is not None
        assert second is None
        task = await seed.get_task(task_id)
        assert (task.success_devices, task.failed_devices) == (1, 0)
        assert [r.status for r in await seed.records(task_id) if r.device_id == "d1"] == [ExecutionStatus.SUCCESS]

    async def test_unknown_instruction_is_ignored(self, tracker, now):
        assert await tracker.on_result("INS-unknown", ExecutionOutcome.SUCCESS, now=now) is None

    async def test_result_from_other_device_is_rejected(self, seed, dispatcher, tracker, now):
        task_id, records = await dispatched_task(seed, dispatcher, now, devices=("d1", "d2"))

        result = await tracker.on_result(
            records["d1"].instruction_id, ExecutionOutcome.SUCCESS, device_id="d2", now=now
        )

        assert result is None
        assert (await seed.get_task(task_id)).success_devices == 0

    async def test_concurrent_results_keep_counters_exact(self, seed, dispatcher, tracker, now):
        devices = tuple(f"d{index}" for index in range(6))
        task_id, records = await dispatched_task(seed, dispatcher, now, devices=devices, max_retries=0)
        outcomes = [
            ExecutionOutcome.SUCCESS if index % 3 else ExecutionOutcome.FAILURE for index in range(len(devices))
        ]

        calls = [
            tracker.on_result(records[device_id].instruction_id, outcome, now=now)
            for device_id, outcome in zip(devices, outcomes)
        ]
        # every result is reported twice
        await asyncio.gather(*calls, *[
            tracker.on_result(records[device_id].instruction_id, outcome, now=now)
            for device_id, outcome in zip(devices, outcomes)
        ])

        task = await seed.get_task(task_id)
        assert task.success_devices == 4
        assert task.failed_devices == 2
        assert task.success_devices + task.failed_devices == task.total_devices
        assert task.status is TaskStatus.FAILED


@pytest.mark.asyncio
class TestRetries:
    async def test_failed_record_is_retried_before_counting(self, seed, dispatcher, tracker, channel, now):
        task_id, records = await dispatched_task(seed, dispatcher, now, devices=("d1",), max_retries=2)

        await tracker.on_result(records["d1"].instruction_id, ExecutionOutcome.FAILURE, error_message="crash", now=now)

        task = await seed.get_task(task_id)
        assert task.status is TaskStatus.RUNNING
        assert task.failed_devices == 0
        history = await seed.records(task_id)
        assert [record.status for record in history] == [ExecutionStatus.FAILED, ExecutionStatus.PENDING]
        assert history[0].error_message == "crash"

        await dispatcher.deliver_due(now + timedelta(seconds=10))
        retry_instruction = channel.sent[-1][1]
        await tracker.on_result(retry_instruction, ExecutionOutcome.SUCCESS, now=now + timedelta(seconds=20))

        task = await seed.get_task(task_id)
        assert task.status is TaskStatus.COMPLETED
        assert (task.success_devices, task.failed_devices) == (1, 0)

    async def test_retries_stop_at_global_cap(self, seed, dispatcher, tracker, policy, now):
        policy.global_retry_cap = 1
        task_id, records = await dispatched_task(seed, dispatcher, now, devices=("d1",), max_retries=3)

        await tracker.on_result(records["d1"].instruction_id, ExecutionOutcome.FAILURE, now=now)
        retry = [record for record in await seed.records(task_id) if record.status is ExecutionStatus.PENDING][0]
        await tracker.on_result(retry.instruction_id, ExecutionOutcome.FAILURE, now=now)

        task = await seed.get_task(task_id)
        assert task.status is TaskStatus.FAILED
        assert task.failed_devices == 1
        assert len(await seed.records(task_id)) == 2


@pytest.mark.asyncio
class TestTimeoutSweep:
    async def test_overdue_running_records_time_out(self, seed, dispatcher, tracker, now):
        task_id, records = await dispatched_task(seed, dispatcher, now, devices=("d1",), timeout=60, max_retries=0)

        assert await tracker.sweep_timeouts(now + timedelta(seconds=59)) == 0
        assert await tracker.sweep_timeouts(now + timedelta(seconds=61)) == 1

        record = (await seed.records(task_id))[0]
        assert record.status is ExecutionStatus.FAILED
        assert record.error_message == TIMEOUT_MESSAGE
        assert (await seed.get_task(task_id)).status is TaskStatus.FAILED

    async def test_pending_records_are_not_swept(self, seed, dispatcher, tracker, channel, now):
        channel.offline.add("d1")
        task_id, _ = await dispatched_task(seed, dispatcher, now, devices=("d1",), timeout=1, max_retries=1)

        assert await tracker.sweep_timeouts(now + timedelta(hours=1)) == 0


@pytest.mark.asyncio
class TestRecurringRuns:
    async def test_finished_run_rearms_recurring_task(self, seed, dispatcher, tracker):
        now = datetime(2026, 3, 2, 12, 2)
        await seed.devices("d1")
        task_id = await seed.task(
            await seed.script(),
            task_type=TaskType.RECURRING,
            cron_expression="*/5 * * * *",
            scheduled_time=datetime(2026, 3, 2, 12, 0),
        )
        await dispatcher.dispatch_task(task_id, now)
        record = (await seed.records(task_id))[0]

        await tracker.on_result(record.instruction_id, ExecutionOutcome.SUCCESS, now=now)

        task = await seed.get_task(task_id)
        assert task.status is TaskStatus.PENDING
        assert task.scheduled_time == datetime(2026, 3, 2, 12, 5)
        assert task.last_run_status == TaskStatus.COMPLETED.value
        assert task.last_execution_time == now
        assert task.run_number == 1

    async def test_second_run_uses_new_run_number(self, seed, dispatcher, tracker):
        now = datetime(2026, 3, 2, 12, 2)
        await seed.devices("d1")
        task_id = await seed.task(
            await seed.script(),
            task_type=TaskType.RECURRING,
            cron_expression="*/5 * * * *",
            scheduled_time=datetime(2026, 3, 2, 12, 0),
        )
        await dispatcher.dispatch_task(task_id, now)
        first = (await seed.records(task_id))[0]
        await tracker.on_result(first.instruction_id, ExecutionOutcome.SUCCESS, now=now)

        result = await dispatcher.dispatch_task(task_id, datetime(2026, 3, 2, 12, 5))

        assert result.run_number == 2
        assert len(await seed.records(task_id, run_number=2)) == 1
        task = await seed.get_task(task_id)
        assert task.status is TaskStatus.RUNNING
        assert (task.success_devices, task.failed_devices) == (0, 0)
