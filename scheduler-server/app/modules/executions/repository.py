"""Repository protocol for execution record persistence operations."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Protocol, Sequence

from app.db.models import ScriptExecutionRecord as RecordModel

from .models import ExecutionStatus


class ExecutionRepository(Protocol):
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
        ...

    async def get_by_instruction(self, instruction_id: str) -> RecordModel | None:
        ...

    async def list_for_task(
        self,
        task_id: str,
        *,
        run_number: int | None = None,
        device_id: str | None = None,
        status: str | None = None,
    ) -> Sequence[RecordModel]:
        ...

    async def device_ids_for_run(self, task_id: str, run_number: int) -> set[str]:
        ...

    async def count_devices_in_run(self, task_id: str, run_number: int) -> int:
        ...

    async def list_deliverable(self, task_id: str, now: datetime) -> Sequence[RecordModel]:
        ...

    async def list_tasks_with_deliverable(self, now: datetime, limit: int) -> list[str]:
        ...

    async def list_running_with_timeout(self, limit: int) -> Sequence[tuple[RecordModel, int]]:
        ...

    async def mark_running(self, instruction_id: str, *, now: datetime) -> bool:
        ...

    async def finish(
        self,
        record: RecordModel,
        *,
        status: ExecutionStatus,
        now: datetime,
        error_message: str | None,
        output: str | None,
    ) -> bool:
        ...

    async def cancel_open(self, record_ids: Iterable[str], *, now: datetime) -> int:
        ...

    async def list_open_for_task(self, task_id: str) -> Sequence[RecordModel]:
        ...

    async def count_by_status(self, task_id: str) -> dict[str, int]:
        ...

    async def delete_older_than(self, threshold: datetime) -> int:
        ...
