"""Repository protocol for task persistence operations."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Protocol, Sequence

from app.db.models import Task as TaskModel

from .models import TaskStatus


class TaskRepository(Protocol):
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
        ...

    async def get_task(self, task_id: str) -> TaskModel | None:
        ...

    async def list_tasks(
        self, *, status: str | None, limit: int, offset: int
    ) -> tuple[Sequence[TaskModel], int]:
        ...

    async def list_due_candidates(self, now: datetime, limit: int) -> Sequence[TaskModel]:
        ...

    async def list_failed_with_script_limits(self, limit: int) -> Sequence[tuple[TaskModel, int]]:
        ...

    async def list_cancel_requested(self, limit: int) -> list[str]:
        ...

    async def start_run(
        self, task_id: str, *, run_number: int, total_devices: int, now: datetime
    ) -> bool:
        ...

    async def mark_failed(
        self,
        task_id: str,
        *,
        reason: str,
        now: datetime,
        from_statuses: Iterable[TaskStatus] = (TaskStatus.PENDING,),
    ) -> bool:
        ...

    async def increment_outcome(self, task_id: str, *, run_number: int, success: bool) -> bool:
        ...

    async def complete_if_finished(self, task_id: str, *, run_number: int, now: datetime) -> bool:
        ...

    async def rearm_recurring(self, task_id: str, *, next_due: datetime, now: datetime) -> bool:
        ...

    async def request_cancel(self, task_id: str) -> bool:
        ...

    async def clear_cancel_request(self, task_id: str) -> None:
        ...

    async def cancel(self, task_id: str, *, now: datetime) -> bool:
        ...

    async def reset_for_retry(self, task_id: str, *, scheduled_time: datetime | None) -> bool:
        ...

    async def count_by_status(self) -> dict[str, int]:
        ...

    async def count_by_type(self) -> dict[str, int]:
        ...

    async def count_created_since(self, since: datetime) -> int:
        ...

    async def count_active_recurring(self) -> int:
        ...

    async def delete_finished_before(self, threshold: datetime) -> int:
        ...
