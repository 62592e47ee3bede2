"""Task domain representations and lifecycle tables."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from app.db import models as orm


class TaskType(str, Enum):
    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"
    RECURRING = "recurring"


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_TASK_STATUSES


class TargetType(str, Enum):
    ALL = "all"
    GROUP = "group"
    SPECIFIC = "specific"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})

# Failed -> Pending is the manual retry path; Completed/Failed -> Pending
# re-arms a recurring task for its next due time.
TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.FAILED, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}),
    TaskStatus.COMPLETED: frozenset({TaskStatus.PENDING}),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
    TaskStatus.CANCELLED: frozenset(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in TASK_TRANSITIONS[current]


def sources_of(target: TaskStatus) -> frozenset[TaskStatus]:
    """Statuses a task may move to ``target`` from."""
    return frozenset(status for status, targets in TASK_TRANSITIONS.items() if target in targets)


def calculate_progress(total: int, success: int, failed: int) -> float:
    if total <= 0:
        return 0.0
    return round((success + failed) / total * 100, 2)


def _load_json(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


@dataclass(slots=True)
class Task:
    id: str
    name: str
    script_id: str
    task_type: TaskType
    status: TaskStatus
    target_type: TargetType
    priority: int
    created_at: datetime
    description: Optional[str] = None
    target_group_id: Optional[str] = None
    target_device_ids: list[str] = field(default_factory=list)
    parameters: dict[str, Any] = field(default_factory=dict)
    scheduled_time: Optional[datetime] = None
    cron_expression: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    run_number: int = 0
    total_devices: int = 0
    success_devices: int = 0
    failed_devices: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    last_execution_time: Optional[datetime] = None
    last_run_status: Optional[str] = None
    failure_reason: Optional[str] = None
    cancel_requested: bool = False
    valid: bool = True
    updated_at: Optional[datetime] = None

    @property
    def progress(self) -> float:
        return calculate_progress(self.total_devices, self.success_devices, self.failed_devices)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_orm(cls, instance: orm.Task) -> "Task":
        return cls(
            id=str(instance.id),
            name=instance.name,
            description=instance.description,
            script_id=instance.script_id,
            task_type=TaskType(instance.task_type),
            status=TaskStatus(instance.status),
            target_type=TargetType(instance.target_type),
            target_group_id=instance.target_group_id,
            target_device_ids=list(_load_json(instance.target_device_ids, [])),
            parameters=dict(_load_json(instance.parameters, {})),
            scheduled_time=instance.scheduled_time,
            cron_expression=instance.cron_expression,
            priority=instance.priority or 0,
            retry_count=instance.retry_count or 0,
            max_retries=instance.max_retries or 0,
            run_number=instance.run_number or 0,
            total_devices=instance.total_devices or 0,
            success_devices=instance.success_devices or 0,
            failed_devices=instance.failed_devices or 0,
            start_time=instance.start_time,
            end_time=instance.end_time,
            last_execution_time=instance.last_execution_time,
            last_run_status=instance.last_run_status,
            failure_reason=instance.failure_reason,
            cancel_requested=bool(instance.cancel_requested),
            valid=bool(instance.valid),
            created_at=instance.created_at,
            updated_at=instance.updated_at,
        )


@dataclass(slots=True)
class TaskSummary:
    """Simplified view used for listings with pagination."""

    total: int
    tasks: list[Task]


@dataclass(slots=True)
class TaskStatistics:
    total: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    created_today: int
    active_recurring: int
