"""Execution record domain representations."""

from __future__ import annotations

import json
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from app.db import models as orm


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_EXECUTION_STATUSES


class ExecutionOutcome(str, Enum):
    """Result kinds reported back by a device (or synthesised by the sweep)."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"

    @property
    def status(self) -> ExecutionStatus:
        return ExecutionStatus.SUCCESS if self is ExecutionOutcome.SUCCESS else ExecutionStatus.FAILED


TERMINAL_EXECUTION_STATUSES = frozenset(
    {ExecutionStatus.SUCCESS, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)
OPEN_EXECUTION_STATUSES = frozenset({ExecutionStatus.PENDING, ExecutionStatus.RUNNING})
_STATUS_VALUES = frozenset(status.value for status in ExecutionStatus)

EXECUTION_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset(
        {
            ExecutionStatus.RUNNING,
            ExecutionStatus.SUCCESS,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        }
    ),
    ExecutionStatus.RUNNING: frozenset(
        {ExecutionStatus.SUCCESS, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
    ),
    ExecutionStatus.SUCCESS: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}


def can_transition(current: ExecutionStatus, target: ExecutionStatus) -> bool:
    return target in EXECUTION_TRANSITIONS[current]


def sources_of(target: ExecutionStatus) -> frozenset[ExecutionStatus]:
    return frozenset(status for status, targets in EXECUTION_TRANSITIONS.items() if target in targets)


def generate_instruction_id() -> str:
    return f"INS-{uuid.uuid4().hex[:16]}{secrets.token_hex(4)}"


@dataclass(slots=True)
class ExecutionRecord:
    id: str
    task_id: Optional[str]
    script_id: str
    device_id: str
    run_number: int
    status: ExecutionStatus
    retry_count: int
    instruction_id: str
    available_at: datetime
    created_at: datetime
    parameters: dict[str, Any] = field(default_factory=dict)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[float] = None
    output: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_orm(cls, instance: orm.ScriptExecutionRecord) -> "ExecutionRecord":
        parameters: dict[str, Any] = {}
        if instance.parameters:
            try:
                parameters = json.loads(instance.parameters)
            except json.JSONDecodeError:
                parameters = {}
        return cls(
            id=str(instance.id),
            task_id=instance.task_id,
            script_id=instance.script_id,
            device_id=instance.device_id,
            run_number=instance.run_number,
            status=ExecutionStatus(instance.status),
            retry_count=instance.retry_count or 0,
            instruction_id=instance.instruction_id,
            available_at=instance.available_at,
            created_at=instance.created_at,
            parameters=parameters,
            start_time=instance.start_time,
            end_time=instance.end_time,
            duration=instance.duration,
            output=instance.output,
            error_message=instance.error_message,
        )


@dataclass(slots=True)
class ExecutionStats:
    total: int = 0
    pending: int = 0
    running: int = 0
    success: int = 0
    failed: int = 0
    cancelled: int = 0

    @classmethod
    def from_counts(cls, counts: dict[str, int]) -> "ExecutionStats":
        stats = cls()
        for status, count in counts.items():
            if status in _STATUS_VALUES:
                setattr(stats, status, count)
        stats.total = sum(counts.values())
        return stats
