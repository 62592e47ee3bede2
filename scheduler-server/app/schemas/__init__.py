"""Pydantic schemas used across the project."""
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.core.clock import as_naive_utc
from app.modules.executions.models import ExecutionOutcome, ExecutionStatus
from app.modules.tasks.models import TargetType, TaskStatus, TaskType


class TokenData(BaseModel):
    subject: str
    role: str


class DeviceResponse(BaseModel):
    id: str
    name: Optional[str] = None
    model: Optional[str] = None
    android_version: Optional[str] = None
    is_online: bool
    valid: bool
    last_online_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DeviceListResponse(BaseModel):
    total: int
    devices: list[DeviceResponse]


class TaskCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=150)
    script_id: str
    description: Optional[str] = None
    task_type: TaskType = TaskType.IMMEDIATE
    target_type: TargetType = TargetType.ALL
    target_group_id: Optional[str] = None
    target_device_ids: list[str] = Field(default_factory=list)
    parameters: dict[str, Any] = Field(default_factory=dict)
    scheduled_time: Optional[datetime] = None
    cron_expression: Optional[str] = None
    priority: Optional[int] = None
    max_retries: Optional[int] = Field(default=None, ge=0)

    @field_validator("scheduled_time")
    @classmethod
    def _normalise_time(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_naive_utc(value)

    @model_validator(mode="after")
    def _check_shape(self) -> "TaskCreateRequest":
        if self.task_type is TaskType.SCHEDULED and self.scheduled_time is None:
            raise ValueError("scheduled_time is required for scheduled tasks")
        if self.task_type is TaskType.RECURRING and not self.cron_expression:
            raise ValueError("cron_expression is required for recurring tasks")
        if self.target_type is TargetType.GROUP and not self.target_group_id:
            raise ValueError("target_group_id is required for group targets")
        if self.target_type is TargetType.SPECIFIC and not self.target_device_ids:
            raise ValueError("target_device_ids is required for specific targets")
        return self


class TaskResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    script_id: str
    task_type: TaskType
    status: TaskStatus
    target_type: TargetType
    target_group_id: Optional[str] = None
    target_device_ids: list[str] = Field(default_factory=list)
    parameters: dict[str, Any] = Field(default_factory=dict)
    scheduled_time: Optional[datetime] = None
    cron_expression: Optional[str] = None
    priority: int
    retry_count: int
    max_retries: int
    run_number: int
    total_devices: int
    success_devices: int
    failed_devices: int
    progress: float
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    last_execution_time: Optional[datetime] = None
    last_run_status: Optional[str] = None
    failure_reason: Optional[str] = None
    cancel_requested: bool = False
    valid: bool
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class TaskListResponse(BaseModel):
    total: int
    tasks: list[TaskResponse]


class TaskStatisticsResponse(BaseModel):
    total: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    created_today: int
    active_recurring: int

    model_config = ConfigDict(from_attributes=True)


class ExecutionRecordResponse(BaseModel):
    id: str
    task_id: Optional[str] = None
    script_id: str
    device_id: str
    run_number: int
    status: ExecutionStatus
    retry_count: int
    instruction_id: str
    available_at: datetime
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[float] = None
    output: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ExecutionStatsResponse(BaseModel):
    total: int
    pending: int
    running: int
    success: int
    failed: int
    cancelled: int

    model_config = ConfigDict(from_attributes=True)


class ExecutionListResponse(BaseModel):
    task_id: str
    stats: ExecutionStatsResponse
    executions: list[ExecutionRecordResponse]


class CancelResponse(BaseModel):
    task_id: str
    cancelled: bool
    deferred: bool = False
    records_cancelled: int = 0
    status: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ExecutionResultReport(BaseModel):
    instruction_id: str
    status: ExecutionOutcome = Field(..., description="success, failure 或 timeout")
    output: Optional[str] = None
    error_message: Optional[str] = None


class ResultAcceptedResponse(BaseModel):
    instruction_id: str
    accepted: bool
    status: Optional[ExecutionStatus] = None


class WSMessage(BaseModel):
    type: str
    data: Optional[dict[str, Any]] = None
