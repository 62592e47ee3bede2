"""Delivery channel boundary and instruction payloads."""

from __future__ import annotations

from typing import Any, Protocol

from app.modules.executions.models import ExecutionRecord
from app.modules.scripts.models import Script
from app.modules.tasks.models import Task

MESSAGE_EXECUTE_SCRIPT = "execute_script"
MESSAGE_STOP_SCRIPT = "stop_script"


class DeliveryChannel(Protocol):
    async def dispatch(self, device_id: str, instruction_id: str, payload: dict[str, Any]) -> None:
        """Hand an instruction to a device; raise ``DeliveryError`` if it cannot be sent."""
        ...


def build_execute_payload(task: Task, script: Script, record: ExecutionRecord) -> dict[str, Any]:
    parameters = dict(task.parameters)
    parameters.update(record.parameters)
    return {
        "type": MESSAGE_EXECUTE_SCRIPT,
        "instruction_id": record.instruction_id,
        "task_id": task.id,
        "script_id": script.id,
        "script_code": script.code,
        "version": script.version,
        "checksum": script.checksum,
        "content": script.content,
        "parameters": parameters,
        "timeout": script.timeout,
        "priority": task.priority,
        "retry_count": record.retry_count,
    }


def build_stop_payload(record: ExecutionRecord, reason: str) -> dict[str, Any]:
    return {
        "type": MESSAGE_STOP_SCRIPT,
        "target_instruction_id": record.instruction_id,
        "task_id": record.task_id,
        "reason": reason,
    }
