"""Turns a task's target definition into concrete device identifiers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Protocol

from app.modules.tasks.models import TargetType, Task

from .exceptions import TargetResolutionError

logger = logging.getLogger(__name__)


class DeviceDirectory(Protocol):
    async def list_active_devices(self) -> list[str]:
        ...

    async def list_group_members(self, group_id: str) -> list[str] | None:
        """Current members in membership order, or ``None`` for an unknown group."""
        ...

    async def existing_devices(self, device_ids: Iterable[str]) -> set[str]:
        ...


def _unique(device_ids: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for device_id in device_ids:
        if device_id and device_id not in seen:
            seen.add(device_id)
            ordered.append(device_id)
    return ordered


@dataclass(slots=True)
class TargetResolver:
    """Resolves targets against the directory on every call; nothing is cached."""

    directory: DeviceDirectory

    async def resolve(self, task: Task) -> list[str]:
        if task.target_type is TargetType.ALL:
            return _unique(await self.directory.list_active_devices())

        if task.target_type is TargetType.GROUP:
            if not task.target_group_id:
                raise TargetResolutionError(f"task {task.id} has no target group")
            members = await self.directory.list_group_members(task.target_group_id)
            if members is None:
                raise TargetResolutionError(f"device group {task.target_group_id} not found")
            return _unique(members)

        requested = _unique(task.target_device_ids)
        known = await self.directory.existing_devices(requested)
        dropped = [device_id for device_id in requested if device_id not in known]
        if dropped:
            logger.info("任务 %s 忽略未知设备: %s", task.id, ", ".join(dropped))
        return [device_id for device_id in requested if device_id in known]
