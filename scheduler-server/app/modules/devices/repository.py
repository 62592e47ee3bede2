"""Repository protocol for device and group persistence operations."""

from __future__ import annotations

from typing import Iterable, Protocol, Sequence

from app.db.models import Device as DeviceModel
from app.db.models import DeviceGroup as DeviceGroupModel


class DeviceRepository(Protocol):
    async def get_by_id(self, device_id: str) -> DeviceModel | None:
        ...

    async def list_devices(
        self, skip: int, limit: int, online_only: bool
    ) -> tuple[Sequence[DeviceModel], int]:
        ...

    async def list_valid_ids(self) -> list[str]:
        ...

    async def existing_ids(self, device_ids: Iterable[str]) -> set[str]:
        ...

    async def create_device(
        self,
        *,
        device_id: str,
        name: str | None,
        model: str | None,
        android_version: str | None,
    ) -> DeviceModel:
        ...

    async def mark_online(
        self,
        device_id: str,
        *,
        name: str | None,
        model: str | None,
        android_version: str | None,
    ) -> DeviceModel:
        ...

    async def mark_offline(self, device_id: str) -> None:
        ...

    async def get_group(self, group_id: str) -> DeviceGroupModel | None:
        ...

    async def list_group_member_ids(self, group_id: str) -> list[str]:
        ...
