"""Domain service orchestrating device related workflows."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.infrastructure.database.repositories.device_repository import SqlDeviceRepository
from app.db.models import Device as DeviceModel

from .exceptions import DeviceDisabledError
from .models import Device, DeviceSummary
from .repository import DeviceRepository


@dataclass(slots=True)
class DeviceService:
    """Device registry access.

    Also serves as the read-only device directory consulted by the target
    resolver: ``list_active_devices``, ``list_group_members`` and
    ``existing_devices`` only ever read current state.
    """

    repository: DeviceRepository

    @classmethod
    def with_session(cls, session: AsyncSession) -> "DeviceService":
        return cls(SqlDeviceRepository(session))

    async def get_device(self, device_id: str) -> Device | None:
        model = await self.repository.get_by_id(device_id)
        return self._to_domain(model) if model else None

    async def list_devices(self, skip: int, limit: int, online_only: bool) -> DeviceSummary:
        models, total = await self.repository.list_devices(skip, limit, online_only)
        devices = [self._to_domain(model) for model in models]
        return DeviceSummary(total=total, devices=devices)

    async def ensure_device_for_connection(
        self,
        *,
        device_id: str,
        name: Optional[str],
        model: Optional[str],
        android_version: Optional[str],
    ) -> Device:
        existing = await self.repository.get_by_id(device_id)
        if existing is None:
            await self.repository.create_device(
                device_id=device_id,
                name=name,
                model=model,
                android_version=android_version,
            )
        elif not existing.valid:
            raise DeviceDisabledError(f"device {device_id} is disabled")

        updated = await self.repository.mark_online(
            device_id,
            name=name,
            model=model,
            android_version=android_version,
        )
        return self._to_domain(updated)

    async def mark_offline(self, device_id: str) -> None:
        await self.repository.mark_offline(device_id)

    async def list_active_devices(self) -> list[str]:
        return await self.repository.list_valid_ids()

    async def list_group_members(self, group_id: str) -> list[str] | None:
        group = await self.repository.get_group(group_id)
        if group is None or not group.valid:
            return None
        return await self.repository.list_group_member_ids(group_id)

    async def existing_devices(self, device_ids: Iterable[str]) -> set[str]:
        return await self.repository.existing_ids(device_ids)

    @staticmethod
    def _to_domain(model: DeviceModel) -> Device:
        return Device.from_orm(model)
