"""SQLAlchemy powered repository for device and group persistence."""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.db.models import Device as DeviceModel
from app.db.models import DeviceGroup as DeviceGroupModel
from app.db.models import DeviceGroupMember as DeviceGroupMemberModel


class SqlDeviceRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, device_id: str) -> DeviceModel | None:
        stmt = select(DeviceModel).where(DeviceModel.id == device_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_devices(
        self, skip: int, limit: int, online_only: bool
    ) -> tuple[Sequence[DeviceModel], int]:
        query = select(DeviceModel).order_by(DeviceModel.created_at.desc())
        count_query = select(func.count(DeviceModel.id))
        if online_only:
            predicate = DeviceModel.is_online.is_(True)
            query = query.where(predicate)
            count_query = count_query.where(predicate)

        if skip:
            query = query.offset(skip)
        if limit:
            query = query.limit(limit)

        result = await self._session.execute(query)
        devices = result.scalars().all()
        total = (await self._session.execute(count_query)).scalar() or 0
        return devices, int(total)

    async def list_valid_ids(self) -> list[str]:
        stmt = (
            select(DeviceModel.id)
            .where(DeviceModel.valid.is_(True))
            .order_by(DeviceModel.created_at.asc(), DeviceModel.id.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def existing_ids(self, device_ids: Iterable[str]) -> set[str]:
        ids = list(device_ids)
        if not ids:
            return set()
        stmt = select(DeviceModel.id).where(DeviceModel.id.in_(ids))
        result = await self._session.execute(stmt)
        return set(result.scalars().all())

    async def create_device(
        self,
        *,
        device_id: str,
        name: Optional[str],
        model: Optional[str],
        android_version: Optional[str],
        valid: bool = True,
    ) -> DeviceModel:
        instance = DeviceModel(
            id=device_id,
            name=name,
            model=model,
            android_version=android_version,
            valid=valid,
        )
        self._session.add(instance)
        await self._session.flush()
        await self._session.refresh(instance)
        return instance

    async def mark_online(
        self,
        device_id: str,
        *,
        name: Optional[str],
        model: Optional[str],
        android_version: Optional[str],
    ) -> DeviceModel:
        instance = await self.get_by_id(device_id)
        if instance is None:
            raise ValueError(f"Device not found: {device_id}")

        instance.name = name or instance.name
        instance.model = model or instance.model
        instance.android_version = android_version or instance.android_version
        instance.is_online = True
        instance.last_online_at = utcnow()
        await self._session.flush()
        await self._session.refresh(instance)
        return instance

    async def mark_offline(self, device_id: str) -> None:
        instance = await self.get_by_id(device_id)
        if instance is None:
            return
        instance.is_online = False
        await self._session.flush()

    async def get_group(self, group_id: str) -> DeviceGroupModel | None:
        stmt = select(DeviceGroupModel).where(DeviceGroupModel.id == group_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_group_member_ids(self, group_id: str) -> list[str]:
        stmt = (
            select(DeviceGroupMemberModel.device_id)
            .join(DeviceModel, DeviceModel.id == DeviceGroupMemberModel.device_id)
            .where(
                DeviceGroupMemberModel.group_id == group_id,
                DeviceModel.valid.is_(True),
            )
            .order_by(DeviceGroupMemberModel.position.asc(), DeviceModel.name.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
