"""Device domain models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from app.db import models as orm


@dataclass(slots=True)
class Device:
    id: str
    name: Optional[str]
    model: Optional[str]
    android_version: Optional[str]
    is_online: bool
    valid: bool
    created_at: datetime
    updated_at: Optional[datetime]
    last_online_at: Optional[datetime]

    @classmethod
    def from_orm(cls, instance: orm.Device) -> "Device":
        return cls(
            id=str(instance.id),
            name=instance.name,
            model=instance.model,
            android_version=instance.android_version,
            is_online=bool(instance.is_online),
            valid=bool(instance.valid),
            created_at=instance.created_at,
            updated_at=instance.updated_at,
            last_online_at=instance.last_online_at,
        )


@dataclass(slots=True)
class DeviceSummary:
    """Simplified view used for listings with pagination."""

    total: int
    devices: list[Device]
