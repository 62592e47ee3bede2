"""Script domain representation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from app.db import models as orm


@dataclass(slots=True)
class Script:
    id: str
    code: str
    name: str
    version: str
    priority: int
    timeout: int
    max_retries: int
    valid: bool
    created_at: datetime
    content: Optional[str] = None
    checksum: Optional[str] = None
    parameters: Optional[str] = None

    @classmethod
    def from_orm(cls, instance: orm.Script) -> "Script":
        return cls(
            id=str(instance.id),
            code=instance.code,
            name=instance.name,
            version=instance.version,
            priority=instance.priority or 0,
            timeout=instance.timeout,
            max_retries=instance.max_retries,
            valid=bool(instance.valid),
            created_at=instance.created_at,
            content=instance.content,
            checksum=instance.checksum,
            parameters=instance.parameters,
        )
