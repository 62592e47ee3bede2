"""SQLAlchemy implementation for ScriptRepository."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import Script as ScriptModel


class SqlScriptRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_id(self, script_id: str) -> ScriptModel | None:
        stmt = select(ScriptModel).where(ScriptModel.id == script_id)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def get_by_code(self, code: str) -> ScriptModel | None:
        stmt = select(ScriptModel).where(ScriptModel.code == code)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def create_script(
        self,
        *,
        code: str,
        name: str,
        version: str = "1.0.0",
        content: str | None = None,
        checksum: str | None = None,
        parameters: str | None = None,
        priority: int = 0,
        timeout: int = 3600,
        max_retries: int = 3,
        valid: bool = True,
    ) -> ScriptModel:
        script = ScriptModel(
            code=code,
            name=name,
            version=version,
            content=content,
            checksum=checksum,
            parameters=parameters,
            priority=priority,
            timeout=timeout,
            max_retries=max_retries,
            valid=valid,
        )
        self.session.add(script)
        await self.session.flush()
        await self.session.refresh(script)
        return script
