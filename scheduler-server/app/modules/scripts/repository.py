"""Repository protocol for script lookups."""

from __future__ import annotations

from typing import Protocol

from app.db.models import Script as ScriptModel


class ScriptRepository(Protocol):
    async def get_by_id(self, script_id: str) -> ScriptModel | None:
        ...

    async def get_by_code(self, code: str) -> ScriptModel | None:
        ...

    async def create_script(
        self,
        *,
        code: str,
        name: str,
        version: str,
        content: str | None,
        checksum: str | None,
        parameters: str | None,
        priority: int,
        timeout: int,
        max_retries: int,
        valid: bool,
    ) -> ScriptModel:
        ...
