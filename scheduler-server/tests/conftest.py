"""Shared fixtures: a throwaway SQLite database and the engine components."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from app.db.models import DeviceGroup, DeviceGroupMember
from app.infrastructure.database.repositories import (
    SqlDeviceRepository,
    SqlExecutionRepository,
    SqlScriptRepository,
    SqlTaskRepository,
)
from app.infrastructure.database.session import build_session_factory, init_db
from app.infrastructure.locks import InMemoryLockManager
from app.modules.executions.models import ExecutionRecord
from app.modules.executions.tracker import ExecutionTracker
from app.modules.scheduling.cancellation import CancellationHandler
from app.modules.scheduling.dispatcher import TaskDispatcher
from app.modules.scheduling.eligibility import EligibilityEvaluator, EligibilityPolicy
from app.modules.scheduling.exceptions import DeliveryError
from app.modules.tasks.models import TargetType, Task, TaskType

FIXED_NOW = datetime(2026, 3, 2, 12, 2, 0)


class FakeChannel:
    """Delivery channel that records instructions instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict[str, Any]]] = []
        self.offline: set[str] = set()

    async def dispatch(self, device_id: str, instruction_id: str, payload: dict[str, Any]) -> None:
        if device_id in self.offline:
            raise DeliveryError(f"device {device_id} is offline")
        self.sent.append((device_id, instruction_id, payload))

    def of_type(self, message_type: str) -> list[tuple[str, str, dict[str, Any]]]:
        return [item for item in self.sent if item[2].get("type") == message_type]

    # the ConnectionManager surface the container touches
    def configure(self, *, timeout: int, check_interval: int) -> None:
        pass

    async def close_all(self) -> None:
        pass

    def get_online_count(self) -> int:
        return 0


class Seeder:
    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    async def script(self, code: str = "demo.ping", **overrides: Any) -> str:
        async with self._session_factory() as session:
            script = await SqlScriptRepository(session).create_script(code=code, name=code, **overrides)
            await session.commit()
            return script.id

    async def devices(self, *device_ids: str, valid: bool = True) -> list[str]:
        async with self._session_factory() as session:
            repository = SqlDeviceRepository(session)
            for device_id in device_ids:
                await repository.create_device(
                    device_id=device_id, name=device_id, model="Pixel", android_version="14", valid=valid
                )
            await session.commit()
        return list(device_ids)

    async def group(self, name: str, member_ids: list[str], *, valid: bool = True) -> str:
        async with self._session_factory() as session:
            group = DeviceGroup(name=name, valid=valid)
            session.add(group)
            await session.flush()
            session.add_all(
                [
                    DeviceGroupMember(group_id=group.id, device_id=device_id, position=position)
                    for position, device_id in enumerate(member_ids)
                ]
            )
            await session.commit()
            return group.id

    async def task(
        self,
        script_id: str,
        *,
        name: str = "task",
        task_type: TaskType = TaskType.IMMEDIATE,
        target_type: TargetType = TargetType.ALL,
        priority: int = 0,
        max_retries: int = 3,
        **fields: Any,
    ) -> str:
        async with self._session_factory() as session:
            task = await SqlTaskRepository(session).create_task(
                name=name,
                script_id=script_id,
                task_type=task_type.value,
                target_type=target_type.value,
                priority=priority,
                max_retries=max_retries,
                **fields,
            )
            await session.commit()
            return task.id

    async def get_task(self, task_id: str) -> Task:
        async with self._session_factory() as session:
            model = await SqlTaskRepository(session).get_task(task_id)
            assert model is not None
            return Task.from_orm(model)

    async def records(self, task_id: str, run_number: Optional[int] = None) -> list[ExecutionRecord]:
        async with self._session_factory() as session:
            models = await SqlExecutionRepository(session).list_for_task(task_id, run_number=run_number)
            return [ExecutionRecord.from_orm(model) for model in models]


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'scheduler.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def locks():
    return InMemoryLockManager()


@pytest.fixture
def policy():
    return EligibilityPolicy()


@pytest.fixture
def tracker(session_factory, policy):
    return ExecutionTracker(session_factory, policy)


@pytest.fixture
def dispatcher(session_factory, locks, channel, tracker):
    return TaskDispatcher(session_factory, locks, channel, tracker)


@pytest.fixture
def cancellation(session_factory, locks, channel):
    return CancellationHandler(session_factory, locks, channel, lock_wait=0.5)


@pytest.fixture
def evaluator(session_factory, policy):
    return EligibilityEvaluator(session_factory, policy)
