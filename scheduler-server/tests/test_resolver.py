"""Tests for app/modules/scheduling/resolver.py"""
from __future__ import annotations

from datetime import datetime
from typing import Iterable

import pytest

from app.modules.devices import DeviceService
from app.modules.scheduling.exceptions import TargetResolutionError
from app.modules.scheduling.resolver import TargetResolver
from app.modules.tasks.models import TargetType, Task, TaskStatus, TaskType


class StaticDirectory:
    def __init__(self, devices: list[str], groups: dict[str, list[str]]) -> None:
        self.devices = devices
        self.groups = groups

    async def list_active_devices(self) -> list[str]:
        return list(self.devices)

    async def list_group_members(self, group_id: str) -> list[str] | None:
        members = self.groups.get(group_id)
        return list(members) if members is not None else None

    async def existing_devices(self, device_ids: Iterable[str]) -> set[str]:
        return {device_id for device_id in device_ids if device_id in self.devices}


def make_task(target_type: TargetType, **fields) -> Task:
    return Task(
        id="task-1",
        name="resolve",
        script_id="script-1",
        task_type=TaskType.IMMEDIATE,
        status=TaskStatus.PENDING,
        target_type=target_type,
        priority=0,
        created_at=datetime(2026, 3, 2, 12, 0),
        **fields,
    )


@pytest.fixture
def directory():
    return StaticDirectory(
        devices=["d1", "d2", "d3"],
        groups={"g-empty": [], "g-main": ["d2", "d1", "d2"]},
    )


@pytest.mark.asyncio
class TestTargetResolver:
    async def test_all_returns_active_devices(self, directory):
        targets = await TargetResolver(directory).resolve(make_task(TargetType.ALL))
        assert targets == ["d1", "d2", "d3"]

    async def test_all_on_empty_fleet_resolves_to_nothing(self):
        empty = StaticDirectory(devices=[], groups={})
        assert await TargetResolver(empty).resolve(make_task(TargetType.ALL)) == []

    async def test_all_collapses_duplicate_directory_entries(self):
        noisy = StaticDirectory(devices=["d1", "d2", "d1"], groups={})
        assert await TargetResolver(noisy).resolve(make_task(TargetType.ALL)) == ["d1", "d2"]

    async def test_group_keeps_membership_order_without_duplicates(self, directory):
        task = make_task(TargetType.GROUP, target_group_id="g-main")
        assert await TargetResolver(directory).resolve(task) == ["d2", "d1"]

    async def test_empty_group_resolves_to_nothing(self, directory):
        task = make_task(TargetType.GROUP, target_group_id="g-empty")
        assert await TargetResolver(directory).resolve(task) == []

    async def test_unknown_group_raises(self, directory):
        task = make_task(TargetType.GROUP, target_group_id="g-missing")
        with pytest.raises(TargetResolutionError):
            await TargetResolver(directory).resolve(task)

    async def test_specific_drops_unknown_and_duplicates(self, directory):
        task = make_task(TargetType.SPECIFIC, target_device_ids=["d3", "ghost", "d3", "d1"])
        assert await TargetResolver(directory).resolve(task) == ["d3", "d1"]

    async def test_specific_with_only_unknown_devices(self, directory):
        task = make_task(TargetType.SPECIFIC, target_device_ids=["ghost"])
        assert await TargetResolver(directory).resolve(task) == []


@pytest.mark.asyncio
class TestResolverAgainstDatabase:
    async def test_group_members_skip_disabled_devices(self, seed, session_factory):
        await seed.devices("d1", "d2")
        await seed.devices("d-off", valid=False)
        group_id = await seed.group("line-a", ["d-off", "d2", "d1"])

        async with session_factory() as session:
            resolver = TargetResolver(DeviceService.with_session(session))
            targets = await resolver.resolve(make_task(TargetType.GROUP, target_group_id=group_id))
        assert targets == ["d2", "d1"]

    async def test_disabled_group_is_unresolvable(self, seed, session_factory):
        await seed.devices("d1")
        group_id = await seed.group("retired", ["d1"], valid=False)

        async with session_factory() as session:
            resolver = TargetResolver(DeviceService.with_session(session))
            with pytest.raises(TargetResolutionError):
                await resolver.resolve(make_task(TargetType.GROUP, target_group_id=group_id))

    async def test_all_excludes_disabled_devices(self, seed, session_factory):
        await seed.devices("d1", "d2")
        await seed.devices("d-off", valid=False)

        async with session_factory() as session:
            targets = await TargetResolver(DeviceService.with_session(session)).resolve(make_task(TargetType.ALL))
        assert sorted(targets) == ["d1", "d2"]
