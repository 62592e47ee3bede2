"""Per-entity mutual exclusion used around dispatch and cancellation.

Two backends share the ``LockManager`` interface: an in-process manager backed
by ``asyncio.Lock`` (single worker) and a Redis manager for deployments that
run several scheduler workers against the same database.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncContextManager, AsyncIterator, Optional, Protocol

import redis.asyncio as redis
from redis.exceptions import LockError

from app.core.config import LockSettings
from app.modules.scheduling.exceptions import ConcurrentTransitionConflict

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LockKey:
    entity_type: str
    entity_id: str

    @classmethod
    def for_task(cls, task_id: str) -> "LockKey":
        return cls("task", task_id)

    @property
    def name(self) -> str:
        return f"lock:{self.entity_type}:{self.entity_id}"


class LockManager(Protocol):
    def hold(self, key: LockKey, *, wait: Optional[float] = None) -> AsyncContextManager[None]:
        """Hold ``key`` for the duration of the block.

        ``wait`` is how long to wait for a contended lock (``None`` or ``0``
        means fail immediately). Raises ``ConcurrentTransitionConflict`` when
        the lock could not be obtained.
        """
        ...

    async def close(self) -> None:
        ...


class InMemoryLockManager:
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def _checkout(self, key: LockKey) -> asyncio.Lock:
        lock = self._locks.get(key.name)
        if lock is None:
            lock = self._locks[key.name] = asyncio.Lock()
        self._users[key.name] = self._users.get(key.name, 0) + 1
        return lock

    def _checkin(self, key: LockKey) -> None:
        # entries live only while someone holds or waits on the key
        remaining = self._users.get(key.name, 1) - 1
        if remaining > 0:
            self._users[key.name] = remaining
            return
        self._users.pop(key.name, None)
        self._locks.pop(key.name, None)

    @property
    def active_keys(self) -> int:
        return len(self._locks)

    def is_locked(self, key: LockKey) -> bool:
        lock = self._locks.get(key.name)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, key: LockKey, *, wait: Optional[float] = None) -> AsyncIterator[None]:
        lock = self._checkout(key)
        try:
            if not await self._acquire(lock, wait):
                raise ConcurrentTransitionConflict(f"{key.name} is held by another operation")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)

    @staticmethod
    async def _acquire(lock: asyncio.Lock, wait: Optional[float]) -> bool:
        if not wait:
            if lock.locked():
                return False
            await lock.acquire()
            return True
        try:
            await asyncio.wait_for(lock.acquire(), timeout=wait)
        except asyncio.TimeoutError:
            return False
        return True

    async def close(self) -> None:
        self._locks.clear()
        self._users.clear()


class RedisLockManager:
    """Redis ``SET NX PX`` locks with a TTL so a crashed worker cannot wedge a task."""

    def __init__(self, client: redis.Redis, ttl_seconds: int = 30) -> None:
        self._client = client
        self._ttl = ttl_seconds

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int = 30) -> "RedisLockManager":
        return cls(redis.from_url(url), ttl_seconds=ttl_seconds)

    @asynccontextmanager
    async def hold(self, key: LockKey, *, wait: Optional[float] = None) -> AsyncIterator[None]:
        lock = self._client.lock(
            key.name,
            timeout=self._ttl,
            blocking=bool(wait),
            blocking_timeout=wait or None,
        )
        if not await lock.acquire():
            raise ConcurrentTransitionConflict(f"{key.name} is held by another worker")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as exc:
                # the TTL elapsed and another worker may already own the key
                logger.warning("释放锁 %s 失败: %s", key.name, exc)

    async def close(self) -> None:
        await self._client.aclose()


def build_lock_manager(settings: LockSettings) -> LockManager:
    if settings.backend == "redis":
        logger.info("使用 Redis 分布式锁: %s", settings.redis_url)
        return RedisLockManager.from_url(settings.redis_url, ttl_seconds=settings.ttl_seconds)
    return InMemoryLockManager()
