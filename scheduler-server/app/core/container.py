"""Simple dependency container for wiring the scheduling engine."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings, get_settings
from app.infrastructure.database.session import get_session_factory
from app.infrastructure.locks import LockManager, build_lock_manager
from app.interfaces.ws.manager import ConnectionManager, manager
from app.modules.executions.tracker import ExecutionTracker
from app.modules.scheduling.cancellation import CancellationHandler
from app.modules.scheduling.dispatcher import TaskDispatcher
from app.modules.scheduling.eligibility import EligibilityEvaluator, EligibilityPolicy
from app.modules.scheduling.loop import SchedulerLoop

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ApplicationContainer:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession] | None = None
    channel: ConnectionManager = manager
    locks: LockManager = field(init=False)
    policy: EligibilityPolicy = field(init=False)
    evaluator: EligibilityEvaluator = field(init=False)
    tracker: ExecutionTracker = field(init=False)
    dispatcher: TaskDispatcher = field(init=False)
    cancellation: CancellationHandler = field(init=False)
    scheduler: SchedulerLoop = field(init=False)

    def __post_init__(self) -> None:
        if self.session_factory is None:
            self.session_factory = get_session_factory()
        scheduler_settings = self.settings.scheduler

        self.locks = build_lock_manager(self.settings.locks)
        self.policy = EligibilityPolicy.from_settings(scheduler_settings)
        self.evaluator = EligibilityEvaluator(self.session_factory, self.policy)
        self.tracker = ExecutionTracker(self.session_factory, self.policy)
        self.dispatcher = TaskDispatcher(self.session_factory, self.locks, self.channel, self.tracker)
        self.cancellation = CancellationHandler(
            self.session_factory,
            self.locks,
            self.channel,
            lock_wait=self.settings.locks.cancel_wait_seconds,
        )
        self.scheduler = SchedulerLoop(
            session_factory=self.session_factory,
            evaluator=self.evaluator,
            dispatcher=self.dispatcher,
            tracker=self.tracker,
            cancellation=self.cancellation,
            settings=scheduler_settings,
        )

    async def startup(self) -> None:
        self.channel.configure(
            timeout=self.settings.ws_timeout,
            check_interval=self.settings.ws_heartbeat_interval,
        )
        if self.settings.scheduler.enabled:
            await self.scheduler.start()
        else:
            logger.info("调度循环已禁用")

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        await self.channel.close_all()
        await self.locks.close()


@lru_cache()
def get_container() -> ApplicationContainer:
    return ApplicationContainer(settings=get_settings())


__all__ = ["ApplicationContainer", "get_container"]
