import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app import __version__
from app.core.config import get_settings
from app.core.container import get_container
from app.core.logging import configure_logging
from app.infrastructure.database import init_db
from app.infrastructure.database.session import dispose_engine
from app.interfaces.http import create_api_router
from app.interfaces.ws import router as websocket_router

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings)
    await init_db()
    container = get_container()
    await container.startup()
    logger.info("%s %s 已启动", settings.project_name, __version__)
    try:
        yield
    finally:
        await container.shutdown()
        await dispose_engine()


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.project_name,
        description="设备脚本任务调度与执行跟踪服务",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(create_api_router(settings.api_prefix))
    app.include_router(websocket_router.router)

    @app.get("/health", summary="健康检查")
    async def health():
        container = get_container()
        return {
            "status": "ok",
            "version": __version__,
            "scheduler_running": container.scheduler.is_running,
            "online_devices": container.channel.get_online_count(),
        }

    return app


app = create_app()


def run() -> None:
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.server.reload,
    )


if __name__ == "__main__":
    run()
