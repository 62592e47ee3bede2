from fastapi import APIRouter

from app.interfaces.http.routers import devices, tasks


def create_api_router(prefix: str = "") -> APIRouter:
    router = APIRouter(prefix=prefix)
    router.include_router(tasks.router, prefix="/tasks", tags=["任务"])
    router.include_router(devices.router, prefix="/devices", tags=["设备"])
    return router


__all__ = [
    "create_api_router",
]
