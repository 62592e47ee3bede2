"""Task management endpoints."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.security import get_current_operator
from app.interfaces.http.deps import (
    get_cancellation_handler,
    get_db_session,
    get_dispatcher,
    get_task_service,
)
from app.modules.scheduling.cancellation import CancellationHandler
from app.modules.scheduling.dispatcher import TaskDispatcher
from app.modules.scheduling.exceptions import TargetResolutionError
from app.modules.tasks import (
    InvalidTaskError,
    ScriptUnavailableError,
    Task,
    TaskNotFoundError,
    TaskNotRetryableError,
    TaskStatus,
    TaskType,
)
from app.modules.tasks.service import TaskCreateInput, TaskService
from app.schemas import (
    CancelResponse,
    ExecutionListResponse,
    ExecutionRecordResponse,
    ExecutionStatsResponse,
    TaskCreateRequest,
    TaskListResponse,
    TaskResponse,
    TaskStatisticsResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(get_current_operator)])


def _to_schema(task: Task) -> TaskResponse:
    return TaskResponse.model_validate(task)


async def _dispatch_now(task: Task, dispatcher: TaskDispatcher, service: TaskService) -> Task:
    try:
        await dispatcher.dispatch_task(task.id)
    except TargetResolutionError as exc:
        logger.warning("任务 %s 目标解析失败: %s", task.id, exc)
    return await service.get_task(task.id)


@router.post("/", response_model=TaskResponse, status_code=status.HTTP_201_CREATED, summary="创建任务")
async def create_task(
    payload: TaskCreateRequest,
    db: AsyncSession = Depends(get_db_session),
    service: TaskService = Depends(get_task_service),
    dispatcher: TaskDispatcher = Depends(get_dispatcher),
):
    try:
        task = await service.create_task(TaskCreateInput(**payload.model_dump()))
    except ScriptUnavailableError as exc:
        raise HTTPException(status_code=400, detail=f"脚本不可用: {exc}") from exc
    except InvalidTaskError as exc:
        raise HTTPException(status_code=400, detail=f"任务参数无效: {exc}") from exc
    await db.commit()
    logger.info("创建任务 %s (%s, 目标 %s)", task.id, task.task_type.value, task.target_type.value)

    if task.task_type is TaskType.IMMEDIATE:
        task = await _dispatch_now(task, dispatcher, service)
    return _to_schema(task)


@router.get("/", response_model=TaskListResponse, summary="获取任务列表")
async def list_tasks(
    status_filter: Optional[TaskStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    service: TaskService = Depends(get_task_service),
):
    summary = await service.list_tasks(status=status_filter, limit=limit, offset=offset)
    return TaskListResponse(total=summary.total, tasks=[_to_schema(task) for task in summary.tasks])


@router.get("/statistics", response_model=TaskStatisticsResponse, summary="任务统计")
async def task_statistics(service: TaskService = Depends(get_task_service)):
    return TaskStatisticsResponse.model_validate(await service.statistics())


@router.get("/{task_id}", response_model=TaskResponse, summary="获取任务详情")
async def get_task(task_id: str, service: TaskService = Depends(get_task_service)):
    try:
        task = await service.get_task(task_id)
    except TaskNotFoundError as exc:
        raise HTTPException(status_code=404, detail="任务不存在") from exc
    return _to_schema(task)


@router.get("/{task_id}/executions", response_model=ExecutionListResponse, summary="获取任务执行记录")
async def list_executions(
    task_id: str,
    run_number: Optional[int] = Query(default=None, ge=1),
    service: TaskService = Depends(get_task_service),
):
    try:
        records = await service.list_executions(task_id, run_number=run_number)
        stats = await service.execution_stats(task_id)
    except TaskNotFoundError as exc:
        raise HTTPException(status_code=404, detail="任务不存在") from exc
    return ExecutionListResponse(
        task_id=task_id,
        stats=ExecutionStatsResponse.model_validate(stats),
        executions=[ExecutionRecordResponse.model_validate(record) for record in records],
    )


@router.post("/{task_id}/cancel", response_model=CancelResponse, summary="取消任务")
async def cancel_task(task_id: str, cancellation: CancellationHandler = Depends(get_cancellation_handler)):
    try:
        result = await cancellation.cancel(task_id)
    except TaskNotFoundError as exc:
        raise HTTPException(status_code=404, detail="任务不存在") from exc
    if result.deferred:
        logger.info("任务 %s 正在派发, 取消请求已登记", task_id)
    return CancelResponse.model_validate(result)


@router.post("/{task_id}/retry", response_model=TaskResponse, summary="重试失败任务")
async def retry_task(
    task_id: str,
    db: AsyncSession = Depends(get_db_session),
    service: TaskService = Depends(get_task_service),
    dispatcher: TaskDispatcher = Depends(get_dispatcher),
):
    try:
        task = await service.retry_task(task_id)
    except TaskNotFoundError as exc:
        raise HTTPException(status_code=404, detail="任务不存在") from exc
    except ScriptUnavailableError as exc:
        raise HTTPException(status_code=400, detail=f"脚本不可用: {exc}") from exc
    except TaskNotRetryableError as exc:
        raise HTTPException(status_code=409, detail=f"任务不可重试: {exc}") from exc
    await db.commit()

    if task.task_type is TaskType.IMMEDIATE:
        task = await _dispatch_now(task, dispatcher, service)
    return _to_schema(task)
