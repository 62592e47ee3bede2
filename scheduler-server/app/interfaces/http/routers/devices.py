"""Device endpoints: registry queries and result reporting."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.security import get_current_device, get_current_operator
from app.interfaces.http.deps import get_db_session, get_tracker
from app.modules.devices import DeviceService
from app.modules.executions.tracker import ExecutionTracker
from app.schemas import (
    DeviceListResponse,
    DeviceResponse,
    ExecutionResultReport,
    ResultAcceptedResponse,
)

router = APIRouter()


def _to_schema(device) -> DeviceResponse:
    return DeviceResponse.model_validate(device)


@router.get(
    "/",
    response_model=DeviceListResponse,
    summary="获取设备列表",
    dependencies=[Depends(get_current_operator)],
)
async def list_devices(
    skip: int = 0,
    limit: int = 100,
    online_only: bool = False,
    db: AsyncSession = Depends(get_db_session),
):
    service = DeviceService.with_session(db)
    summary = await service.list_devices(skip=skip, limit=limit, online_only=online_only)
    return DeviceListResponse(
        total=summary.total,
        devices=[_to_schema(device) for device in summary.devices],
    )


@router.get(
    "/{device_id}",
    response_model=DeviceResponse,
    summary="获取设备详情",
    dependencies=[Depends(get_current_operator)],
)
async def get_device(device_id: str, db: AsyncSession = Depends(get_db_session)):
    service = DeviceService.with_session(db)
    device = await service.get_device(device_id)
    if device is None:
        raise HTTPException(status_code=404, detail="设备不存在")
    return _to_schema(device)


@router.post("/{device_id}/results", response_model=ResultAcceptedResponse, summary="上报脚本执行结果")
async def report_result(
    device_id: str,
    payload: ExecutionResultReport,
    current_device: str = Depends(get_current_device),
    tracker: ExecutionTracker = Depends(get_tracker),
):
    if current_device != device_id:
        raise HTTPException(status_code=403, detail="无权上报其他设备的结果")
    record = await tracker.on_result(
        payload.instruction_id,
        payload.status,
        error_message=payload.error_message,
        output=payload.output,
        device_id=device_id,
    )
    if record is None:
        return ResultAcceptedResponse(instruction_id=payload.instruction_id, accepted=False)
    return ResultAcceptedResponse(instruction_id=payload.instruction_id, accepted=True, status=record.status)
