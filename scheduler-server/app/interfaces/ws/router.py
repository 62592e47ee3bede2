"""WebSocket endpoint for devices.

Devices authenticate with a device token, send ``session_init`` and then
exchange heartbeats, instruction acknowledgements and execution results.
"""
import json
import logging
from dataclasses import dataclass
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.container import ApplicationContainer
from app.core.security import ROLE_DEVICE, decode_access_token
from app.interfaces.http.deps import get_app_container, get_db_session
from app.modules.devices import DeviceDisabledError, DeviceService
from app.modules.executions.tracker import ExecutionTracker
from app.schemas import ExecutionResultReport, WSMessage

from .manager import ConnectionManager

logger = logging.getLogger(__name__)

router = APIRouter()


SESSION_INIT = "session_init"
SESSION_READY = "session_ready"
MESSAGE_ACK = "ack"
MESSAGE_RESULT = "result"
MESSAGE_HEARTBEAT = "heartbeat"
MESSAGE_ERROR = "error"


@dataclass(slots=True)
class DeviceSession:
    websocket: WebSocket
    device_id: str
    state: Literal["init", "ready"] = "init"

    def is_ready(self) -> bool:
        return self.state == "ready"

    def mark_ready(self) -> None:
        self.state = "ready"


@router.websocket("/ws")
async def device_socket(
    websocket: WebSocket,
    token: str = Query(...),
    db: AsyncSession = Depends(get_db_session),
    container: ApplicationContainer = Depends(get_app_container),
):
    device_service = DeviceService.with_session(db)
    connections = container.channel
    session: Optional[DeviceSession] = None
    try:
        try:
            token_data = decode_access_token(token)
        except HTTPException as exc:
            logger.error("设备 WebSocket token 无效: %s", exc.detail)
            await websocket.close(code=1008, reason="Token验证失败")
            return
        if token_data.role != ROLE_DEVICE:
            await websocket.close(code=1008, reason="需要设备凭据")
            return

        await websocket.accept()
        session = DeviceSession(websocket=websocket, device_id=token_data.subject)
        while True:
            message = await websocket.receive_text()
            await _handle_device_message(
                session=session,
                raw=message,
                device_service=device_service,
                connections=connections,
                tracker=container.tracker,
                db=db,
            )
    except WebSocketDisconnect:
        logger.info("设备 %s 断开连接", session.device_id if session else "unknown")
    except Exception as exc:  # pylint: disable=broad-except
        logger.error("设备 WebSocket 异常: %s", exc)
    finally:
        if session and session.is_ready():
            try:
                await connections.disconnect(session.device_id, session.websocket)
                # a reconnect may already have registered a newer socket
                if not connections.is_online(session.device_id):
                    await device_service.mark_offline(session.device_id)
                    await db.commit()
            except Exception as cleanup_exc:  # pylint: disable=broad-except
                logger.error("清理设备会话 %s 失败: %s", session.device_id, cleanup_exc)


def _parse_json(raw: str) -> dict:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.error("Invalid JSON payload: %s", exc)
        return {}


async def _handle_device_message(
    *,
    session: DeviceSession,
    raw: str,
    device_service: DeviceService,
    connections: ConnectionManager,
    tracker: ExecutionTracker,
    db: AsyncSession,
) -> None:
    data = _parse_json(raw)
    msg_type = data.get("type")

    if not msg_type:
        await _send_error(session, "message missing type")
        return

    if not session.is_ready():
        if msg_type != SESSION_INIT:
            await _send_error(session, "session not initialized")
            return
        await _process_session_init(
            session=session,
            payload=data.get("data") or {},
            device_service=device_service,
            connections=connections,
            db=db,
        )
        return

    if msg_type == SESSION_INIT:
        await session.websocket.send_text(
            WSMessage(type=SESSION_READY, data={"device_id": session.device_id}).model_dump_json()
        )
        return

    if msg_type == MESSAGE_HEARTBEAT:
        connections.update_heartbeat(session.device_id)
        return

    if msg_type == MESSAGE_ACK:
        instruction_id = data.get("instruction_id") or (data.get("data") or {}).get("instruction_id")
        if instruction_id:
            await tracker.mark_running(instruction_id)
        return

    if msg_type == MESSAGE_RESULT:
        await _handle_result(session, data.get("data") or {}, tracker)
        return

    if msg_type == MESSAGE_ERROR:
        logger.warning("设备 %s 上报错误: %s", session.device_id, data.get("data"))
        return

    logger.warning("Unknown websocket message type: %s", msg_type)


async def _process_session_init(
    *,
    session: DeviceSession,
    payload: dict,
    device_service: DeviceService,
    connections: ConnectionManager,
    db: AsyncSession,
) -> None:
    claimed = payload.get("device_id")
    if claimed and claimed != session.device_id:
        await session.websocket.close(code=1008, reason="device_id 与凭据不符")
        return

    try:
        await device_service.ensure_device_for_connection(
            device_id=session.device_id,
            name=payload.get("device_name"),
            model=payload.get("device_model"),
            android_version=payload.get("android_version"),
        )
    except DeviceDisabledError as exc:
        await db.rollback()
        await session.websocket.close(code=1008, reason=str(exc))
        return
    await db.commit()

    connections.register(session.device_id, session.websocket)
    session.mark_ready()
    await session.websocket.send_text(
        WSMessage(type=SESSION_READY, data={"device_id": session.device_id}).model_dump_json()
    )


async def _handle_result(session: DeviceSession, payload: dict, tracker: ExecutionTracker) -> None:
    try:
        result = ExecutionResultReport(**payload)
    except ValidationError as exc:
        logger.error("Invalid execution result payload: %s", exc)
        await _send_error(session, "invalid result payload")
        return

    await tracker.on_result(
        result.instruction_id,
        result.status,
        error_message=result.error_message,
        output=result.output,
        device_id=session.device_id,
    )


async def _send_error(session: DeviceSession, reason: str) -> None:
    try:
        await session.websocket.send_text(
            WSMessage(type=MESSAGE_ERROR, data={"reason": reason}).model_dump_json()
        )
    except Exception as exc:  # pylint: disable=broad-except
        logger.error("发送错误消息到设备 %s 失败: %s", session.device_id, exc)
