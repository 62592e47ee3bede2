"""Connection manager for device websocket clients.

Implements the scheduler's delivery channel: ``dispatch`` pushes an
instruction to a connected device and raises ``DeliveryError`` when the device
is offline or the socket write fails.
"""
import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from fastapi import WebSocket

from app.core.clock import utcnow
from app.modules.scheduling.exceptions import DeliveryError

logger = logging.getLogger(__name__)


class ConnectionManager:
    def __init__(self, timeout: int = 300, check_interval: int = 30) -> None:
        self.device_connections: Dict[str, WebSocket] = {}
        self.heartbeat_tasks: Dict[str, asyncio.Task] = {}
        self.last_heartbeat: Dict[str, datetime] = {}
        self.timeout = timedelta(seconds=timeout)
        self.check_interval = check_interval

    def configure(self, *, timeout: int, check_interval: int) -> None:
        self.timeout = timedelta(seconds=timeout)
        self.check_interval = check_interval

    def register(self, device_id: str, websocket: WebSocket) -> None:
        self.device_connections[device_id] = websocket
        self.last_heartbeat[device_id] = utcnow()
        self._start_heartbeat_monitor(device_id)
        logger.info("设备 %s 已注册到连接管理器", device_id)

    async def disconnect(self, device_id: str, websocket: Optional[WebSocket] = None) -> bool:
        """Drop the device's connection.

        With ``websocket`` given, only that socket is dropped; a newer socket
        registered by a reconnect is left alone and ``False`` is returned.
        """
        if websocket is not None and self.device_connections.get(device_id) is not websocket:
            logger.info("设备 %s 的旧连接已被替换，跳过清理", device_id)
            return False
        if self.device_connections.pop(device_id, None) is None:
            return False
        self.last_heartbeat.pop(device_id, None)
        task = self.heartbeat_tasks.pop(device_id, None)
        if task and task is not asyncio.current_task():
            task.cancel()
        logger.info("设备 %s 已断开 WebSocket", device_id)
        return True

    async def send_message(self, device_id: str, message: dict) -> bool:
        websocket = self.device_connections.get(device_id)
        if websocket is None:
            logger.warning("设备 %s 不在线", device_id)
            return False
        try:
            await websocket.send_text(json.dumps(message, default=str))
            return True
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("发送消息到设备 %s 失败: %s", device_id, exc)
            await self.disconnect(device_id, websocket)
            return False

    async def dispatch(self, device_id: str, instruction_id: str, payload: dict[str, Any]) -> None:
        if not self.is_online(device_id):
            raise DeliveryError(f"device {device_id} is offline")
        message = {"type": payload.get("type", "instruction"), "instruction_id": instruction_id, "data": payload}
        if not await self.send_message(device_id, message):
            raise DeliveryError(f"failed to send instruction {instruction_id} to device {device_id}")

    async def close_all(self) -> None:
        for device_id in list(self.device_connections.keys()):
            await self.disconnect(device_id)

    def is_online(self, device_id: str) -> bool:
        return device_id in self.device_connections

    def get_online_count(self) -> int:
        return len(self.device_connections)

    def update_heartbeat(self, device_id: str) -> None:
        self.last_heartbeat[device_id] = utcnow()

    def _start_heartbeat_monitor(self, device_id: str) -> None:
        task = self.heartbeat_tasks.get(device_id)
        if task:
            task.cancel()
        self.heartbeat_tasks[device_id] = asyncio.create_task(self._heartbeat_monitor(device_id))

    async def _heartbeat_monitor(self, device_id: str) -> None:
        try:
            while True:
                await asyncio.sleep(self.check_interval)
                last = self.last_heartbeat.get(device_id)
                if last and utcnow() - last > self.timeout:
                    logger.warning("设备 %s 心跳超时,断开连接", device_id)
                    await self.disconnect(device_id)
                    break
        except asyncio.CancelledError:
            logger.debug("设备 %s 心跳监听任务已取消", device_id)


manager = ConnectionManager()
