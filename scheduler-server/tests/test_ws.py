"""Tests for the device websocket (app/interfaces/ws)."""
from __future__ import annotations

import asyncio
from contextlib import ExitStack

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool
from starlette.websockets import WebSocketDisconnect

from app.core.clock import utcnow
from app.core.config import get_settings
from app.core.container import ApplicationContainer
from app.core.security import create_access_token
from app.infrastructure.database.repositories import (
    SqlDeviceRepository,
    SqlExecutionRepository,
    SqlScriptRepository,
    SqlTaskRepository,
)
from app.infrastructure.database.session import build_session_factory, init_db
from app.interfaces.http.deps import get_app_container, get_db_session
from app.interfaces.ws import ConnectionManager
from app.main import create_app
from app.modules.executions.models import ExecutionRecord, ExecutionStatus, generate_instruction_id
from app.modules.scheduling.exceptions import DeliveryError
from app.modules.tasks.models import TaskStatus


class FakeSocket:
    def __init__(self) -> None:
        self.sent: list[str] = []

    async def send_text(self, text: str) -> None:
        self.sent.append(text)


@pytest.mark.asyncio
class TestConnectionManager:
    async def test_stale_socket_cleanup_keeps_reconnected_device(self):
        connections = ConnectionManager()
        old, new = FakeSocket(), FakeSocket()
        connections.register("d1", old)
        connections.register("d1", new)

        assert await connections.disconnect("d1", old) is False
        assert connections.is_online("d1")

        await connections.dispatch("d1", "INS-1", {"type": "execute_script"})
        assert len(new.sent) == 1
        assert old.sent == []

        assert await connections.disconnect("d1", new) is True
        assert not connections.is_online("d1")

    async def test_dispatch_to_offline_device_raises(self):
        with pytest.raises(DeliveryError):
            await ConnectionManager().dispatch("d1", "INS-1", {"type": "execute_script"})


# The websocket tests drive the app through Starlette's TestClient, which runs
# each connection on its own event loop; NullPool keeps every database
# connection local to the loop that opened it.


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def database(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ws.db'}", poolclass=NullPool)
    run(init_db(engine))
    yield build_session_factory(engine)
    run(engine.dispose())


@pytest.fixture
def connections():
    return ConnectionManager()


@pytest.fixture
def client(database, connections):
    container = ApplicationContainer(settings=get_settings(), session_factory=database, channel=connections)
    app = create_app()

    async def override_session():
        async with database() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db_session] = override_session
    app.dependency_overrides[get_app_container] = lambda: container
    return TestClient(app)


def socket_url(device_id: str) -> str:
    return f"/ws?token={create_access_token(device_id, 'device')}"


def start_session(websocket, device_id: str) -> None:
    websocket.send_json({"type": "session_init", "data": {"device_id": device_id, "device_name": device_id}})
    reply = websocket.receive_json()
    assert reply == {"type": "session_ready", "data": {"device_id": device_id}}


def flush(websocket) -> None:
    # messages are handled in order, so a session_ready reply means earlier ones are done
    websocket.send_json({"type": "session_init"})
    assert websocket.receive_json()["type"] == "session_ready"


async def open_run(session_factory, *device_ids: str) -> tuple[str, dict[str, str]]:
    """One Running task with a Pending record per device."""
    now = utcnow()
    async with session_factory() as session:
        devices = SqlDeviceRepository(session)
        for device_id in device_ids:
            await devices.create_device(device_id=device_id, name=device_id, model="Pixel", android_version="14")
        script = await SqlScriptRepository(session).create_script(code="demo.ping", name="demo.ping")
        tasks = SqlTaskRepository(session)
        task = await tasks.create_task(
            name="ws", script_id=script.id, task_type="immediate", target_type="all", priority=0, max_retries=0
        )
        records = SqlExecutionRepository(session)
        instructions = {}
        for device_id in device_ids:
            instruction_id = generate_instruction_id()
            await records.create_record(
                task_id=task.id,
                script_id=script.id,
                device_id=device_id,
                run_number=1,
                instruction_id=instruction_id,
                available_at=now,
            )
            instructions[device_id] = instruction_id
        await tasks.start_run(task.id, run_number=1, total_devices=len(device_ids), now=now)
        await session.commit()
        return task.id, instructions


async def load_records(session_factory, task_id: str) -> dict[str, ExecutionRecord]:
    async with session_factory() as session:
        models = await SqlExecutionRepository(session).list_for_task(task_id)
        return {model.device_id: ExecutionRecord.from_orm(model) for model in models}


async def task_status(session_factory, task_id: str) -> TaskStatus:
    async with session_factory() as session:
        model = await SqlTaskRepository(session).get_task(task_id)
        return TaskStatus(model.status)


async def device_online(session_factory, device_id: str) -> bool:
    async with session_factory() as session:
        model = await SqlDeviceRepository(session).get_by_id(device_id)
        return bool(model and model.is_online)


class TestDeviceSocket:
    def test_session_init_registers_device(self, client, database, connections):
        with client.websocket_connect(socket_url("d1")) as websocket:
            start_session(websocket, "d1")
            assert connections.is_online("d1")
            assert run(device_online(database, "d1"))

        assert not connections.is_online("d1")
        assert not run(device_online(database, "d1"))

    def test_messages_before_init_are_rejected(self, client, connections):
        with client.websocket_connect(socket_url("d1")) as websocket:
            websocket.send_json({"type": "heartbeat"})
            reply = websocket.receive_json()

        assert reply == {"type": "error", "data": {"reason": "session not initialized"}}
        assert not connections.is_online("d1")

    def test_ack_and_result_reach_the_tracker(self, client, database):
        task_id, instructions = run(open_run(database, "d1"))
        instruction_id = instructions["d1"]

        with client.websocket_connect(socket_url("d1")) as websocket:
            start_session(websocket, "d1")

            websocket.send_json({"type": "ack", "instruction_id": instruction_id})
            flush(websocket)
            assert run(load_records(database, task_id))["d1"].status is ExecutionStatus.RUNNING

            websocket.send_json(
                {"type": "result", "data": {"instruction_id": instruction_id, "status": "success", "output": "ok"}}
            )
            flush(websocket)

        record = run(load_records(database, task_id))["d1"]
        assert record.status is ExecutionStatus.SUCCESS
        assert record.output == "ok"
        assert run(task_status(database, task_id)) is TaskStatus.COMPLETED

    def test_result_for_another_device_is_ignored(self, client, database):
        task_id, instructions = run(open_run(database, "d1", "d2"))

        with client.websocket_connect(socket_url("d2")) as websocket:
            start_session(websocket, "d2")
            websocket.send_json(
                {"type": "result", "data": {"instruction_id": instructions["d1"], "status": "failure"}}
            )
            flush(websocket)

        records = run(load_records(database, task_id))
        assert records["d1"].status is ExecutionStatus.PENDING
        assert run(task_status(database, task_id)) is TaskStatus.RUNNING

    def test_invalid_result_payload_gets_an_error(self, client):
        with client.websocket_connect(socket_url("d1")) as websocket:
            start_session(websocket, "d1")
            websocket.send_json({"type": "result", "data": {"status": "success"}})
            reply = websocket.receive_json()

        assert reply == {"type": "error", "data": {"reason": "invalid result payload"}}

    def test_reconnect_survives_cleanup_of_old_socket(self, client, database, connections):
        with ExitStack() as first_session:
            first = first_session.enter_context(client.websocket_connect(socket_url("d1")))
            start_session(first, "d1")

            with client.websocket_connect(socket_url("d1")) as second:
                start_session(second, "d1")
                first_session.close()

                assert connections.is_online("d1")
                assert run(device_online(database, "d1"))

        assert not connections.is_online("d1")
        assert not run(device_online(database, "d1"))

    def test_operator_token_is_refused(self, client):
        token = create_access_token("alice", "operator")
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(f"/ws?token={token}") as websocket:
                websocket.receive_text()

    def test_claimed_device_id_must_match_token(self, client, connections):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(socket_url("d1")) as websocket:
                websocket.send_json({"type": "session_init", "data": {"device_id": "d2"}})
                websocket.receive_text()

        assert not connections.is_online("d1")
        assert not connections.is_online("d2")
