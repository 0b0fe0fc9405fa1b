import asyncio
import json

import pytest
import pytest_asyncio
from jose import jwt
from tornado import httpclient, httpserver, testing, websocket

from relay_backend.conftest import ELEVATOR_MAC, FakeConfigRepository, FakeConnectedRepository, elevator_configuration


def make_token(subject: str) -> str:
    return jwt.encode({"sub": subject}, "test-secret", algorithm="HS256")


async def read_json(ws, timeout=5.0):
    raw = await asyncio.wait_for(ws.read_message(), timeout)
    assert raw is not None, f"connection closed ({ws.close_code})"
    return json.loads(raw)


@pytest_asyncio.fixture
async def app_server(monkeypatch):
    import relay_backend.main as main

    monkeypatch.setenv("JWT_ALGORITHM", "HS256")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("RELAY_COMMAND_TIMEOUT", "2")

    config_repo = FakeConfigRepository(elevator_configuration())
    connected_repo = FakeConnectedRepository()
    monkeypatch.setattr(main, "RelayConfigRepository", lambda: config_repo)
    monkeypatch.setattr(main, "ConnectedRelayRepository", lambda: connected_repo)

    app = main.make_app()
    server = httpserver.HTTPServer(app)
    sock, port = testing.bind_unused_port()
    server.add_socket(sock)
    yield app, port, connected_repo
    server.stop()


async def connect_admin(port):
    headers = {"Authorization": f"Bearer {make_token('operator-1')}"}
    return await websocket.websocket_connect(
        httpclient.HTTPRequest(f"ws://127.0.0.1:{port}/ws/admin", headers=headers)
    )


@pytest.mark.asyncio
async def test_device_session_and_admin_control(app_server):
    app, port, connected_repo = app_server
    admin_ws = device_ws = None
    try:
        admin_ws = await connect_admin(port)
        await admin_ws.write_message(json.dumps({"type": "get_connected_relays"}))
        empty = await read_json(admin_ws)
        assert empty == {"type": "connected_relays", "count": 0, "relays": []}

        device_ws = await websocket.websocket_connect(f"ws://127.0.0.1:{port}/ws/relay?id=aa:bb:cc:dd:ee:01")

        config = await read_json(device_ws)
        assert config["type"] == "config"
        assert config["device_name"] == "Elevator A"
        assert config["relays"][0]["function"] == "doorOpen"
        assert (await read_json(device_ws))["type"] == "get_relay_info"

        connected = await read_json(admin_ws)
        assert connected["type"] == "relay_connected"
        assert connected["relay"]["mac"] == ELEVATOR_MAC
        assert connected["relay"]["name"] == "Elevator A"
        assert connected_repo.status[ELEVATOR_MAC] == "online"

        await device_ws.write_message(
            json.dumps({"type": "relay_info", "relay_names": ["doorOpen", "doorClose"], "capabilities": ["door_control"]})
        )
        # Malformed frames are dropped without closing the session.
        await device_ws.write_message("{not json")

        # The device and admin sockets are read independently; wait for relay_info to land.
        for _ in range(50):
            await admin_ws.write_message(json.dumps({"type": "get_connected_relays"}))
            listing = await read_json(admin_ws)
            if listing["relays"] and listing["relays"][0]["capabilities"]:
                break
            await asyncio.sleep(0.02)
        assert listing["count"] == 1
        assert listing["relays"][0]["id"] == ELEVATOR_MAC
        assert listing["relays"][0]["capabilities"] == ["door_control"]
        assert listing["relays"][0]["status"] == "connected"

        await admin_ws.write_message(
            json.dumps({"type": "set_relay", "device_id": "Elevator A", "relay": "doorOpen", "state": True})
        )
        command = await read_json(device_ws)
        assert command == {"type": "relay_control", "relay": 0, "state": True}

        await device_ws.write_message(json.dumps({"type": "relay_state", "states": {"doorOpen": True}}))
        replies = {}
        for _ in range(2):
            message = await read_json(admin_ws)
            replies[message["type"]] = message
        assert replies["relay_state"] == {"type": "relay_state", "mac": ELEVATOR_MAC, "states": {"doorOpen": True}}
        assert replies["relay_command_sent"]["acknowledged"] is True
        assert replies["relay_command_sent"]["device_id"] == ELEVATOR_MAC

        device_ws.close()
        disconnected = await read_json(admin_ws)
        assert disconnected["type"] == "relay_disconnected"
        assert disconnected["relay"]["status"] == "disconnected"
        assert app.settings["registry"].session_for(ELEVATOR_MAC) is None
    finally:
        for ws in (admin_ws, device_ws):
            if ws is not None:
                ws.close()


@pytest.mark.asyncio
async def test_admin_errors_are_reported(app_server):
    _, port, _ = app_server
    admin_ws = await connect_admin(port)
    try:
        await admin_ws.write_message(
            json.dumps({"type": "set_relay", "device_id": "Elevator A", "relay": "doorOpen", "state": True})
        )
        offline = await read_json(admin_ws)
        assert offline["type"] == "error"
        assert offline["code"] == "device_offline"

        await admin_ws.write_message(json.dumps({"type": "emergency_stop", "device_id": "Elevator Z"}))
        missing = await read_json(admin_ws)
        assert missing["code"] == "device_not_found"

        await admin_ws.write_message(json.dumps({"type": "reboot_everything"}))
        invalid = await read_json(admin_ws)
        assert invalid["code"] == "invalid_request"
    finally:
        admin_ws.close()


@pytest.mark.asyncio
async def test_admin_requires_token(app_server):
    _, port, _ = app_server
    admin_ws = await websocket.websocket_connect(f"ws://127.0.0.1:{port}/ws/admin")

    assert await asyncio.wait_for(admin_ws.read_message(), 5) is None
    assert admin_ws.close_code == 4001


@pytest.mark.asyncio
async def test_reconnect_replaces_device_session(app_server):
    app, port, _ = app_server
    url = f"ws://127.0.0.1:{port}/ws/relay?id=AABBCCDDEE01"
    first = await websocket.websocket_connect(url)
    await read_json(first)
    await read_json(first)

    second = await websocket.websocket_connect(url)
    try:
        await read_json(second)
        await read_json(second)

        assert await asyncio.wait_for(first.read_message(), 5) is None
        assert first.close_code == 4000
        await asyncio.sleep(0.05)
        session = app.settings["registry"].session_for(ELEVATOR_MAC)
        assert session is not None and not session.closed
    finally:
        second.close()


@pytest.mark.asyncio
async def test_health_and_docs(app_server):
    _, port, _ = app_server
    client = httpclient.AsyncHTTPClient()

    health = await client.fetch(f"http://127.0.0.1:{port}/health")
    assert json.loads(health.body) == {"status": "ok"}

    docs = json.loads((await client.fetch(f"http://127.0.0.1:{port}/docs")).body)
    assert docs["websocket_endpoints"]["relay"].startswith("/ws/relay")
    assert "RelayStateFrame" in docs["device_inbound_messages"]
    assert docs["examples"]["config"]["relays"][0]["function"] == "doorOpen"
