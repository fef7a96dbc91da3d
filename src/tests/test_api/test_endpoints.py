import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect
from iot_hub.__main__ import APIServer, AppState, ConfigManager, IoTHubApp, create_default_config
from iot_hub.core.auth import Identity, TokenAuthenticator
from iot_hub.core.dispatcher import CommandDispatcher
from iot_hub.core.fanout import FanoutHub
from iot_hub.storage.memory import MemoryStore
from iot_hub.utils.exceptions import ConfigurationError


@pytest.fixture
def authenticator():
    return TokenAuthenticator({"secret": "api-secret"})


@pytest.fixture
def communication():
    communication = MagicMock()
    communication.is_connected = True
    communication.publish = AsyncMock()
    return communication


@pytest.fixture
def client(authenticator, communication):
    state = AppState()
    state.store = MemoryStore()
    state.hub = FanoutHub(authenticator)
    state.communication_service = communication
    state.dispatcher = CommandDispatcher(communication, state.store)

    server = APIServer({"api": {"host": "127.0.0.1", "port": 0}}, asyncio.Event(), state)
    app = asyncio.run(server.initialize())
    with TestClient(app) as client:
        yield client


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["mqtt_connected"] is True


def test_send_command(client, communication):
    response = client.post("/api/v1/devices/D1/commands", json={"command": "reboot"})

    assert response.status_code == 200
    assert response.json()["topic"] == "CommandRequest/D1"
    communication.publish.assert_awaited_once()


def test_commands_unavailable_without_broker(client, communication):
    communication.is_connected = False

    assert client.post("/api/v1/devices/D1/commands", json={"command": "reboot"}).status_code == 503
    assert client.post("/api/v1/devices/D1/ota", json={
        "firmware_version": "2.0.0", "firmware_url": "http://fw/2.0.0"
    }).status_code == 503


def test_command_validation(client):
    assert client.post("/api/v1/devices/D1/commands", json={"command": ""}).status_code == 422


def test_websocket_requires_token(client):
    with client.websocket_connect("/ws") as websocket:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            websocket.receive_json()
    assert exc_info.value.code == 1008
    assert exc_info.value.reason == "Authentication required"


def test_websocket_rejects_bad_token(client):
    with client.websocket_connect("/ws?token=forged") as websocket:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            websocket.receive_json()
    assert exc_info.value.reason == "Invalid token"


def test_websocket_session(client, authenticator):
    token = authenticator.issue_token(Identity(user_id="1", username="operator"))

    with client.websocket_connect(f"/ws?token={token}") as websocket:
        connected = websocket.receive_json()
        assert connected["type"] == "connected"

        websocket.send_json({"type": "subscribe", "channel": "devices"})
        assert websocket.receive_json()["type"] == "subscribed"

        stats = client.get("/api/v1/realtime/stats").json()
        assert stats["connectedClients"] == 1
        assert stats["clients"][0]["subscriptions"] == ["devices"]

        websocket.send_json({"type": "ping"})
        assert websocket.receive_json()["type"] == "pong"


def test_config_validation():
    with pytest.raises(ConfigurationError):
        ConfigManager.validate(None)
    with pytest.raises(ConfigurationError):
        ConfigManager.validate({"api": {}, "communication": {"mqtt": {}}})

    ConfigManager.validate({
        "api": {}, "communication": {"mqtt": {}}, "database": {"backend": "memory"},
        "auth": {"secret": "s"}, "monitor": {}, "logging": {},
    })


def test_app_built_before_event_loop_runs(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    config_path = tmp_path / "hub.yml"
    create_default_config(config_path)
    app = IoTHubApp(str(config_path))

    async def exercise():
        events = app.app_state.event_manager
        received = []

        async def collect(data):
            received.append(data)

        await events.subscribe("app.started", collect)
        events.start()
        waiter = asyncio.create_task(app.shutdown_event.wait())
        await events.publish("app.started", {"ok": True})
        await asyncio.sleep(0.05)
        app.shutdown_event.set()
        await asyncio.wait_for(waiter, timeout=1)
        await events.stop()
        return received

    assert asyncio.run(exercise()) == [{"ok": True}]
