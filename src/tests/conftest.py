import asyncio
import pytest
import pytest_asyncio
from iot_hub.core.event_manager import EventManager
from iot_hub.core.fanout import FANOUT_EVENT
from iot_hub.storage.memory import MemoryStore


class FakeConnection:
    """Stands in for a FastAPI WebSocket: send_json and close only"""
    def __init__(self, fail: bool = False, hang: bool = False, delay: float = 0):
        self.sent = []
        self.closed = None
        self.fail = fail
        self.hang = hang
        self.delay = delay

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("connection already closed")
        if self.hang:
            await asyncio.Event().wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = ""):
        self.closed = (code, reason)

    def types(self):
        return [message["type"] for message in self.sent]


@pytest.fixture
def mqtt_topics():
    return {
        "sensor_data": "SensorData/#",
        "gateway_data": "BLEGatewayData/#",
        "ota_response": "OTA/+/response",
        "command_request": "CommandRequest/{device_id}",
        "ota_update": "OTA/{device_id}/update",
    }


@pytest_asyncio.fixture
async def store():
    store = MemoryStore()
    await store.initialize()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def event_manager():
    event_manager = EventManager()
    yield event_manager
    await event_manager.stop()


@pytest_asyncio.fixture
async def fanout_events(event_manager):
    """Everything producers hand to the hub, as {"message", "channel"} dicts"""
    received = []

    async def collect(data):
        received.append(data)

    await event_manager.subscribe(FANOUT_EVENT, collect)
    return received
