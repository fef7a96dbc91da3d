import pytest
import pytest_asyncio
from unittest.mock import AsyncMock
from iot_hub.adapters.mqtt import MQTTAdapter, encode_payload, topic_matches
from iot_hub.core.communication_service import CommunicationService
from iot_hub.utils.exceptions import CommunicationError, NotConnectedError


@pytest_asyncio.fixture
async def adapter():
    adapter = MQTTAdapter({"host": "localhost", "port": 1883})
    yield adapter
    await adapter.disconnect()


@pytest.mark.parametrize("topic,pattern,expected", [
    ("SensorData/D1", "SensorData/#", True),
    ("SensorData/site/D1", "SensorData/#", True),
    ("OTA/D1/response", "OTA/+/response", True),
    ("OTA/D1/update", "OTA/+/response", False),
    ("BLEGatewayData/GW1", "SensorData/#", False),
])
def test_topic_matches(topic, pattern, expected):
    assert topic_matches(topic, pattern) is expected


def test_encode_payload():
    assert encode_payload({"a": 1}) == b'{"a": 1}'
    assert encode_payload("text") == b"text"
    assert encode_payload(b"raw") == b"raw"
    assert encode_payload(5) == b"5"


def test_invalid_config():
    with pytest.raises(CommunicationError):
        MQTTAdapter({"port": 1883})


@pytest.mark.asyncio
async def test_dispatch_uses_wildcards(adapter):
    sensor_handler = AsyncMock()
    ota_handler = AsyncMock()
    await adapter.subscribe("SensorData/#", sensor_handler)
    await adapter.subscribe("OTA/+/response", ota_handler)

    await adapter.dispatch("SensorData/D1", {"device_id": "D1"})
    await adapter.dispatch("OTA/D1/response", {"device_id": "D1"})
    await adapter.dispatch("Other/topic", {})

    sensor_handler.assert_awaited_once_with("SensorData/D1", {"device_id": "D1"})
    ota_handler.assert_awaited_once_with("OTA/D1/response", {"device_id": "D1"})


@pytest.mark.asyncio
async def test_handler_error_does_not_stop_other_handlers(adapter):
    failing = AsyncMock(side_effect=RuntimeError("handler bug"))
    healthy = AsyncMock()
    await adapter.subscribe("SensorData/#", failing)
    await adapter.subscribe("SensorData/#", healthy)

    await adapter.dispatch("SensorData/D1", {})

    healthy.assert_awaited_once()


@pytest.mark.asyncio
async def test_direct_publish_requires_connection(adapter):
    assert not adapter.is_connected
    with pytest.raises(NotConnectedError):
        await adapter.publish({"topic": "CommandRequest/D1", "payload": {"command": "reboot"}}, wait=True)


@pytest.mark.asyncio
async def test_direct_publish(adapter):
    adapter.client = AsyncMock()
    adapter.connected.set()

    await adapter.publish({"topic": "CommandRequest/D1", "payload": {"command": "reboot"}, "qos": 1}, wait=True)

    adapter.client.publish.assert_awaited_once_with(
        topic="CommandRequest/D1", payload=b'{"command": "reboot"}', qos=1, retain=False
    )


@pytest.mark.asyncio
async def test_communication_service_refuses_when_disconnected():
    service = CommunicationService({"communication": {"mqtt": {"host": "localhost"}}})

    assert not service.is_connected
    with pytest.raises(NotConnectedError):
        await service.publish("CommandRequest/D1", {"command": "reboot"})
