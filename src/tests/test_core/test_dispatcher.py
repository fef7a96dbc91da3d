import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock
from iot_hub.core.dispatcher import CommandDispatcher
from iot_hub.core.router import IngestionRouter
from iot_hub.models.entities import LogCategory, OTAStatus
from iot_hub.utils.exceptions import CommunicationError, NotConnectedError

FIRMWARE_URL = "https://firmware.example.com/d1-2.0.0.bin"


@pytest.fixture
def communication():
    communication = MagicMock()
    communication.is_connected = True
    communication.publish = AsyncMock()
    return communication


@pytest_asyncio.fixture
async def dispatcher(communication, store, event_manager, mqtt_topics):
    return CommandDispatcher(communication, store, event_manager, mqtt_topics)


@pytest.mark.asyncio
async def test_command_requires_connection(dispatcher, communication, store):
    communication.is_connected = False

    with pytest.raises(NotConnectedError):
        await dispatcher.send_command("D1", "reboot")

    communication.publish.assert_not_awaited()
    assert await store.get_logs() == []


@pytest.mark.asyncio
async def test_ota_requires_connection(dispatcher, communication, store):
    communication.is_connected = False

    with pytest.raises(NotConnectedError):
        await dispatcher.send_ota_update("D1", "2.0.0", FIRMWARE_URL)

    communication.publish.assert_not_awaited()
    assert await store.get_ota_history() == []


@pytest.mark.asyncio
async def test_send_command(dispatcher, communication, store):
    result = await dispatcher.send_command("D1", "set_interval", {"seconds": 30})

    topic, message = communication.publish.await_args.args
    assert topic == "CommandRequest/D1"
    assert message["device_id"] == "D1"
    assert message["command"] == "set_interval"
    assert message["params"] == {"seconds": 30}
    assert "timestamp" in message
    assert result.topic == "CommandRequest/D1"

    log = (await store.get_logs(LogCategory.COMMAND))[0]
    assert log.message == "Command sent to device D1: set_interval"
    assert log.source_id == "D1"


@pytest.mark.asyncio
async def test_publish_failure_reaches_caller(dispatcher, communication, store):
    communication.publish.side_effect = CommunicationError("broker refused")

    with pytest.raises(CommunicationError):
        await dispatcher.send_ota_update("D1", "2.0.0", FIRMWARE_URL)

    assert await store.get_ota_history() == []
    assert await store.get_logs() == []


@pytest.mark.asyncio
async def test_ota_round_trip(dispatcher, communication, store, event_manager, fanout_events, mqtt_topics):
    router = IngestionRouter(store, event_manager, mqtt_topics)
    await router.handle_message("SensorData/D1", {"device_id": "D1", "temperature": 20})

    await dispatcher.send_ota_update("D1", "2.0.0", FIRMWARE_URL)

    topic, message = communication.publish.await_args.args
    assert topic == "OTA/D1/update"
    assert message["device_id"] == "D1"
    assert message["firmware_version"] == "2.0.0"
    assert message["firmware_url"] == FIRMWARE_URL

    pending = await store.get_ota_history("D1")
    assert len(pending) == 1
    assert pending[0].status == OTAStatus.PENDING

    await router.handle_message("OTA/D1/response", {"device_id": "D1", "status": "success",
                                                    "firmware_version": "2.0.0"})

    assert (await store.get_device("D1")).firmware_version == "2.0.0"
    history = (await store.get_ota_history("D1"))[0]
    assert history.status == OTAStatus.SUCCESS
    assert history.updated_at is not None

    await event_manager.drain()
    ota_statuses = [event["message"]["status"] for event in fanout_events
                    if event["message"]["type"] == "ota_update"]
    assert ota_statuses == ["pending", "success"]
