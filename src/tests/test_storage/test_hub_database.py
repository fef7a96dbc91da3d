import pytest
import pytest_asyncio
from datetime import timedelta
from iot_hub.models.entities import (
    EntityStatus, LogCategory, LogLevel, OTAStatus, SensorReading, SourceType, SystemLogEntry
)
from iot_hub.storage.hub_database import HubDatabase
from iot_hub.utils.helpers import utcnow


@pytest_asyncio.fixture
async def db(tmp_path):
    db = HubDatabase(str(tmp_path / "data" / "hub.db"), max_connections=2)
    await db.initialize()
    yield db
    await db.close()


@pytest.mark.asyncio
async def test_insert_device_is_insert_if_absent(db):
    assert await db.insert_device("D1") is True
    assert await db.insert_device("D1", "Renamed") is False

    device = await db.get_device("D1")
    assert device.device_name == "D1"
    assert device.status == EntityStatus.ACTIVE
    assert len(await db.list_devices()) == 1


@pytest.mark.asyncio
async def test_touch_device_never_moves_last_seen_back(db):
    now = utcnow()
    await db.touch_device("D1", EntityStatus.ACTIVE, now)
    await db.touch_device("D1", EntityStatus.ACTIVE, now - timedelta(minutes=10))

    device = await db.get_device("D1")
    assert device.last_seen == now


@pytest.mark.asyncio
async def test_set_status_leaves_last_seen(db):
    seen = utcnow() - timedelta(hours=1)
    await db.touch_device("D1", EntityStatus.ACTIVE, seen)

    assert await db.set_device_status("D1", EntityStatus.OFFLINE) is True
    assert await db.set_device_status("missing", EntityStatus.OFFLINE) is False

    device = await db.get_device("D1")
    assert device.status == EntityStatus.OFFLINE
    assert device.last_seen == seen


@pytest.mark.asyncio
async def test_update_device(db):
    await db.insert_device("D1")

    assert await db.update_device("D1", firmware_version="2.0.0") is True
    assert (await db.get_device("D1")).firmware_version == "2.0.0"
    with pytest.raises(ValueError):
        await db.update_device("D1", status="offline")


@pytest.mark.asyncio
async def test_gateway_node_count_is_computed(db):
    await db.insert_gateway("GW1")
    await db.insert_node("AA", "GW1", "Freezer", -70)
    await db.insert_node("BB", "GW1", None, None)
    await db.insert_node("AA", "GW2", "Other", -50)

    gateway = await db.get_gateway("GW1")
    assert gateway.node_count == 2
    assert await db.count_nodes("GW2") == 1
    assert len(await db.list_nodes()) == 3
    assert len(await db.list_nodes("GW1")) == 2
    assert (await db.get_node("BB", "GW1")).node_name == "BB"


@pytest.mark.asyncio
async def test_touch_node_keeps_rssi_when_absent(db):
    await db.insert_node("AA", "GW1", "Freezer", -70)
    await db.touch_node("AA", "GW1", None)
    assert (await db.get_node("AA", "GW1")).rssi == -70

    await db.touch_node("AA", "GW1", -55)
    assert (await db.get_node("AA", "GW1")).rssi == -55


@pytest.mark.asyncio
async def test_readings_most_recent_first(db):
    start = utcnow()
    for i in range(3):
        await db.insert_reading(SensorReading(
            source_id="D1", source_type=SourceType.DEVICE, data={"n": i}, timestamp=start + timedelta(seconds=i)
        ))
    await db.insert_reading(SensorReading(source_id="AA", source_type=SourceType.NODE, gateway_id="GW1",
                                          data={"rssi": -70}))

    readings = await db.get_readings("D1")
    assert [r.data["n"] for r in readings] == [2, 1, 0]
    assert (await db.get_readings("AA"))[0].gateway_id == "GW1"
    assert len(await db.get_readings(limit=2)) == 2


@pytest.mark.asyncio
async def test_logs_by_category(db):
    await db.insert_log(SystemLogEntry(category=LogCategory.DEVICE, message="one", details={"a": 1}))
    await db.insert_log(SystemLogEntry(category=LogCategory.OTA, message="two", level=LogLevel.ERROR))

    ota_logs = await db.get_logs(LogCategory.OTA)
    assert [log.message for log in ota_logs] == ["two"]
    assert ota_logs[0].level == LogLevel.ERROR
    assert (await db.get_logs(LogCategory.DEVICE))[0].details == {"a": 1}
    assert len(await db.get_logs()) == 2


@pytest.mark.asyncio
async def test_resolve_ota_history_prefers_matching_version(db):
    first = await db.create_ota_history("D1", "1.5.0", "http://fw/1.5.0")
    second = await db.create_ota_history("D1", "2.0.0", "http://fw/2.0.0")
    assert first.id != second.id

    resolved = await db.resolve_ota_history("D1", OTAStatus.SUCCESS, "1.5.0")
    assert resolved.id == first.id
    assert resolved.status == OTAStatus.SUCCESS

    resolved = await db.resolve_ota_history("D1", OTAStatus.FAILED, None, "timeout")
    assert resolved.id == second.id
    assert resolved.error == "timeout"

    assert await db.resolve_ota_history("D1", OTAStatus.SUCCESS) is None
    assert await db.resolve_ota_history("D2", OTAStatus.SUCCESS) is None
