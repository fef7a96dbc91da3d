import asyncio
import pytest
import pytest_asyncio
from datetime import timedelta
from unittest.mock import AsyncMock
from iot_hub.core.sweeper import InactivitySweeper
from iot_hub.models.entities import EntityStatus, LogCategory
from iot_hub.utils.helpers import utcnow

NOW = utcnow()
STALE = NOW - timedelta(minutes=5, milliseconds=1)
FRESH = NOW - timedelta(minutes=4, seconds=59)


@pytest_asyncio.fixture
async def sweeper(store, event_manager):
    sweeper = InactivitySweeper(store, event_manager, {"inactivity_threshold": 300, "check_interval": 0.05})
    yield sweeper
    await sweeper.stop()


async def add_device(store, device_id, last_seen, status=EntityStatus.ACTIVE):
    await store.insert_device(device_id, status=status)
    store.devices[device_id].last_seen = last_seen


async def add_gateway(store, gateway_id, last_seen, status=EntityStatus.ACTIVE):
    await store.insert_gateway(gateway_id, status=status)
    store.gateways[gateway_id].last_seen = last_seen


@pytest.mark.asyncio
async def test_threshold_boundary(sweeper, store):
    await add_device(store, "stale", STALE)
    await add_device(store, "fresh", FRESH)
    await add_gateway(store, "gw-stale", STALE)
    await add_gateway(store, "gw-fresh", FRESH)

    await sweeper.sweep(NOW)

    assert (await store.get_device("stale")).status == EntityStatus.OFFLINE
    assert (await store.get_device("fresh")).status == EntityStatus.ACTIVE
    assert (await store.get_gateway("gw-stale")).status == EntityStatus.OFFLINE
    assert (await store.get_gateway("gw-fresh")).status == EntityStatus.ACTIVE


@pytest.mark.asyncio
async def test_offline_transition_keeps_last_seen(sweeper, store):
    await add_device(store, "D1", STALE)

    await sweeper.sweep(NOW)

    device = await store.get_device("D1")
    assert device.status == EntityStatus.OFFLINE
    assert device.last_seen == STALE

    logs = await store.get_logs(LogCategory.DEVICE)
    assert len(logs) == 1
    assert "D1 marked offline due to inactivity" in logs[0].message
    assert STALE.isoformat() in logs[0].message


@pytest.mark.asyncio
async def test_online_counts_as_live(sweeper, store):
    await add_device(store, "D1", STALE, EntityStatus.ONLINE)

    await sweeper.sweep(NOW)

    assert (await store.get_device("D1")).status == EntityStatus.OFFLINE


@pytest.mark.asyncio
async def test_already_offline_is_skipped(sweeper, store):
    await add_device(store, "D1", STALE, EntityStatus.OFFLINE)
    await add_device(store, "D2", STALE, EntityStatus.UNKNOWN)

    await sweeper.sweep(NOW)
    await sweeper.sweep(NOW)

    assert await store.get_logs() == []
    assert (await store.get_device("D2")).status == EntityStatus.UNKNOWN


@pytest.mark.asyncio
async def test_status_events(sweeper, store, event_manager, fanout_events):
    await add_device(store, "D1", STALE)
    await add_gateway(store, "GW1", STALE)

    await sweeper.sweep(NOW)
    await event_manager.drain()

    by_type = {event["message"]["type"]: event for event in fanout_events}
    assert by_type["device_status"]["channel"] == "devices"
    assert by_type["device_status"]["message"]["status"] == "offline"
    assert by_type["gateway_status"]["channel"] == "gateways"
    assert by_type["gateway_status"]["message"]["gateway_id"] == "GW1"


@pytest.mark.asyncio
async def test_nodes_are_reported_not_mutated(sweeper, store):
    await store.insert_node("AA:BB", "GW1", "Freezer", -70)
    store.nodes[("AA:BB", "GW1")].last_seen = STALE
    before = await store.get_node("AA:BB", "GW1")

    await sweeper.sweep(NOW)
    await sweeper.sweep(NOW + timedelta(seconds=60))

    assert await store.get_node("AA:BB", "GW1") == before
    logs = await store.get_logs(LogCategory.NODE)
    assert len(logs) == 1
    assert "Freezer (AA:BB) inactive" in logs[0].message

    # A new last_seen that goes stale again is reported again
    store.nodes[("AA:BB", "GW1")].last_seen = NOW
    await sweeper.sweep(NOW + timedelta(minutes=6))
    assert len(await store.get_logs(LogCategory.NODE)) == 2


@pytest.mark.asyncio
async def test_scans_fail_independently(sweeper, store):
    await add_gateway(store, "GW1", STALE)
    store.list_devices = AsyncMock(side_effect=RuntimeError("devices table corrupt"))

    await sweeper.sweep(NOW)

    assert (await store.get_gateway("GW1")).status == EntityStatus.OFFLINE


@pytest.mark.asyncio
async def test_start_scans_immediately_and_is_idempotent(sweeper, store):
    await add_device(store, "D1", utcnow() - timedelta(hours=1))

    sweeper.start()
    task = sweeper._task
    sweeper.start()
    assert sweeper._task is task

    await asyncio.sleep(0.01)
    assert (await store.get_device("D1")).status == EntityStatus.OFFLINE

    await sweeper.stop()
    await sweeper.stop()
    assert not sweeper.is_running


@pytest.mark.asyncio
async def test_loop_survives_failing_scan(sweeper, store):
    store.list_devices = AsyncMock(side_effect=RuntimeError("boom"))

    sweeper.start()
    await asyncio.sleep(0.12)

    assert sweeper.is_running
    assert store.list_devices.await_count >= 2
