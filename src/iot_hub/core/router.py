import asyncio
import traceback
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional

from .audit import AuditLog
from .fanout import (
    CHANNEL_DEVICES, CHANNEL_GATEWAYS, CHANNEL_OTA, CHANNEL_SENSOR_DATA,
    device_status_event, gateway_status_event, mqtt_message_event, ota_update_event,
    publish_fanout, sensor_data_event
)
from ..models.entities import EntityStatus, LogCategory, LogLevel, OTAStatus, SensorReading, SourceType
from ..storage.base import Store
from ..utils.helpers import (
    as_float, coerce_identifier, device_measurements, isoformat, node_display_name, node_measurements,
    parse_payload, topic_prefix, utcnow
)
from ..utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TOPICS = {
    "sensor_data": "SensorData/#",
    "gateway_data": "BLEGatewayData/#",
    "ota_response": "OTA/+/response",
}

# OTA response statuses that settle a pending history row
OTA_FAILURE_STATUSES = {"failed", "failure", "error"}


class Route(NamedTuple):
    name: str
    predicate: Callable[[str], bool]
    handler: Callable[[str, Dict[str, Any]], Awaitable[None]]


def prefix_predicate(pattern: str) -> Callable[[str], bool]:
    prefix = topic_prefix(pattern)
    return lambda topic: topic.startswith(prefix)


class IngestionRouter:
    """
    Turns broker messages into registry updates, sensor readings and fanout events.

    Routes are checked top-down: sensor data, then gateway data, then OTA
    responses. A topic matching none of them only produces the generic
    ``mqtt_message`` broadcast.
    """
    def __init__(self, store: Store, event_manager=None, topics: Optional[Dict[str, str]] = None,
                 audit: Optional[AuditLog] = None):
        self.store = store
        self.event_manager = event_manager
        self.audit = audit or AuditLog(store, event_manager)
        self.topics = {**DEFAULT_TOPICS, **(topics or {})}
        self.routes: List[Route] = [
            Route("sensor_data", prefix_predicate(self.topics["sensor_data"]), self.handle_sensor_data),
            Route("gateway_data", prefix_predicate(self.topics["gateway_data"]), self.handle_gateway_data),
            Route("ota_response", prefix_predicate(self.topics["ota_response"]), self.handle_ota_response),
        ]
        self._accepting = True
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def subscription_patterns(self) -> List[str]:
        return [self.topics[name] for name in DEFAULT_TOPICS]

    def classify(self, topic: str) -> Optional[Route]:
        return next((route for route in self.routes if route.predicate(topic)), None)

    async def handle_message(self, topic: str, payload: Any) -> None:
        """MQTT adapter handler; never raises"""
        if not self._accepting:
            logger.debug(f"Router stopped, ignoring message on {topic}")
            return

        self._in_flight += 1
        self._idle.clear()
        try:
            await self._process(topic, payload)
        finally:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.set()

    async def _process(self, topic: str, raw: Any) -> None:
        try:
            payload = parse_payload(raw)
            if payload is None:
                logger.warning(f"Invalid JSON message on {topic}: {str(raw)[:100]}")
                return

            route = self.classify(topic)
            if route:
                await route.handler(topic, payload)
            else:
                logger.debug(f"No route for topic {topic}")

            await publish_fanout(self.event_manager, mqtt_message_event(topic, payload))

        except Exception as e:
            logger.error(f"Error handling message on {topic}: {traceback.format_exc()}")
            await self.audit.try_record(
                LogCategory.MQTT,
                f"Message processing error on {topic}: {e}",
                level=LogLevel.ERROR,
                details={"topic": topic, "error": str(e)},
            )

    async def stop(self) -> None:
        """Stop accepting messages and wait for the ones being handled"""
        self._accepting = False
        await self._idle.wait()
        logger.info("Ingestion router stopped")

    async def _register_device(self, device_id: str, now) -> None:
        existing = await self.store.get_device(device_id)
        if existing is None and await self.store.insert_device(device_id, device_id, EntityStatus.ACTIVE):
            logger.info(f"Auto-registering new device: {device_id}")
            await self.audit.record(LogCategory.DEVICE, f"New device auto-registered: {device_id}",
                                    source_id=device_id)
        else:
            await self.store.touch_device(device_id, EntityStatus.ACTIVE, now)

        await publish_fanout(self.event_manager, device_status_event(device_id, EntityStatus.ACTIVE.value, {
            "last_seen": isoformat(now),
            "registered": existing is None,
        }), CHANNEL_DEVICES)

    async def _register_gateway(self, gateway_id: str, now) -> None:
        existing = await self.store.get_gateway(gateway_id)
        if existing is None and await self.store.insert_gateway(gateway_id, gateway_id, EntityStatus.ACTIVE):
            logger.info(f"Auto-registering new gateway: {gateway_id}")
            await self.audit.record(LogCategory.GATEWAY, f"New gateway auto-registered: {gateway_id}",
                                    source_id=gateway_id)
        else:
            await self.store.touch_gateway(gateway_id, EntityStatus.ACTIVE, now)

        await publish_fanout(self.event_manager, gateway_status_event(gateway_id, EntityStatus.ACTIVE.value, {
            "last_seen": isoformat(now),
            "registered": existing is None,
        }), CHANNEL_GATEWAYS)

    async def handle_sensor_data(self, topic: str, payload: Dict[str, Any]) -> None:
        """Direct device telemetry: every field except device_id is kept"""
        device_id = coerce_identifier(payload.get("device_id"))
        if not device_id:
            logger.warning(f"Sensor data missing device_id: {payload}")
            return

        now = utcnow()
        await self._register_device(device_id, now)

        reading = SensorReading(
            source_id=device_id,
            source_type=SourceType.DEVICE,
            gateway_id=None,
            data=device_measurements(payload),
            timestamp=now,
        )
        await self.store.insert_reading(reading)
        await self.audit.record(LogCategory.DEVICE, f"Sensor data received from {device_id}",
                                details=payload, source_id=device_id)
        await publish_fanout(self.event_manager, sensor_data_event(reading), CHANNEL_SENSOR_DATA)
        logger.debug(f"Sensor data stored for device {device_id}")

    async def handle_gateway_data(self, topic: str, payload: Dict[str, Any]) -> None:
        """Gateway relayed node telemetry: only temperature, humidity and rssi are kept"""
        gateway_id = coerce_identifier(payload.get("gateway_id"))
        mac = coerce_identifier(payload.get("mac"))
        if not gateway_id or not mac:
            logger.warning(f"Gateway data missing gateway_id or mac: {payload}")
            return

        now = utcnow()
        await self._register_gateway(gateway_id, now)

        rssi = as_float(payload.get("rssi"))
        node_name = node_display_name(payload.get("beacon_name"), mac)
        node = await self.store.get_node(mac, gateway_id)
        if node is None and await self.store.insert_node(mac, gateway_id, node_name,
                                                         rssi if rssi is not None else 0):
            logger.info(f"Auto-registering new node: {node_name} ({mac})")
        else:
            await self.store.touch_node(mac, gateway_id, rssi, now)

        measurements = node_measurements(payload)
        if measurements:
            reading = SensorReading(
                source_id=mac,
                source_type=SourceType.NODE,
                gateway_id=gateway_id,
                data=measurements,
                timestamp=now,
            )
            await self.store.insert_reading(reading)
            await publish_fanout(self.event_manager, sensor_data_event(reading), CHANNEL_SENSOR_DATA)

        await self.audit.record(LogCategory.MQTT, f"Sensor data received from {node_name} via {gateway_id}",
                                details=measurements, source_id=mac)
        logger.debug(f"Gateway data stored: {gateway_id} -> {node_name} ({mac})")

    async def handle_ota_response(self, topic: str, payload: Dict[str, Any]) -> None:
        device_id = coerce_identifier(payload.get("device_id"))
        if not device_id:
            logger.warning(f"OTA response missing device_id: {payload}")
            return

        status = str(payload.get("status"))
        succeeded = status == "success"
        firmware_version = payload.get("firmware_version")

        await self.audit.record(
            LogCategory.OTA,
            f"OTA update {status} for device {device_id}",
            level=LogLevel.INFO if succeeded else LogLevel.ERROR,
            details=payload,
            source_id=device_id,
        )

        if succeeded and firmware_version:
            await self.store.update_device(device_id, firmware_version=str(firmware_version))

        history = None
        if succeeded or status.lower() in OTA_FAILURE_STATUSES:
            history = await self.store.resolve_ota_history(
                device_id,
                OTAStatus.SUCCESS if succeeded else OTAStatus.FAILED,
                firmware_version=str(firmware_version) if firmware_version else None,
                error=None if succeeded else str(payload.get("error") or status),
            )

        await publish_fanout(self.event_manager, ota_update_event(device_id, status, {
            "firmware_version": firmware_version,
            "history_id": history.id if history else None,
        }), CHANNEL_OTA)
        logger.info(f"OTA response from {device_id}: {status}")
