from typing import Dict, Any, Callable, Iterable, Optional
import asyncio
from ..adapters.mqtt import MQTTAdapter
from ..utils.logging import get_logger
from ..utils.exceptions import CommunicationError, NotConnectedError

logger = get_logger(__name__)


class CommunicationService:
    """Owns the broker connection and wires inbound topics to a message handler"""
    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.communication_config = config['communication']
        self.mqtt_config = self.communication_config['mqtt']
        self.mqtt: Optional[MQTTAdapter] = None
        self._mqtt_connection_timeout = self.mqtt_config.get('connection_timeout', 90)  # seconds

    @property
    def is_connected(self) -> bool:
        return self.mqtt is not None and self.mqtt.is_connected

    async def _wait_for_mqtt_connection(self) -> None:
        """Wait for MQTT connection to be established"""
        try:
            await asyncio.wait_for(
                self.mqtt.connected.wait(),
                timeout=self._mqtt_connection_timeout
            )
        except asyncio.TimeoutError:
            raise CommunicationError(
                f"MQTT connection timeout after {self._mqtt_connection_timeout} seconds"
            )

    async def initialize(self, handler: Callable[[str, Any], Any], patterns: Iterable[str]) -> None:
        logger.info("Initializing Communication Service")
        if not self.mqtt_config.get('enabled', True):
            logger.warning("MQTT disabled in configuration, ingestion is idle")
            return

        try:
            self.mqtt = MQTTAdapter(self.mqtt_config)
            # Registered before connecting so the first session subscribes to them
            for pattern in patterns:
                await self.mqtt.subscribe(pattern, handler)
            await self.mqtt.connect()
            logger.info("Mqtt service started")

            await self._wait_for_mqtt_connection()
            logger.info("MQTT service fully initialized")
        except Exception as e:
            logger.error(f"Failed to initialize MQTT service: {str(e)}")
            if self.mqtt:
                await self.mqtt.disconnect()
            raise CommunicationError(f"MQTT initialization failed: {str(e)}")

    async def publish(self, topic: str, payload: Any, qos: Optional[int] = None) -> None:
        """Publish and wait for the broker hand-off"""
        if not self.is_connected:
            raise NotConnectedError("MQTT client not connected")
        await self.mqtt.publish({
            "topic": topic,
            "payload": payload,
            "qos": self.mqtt.config.publish_qos if qos is None else qos,
        }, wait=True)

    async def shutdown(self) -> None:
        logger.info("Shutting down communication services")
        if self.mqtt:
            await self.mqtt.disconnect()
