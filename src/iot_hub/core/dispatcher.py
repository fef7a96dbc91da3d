from typing import Any, Dict, Optional

from .audit import AuditLog
from .fanout import CHANNEL_OTA, ota_update_event, publish_fanout
from ..models.device import DispatchResult
from ..models.entities import LogCategory, OTAStatus
from ..storage.base import Store
from ..utils.exceptions import NotConnectedError
from ..utils.helpers import isoformat
from ..utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_COMMAND_TOPIC = "CommandRequest/{device_id}"
DEFAULT_OTA_TOPIC = "OTA/{device_id}/update"


class CommandDispatcher:
    """
    Outbound commands and OTA update requests to individual devices.

    Nothing is published or logged while the broker is unreachable; the
    caller gets NotConnectedError instead.
    """
    def __init__(self, communication, store: Store, event_manager=None,
                 topics: Optional[Dict[str, str]] = None, audit: Optional[AuditLog] = None):
        topics = topics or {}
        self.communication = communication
        self.store = store
        self.event_manager = event_manager
        self.audit = audit or AuditLog(store, event_manager)
        self.command_topic = topics.get('command_request', DEFAULT_COMMAND_TOPIC)
        self.ota_topic = topics.get('ota_update', DEFAULT_OTA_TOPIC)

    def _ensure_connected(self) -> None:
        if not self.communication.is_connected:
            raise NotConnectedError("MQTT client not connected")

    async def send_command(self, device_id: str, command: str,
                           params: Optional[Dict[str, Any]] = None) -> DispatchResult:
        self._ensure_connected()

        topic = self.command_topic.format(device_id=device_id)
        message = {
            "device_id": device_id,
            "command": command,
            "params": params or {},
            "timestamp": isoformat(),
        }
        await self.communication.publish(topic, message)
        logger.info(f"Command '{command}' sent to device {device_id}")

        await self.audit.record(
            LogCategory.COMMAND,
            f"Command sent to device {device_id}: {command}",
            details=message,
            source_id=device_id,
        )
        return DispatchResult(topic=topic, message=message)

    async def send_ota_update(self, device_id: str, firmware_version: str, firmware_url: str) -> DispatchResult:
        self._ensure_connected()

        topic = self.ota_topic.format(device_id=device_id)
        message = {
            "device_id": device_id,
            "firmware_version": firmware_version,
            "firmware_url": firmware_url,
            "timestamp": isoformat(),
        }
        await self.communication.publish(topic, message)
        logger.info(f"OTA update {firmware_version} sent to device {device_id}")

        await self.audit.record(
            LogCategory.OTA,
            f"OTA update sent to device {device_id}: version {firmware_version}",
            details={"firmware_version": firmware_version, "firmware_url": firmware_url},
            source_id=device_id,
        )
        history = await self.store.create_ota_history(device_id, firmware_version, firmware_url)
        await publish_fanout(self.event_manager, ota_update_event(device_id, OTAStatus.PENDING.value, {
            "firmware_version": firmware_version,
            "history_id": history.id,
        }), CHANNEL_OTA)
        return DispatchResult(topic=topic, message=message)
