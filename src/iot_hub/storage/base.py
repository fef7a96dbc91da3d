from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from ..models.entities import (
    Device, EntityStatus, Gateway, LogCategory, Node, OTAHistory, OTAStatus,
    SensorReading, SystemLogEntry
)


class Store(ABC):
    """
    Persistence contract used by the ingestion core.

    Devices and gateways are keyed by their id, nodes by (mac, gateway_id).
    Sensor readings, system logs and OTA history rows are append-only from
    the core's point of view; only OTA history status is ever resolved.
    Upsert style operations never raise on duplicates.
    """

    @abstractmethod
    async def initialize(self) -> None:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    # Devices

    @abstractmethod
    async def get_device(self, device_id: str) -> Optional[Device]:
        pass

    @abstractmethod
    async def insert_device(self, device_id: str, device_name: Optional[str] = None,
                            status: EntityStatus = EntityStatus.ACTIVE) -> bool:
        """Insert if absent. Returns True when a new record was created."""
        pass

    @abstractmethod
    async def touch_device(self, device_id: str, status: EntityStatus = EntityStatus.ACTIVE,
                           last_seen: Optional[datetime] = None) -> None:
        """Upsert status and last_seen; last_seen never moves backwards."""
        pass

    @abstractmethod
    async def set_device_status(self, device_id: str, status: EntityStatus) -> bool:
        """Change status only, leaving last_seen as it was."""
        pass

    @abstractmethod
    async def update_device(self, device_id: str, **fields) -> bool:
        pass

    @abstractmethod
    async def list_devices(self) -> List[Device]:
        pass

    # Gateways

    @abstractmethod
    async def get_gateway(self, gateway_id: str) -> Optional[Gateway]:
        pass

    @abstractmethod
    async def insert_gateway(self, gateway_id: str, gateway_name: Optional[str] = None,
                             status: EntityStatus = EntityStatus.ACTIVE) -> bool:
        pass

    @abstractmethod
    async def touch_gateway(self, gateway_id: str, status: EntityStatus = EntityStatus.ACTIVE,
                            last_seen: Optional[datetime] = None) -> None:
        pass

    @abstractmethod
    async def set_gateway_status(self, gateway_id: str, status: EntityStatus) -> bool:
        pass

    @abstractmethod
    async def list_gateways(self) -> List[Gateway]:
        pass

    @abstractmethod
    async def count_nodes(self, gateway_id: str) -> int:
        pass

    # Nodes

    @abstractmethod
    async def get_node(self, mac: str, gateway_id: str) -> Optional[Node]:
        pass

    @abstractmethod
    async def insert_node(self, mac: str, gateway_id: str, node_name: Optional[str] = None,
                          rssi: Optional[float] = None) -> bool:
        pass

    @abstractmethod
    async def touch_node(self, mac: str, gateway_id: str, rssi: Optional[float] = None,
                         last_seen: Optional[datetime] = None) -> None:
        """Refresh last_seen, and rssi when one is given."""
        pass

    @abstractmethod
    async def list_nodes(self, gateway_id: Optional[str] = None) -> List[Node]:
        pass

    # Append-only records

    @abstractmethod
    async def insert_reading(self, reading: SensorReading) -> None:
        pass

    @abstractmethod
    async def get_readings(self, source_id: Optional[str] = None, limit: int = 100) -> List[SensorReading]:
        """Most recent first."""
        pass

    @abstractmethod
    async def insert_log(self, entry: SystemLogEntry) -> None:
        pass

    @abstractmethod
    async def get_logs(self, category: Optional[LogCategory] = None, limit: int = 100) -> List[SystemLogEntry]:
        """Most recent first."""
        pass

    # OTA history

    @abstractmethod
    async def create_ota_history(self, device_id: str, firmware_version: str,
                                 firmware_url: Optional[str] = None) -> OTAHistory:
        pass

    @abstractmethod
    async def resolve_ota_history(self, device_id: str, status: OTAStatus,
                                  firmware_version: Optional[str] = None,
                                  error: Optional[str] = None) -> Optional[OTAHistory]:
        """
        Settle the newest pending row for the device, preferring one whose
        firmware version matches. Returns None when nothing was pending.
        """
        pass

    @abstractmethod
    async def get_ota_history(self, device_id: Optional[str] = None, limit: int = 100) -> List[OTAHistory]:
        pass
