from datetime import datetime
from typing import Dict, List, Optional, Tuple
import asyncio

from .base import Store
from ..models.entities import (
    Device, EntityStatus, Gateway, LogCategory, Node, OTAHistory, OTAStatus,
    SensorReading, SystemLogEntry
)
from ..utils.helpers import utcnow
from ..utils.logging import get_logger

logger = get_logger(__name__)


class MemoryStore(Store):
    """Process-local store, for development runs and tests"""

    _DEVICE_FIELDS = {'device_name', 'firmware_version'}

    def __init__(self):
        self.devices: Dict[str, Device] = {}
        self.gateways: Dict[str, Gateway] = {}
        self.nodes: Dict[Tuple[str, str], Node] = {}
        self.readings: List[SensorReading] = []
        self.logs: List[SystemLogEntry] = []
        self.ota_history: List[OTAHistory] = []
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        logger.info("Using in-memory store")

    async def close(self) -> None:
        pass

    async def get_device(self, device_id: str) -> Optional[Device]:
        device = self.devices.get(device_id)
        return device.model_copy() if device else None

    async def insert_device(self, device_id, device_name=None, status=EntityStatus.ACTIVE) -> bool:
        async with self._lock:
            if device_id in self.devices:
                return False
            self.devices[device_id] = Device(
                device_id=device_id, device_name=device_name or device_id, status=status
            )
            return True

    async def touch_device(self, device_id, status=EntityStatus.ACTIVE, last_seen=None) -> None:
        last_seen = last_seen or utcnow()
        async with self._lock:
            device = self.devices.get(device_id)
            if device is None:
                self.devices[device_id] = Device(
                    device_id=device_id, device_name=device_id, status=status, last_seen=last_seen
                )
                return
            device.status = status
            device.last_seen = max(device.last_seen, last_seen)

    async def set_device_status(self, device_id, status) -> bool:
        async with self._lock:
            device = self.devices.get(device_id)
            if device is None:
                return False
            device.status = status
            return True

    async def update_device(self, device_id, **fields) -> bool:
        unknown = set(fields) - self._DEVICE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update device fields: {', '.join(sorted(unknown))}")
        async with self._lock:
            device = self.devices.get(device_id)
            if device is None:
                return False
            for key, value in fields.items():
                setattr(device, key, value)
            return True

    async def list_devices(self) -> List[Device]:
        return sorted((d.model_copy() for d in self.devices.values()),
                      key=lambda d: d.last_seen, reverse=True)

    async def get_gateway(self, gateway_id: str) -> Optional[Gateway]:
        gateway = self.gateways.get(gateway_id)
        if gateway is None:
            return None
        return gateway.model_copy(update={'node_count': await self.count_nodes(gateway_id)})

    async def insert_gateway(self, gateway_id, gateway_name=None, status=EntityStatus.ACTIVE) -> bool:
        async with self._lock:
            if gateway_id in self.gateways:
                return False
            self.gateways[gateway_id] = Gateway(
                gateway_id=gateway_id, gateway_name=gateway_name or gateway_id, status=status
            )
            return True

    async def touch_gateway(self, gateway_id, status=EntityStatus.ACTIVE, last_seen=None) -> None:
        last_seen = last_seen or utcnow()
        async with self._lock:
            gateway = self.gateways.get(gateway_id)
            if gateway is None:
                self.gateways[gateway_id] = Gateway(
                    gateway_id=gateway_id, gateway_name=gateway_id, status=status, last_seen=last_seen
                )
                return
            gateway.status = status
            gateway.last_seen = max(gateway.last_seen, last_seen)

    async def set_gateway_status(self, gateway_id, status) -> bool:
        async with self._lock:
            gateway = self.gateways.get(gateway_id)
            if gateway is None:
                return False
            gateway.status = status
            return True

    async def list_gateways(self) -> List[Gateway]:
        gateways = [await self.get_gateway(gateway_id) for gateway_id in list(self.gateways)]
        return sorted(gateways, key=lambda g: g.last_seen, reverse=True)

    async def count_nodes(self, gateway_id: str) -> int:
        return sum(1 for (_, gw) in self.nodes if gw == gateway_id)

    async def get_node(self, mac: str, gateway_id: str) -> Optional[Node]:
        node = self.nodes.get((mac, gateway_id))
        return node.model_copy() if node else None

    async def insert_node(self, mac, gateway_id, node_name=None, rssi=None) -> bool:
        async with self._lock:
            if (mac, gateway_id) in self.nodes:
                return False
            self.nodes[(mac, gateway_id)] = Node(
                mac=mac, gateway_id=gateway_id, node_name=node_name or mac, rssi=rssi
            )
            return True

    async def touch_node(self, mac, gateway_id, rssi=None, last_seen=None) -> None:
        last_seen = last_seen or utcnow()
        async with self._lock:
            node = self.nodes.get((mac, gateway_id))
            if node is None:
                self.nodes[(mac, gateway_id)] = Node(
                    mac=mac, gateway_id=gateway_id, node_name=mac, rssi=rssi, last_seen=last_seen
                )
                return
            if rssi is not None:
                node.rssi = rssi
            node.last_seen = max(node.last_seen, last_seen)

    async def list_nodes(self, gateway_id: Optional[str] = None) -> List[Node]:
        nodes = [n.model_copy() for n in self.nodes.values()
                 if gateway_id is None or n.gateway_id == gateway_id]
        return sorted(nodes, key=lambda n: n.last_seen, reverse=True)

    async def insert_reading(self, reading: SensorReading) -> None:
        async with self._lock:
            self.readings.append(reading.model_copy(deep=True))

    async def get_readings(self, source_id=None, limit=100) -> List[SensorReading]:
        matching = [r for r in reversed(self.readings) if source_id is None or r.source_id == source_id]
        return matching[:limit]

    async def insert_log(self, entry: SystemLogEntry) -> None:
        async with self._lock:
            self.logs.append(entry.model_copy(deep=True))

    async def get_logs(self, category=None, limit=100) -> List[SystemLogEntry]:
        matching = [e for e in reversed(self.logs) if category is None or e.category == category]
        return matching[:limit]

    async def create_ota_history(self, device_id, firmware_version, firmware_url=None) -> OTAHistory:
        async with self._lock:
            row = OTAHistory(
                id=len(self.ota_history) + 1,
                device_id=device_id,
                firmware_version=firmware_version,
                firmware_url=firmware_url,
            )
            self.ota_history.append(row)
            return row.model_copy()

    async def resolve_ota_history(self, device_id, status, firmware_version=None, error=None) -> Optional[OTAHistory]:
        async with self._lock:
            pending = [r for r in reversed(self.ota_history)
                       if r.device_id == device_id and r.status == OTAStatus.PENDING]
            if not pending:
                return None
            row = next((r for r in pending if r.firmware_version == firmware_version), pending[0])
            row.status = status
            row.error = error
            row.updated_at = utcnow()
            return row.model_copy()

    async def get_ota_history(self, device_id=None, limit=100) -> List[OTAHistory]:
        matching = [r for r in reversed(self.ota_history) if device_id is None or r.device_id == device_id]
        return [r.model_copy() for r in matching[:limit]]
