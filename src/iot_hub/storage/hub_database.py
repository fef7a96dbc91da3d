from contextlib import asynccontextmanager
from typing import List, Optional

from .base import Store
from .database import ConnectionPool
from .registry_db import DeviceRepository, GatewayRepository, NodeRepository
from .telemetry_db import SensorReadingRepository, SystemLogRepository, OTAHistoryRepository
from ..models.entities import (
    Device, EntityStatus, Gateway, LogCategory, Node, OTAHistory, OTAStatus,
    SensorReading, SystemLogEntry
)
from ..utils.helpers import utcnow
from ..utils.logging import get_logger
from ..utils.exceptions import DatabaseError

logger = get_logger(__name__)


class HubDatabase(Store):
    """SQLite backed store"""
    def __init__(self, db_path: str, max_connections: int = 5):
        self.pool = ConnectionPool(db_path, max_connections)
        self.repositories = {}
        self._setup_repositories()

    def _setup_repositories(self):
        """Initialize all repository instances"""
        self.repositories['devices'] = DeviceRepository(self.pool)
        self.repositories['gateways'] = GatewayRepository(self.pool)
        self.repositories['nodes'] = NodeRepository(self.pool)
        self.repositories['readings'] = SensorReadingRepository(self.pool)
        self.repositories['logs'] = SystemLogRepository(self.pool)
        self.repositories['ota'] = OTAHistoryRepository(self.pool)

    @property
    def devices(self) -> DeviceRepository:
        return self.repositories['devices']

    @property
    def gateways(self) -> GatewayRepository:
        return self.repositories['gateways']

    @property
    def nodes(self) -> NodeRepository:
        return self.repositories['nodes']

    async def initialize(self) -> None:
        """Initialize the database and all repositories"""
        await self.pool.initialize()

        for repo in self.repositories.values():
            await repo.create_table()
            await repo.create_indices()
        logger.info(f"Database ready at {self.pool.db_path}")

    @asynccontextmanager
    async def _guard(self, action: str):
        try:
            yield
        except (DatabaseError, ValueError):
            raise
        except Exception as e:
            logger.error(f"Failed to {action}: {e}")
            raise DatabaseError(f"Failed to {action}: {e}")

    async def get_device(self, device_id: str) -> Optional[Device]:
        async with self._guard("get device"):
            return await self.devices.get(device_id)

    async def insert_device(self, device_id, device_name=None, status=EntityStatus.ACTIVE) -> bool:
        async with self._guard("insert device"):
            created = await self.devices.insert(device_id, device_name, status)
        if created:
            logger.info(f"Registered device: {device_id}")
        return created

    async def touch_device(self, device_id, status=EntityStatus.ACTIVE, last_seen=None) -> None:
        async with self._guard("update device status"):
            await self.devices.touch(device_id, status, last_seen or utcnow())

    async def set_device_status(self, device_id, status) -> bool:
        async with self._guard("set device status"):
            return await self.devices.set_status(device_id, status)

    async def update_device(self, device_id, **fields) -> bool:
        async with self._guard("update device"):
            return await self.devices.update(device_id, **fields)

    async def list_devices(self) -> List[Device]:
        async with self._guard("list devices"):
            return await self.devices.list_all()

    async def get_gateway(self, gateway_id: str) -> Optional[Gateway]:
        async with self._guard("get gateway"):
            return await self.gateways.get(gateway_id)

    async def insert_gateway(self, gateway_id, gateway_name=None, status=EntityStatus.ACTIVE) -> bool:
        async with self._guard("insert gateway"):
            created = await self.gateways.insert(gateway_id, gateway_name, status)
        if created:
            logger.info(f"Registered gateway: {gateway_id}")
        return created

    async def touch_gateway(self, gateway_id, status=EntityStatus.ACTIVE, last_seen=None) -> None:
        async with self._guard("update gateway status"):
            await self.gateways.touch(gateway_id, status, last_seen or utcnow())

    async def set_gateway_status(self, gateway_id, status) -> bool:
        async with self._guard("set gateway status"):
            return await self.gateways.set_status(gateway_id, status)

    async def list_gateways(self) -> List[Gateway]:
        async with self._guard("list gateways"):
            return await self.gateways.list_all()

    async def count_nodes(self, gateway_id: str) -> int:
        async with self._guard("count nodes"):
            return await self.nodes.count(gateway_id)

    async def get_node(self, mac: str, gateway_id: str) -> Optional[Node]:
        async with self._guard("get node"):
            return await self.nodes.get(mac, gateway_id)

    async def insert_node(self, mac, gateway_id, node_name=None, rssi=None) -> bool:
        async with self._guard("insert node"):
            return await self.nodes.insert(mac, gateway_id, node_name, rssi)

    async def touch_node(self, mac, gateway_id, rssi=None, last_seen=None) -> None:
        async with self._guard("update node"):
            await self.nodes.touch(mac, gateway_id, rssi, last_seen or utcnow())

    async def list_nodes(self, gateway_id: Optional[str] = None) -> List[Node]:
        async with self._guard("list nodes"):
            return await self.nodes.list_all(gateway_id)

    async def insert_reading(self, reading: SensorReading) -> None:
        async with self._guard("store sensor reading"):
            await self.repositories['readings'].store_reading(reading)

    async def get_readings(self, source_id=None, limit=100) -> List[SensorReading]:
        async with self._guard("get sensor readings"):
            return await self.repositories['readings'].get_readings(source_id, limit)

    async def insert_log(self, entry: SystemLogEntry) -> None:
        async with self._guard("store system log"):
            await self.repositories['logs'].store_entry(entry)

    async def get_logs(self, category: Optional[LogCategory] = None, limit=100) -> List[SystemLogEntry]:
        async with self._guard("get system logs"):
            return await self.repositories['logs'].get_entries(category, limit)

    async def create_ota_history(self, device_id, firmware_version, firmware_url=None) -> OTAHistory:
        async with self._guard("create OTA history"):
            return await self.repositories['ota'].create(device_id, firmware_version, firmware_url)

    async def resolve_ota_history(self, device_id, status: OTAStatus, firmware_version=None,
                                  error=None) -> Optional[OTAHistory]:
        async with self._guard("resolve OTA history"):
            return await self.repositories['ota'].resolve(device_id, status, firmware_version, error)

    async def get_ota_history(self, device_id=None, limit=100) -> List[OTAHistory]:
        async with self._guard("get OTA history"):
            return await self.repositories['ota'].list_all(device_id, limit)

    async def close(self) -> None:
        """Close all database connections"""
        logger.info("Shutting down database...")
        await self.pool.close()
        logger.info("Database connections closed")
