from typing import List, Optional, Dict, Any
from datetime import datetime
from .database import ConnectionPool, BaseRepository, to_db_time
from ..models.entities import Device, Gateway, Node, EntityStatus
from ..utils.helpers import utcnow
from ..utils.logging import get_logger

logger = get_logger(__name__)


class DeviceRepository(BaseRepository[Device]):
    UPDATABLE_FIELDS = ('device_name', 'firmware_version')

    def __init__(self, pool: ConnectionPool):
        super().__init__(pool)
        self.table_name = "devices"

    async def create_table(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS devices (
                    device_id TEXT PRIMARY KEY,
                    device_name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    last_seen TEXT NOT NULL,
                    firmware_version TEXT,
                    created_at TEXT NOT NULL
                )
            ''')
            await conn.commit()

    async def create_indices(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_devices_last_seen
                ON devices(last_seen)
            ''')
            await conn.commit()

    async def get(self, device_id: str) -> Optional[Device]:
        return await self.fetch_one('SELECT * FROM devices WHERE device_id = ?', [device_id])

    async def insert(self, device_id: str, device_name: Optional[str], status: EntityStatus) -> bool:
        now = to_db_time(utcnow())
        inserted = await self.execute('''
            INSERT OR IGNORE INTO devices
            (device_id, device_name, status, last_seen, created_at)
            VALUES (?, ?, ?, ?, ?)
        ''', [device_id, device_name or device_id, status.value, now, now])
        return inserted == 1

    async def touch(self, device_id: str, status: EntityStatus, last_seen: datetime) -> None:
        seen = to_db_time(last_seen)
        await self.execute('''
            INSERT INTO devices (device_id, device_name, status, last_seen, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(device_id) DO UPDATE SET
                status = excluded.status,
                last_seen = MAX(devices.last_seen, excluded.last_seen)
        ''', [device_id, device_id, status.value, seen, to_db_time(utcnow())])

    async def set_status(self, device_id: str, status: EntityStatus) -> bool:
        updated = await self.execute(
            'UPDATE devices SET status = ? WHERE device_id = ?', [status.value, device_id]
        )
        return updated > 0

    async def update(self, device_id: str, **fields) -> bool:
        unknown = set(fields) - set(self.UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update device fields: {', '.join(sorted(unknown))}")
        if not fields:
            return False
        assignments = ', '.join(f'{key} = ?' for key in fields)
        updated = await self.execute(
            f'UPDATE devices SET {assignments} WHERE device_id = ?',
            [*fields.values(), device_id]
        )
        return updated > 0

    async def list_all(self) -> List[Device]:
        return await self.fetch_all('SELECT * FROM devices ORDER BY last_seen DESC')

    def _row_to_model(self, row: Dict[str, Any]) -> Device:
        return Device(**row)


class GatewayRepository(BaseRepository[Gateway]):
    def __init__(self, pool: ConnectionPool):
        super().__init__(pool)
        self.table_name = "gateways"

    async def create_table(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS gateways (
                    gateway_id TEXT PRIMARY KEY,
                    gateway_name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    last_seen TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            ''')
            await conn.commit()

    # node_count is derived, never stored
    _SELECT = '''
        SELECT g.*, (SELECT COUNT(*) FROM nodes n WHERE n.gateway_id = g.gateway_id) AS node_count
        FROM gateways g
    '''

    async def get(self, gateway_id: str) -> Optional[Gateway]:
        return await self.fetch_one(self._SELECT + ' WHERE g.gateway_id = ?', [gateway_id])

    async def insert(self, gateway_id: str, gateway_name: Optional[str], status: EntityStatus) -> bool:
        now = to_db_time(utcnow())
        inserted = await self.execute('''
            INSERT OR IGNORE INTO gateways
            (gateway_id, gateway_name, status, last_seen, created_at)
            VALUES (?, ?, ?, ?, ?)
        ''', [gateway_id, gateway_name or gateway_id, status.value, now, now])
        return inserted == 1

    async def touch(self, gateway_id: str, status: EntityStatus, last_seen: datetime) -> None:
        await self.execute('''
            INSERT INTO gateways (gateway_id, gateway_name, status, last_seen, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(gateway_id) DO UPDATE SET
                status = excluded.status,
                last_seen = MAX(gateways.last_seen, excluded.last_seen)
        ''', [gateway_id, gateway_id, status.value, to_db_time(last_seen), to_db_time(utcnow())])

    async def set_status(self, gateway_id: str, status: EntityStatus) -> bool:
        updated = await self.execute(
            'UPDATE gateways SET status = ? WHERE gateway_id = ?', [status.value, gateway_id]
        )
        return updated > 0

    async def list_all(self) -> List[Gateway]:
        return await self.fetch_all(self._SELECT + ' ORDER BY g.last_seen DESC')

    def _row_to_model(self, row: Dict[str, Any]) -> Gateway:
        return Gateway(**row)


class NodeRepository(BaseRepository[Node]):
    def __init__(self, pool: ConnectionPool):
        super().__init__(pool)
        self.table_name = "nodes"

    async def create_table(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS nodes (
                    mac TEXT NOT NULL,
                    gateway_id TEXT NOT NULL,
                    node_name TEXT NOT NULL,
                    rssi REAL,
                    last_seen TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (mac, gateway_id)
                )
            ''')
            await conn.commit()

    async def create_indices(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_nodes_gateway
                ON nodes(gateway_id)
            ''')
            await conn.commit()

    async def get(self, mac: str, gateway_id: str) -> Optional[Node]:
        return await self.fetch_one(
            'SELECT * FROM nodes WHERE mac = ? AND gateway_id = ?', [mac, gateway_id]
        )

    async def insert(self, mac: str, gateway_id: str, node_name: Optional[str], rssi: Optional[float]) -> bool:
        now = to_db_time(utcnow())
        inserted = await self.execute('''
            INSERT OR IGNORE INTO nodes
            (mac, gateway_id, node_name, rssi, last_seen, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        ''', [mac, gateway_id, node_name or mac, rssi, now, now])
        return inserted == 1

    async def touch(self, mac: str, gateway_id: str, rssi: Optional[float], last_seen: datetime) -> None:
        await self.execute('''
            INSERT INTO nodes (mac, gateway_id, node_name, rssi, last_seen, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(mac, gateway_id) DO UPDATE SET
                rssi = COALESCE(excluded.rssi, nodes.rssi),
                last_seen = MAX(nodes.last_seen, excluded.last_seen)
        ''', [mac, gateway_id, mac, rssi, to_db_time(last_seen), to_db_time(utcnow())])

    async def count(self, gateway_id: str) -> int:
        return await self.scalar('SELECT COUNT(*) FROM nodes WHERE gateway_id = ?', [gateway_id]) or 0

    async def list_all(self, gateway_id: Optional[str] = None) -> List[Node]:
        if gateway_id is None:
            return await self.fetch_all('SELECT * FROM nodes ORDER BY last_seen DESC')
        return await self.fetch_all(
            'SELECT * FROM nodes WHERE gateway_id = ? ORDER BY last_seen DESC', [gateway_id]
        )

    def _row_to_model(self, row: Dict[str, Any]) -> Node:
        return Node(**row)
