from typing import List, Optional, Dict, Any
from .database import ConnectionPool, BaseRepository, to_db_time, to_db_json, from_db_json
from ..models.entities import SensorReading, SystemLogEntry, OTAHistory, OTAStatus, LogCategory
from ..utils.helpers import utcnow
from ..utils.logging import get_logger

logger = get_logger(__name__)


class SensorReadingRepository(BaseRepository[SensorReading]):
    def __init__(self, pool: ConnectionPool):
        super().__init__(pool)
        self.table_name = "sensor_readings"

    async def create_table(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS sensor_readings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source_id TEXT NOT NULL,
                    source_type TEXT NOT NULL,
                    gateway_id TEXT,
                    data TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                )
            ''')
            await conn.commit()

    async def create_indices(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_readings_source_time
                ON sensor_readings(source_id, timestamp)
            ''')
            await conn.commit()

    async def store_reading(self, reading: SensorReading) -> None:
        await self.execute('''
            INSERT INTO sensor_readings
            (source_id, source_type, gateway_id, data, timestamp)
            VALUES (?, ?, ?, ?, ?)
        ''', [
            reading.source_id,
            reading.source_type.value,
            reading.gateway_id,
            to_db_json(reading.data),
            to_db_time(reading.timestamp),
        ])

    async def get_readings(self, source_id: Optional[str] = None, limit: int = 100) -> List[SensorReading]:
        if source_id is None:
            return await self.fetch_all(
                'SELECT * FROM sensor_readings ORDER BY timestamp DESC, id DESC LIMIT ?', [limit]
            )
        return await self.fetch_all('''
            SELECT * FROM sensor_readings
            WHERE source_id = ?
            ORDER BY timestamp DESC, id DESC
            LIMIT ?
        ''', [source_id, limit])

    def _row_to_model(self, row: Dict[str, Any]) -> SensorReading:
        return SensorReading(
            source_id=row['source_id'],
            source_type=row['source_type'],
            gateway_id=row['gateway_id'],
            data=from_db_json(row['data']) or {},
            timestamp=row['timestamp'],
        )


class SystemLogRepository(BaseRepository[SystemLogEntry]):
    def __init__(self, pool: ConnectionPool):
        super().__init__(pool)
        self.table_name = "system_logs"

    async def create_table(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS system_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    category TEXT NOT NULL,
                    level TEXT NOT NULL,
                    message TEXT NOT NULL,
                    details TEXT,
                    source_id TEXT,
                    timestamp TEXT NOT NULL
                )
            ''')
            await conn.commit()

    async def create_indices(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_logs_category_time
                ON system_logs(category, timestamp)
            ''')
            await conn.commit()

    async def store_entry(self, entry: SystemLogEntry) -> None:
        await self.execute('''
            INSERT INTO system_logs
            (category, level, message, details, source_id, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
        ''', [
            entry.category.value,
            entry.level.value,
            entry.message,
            to_db_json(entry.details),
            entry.source_id,
            to_db_time(entry.timestamp),
        ])

    async def get_entries(self, category: Optional[LogCategory] = None, limit: int = 100) -> List[SystemLogEntry]:
        if category is None:
            return await self.fetch_all(
                'SELECT * FROM system_logs ORDER BY timestamp DESC, id DESC LIMIT ?', [limit]
            )
        return await self.fetch_all('''
            SELECT * FROM system_logs
            WHERE category = ?
            ORDER BY timestamp DESC, id DESC
            LIMIT ?
        ''', [LogCategory(category).value, limit])

    def _row_to_model(self, row: Dict[str, Any]) -> SystemLogEntry:
        return SystemLogEntry(
            category=row['category'],
            level=row['level'],
            message=row['message'],
            details=from_db_json(row['details']),
            source_id=row['source_id'],
            timestamp=row['timestamp'],
        )


class OTAHistoryRepository(BaseRepository[OTAHistory]):
    def __init__(self, pool: ConnectionPool):
        super().__init__(pool)
        self.table_name = "ota_history"

    async def create_table(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS ota_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    device_id TEXT NOT NULL,
                    firmware_version TEXT NOT NULL,
                    firmware_url TEXT,
                    status TEXT NOT NULL,
                    error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT
                )
            ''')
            await conn.commit()

    async def create_indices(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_ota_device_status
                ON ota_history(device_id, status)
            ''')
            await conn.commit()

    async def create(self, device_id: str, firmware_version: str, firmware_url: Optional[str]) -> OTAHistory:
        row = OTAHistory(device_id=device_id, firmware_version=firmware_version, firmware_url=firmware_url)
        async with self.pool.acquire() as conn:
            cursor = await conn.execute('''
                INSERT INTO ota_history
                (device_id, firmware_version, firmware_url, status, created_at)
                VALUES (?, ?, ?, ?, ?)
            ''', [device_id, firmware_version, firmware_url, row.status.value, to_db_time(row.created_at)])
            await conn.commit()
            row.id = cursor.lastrowid
        return row

    async def resolve(self, device_id: str, status: OTAStatus,
                      firmware_version: Optional[str], error: Optional[str]) -> Optional[OTAHistory]:
        pending = await self.fetch_one('''
            SELECT * FROM ota_history
            WHERE device_id = ? AND status = ?
            ORDER BY (firmware_version = ?) DESC, id DESC
            LIMIT 1
        ''', [device_id, OTAStatus.PENDING.value, firmware_version])
        if pending is None:
            return None

        pending.status = status
        pending.error = error
        pending.updated_at = utcnow()
        await self.execute(
            'UPDATE ota_history SET status = ?, error = ?, updated_at = ? WHERE id = ?',
            [status.value, error, to_db_time(pending.updated_at), pending.id]
        )
        return pending

    async def list_all(self, device_id: Optional[str] = None, limit: int = 100) -> List[OTAHistory]:
        if device_id is None:
            return await self.fetch_all('SELECT * FROM ota_history ORDER BY id DESC LIMIT ?', [limit])
        return await self.fetch_all(
            'SELECT * FROM ota_history WHERE device_id = ? ORDER BY id DESC LIMIT ?', [device_id, limit]
        )

    def _row_to_model(self, row: Dict[str, Any]) -> OTAHistory:
        return OTAHistory(**row)
