from typing import List, Dict, Any, Optional, Generic, TypeVar
from datetime import datetime, timezone
import aiosqlite
import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path
from abc import ABC, abstractmethod

from ..utils.logging import get_logger
from ..utils.exceptions import ConnectionPoolError


logger = get_logger(__name__)

# Type definitions
T = TypeVar('T')


def to_db_time(dt: datetime) -> str:
    """Fixed-width UTC text so timestamps sort and compare as strings"""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec='microseconds')


def to_db_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def from_db_json(value: Optional[str]) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


class ConnectionPool:
    """Manages a pool of database connections"""
    def __init__(self, db_path: str, max_connections: int = 5):
        self.db_path = db_path
        self.max_connections = max_connections
        self._pool: asyncio.Queue = asyncio.Queue(maxsize=max_connections)
        self._active_connections = 0
        self._lock = asyncio.Lock()

    async def _open(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(self.db_path)
        conn.row_factory = aiosqlite.Row
        await conn.execute('PRAGMA journal_mode=WAL')
        await conn.execute('PRAGMA foreign_keys=ON')
        await conn.execute('PRAGMA busy_timeout=5000')
        return conn

    async def initialize(self):
        """Initialize the connection pool"""
        logger.info(f"Initializing connection pool with {self.max_connections} connections")
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            for _ in range(self.max_connections):
                conn = await self._open()
                await self._pool.put(conn)
                self._active_connections += 1
        except Exception as e:
            logger.error(f"Failed to initialize connection pool: {e}")
            raise ConnectionPoolError(f"Connection pool initialization failed: {e}")

    @asynccontextmanager
    async def acquire(self):
        """Acquire a connection from the pool"""
        connection = None
        try:
            async with self._lock:
                if self._pool.empty() and self._active_connections < self.max_connections:
                    # Create new connection if pool is empty and we haven't reached max
                    connection = await self._open()
                    self._active_connections += 1
                else:
                    # Wait for available connection with timeout
                    try:
                        connection = await asyncio.wait_for(self._pool.get(), timeout=5.0)
                    except asyncio.TimeoutError:
                        raise ConnectionPoolError("Timeout waiting for database connection")

            yield connection

        finally:
            if connection:
                try:
                    self._pool.put_nowait(connection)
                except asyncio.QueueFull:
                    logger.error("Connection pool overflow, closing connection")
                    await connection.close()
                    async with self._lock:
                        self._active_connections -= 1

    async def close(self):
        """Close all connections in the pool"""
        while not self._pool.empty():
            conn = await self._pool.get()
            await conn.close()
        self._active_connections = 0


class BaseRepository(ABC, Generic[T]):
    """Abstract base class for table repositories"""
    def __init__(self, pool: ConnectionPool):
        self.pool = pool
        self.table_name: str = ""  # Must be set by implementing classes

    @abstractmethod
    async def create_table(self) -> None:
        """Create the repository's table"""
        pass

    async def create_indices(self) -> None:
        """Create indices for the repository's table"""
        pass

    async def fetch_all(self, query: str, params: Optional[List[Any]] = None) -> List[T]:
        async with self.pool.acquire() as conn:
            async with conn.execute(query, params or []) as cursor:
                rows = await cursor.fetchall()
                return [self._row_to_model(dict(row)) for row in rows]

    async def fetch_one(self, query: str, params: Optional[List[Any]] = None) -> Optional[T]:
        async with self.pool.acquire() as conn:
            async with conn.execute(query, params or []) as cursor:
                row = await cursor.fetchone()
                return self._row_to_model(dict(row)) if row else None

    async def scalar(self, query: str, params: Optional[List[Any]] = None) -> Any:
        async with self.pool.acquire() as conn:
            async with conn.execute(query, params or []) as cursor:
                row = await cursor.fetchone()
                return row[0] if row else None

    async def execute(self, query: str, params: Optional[List[Any]] = None) -> int:
        """Run a write statement and return the affected row count"""
        async with self.pool.acquire() as conn:
            cursor = await conn.execute(query, params or [])
            await conn.commit()
            return cursor.rowcount

    @abstractmethod
    def _row_to_model(self, row: Dict[str, Any]) -> T:
        """Convert a database row to a model object"""
        pass
