from typing import Any, Dict, List, Optional, Sequence
import aiosqlite
import asyncio
from contextlib import asynccontextmanager
from abc import ABC, abstractmethod

from ..utils.logging import get_logger
from ..utils.exceptions import ConnectionPoolError


logger = get_logger(__name__)


class ConnectionPool:
    """Manages a pool of database connections"""
    def __init__(self, db_path: str, max_connections: int = 5):
        self.db_path = db_path
        self.max_connections = max_connections
        self._pool: asyncio.Queue = asyncio.Queue(maxsize=max_connections)
        self._active_connections = 0
        self._lock = asyncio.Lock()

    async def _connect(self) -> aiosqlite.Connection:
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
            for _ in range(self.max_connections):
                conn = await self._connect()
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
                    connection = await self._connect()
                    self._active_connections += 1
                else:
                    try:
                        connection = await asyncio.wait_for(self._pool.get(), timeout=5.0)
                    except asyncio.TimeoutError:
                        raise ConnectionPoolError("Timeout waiting for database connection")

            yield connection

        finally:
            if connection:
                try:
                    if connection.in_transaction:
                        await connection.rollback()
                    await self._pool.put(connection)
                except Exception as e:
                    logger.error(f"Error returning connection to pool: {e}")
                    await connection.close()
                    async with self._lock:
                        self._active_connections -= 1

    async def close(self):
        """Close all connections in the pool"""
        while not self._pool.empty():
            conn = await self._pool.get()
            await conn.close()
        self._active_connections = 0


class BaseRepository(ABC):
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

    async def _fetch_all(self, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            async with conn.execute(query, params) as cursor:
                rows = await cursor.fetchall()
                return [dict(row) for row in rows]

    async def _fetch_one(self, query: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            async with conn.execute(query, params) as cursor:
                row = await cursor.fetchone()
                return dict(row) if row else None

    async def _execute(self, query: str, params: Sequence[Any] = ()) -> aiosqlite.Cursor:
        async with self.pool.acquire() as conn:
            cursor = await conn.execute(query, params)
            await conn.commit()
            return cursor
