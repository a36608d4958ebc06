from typing import Any, Dict, List, Optional
from datetime import datetime
import json
from .database import ConnectionPool, BaseRepository
from ..utils.helpers import parse_db_timestamp, to_db_timestamp, utcnow
from ..utils.logging import get_logger
from ..utils.exceptions import DatabaseError

logger = get_logger(__name__)


class AuditRepository(BaseRepository):
    def __init__(self, pool: ConnectionPool):
        super().__init__(pool)
        self.table_name = "audit_logs"

    async def create_table(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS audit_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER,
                    action TEXT NOT NULL,
                    project_key TEXT,
                    gh_key TEXT,
                    detail TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL
                )
            ''')
            await conn.commit()

    async def create_indices(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_audit_logs_created_at
                ON audit_logs(created_at)
            ''')
            await conn.commit()

    async def insert(self, action: str, user_id: Optional[int] = None,
                     project_key: Optional[str] = None, gh_key: Optional[str] = None,
                     detail: Optional[Dict[str, Any]] = None,
                     created_at: Optional[datetime] = None) -> int:
        try:
            cursor = await self._execute('''
                INSERT INTO audit_logs (user_id, action, project_key, gh_key, detail, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            ''', (
                user_id,
                action,
                project_key,
                gh_key,
                json.dumps(detail or {}, default=str),
                to_db_timestamp(created_at or utcnow())
            ))
            return cursor.lastrowid
        except Exception as e:
            raise DatabaseError(f"Failed to write audit entry {action}: {e}")

    async def list(self, action: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        query = 'SELECT * FROM audit_logs'
        params: List[Any] = []
        if action:
            query += ' WHERE action = ?'
            params.append(action)
        query += ' ORDER BY id DESC LIMIT ?'
        params.append(limit)

        rows = await self._fetch_all(query, params)
        for row in rows:
            row['detail'] = json.loads(row['detail'] or '{}')
            row['created_at'] = parse_db_timestamp(row['created_at'])
        return rows


class DeviceStatusLogRepository(BaseRepository):
    """Online/offline transitions of greenhouse controllers"""
    def __init__(self, pool: ConnectionPool):
        super().__init__(pool)
        self.table_name = "device_status_logs"

    async def create_table(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS device_status_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    greenhouse_id INTEGER NOT NULL,
                    previous_status TEXT,
                    new_status TEXT NOT NULL,
                    reason TEXT,
                    offline_duration INTEGER,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (greenhouse_id) REFERENCES greenhouses(id) ON DELETE CASCADE
                )
            ''')
            await conn.commit()

    async def create_indices(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_device_status_logs_greenhouse
                ON device_status_logs(greenhouse_id, created_at)
            ''')
            await conn.commit()

    async def insert(self, greenhouse_id: int, previous_status: Optional[str], new_status: str,
                     reason: Optional[str] = None, offline_duration: Optional[int] = None,
                     created_at: Optional[datetime] = None) -> int:
        try:
            cursor = await self._execute('''
                INSERT INTO device_status_logs (
                    greenhouse_id, previous_status, new_status, reason, offline_duration, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
            ''', (
                greenhouse_id, previous_status, new_status, reason, offline_duration,
                to_db_timestamp(created_at or utcnow())
            ))
            return cursor.lastrowid
        except Exception as e:
            logger.error(f"Failed to log status change of greenhouse {greenhouse_id}: {e}")
            raise DatabaseError(f"Failed to log device status change: {e}")

    async def recent(self, greenhouse_id: int, limit: int = 20) -> List[Dict[str, Any]]:
        return await self._fetch_all('''
            SELECT * FROM device_status_logs
            WHERE greenhouse_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
        ''', (greenhouse_id, limit))
