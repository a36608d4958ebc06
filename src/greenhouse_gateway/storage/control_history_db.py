from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime, timedelta
from .database import ConnectionPool, BaseRepository
from ..models.control import ControlHistoryEntry, ControlSource
from ..utils.helpers import to_db_timestamp, utcnow
from ..utils.logging import get_logger
from ..utils.exceptions import DatabaseError

logger = get_logger(__name__)

_SOURCES = ', '.join(f"'{s.value}'" for s in ControlSource)


class ControlHistoryRepository(BaseRepository):
    def __init__(self, pool: ConnectionPool):
        super().__init__(pool)
        self.table_name = "control_history"

    async def create_table(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(f'''
                CREATE TABLE IF NOT EXISTS control_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    greenhouse_id INTEGER NOT NULL,
                    control_key TEXT NOT NULL,
                    control_name TEXT,
                    action TEXT NOT NULL,
                    value TEXT,
                    source TEXT NOT NULL CHECK (source IN ({_SOURCES})),
                    user_id INTEGER,
                    ip_address TEXT,
                    success INTEGER NOT NULL DEFAULT 1,
                    error_message TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (greenhouse_id) REFERENCES greenhouses(id) ON DELETE CASCADE,
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE SET NULL
                )
            ''')
            await conn.commit()

    async def create_indices(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_control_history_greenhouse_id
                ON control_history(greenhouse_id)
            ''')
            await conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_control_history_created_at
                ON control_history(created_at)
            ''')
            await conn.commit()

    async def insert(self, entry: ControlHistoryEntry) -> int:
        created_at = entry.created_at or utcnow()
        try:
            cursor = await self._execute('''
                INSERT INTO control_history (
                    greenhouse_id, control_key, control_name, action, value, source,
                    user_id, ip_address, success, error_message, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                entry.greenhouse_id,
                entry.control_key,
                entry.control_name,
                entry.action,
                entry.value,
                entry.source.value,
                entry.user_id,
                entry.ip_address,
                int(entry.success),
                entry.error_message,
                to_db_timestamp(created_at)
            ))
            return cursor.lastrowid
        except Exception as e:
            logger.error(f"Failed to store control history entry: {e}")
            raise DatabaseError(f"Failed to store control history entry: {e}")

    @staticmethod
    def _where(filters: Dict[str, Any], allowed_project_ids: Optional[List[int]]) -> Tuple[str, List[Any]]:
        clause = 'WHERE 1=1'
        params: List[Any] = []

        # None means unrestricted (admin)
        if allowed_project_ids is not None:
            placeholders = ','.join('?' for _ in allowed_project_ids) or 'NULL'
            clause += f' AND p.id IN ({placeholders})'
            params.extend(allowed_project_ids)

        column_filters = (
            ('project_key', 'p.key = ?'),
            ('gh_key', 'g.gh_key = ?'),
            ('source', 'ch.source = ?'),
            ('user_id', 'ch.user_id = ?'),
            ('control_key', 'ch.control_key = ?'),
            ('start_date', 'ch.created_at >= ?'),
            ('end_date', 'ch.created_at <= ?'),
        )
        for name, condition in column_filters:
            value = filters.get(name)
            if value is not None:
                clause += f' AND {condition}'
                params.append(value)

        if filters.get('success') is not None:
            clause += ' AND ch.success = ?'
            params.append(int(filters['success']))

        return clause, params

    async def list(self, filters: Dict[str, Any], allowed_project_ids: Optional[List[int]] = None,
                   limit: int = 100, offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        where, params = self._where(filters, allowed_project_ids)
        base = '''
            FROM control_history ch
            JOIN greenhouses g ON ch.greenhouse_id = g.id
            JOIN projects p ON g.project_id = p.id
            LEFT JOIN users u ON ch.user_id = u.id
        '''
        rows = await self._fetch_all(f'''
            SELECT ch.*, g.gh_key, g.name AS greenhouse_name,
                   p.key AS project_key, p.name AS project_name,
                   u.username AS user_name, u.full_name AS user_full_name
            {base} {where}
            ORDER BY ch.created_at DESC, ch.id DESC
            LIMIT ? OFFSET ?
        ''', (*params, limit, offset))
        total = await self._fetch_one(f'SELECT COUNT(*) AS total {base} {where}', params)

        for row in rows:
            row['success'] = bool(row['success'])
        return rows, total['total'] if total else 0

    async def recent(self, greenhouse_id: int, limit: int = 20) -> List[Dict[str, Any]]:
        rows = await self._fetch_all('''
            SELECT ch.*, u.username AS user_name, u.full_name AS user_full_name
            FROM control_history ch
            LEFT JOIN users u ON ch.user_id = u.id
            WHERE ch.greenhouse_id = ?
            ORDER BY ch.created_at DESC, ch.id DESC
            LIMIT ?
        ''', (greenhouse_id, limit))
        for row in rows:
            row['success'] = bool(row['success'])
        return rows

    async def stats(self, filters: Dict[str, Any], allowed_project_ids: Optional[List[int]] = None,
                    days: int = 30, now: Optional[datetime] = None) -> Dict[str, Any]:
        since = to_db_timestamp((now or utcnow()) - timedelta(days=days))
        where, params = self._where({**filters, 'start_date': since}, allowed_project_ids)
        base = '''
            FROM control_history ch
            JOIN greenhouses g ON ch.greenhouse_id = g.id
            JOIN projects p ON g.project_id = p.id
        '''

        by_source = await self._fetch_all(
            f'SELECT ch.source, COUNT(*) AS count {base} {where} GROUP BY ch.source', params
        )
        outcome = await self._fetch_one(f'''
            SELECT SUM(CASE WHEN ch.success = 1 THEN 1 ELSE 0 END) AS success_count,
                   SUM(CASE WHEN ch.success = 0 THEN 1 ELSE 0 END) AS failure_count
            {base} {where}
        ''', params)
        top_users = await self._fetch_all(f'''
            SELECT u.username, u.full_name, COUNT(*) AS count
            {base} LEFT JOIN users u ON ch.user_id = u.id
            {where} AND ch.user_id IS NOT NULL
            GROUP BY ch.user_id ORDER BY count DESC LIMIT 10
        ''', params)
        daily_trend = await self._fetch_all(f'''
            SELECT DATE(ch.created_at) AS date, COUNT(*) AS count,
                   SUM(CASE WHEN ch.success = 1 THEN 1 ELSE 0 END) AS success_count
            {base} {where}
            GROUP BY DATE(ch.created_at) ORDER BY date DESC LIMIT ?
        ''', (*params, days))
        top_devices = await self._fetch_all(f'''
            SELECT ch.control_key, ch.control_name, g.name AS greenhouse_name, COUNT(*) AS count
            {base} {where}
            GROUP BY ch.control_key, g.id ORDER BY count DESC LIMIT 10
        ''', params)

        return {
            "bySource": {row['source']: row['count'] for row in by_source},
            "successCount": (outcome or {}).get('success_count') or 0,
            "failureCount": (outcome or {}).get('failure_count') or 0,
            "topUsers": top_users,
            "dailyTrend": daily_trend,
            "topDevices": top_devices,
        }
