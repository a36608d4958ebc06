from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
import json
from .database import ConnectionPool, BaseRepository
from ..models.notification import (
    Notification,
    NotificationSettings,
    NotificationSettingsUpdate,
    NotificationType,
    Severity,
)
from ..utils.helpers import parse_db_timestamp, to_db_timestamp, utcnow
from ..utils.logging import get_logger
from ..utils.exceptions import DatabaseError

logger = get_logger(__name__)

_TYPES = ', '.join(f"'{t.value}'" for t in NotificationType)
_SEVERITIES = ', '.join(f"'{s.value}'" for s in Severity)

_BOOL_SETTINGS = (
    'enabled', 'device_offline', 'device_online', 'sensor_alert', 'sensor_offline',
    'control_action', 'auto_mode_changed', 'system_error', 'info',
    'show_info', 'show_warning', 'show_critical', 'quiet_hours_enabled',
)
_LIST_SETTINGS = ('project_filter', 'greenhouse_filter')


@dataclass(frozen=True)
class DedupRule:
    """Earlier notification that makes a new one a duplicate"""
    type: NotificationType
    window: timedelta
    greenhouse_id: Optional[int]
    sensor_key: Optional[str] = None
    triggered: Optional[str] = None

    def where(self, user_id: int, now: datetime) -> Tuple[str, List[Any]]:
        clause = '''user_id = ? AND type = ? AND greenhouse_id IS ? AND created_at >= ?'''
        params: List[Any] = [
            user_id, self.type.value, self.greenhouse_id, to_db_timestamp(now - self.window)
        ]
        if self.sensor_key is not None:
            clause += " AND CAST(json_extract(metadata, '$.sensorKey') AS TEXT) = ?"
            params.append(self.sensor_key)
        if self.triggered is not None:
            clause += " AND CAST(json_extract(metadata, '$.triggered') AS TEXT) = ?"
            params.append(self.triggered)
        return clause, params


class NotificationRepository(BaseRepository):
    def __init__(self, pool: ConnectionPool):
        super().__init__(pool)
        self.table_name = "notifications"

    async def create_table(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(f'''
                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    type TEXT NOT NULL CHECK (type IN ({_TYPES})),
                    severity TEXT NOT NULL CHECK (severity IN ({_SEVERITIES})) DEFAULT 'info',
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    metadata TEXT NOT NULL DEFAULT '{{}}',
                    project_id INTEGER,
                    greenhouse_id INTEGER,
                    is_read INTEGER NOT NULL DEFAULT 0,
                    read_at TEXT,
                    auto_dismiss INTEGER NOT NULL DEFAULT 1,
                    dismiss_after_seconds INTEGER DEFAULT 300,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                )
            ''')
            await conn.commit()

    async def create_indices(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_notifications_dedup
                ON notifications(user_id, type, greenhouse_id, created_at)
            ''')
            await conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_notifications_unread
                ON notifications(user_id, is_read)
            ''')
            await conn.commit()

    @staticmethod
    def _insert_params(notification: Notification, created_at: datetime) -> Tuple[Any, ...]:
        return (
            notification.user_id,
            notification.type.value,
            notification.severity.value,
            notification.title,
            notification.message,
            json.dumps(notification.metadata, default=str),
            notification.project_id,
            notification.greenhouse_id,
            int(notification.auto_dismiss),
            notification.dismiss_after_seconds,
            to_db_timestamp(created_at),
        )

    async def insert(self, notification: Notification, dedup: Optional[DedupRule] = None,
                     now: Optional[datetime] = None) -> bool:
        """
        Insert one notification row.

        With a dedup rule the duplicate check and the insert run in a single
        BEGIN IMMEDIATE transaction, so two concurrent deliveries of the same
        event cannot both pass the check. Returns False when suppressed.
        """
        now = now or utcnow()
        created_at = notification.created_at or now
        try:
            async with self.pool.acquire() as conn:
                await conn.execute('BEGIN IMMEDIATE')
                try:
                    if dedup is not None:
                        clause, params = dedup.where(notification.user_id, now)
                        async with conn.execute(
                            f'SELECT 1 FROM notifications WHERE {clause} LIMIT 1', params
                        ) as cursor:
                            if await cursor.fetchone():
                                await conn.rollback()
                                return False

                    await conn.execute('''
                        INSERT INTO notifications (
                            user_id, type, severity, title, message, metadata,
                            project_id, greenhouse_id, auto_dismiss, dismiss_after_seconds,
                            created_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ''', self._insert_params(notification, created_at))
                    await conn.commit()
                    return True
                except Exception:
                    await conn.rollback()
                    raise
        except Exception as e:
            logger.error(f"Failed to store notification for user {notification.user_id}: {e}")
            raise DatabaseError(f"Failed to store notification: {e}")

    async def exists_recent(self, user_id: int, dedup: DedupRule, now: Optional[datetime] = None) -> bool:
        clause, params = dedup.where(user_id, now or utcnow())
        row = await self._fetch_one(f'SELECT 1 AS hit FROM notifications WHERE {clause} LIMIT 1', params)
        return row is not None

    def _row_to_notification(self, row: Dict[str, Any]) -> Notification:
        return Notification(
            id=row['id'],
            user_id=row['user_id'],
            type=row['type'],
            severity=row['severity'],
            title=row['title'],
            message=row['message'],
            metadata=json.loads(row['metadata'] or '{}'),
            project_id=row['project_id'],
            greenhouse_id=row['greenhouse_id'],
            is_read=bool(row['is_read']),
            read_at=parse_db_timestamp(row['read_at']),
            auto_dismiss=bool(row['auto_dismiss']),
            dismiss_after_seconds=row['dismiss_after_seconds'] or 0,
            created_at=parse_db_timestamp(row['created_at'])
        )

    async def list_for_user(self, user_id: int, filters: Optional[Dict[str, Any]] = None,
                            limit: int = 50, offset: int = 0) -> List[Notification]:
        filters = filters or {}
        query = 'SELECT * FROM notifications WHERE user_id = ?'
        params: List[Any] = [user_id]
        for name in ('project_id', 'greenhouse_id', 'type', 'severity'):
            if filters.get(name) is not None:
                query += f' AND {name} = ?'
                value = filters[name]
                params.append(value.value if hasattr(value, 'value') else value)
        if filters.get('is_read') is not None:
            query += ' AND is_read = ?'
            params.append(int(filters['is_read']))
        query += ' ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?'
        params.extend([limit, offset])

        rows = await self._fetch_all(query, params)
        return [self._row_to_notification(row) for row in rows]

    async def count_for_user(self, user_id: int, **filters: Any) -> int:
        query = 'SELECT COUNT(*) AS total FROM notifications WHERE user_id = ?'
        params: List[Any] = [user_id]
        for name, value in filters.items():
            query += f' AND {name} = ?'
            params.append(value.value if hasattr(value, 'value') else value)
        row = await self._fetch_one(query, params)
        return row['total'] if row else 0

    async def unread_count(self, user_id: int) -> int:
        return await self.count_for_user(user_id, is_read=0)

    async def mark_as_read(self, notification_id: int, user_id: int, now: Optional[datetime] = None) -> bool:
        cursor = await self._execute(
            'UPDATE notifications SET is_read = 1, read_at = ? WHERE id = ? AND user_id = ?',
            (to_db_timestamp(now or utcnow()), notification_id, user_id)
        )
        return cursor.rowcount > 0

    async def mark_all_as_read(self, user_id: int, project_id: Optional[int] = None,
                               now: Optional[datetime] = None) -> int:
        query = 'UPDATE notifications SET is_read = 1, read_at = ? WHERE user_id = ? AND is_read = 0'
        params: List[Any] = [to_db_timestamp(now or utcnow()), user_id]
        if project_id is not None:
            query += ' AND project_id = ?'
            params.append(project_id)
        cursor = await self._execute(query, params)
        return cursor.rowcount

    async def delete(self, notification_id: int, user_id: int) -> bool:
        cursor = await self._execute(
            'DELETE FROM notifications WHERE id = ? AND user_id = ?', (notification_id, user_id)
        )
        return cursor.rowcount > 0

    async def delete_read(self, user_id: int) -> int:
        cursor = await self._execute(
            'DELETE FROM notifications WHERE user_id = ? AND is_read = 1', (user_id,)
        )
        return cursor.rowcount

    async def cleanup_read(self, days_to_keep: int, now: Optional[datetime] = None) -> int:
        """Delete read notifications whose read_at is older than the horizon"""
        cutoff = to_db_timestamp((now or utcnow()) - timedelta(days=days_to_keep))
        cursor = await self._execute(
            'DELETE FROM notifications WHERE is_read = 1 AND read_at < ?', (cutoff,)
        )
        return cursor.rowcount


class NotificationSettingsRepository(BaseRepository):
    def __init__(self, pool: ConnectionPool):
        super().__init__(pool)
        self.table_name = "notification_settings"

    async def create_table(self) -> None:
        bool_columns = ',\n'.join(
            f"{name} INTEGER NOT NULL DEFAULT {int(NotificationSettings.model_fields[name].default)}"
            for name in _BOOL_SETTINGS
        )
        async with self.pool.acquire() as conn:
            await conn.execute(f'''
                CREATE TABLE IF NOT EXISTS notification_settings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL UNIQUE,
                    {bool_columns},
                    project_filter TEXT NOT NULL DEFAULT '[]',
                    greenhouse_filter TEXT NOT NULL DEFAULT '[]',
                    quiet_hours_start TEXT NOT NULL DEFAULT '22:00',
                    quiet_hours_end TEXT NOT NULL DEFAULT '07:00',
                    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                )
            ''')
            await conn.commit()

    def _row_to_settings(self, row: Dict[str, Any]) -> NotificationSettings:
        values: Dict[str, Any] = {name: bool(row[name]) for name in _BOOL_SETTINGS}
        for name in _LIST_SETTINGS:
            values[name] = [str(item) for item in json.loads(row[name] or '[]')]
        values['quiet_hours_start'] = row['quiet_hours_start'] or '22:00'
        values['quiet_hours_end'] = row['quiet_hours_end'] or '07:00'
        return NotificationSettings(**values)

    async def get_or_create(self, user_id: int) -> NotificationSettings:
        """Settings row of a user, created with defaults on first access"""
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    'INSERT OR IGNORE INTO notification_settings (user_id) VALUES (?)', (user_id,)
                )
                await conn.commit()
                async with conn.execute(
                    'SELECT * FROM notification_settings WHERE user_id = ?', (user_id,)
                ) as cursor:
                    row = await cursor.fetchone()
            return self._row_to_settings(dict(row))
        except Exception as e:
            logger.error(f"Failed to load notification settings for user {user_id}: {e}")
            raise DatabaseError(f"Failed to load notification settings: {e}")

    async def update(self, user_id: int, changes: NotificationSettingsUpdate) -> NotificationSettings:
        await self.get_or_create(user_id)
        values = changes.model_dump(exclude_none=True)
        if values:
            assignments = []
            params: List[Any] = []
            for name, value in values.items():
                assignments.append(f'{name} = ?')
                if name in _LIST_SETTINGS:
                    params.append(json.dumps(value))
                elif name in _BOOL_SETTINGS:
                    params.append(int(value))
                else:
                    params.append(value)
            params.append(user_id)
            await self._execute(
                f'''UPDATE notification_settings
                    SET {', '.join(assignments)}, updated_at = datetime('now')
                    WHERE user_id = ?''',
                params
            )
            logger.info(f"Updated notification settings for user {user_id}: {', '.join(values)}")
        return await self.get_or_create(user_id)
