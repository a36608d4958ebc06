from typing import List, Optional
from .database import ConnectionPool, BaseRepository
from ..models.directory import ADMIN_ROLES, OPERATOR_ROLES, Greenhouse, ProjectSettings, User, UserRole
from ..utils.logging import get_logger
from ..utils.exceptions import DatabaseError

logger = get_logger(__name__)

_GREENHOUSE_SELECT = '''
    SELECT g.id, g.project_id, p.key AS project_key, p.name AS project_name,
           g.gh_key, g.name, g.tb_device_id
    FROM greenhouses g
    JOIN projects p ON g.project_id = p.id
'''


class DirectoryRepository(BaseRepository):
    """Users, projects, greenhouses and project access grants"""
    def __init__(self, pool: ConnectionPool):
        super().__init__(pool)
        self.table_name = "users"

    async def create_table(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT NOT NULL UNIQUE,
                    full_name TEXT,
                    role TEXT NOT NULL CHECK (role IN ('superadmin', 'admin', 'operator', 'viewer')),
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL DEFAULT (datetime('now'))
                )
            ''')
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS projects (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    key TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    tb_base_url TEXT NOT NULL,
                    tb_username TEXT NOT NULL,
                    tb_password TEXT NOT NULL,
                    created_at TEXT NOT NULL DEFAULT (datetime('now'))
                )
            ''')
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS greenhouses (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    project_id INTEGER NOT NULL,
                    gh_key TEXT NOT NULL,
                    name TEXT NOT NULL,
                    tb_device_id TEXT,
                    created_at TEXT NOT NULL DEFAULT (datetime('now')),
                    FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE,
                    UNIQUE(project_id, gh_key)
                )
            ''')
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS user_project_access (
                    user_id INTEGER NOT NULL,
                    project_id INTEGER NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
                    FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE,
                    PRIMARY KEY (user_id, project_id)
                )
            ''')
            await conn.commit()

    async def add_user(self, username: str, role: UserRole, full_name: Optional[str] = None,
                       is_active: bool = True) -> int:
        cursor = await self._execute(
            'INSERT INTO users (username, full_name, role, is_active) VALUES (?, ?, ?, ?)',
            (username, full_name, UserRole(role).value, int(is_active))
        )
        return cursor.lastrowid

    async def add_project(self, key: str, name: str, tb_base_url: str,
                          tb_username: str, tb_password: str) -> int:
        cursor = await self._execute(
            '''INSERT INTO projects (key, name, tb_base_url, tb_username, tb_password)
               VALUES (?, ?, ?, ?, ?)''',
            (key, name, tb_base_url.rstrip('/'), tb_username, tb_password)
        )
        return cursor.lastrowid

    async def add_greenhouse(self, project_id: int, gh_key: str, name: str,
                             tb_device_id: Optional[str] = None) -> int:
        cursor = await self._execute(
            'INSERT INTO greenhouses (project_id, gh_key, name, tb_device_id) VALUES (?, ?, ?, ?)',
            (project_id, gh_key, name, tb_device_id)
        )
        return cursor.lastrowid

    async def grant_project_access(self, user_id: int, project_id: int) -> None:
        await self._execute(
            'INSERT OR IGNORE INTO user_project_access (user_id, project_id) VALUES (?, ?)',
            (user_id, project_id)
        )

    async def get_user(self, user_id: int) -> Optional[User]:
        row = await self._fetch_one(
            'SELECT id, username, full_name, role, is_active FROM users WHERE id = ?', (user_id,)
        )
        if not row:
            return None
        return User(
            id=row['id'],
            username=row['username'],
            full_name=row['full_name'],
            role=row['role'],
            is_active=bool(row['is_active'])
        )

    async def get_project_settings(self, project_key: str) -> Optional[ProjectSettings]:
        row = await self._fetch_one(
            '''SELECT id, key, name, tb_base_url, tb_username, tb_password
               FROM projects WHERE key = ?''',
            (project_key,)
        )
        return ProjectSettings(**row) if row else None

    async def get_greenhouse(self, project_key: str, gh_key: str) -> Optional[Greenhouse]:
        row = await self._fetch_one(
            _GREENHOUSE_SELECT + ' WHERE p.key = ? AND g.gh_key = ?', (project_key, gh_key)
        )
        return Greenhouse(**row) if row else None

    async def get_greenhouse_by_id(self, greenhouse_id: int) -> Optional[Greenhouse]:
        row = await self._fetch_one(_GREENHOUSE_SELECT + ' WHERE g.id = ?', (greenhouse_id,))
        return Greenhouse(**row) if row else None

    async def has_project_access(self, user: User, project_key: str) -> bool:
        if user.is_admin:
            return True
        row = await self._fetch_one(
            '''SELECT 1 AS ok FROM user_project_access upa
               JOIN projects p ON upa.project_id = p.id
               WHERE upa.user_id = ? AND p.key = ?''',
            (user.id, project_key)
        )
        return row is not None

    async def accessible_project_ids(self, user_id: int) -> List[int]:
        rows = await self._fetch_all(
            'SELECT project_id FROM user_project_access WHERE user_id = ?', (user_id,)
        )
        return [row['project_id'] for row in rows]

    async def get_target_user_ids(self, project_id: Optional[int] = None) -> List[int]:
        """
        Active users entitled to events of a project.

        With a project: admins plus users granted access to it.
        Without one: every active admin or operator.
        """
        try:
            if project_id is None:
                placeholders = ','.join('?' for _ in OPERATOR_ROLES)
                rows = await self._fetch_all(
                    f'''SELECT id FROM users
                        WHERE is_active = 1 AND role IN ({placeholders})
                        ORDER BY id''',
                    OPERATOR_ROLES
                )
            else:
                placeholders = ','.join('?' for _ in ADMIN_ROLES)
                rows = await self._fetch_all(
                    f'''SELECT DISTINCT u.id FROM users u
                        LEFT JOIN user_project_access upa
                            ON u.id = upa.user_id AND upa.project_id = ?
                        WHERE u.is_active = 1
                        AND (u.role IN ({placeholders}) OR upa.project_id IS NOT NULL)
                        ORDER BY u.id''',
                    (project_id, *ADMIN_ROLES)
                )
            return [row['id'] for row in rows]
        except Exception as e:
            logger.error(f"Failed to resolve target users: {e}")
            raise DatabaseError(f"Failed to resolve target users: {e}")
