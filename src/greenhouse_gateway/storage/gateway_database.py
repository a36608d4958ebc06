from ..storage.database import ConnectionPool
from ..storage.directory_db import DirectoryRepository
from ..storage.control_history_db import ControlHistoryRepository
from ..storage.notification_db import NotificationRepository, NotificationSettingsRepository
from ..storage.audit_db import AuditRepository, DeviceStatusLogRepository
from ..utils.logging import get_logger
from ..utils.exceptions import DatabaseError
import asyncio

logger = get_logger(__name__)


class GatewayDatabase:
    """Main database manager class"""
    def __init__(self, db_path: str, max_connections: int = 5, retention_days: int = 30):
        self.pool = ConnectionPool(db_path, max_connections)
        self.repositories = {}
        self._setup_repositories()
        self.retention_days = retention_days
        self._cleanup_task = None
        self._cleanup_running = False

    def _setup_repositories(self):
        """Initialize all repository instances"""
        # Creation order follows foreign keys
        self.repositories['directory'] = DirectoryRepository(self.pool)
        self.repositories['control_history'] = ControlHistoryRepository(self.pool)
        self.repositories['notifications'] = NotificationRepository(self.pool)
        self.repositories['notification_settings'] = NotificationSettingsRepository(self.pool)
        self.repositories['audit'] = AuditRepository(self.pool)
        self.repositories['device_status'] = DeviceStatusLogRepository(self.pool)

    @property
    def directory(self) -> DirectoryRepository:
        return self.repositories['directory']

    @property
    def control_history(self) -> ControlHistoryRepository:
        return self.repositories['control_history']

    @property
    def notifications(self) -> NotificationRepository:
        return self.repositories['notifications']

    @property
    def notification_settings(self) -> NotificationSettingsRepository:
        return self.repositories['notification_settings']

    @property
    def audit(self) -> AuditRepository:
        return self.repositories['audit']

    @property
    def device_status(self) -> DeviceStatusLogRepository:
        return self.repositories['device_status']

    async def initialize(self, start_cleanup: bool = True) -> None:
        """Initialize the database and all repositories"""
        await self.pool.initialize()

        for repo in self.repositories.values():
            await repo.create_table()
            await repo.create_indices()

        if start_cleanup:
            self._cleanup_running = True
            self._cleanup_task = asyncio.create_task(self._run_daily_cleanup())
            logger.info("Started database cleanup task")

    async def cleanup_old_data(self) -> int:
        """Delete read notifications older than retention_days"""
        try:
            deleted = await self.notifications.cleanup_read(self.retention_days)
            logger.info(f"Cleaned up {deleted} read notifications older than {self.retention_days} days")
            return deleted
        except Exception as e:
            logger.error(f"Failed to cleanup old data: {e}")
            raise DatabaseError(f"Failed to cleanup old data: {e}")

    async def _run_daily_cleanup(self) -> None:
        """Run the cleanup task daily"""
        while self._cleanup_running:
            try:
                await self.cleanup_old_data()
            except Exception as e:
                logger.error(f"Error in cleanup task: {e}")

            try:
                # Sleep for 24 hours, but check every minute if we should stop
                for _ in range(24 * 60):
                    if not self._cleanup_running:
                        break
                    await asyncio.sleep(60)
            except asyncio.CancelledError:
                break

    @property
    def retention_days(self) -> int:
        return self._retention_days

    @retention_days.setter
    def retention_days(self, days: int) -> None:
        if not isinstance(days, int) or days < 1:
            raise ValueError("retention_days must be a positive integer")
        self._retention_days = days

    async def close(self) -> None:
        """Close all database connections and stop the cleanup task"""
        logger.info("Shutting down database...")

        self._cleanup_running = False
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            logger.info("Cleanup task stopped")

        await self.pool.close()
        logger.info("Database connections closed")
