from typing import Any, Dict, List, Optional

from ..core.key_registry import display_name
from ..core.notification_engine import NotificationEngine
from ..models.control import ControlHistoryEntry
from ..models.notification import NotificationEvent, NotificationType, Severity
from ..storage.gateway_database import GatewayDatabase
from ..utils.logging import get_logger

logger = get_logger(__name__)


class ControlHistoryRecorder:
    """
    Persists one history row per dispatch attempt and announces successful
    actions to the other users of the project.
    """
    def __init__(self, database: GatewayDatabase, notifications: NotificationEngine,
                 dismiss_after_seconds: int = 10):
        self.database = database
        self.notifications = notifications
        self.dismiss_after_seconds = dismiss_after_seconds

    async def record(self, entry: ControlHistoryEntry, notify: bool = True) -> bool:
        """Store the entry, returns False instead of raising on failure"""
        if not entry.control_name:
            entry = entry.model_copy(update={'control_name': display_name(entry.control_key)})

        try:
            entry_id = await self.database.control_history.insert(entry)
        except Exception as e:
            logger.error(f"Failed to record control history for {entry.control_key}: {e}")
            return False

        logger.info(
            f"Control history #{entry_id}: {entry.control_key} {entry.action}={entry.value} "
            f"success={entry.success}"
        )

        if notify and entry.success:
            await self._notify(entry)
        return True

    async def _notify(self, entry: ControlHistoryEntry) -> None:
        try:
            greenhouse = await self.database.directory.get_greenhouse_by_id(entry.greenhouse_id)
            if greenhouse is None:
                return

            actor = "System"
            if entry.user_id is not None:
                user = await self.database.directory.get_user(entry.user_id)
                if user:
                    actor = user.full_name or user.username

            await self.notifications.create(NotificationEvent(
                type=NotificationType.CONTROL_ACTION,
                severity=Severity.INFO,
                title=f"{entry.control_name} {entry.action}",
                message=f"{actor} set {entry.control_name} to {entry.value} in {greenhouse.name}",
                metadata={
                    'controlKey': entry.control_key,
                    'controlName': entry.control_name,
                    'action': entry.action,
                    'value': entry.value,
                    'source': entry.source.value,
                    'userName': actor,
                    'greenhouseName': greenhouse.name,
                },
                project_id=greenhouse.project_id,
                greenhouse_id=entry.greenhouse_id,
                exclude_user_id=entry.user_id,
                auto_dismiss=True,
                dismiss_after_seconds=self.dismiss_after_seconds
            ))
        except Exception as e:
            logger.error(f"Failed to send control action notification: {e}")

    async def list(self, filters: Dict[str, Any], allowed_project_ids: Optional[List[int]] = None,
                   limit: int = 100, offset: int = 0):
        return await self.database.control_history.list(filters, allowed_project_ids, limit, offset)

    async def stats(self, filters: Dict[str, Any], allowed_project_ids: Optional[List[int]] = None,
                    days: int = 30) -> Dict[str, Any]:
        return await self.database.control_history.stats(filters, allowed_project_ids, days)

    async def recent(self, greenhouse_id: int, limit: int = 20) -> List[Dict[str, Any]]:
        return await self.database.control_history.recent(greenhouse_id, limit)
