"""
Notification engine.

Turns an event into per-user notification rows. Each recipient passes
through their own settings (enabled, type, severity, project and greenhouse
allow-lists, quiet hours), then a persisted duplicate check that runs in the
same transaction as the insert. Delivery never raises to the caller.
"""
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from ..models.notification import (
    Notification,
    NotificationEvent,
    NotificationSettings,
    NotificationSettingsUpdate,
    NotificationType,
    Severity,
)
from ..storage.gateway_database import GatewayDatabase
from ..storage.notification_db import DedupRule
from ..utils.helpers import hhmm, utcnow
from ..utils.logging import get_logger

logger = get_logger(__name__)


class NotificationEngine:
    def __init__(self, database: GatewayDatabase, config: Optional[Dict[str, Any]] = None,
                 clock: Callable[[], datetime] = utcnow):
        config = config or {}
        self.database = database
        self.clock = clock
        self.timezone = ZoneInfo(config.get('timezone', 'UTC'))
        self.offline_window = timedelta(minutes=config.get('offline_dedup_minutes', 30))
        self.alert_window = timedelta(minutes=config.get('alert_dedup_minutes', 10))
        self.default_dismiss_seconds = int(config.get('default_dismiss_seconds', 300))
        self.online_dismiss_seconds = int(config.get('control_dismiss_seconds', 10))

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _recipients(self, event: NotificationEvent) -> List[int]:
        if event.user_id is not None:
            user_ids = [event.user_id]
        else:
            user_ids = await self.database.directory.get_target_user_ids(event.project_id)
        return [uid for uid in user_ids if uid != event.exclude_user_id]

    def is_quiet_time(self, settings: NotificationSettings, now: Optional[datetime] = None) -> bool:
        if not settings.quiet_hours_enabled:
            return False
        current = hhmm((now or self.clock()).astimezone(self.timezone))
        start, end = settings.quiet_hours_start, settings.quiet_hours_end
        if start < end:
            return start <= current <= end
        # window wraps midnight
        return current >= start or current <= end

    def should_send(self, settings: NotificationSettings, event: NotificationEvent,
                    now: Optional[datetime] = None) -> bool:
        if not settings.enabled:
            return False
        if not settings.allows_type(event.type):
            return False
        if not settings.allows_severity(event.severity):
            return False
        if settings.project_filter and str(event.project_id) not in settings.project_filter:
            return False
        if settings.greenhouse_filter and str(event.greenhouse_id) not in settings.greenhouse_filter:
            return False
        return not self.is_quiet_time(settings, now)

    def dedup_rule(self, event: NotificationEvent) -> Optional[DedupRule]:
        """Persisted suppression rule of an event, None when it is never deduplicated"""
        if event.type == NotificationType.SENSOR_OFFLINE:
            return DedupRule(NotificationType.SENSOR_OFFLINE, self.offline_window, event.greenhouse_id)
        if event.type == NotificationType.SENSOR_ALERT:
            return self._alert_rule(
                event.greenhouse_id, event.metadata.get('sensorKey'), event.metadata.get('triggered')
            )
        return None

    def _alert_rule(self, greenhouse_id: Optional[int], sensor_key: Any,
                    triggered: Any) -> Optional[DedupRule]:
        # Without both discriminators the alert is delivered undeduplicated
        if sensor_key in (None, '') or triggered in (None, ''):
            return None
        return DedupRule(
            NotificationType.SENSOR_ALERT, self.alert_window, greenhouse_id,
            sensor_key=str(sensor_key), triggered=str(triggered)
        )

    async def create(self, event: NotificationEvent) -> int:
        """Deliver an event, returns the number of notification rows written"""
        try:
            recipients = await self._recipients(event)
        except Exception as e:
            logger.error(f"Failed to resolve recipients for {event.type.value}: {e}")
            return 0

        now = self.clock()
        dedup = self.dedup_rule(event)
        dismiss_after = (event.dismiss_after_seconds if event.dismiss_after_seconds is not None
                         else self.default_dismiss_seconds)
        delivered = 0

        for user_id in recipients:
            try:
                settings = await self.database.notification_settings.get_or_create(user_id)
                if not self.should_send(settings, event, now):
                    logger.debug(f"Notification {event.type.value} skipped for user {user_id} (settings)")
                    continue

                notification = Notification(
                    user_id=user_id,
                    type=event.type,
                    severity=event.severity,
                    title=event.title,
                    message=event.message,
                    metadata=event.metadata,
                    project_id=event.project_id,
                    greenhouse_id=event.greenhouse_id,
                    auto_dismiss=event.auto_dismiss,
                    dismiss_after_seconds=dismiss_after,
                    created_at=now
                )
                if await self.database.notifications.insert(notification, dedup, now):
                    delivered += 1
                else:
                    logger.debug(f"Duplicate {event.type.value} suppressed for user {user_id}")
            except Exception as e:
                logger.error(f"Failed to deliver {event.type.value} to user {user_id}: {e}")

        logger.info(f"Notification {event.type.value} sent to {delivered} of {len(recipients)} users")
        return delivered

    # ------------------------------------------------------------------
    # Guards for periodic monitors
    # ------------------------------------------------------------------

    async def _any_outside_window(self, project_id: Optional[int], rule: Optional[DedupRule]) -> bool:
        recipients = await self.database.directory.get_target_user_ids(project_id)
        if not recipients:
            return False
        if rule is None:
            return True
        now = self.clock()
        for user_id in recipients:
            if not await self.database.notifications.exists_recent(user_id, rule, now):
                return True
        return False

    async def can_create_sensor_offline_summary(self, project_id: Optional[int],
                                                greenhouse_id: Optional[int]) -> bool:
        rule = DedupRule(NotificationType.SENSOR_OFFLINE, self.offline_window, greenhouse_id)
        return await self._any_outside_window(project_id, rule)

    async def can_create_sensor_alert(self, project_id: Optional[int], greenhouse_id: Optional[int],
                                      sensor_key: Optional[str], triggered: Optional[str]) -> bool:
        return await self._any_outside_window(
            project_id, self._alert_rule(greenhouse_id, sensor_key, triggered)
        )

    # ------------------------------------------------------------------
    # Inbox
    # ------------------------------------------------------------------

    async def list_for_user(self, user_id: int, filters: Optional[Dict[str, Any]] = None,
                            limit: int = 50, offset: int = 0) -> List[Notification]:
        return await self.database.notifications.list_for_user(user_id, filters, limit, offset)

    async def unread_count(self, user_id: int) -> int:
        return await self.database.notifications.unread_count(user_id)

    async def mark_as_read(self, notification_id: int, user_id: int) -> bool:
        return await self.database.notifications.mark_as_read(notification_id, user_id, self.clock())

    async def mark_all_as_read(self, user_id: int, project_id: Optional[int] = None) -> int:
        return await self.database.notifications.mark_all_as_read(user_id, project_id, self.clock())

    async def delete(self, notification_id: int, user_id: int) -> bool:
        return await self.database.notifications.delete(notification_id, user_id)

    async def delete_read(self, user_id: int) -> int:
        return await self.database.notifications.delete_read(user_id)

    async def cleanup(self, days_to_keep: int = 30) -> int:
        deleted = await self.database.notifications.cleanup_read(days_to_keep, self.clock())
        if deleted:
            logger.info(f"Cleaned up {deleted} old notifications")
        return deleted

    async def get_settings(self, user_id: int) -> NotificationSettings:
        return await self.database.notification_settings.get_or_create(user_id)

    async def update_settings(self, user_id: int, changes: NotificationSettingsUpdate) -> NotificationSettings:
        return await self.database.notification_settings.update(user_id, changes)

    # ------------------------------------------------------------------
    # Device status
    # ------------------------------------------------------------------

    async def log_device_status_change(self, greenhouse_id: int, previous_status: str, new_status: str,
                                       reason: Optional[str] = None,
                                       offline_duration: Optional[int] = None) -> int:
        """
        Record an online/offline transition and announce it.

        Going offline raises a critical device_offline that stays until read.
        Coming back online after being offline raises a short lived device_online.
        Returns the number of notifications delivered.
        """
        try:
            await self.database.device_status.insert(
                greenhouse_id, previous_status, new_status, reason, offline_duration, self.clock()
            )
            greenhouse = await self.database.directory.get_greenhouse_by_id(greenhouse_id)
        except Exception as e:
            logger.error(f"Failed to log device status change of greenhouse {greenhouse_id}: {e}")
            return 0

        if greenhouse is None:
            return 0

        logger.info(f"Device status logged: {greenhouse.name} {previous_status} -> {new_status}")
        metadata: Dict[str, Any] = {
            'greenhouseName': greenhouse.name,
            'projectName': greenhouse.project_name,
        }

        if new_status == 'offline':
            metadata['reason'] = reason
            return await self.create(NotificationEvent(
                type=NotificationType.DEVICE_OFFLINE,
                severity=Severity.CRITICAL,
                title=f"{greenhouse.name} is offline",
                message=f"{greenhouse.name} ({greenhouse.project_name}) cannot be reached",
                metadata=metadata,
                project_id=greenhouse.project_id,
                greenhouse_id=greenhouse_id,
                auto_dismiss=False
            ))

        if new_status == 'online' and previous_status == 'offline':
            metadata['offlineDuration'] = offline_duration
            suffix = f" (offline for {offline_duration // 60} min)" if offline_duration else ""
            return await self.create(NotificationEvent(
                type=NotificationType.DEVICE_ONLINE,
                severity=Severity.INFO,
                title=f"{greenhouse.name} is back online",
                message=f"{greenhouse.name} is connected again{suffix}",
                metadata=metadata,
                project_id=greenhouse.project_id,
                greenhouse_id=greenhouse_id,
                auto_dismiss=True,
                dismiss_after_seconds=self.online_dismiss_seconds
            ))

        return 0
