from fastapi import APIRouter, HTTPException
from typing import Optional
from ...models.notification import NotificationSettingsUpdate, NotificationType, Severity
from ...utils.logging import get_logger
from ..dependencies import CurrentUser, NotificationDependency, success

logger = get_logger(__name__)

notification_router = APIRouter(prefix="/notifications")


@notification_router.get("")
async def list_notifications(
    user: CurrentUser,
    engine: NotificationDependency,
    project_id: Optional[int] = None,
    greenhouse_id: Optional[int] = None,
    type: Optional[NotificationType] = None,
    severity: Optional[Severity] = None,
    is_read: Optional[bool] = None,
    limit: int = 50,
    offset: int = 0
) -> dict:
    filters = {
        "project_id": project_id,
        "greenhouse_id": greenhouse_id,
        "type": type,
        "severity": severity,
        "is_read": is_read,
    }
    items = await engine.list_for_user(user.id, filters, min(max(limit, 1), 200), max(offset, 0))
    unread = await engine.unread_count(user.id)
    return success({
        "notifications": [item.model_dump(mode="json") for item in items],
        "unreadCount": unread,
    })


@notification_router.get("/unread-count")
async def unread_count(user: CurrentUser, engine: NotificationDependency) -> dict:
    return success({"count": await engine.unread_count(user.id)})


@notification_router.get("/settings")
async def get_settings(user: CurrentUser, engine: NotificationDependency) -> dict:
    settings = await engine.get_settings(user.id)
    return success(settings.model_dump())


@notification_router.put("/settings")
async def update_settings(
    changes: NotificationSettingsUpdate,
    user: CurrentUser,
    engine: NotificationDependency
) -> dict:
    settings = await engine.update_settings(user.id, changes)
    return success(settings.model_dump())


@notification_router.put("/read-all")
async def mark_all_as_read(
    user: CurrentUser,
    engine: NotificationDependency,
    project_id: Optional[int] = None
) -> dict:
    updated = await engine.mark_all_as_read(user.id, project_id)
    return success({"updated": updated})


@notification_router.put("/{notification_id}/read")
async def mark_as_read(notification_id: int, user: CurrentUser, engine: NotificationDependency) -> dict:
    if not await engine.mark_as_read(notification_id, user.id):
        raise HTTPException(status_code=404, detail=f"Notification {notification_id} not found")
    return success({"id": notification_id})


@notification_router.delete("/{notification_id}")
async def delete_notification(notification_id: int, user: CurrentUser,
                              engine: NotificationDependency) -> dict:
    if not await engine.delete(notification_id, user.id):
        raise HTTPException(status_code=404, detail=f"Notification {notification_id} not found")
    return success({"id": notification_id})


@notification_router.delete("")
async def delete_read_notifications(user: CurrentUser, engine: NotificationDependency) -> dict:
    deleted = await engine.delete_read(user.id)
    logger.info(f"User {user.id} deleted {deleted} read notifications")
    return success({"deleted": deleted})
