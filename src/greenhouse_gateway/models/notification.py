from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Any, Dict, List, Optional
from enum import Enum
import re

_HHMM = re.compile(r'^([01]\d|2[0-3]):[0-5]\d$')


class NotificationType(str, Enum):
    DEVICE_OFFLINE = "device_offline"
    DEVICE_ONLINE = "device_online"
    SENSOR_ALERT = "sensor_alert"
    SENSOR_OFFLINE = "sensor_offline"
    CONTROL_ACTION = "control_action"
    AUTO_MODE_CHANGED = "auto_mode_changed"
    SYSTEM_ERROR = "system_error"
    INFO = "info"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class NotificationEvent(BaseModel):
    type: NotificationType
    severity: Severity
    title: str
    message: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    project_id: Optional[int] = None
    greenhouse_id: Optional[int] = None
    # set = deliver to this user only, unset = every entitled user
    user_id: Optional[int] = None
    exclude_user_id: Optional[int] = None
    auto_dismiss: bool = True
    dismiss_after_seconds: Optional[int] = None


class Notification(BaseModel):
    id: Optional[int] = None
    user_id: int
    type: NotificationType
    severity: Severity
    title: str
    message: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    project_id: Optional[int] = None
    greenhouse_id: Optional[int] = None
    is_read: bool = False
    read_at: Optional[datetime] = None
    auto_dismiss: bool = True
    dismiss_after_seconds: int = 300
    created_at: Optional[datetime] = None


class NotificationSettings(BaseModel):
    enabled: bool = True
    device_offline: bool = True
    device_online: bool = True
    sensor_alert: bool = True
    sensor_offline: bool = True
    control_action: bool = True
    auto_mode_changed: bool = True
    system_error: bool = True
    info: bool = True
    show_info: bool = True
    show_warning: bool = True
    show_critical: bool = True
    project_filter: List[str] = Field(default_factory=list)
    greenhouse_filter: List[str] = Field(default_factory=list)
    quiet_hours_enabled: bool = False
    quiet_hours_start: str = "22:00"
    quiet_hours_end: str = "07:00"

    def allows_type(self, notification_type: NotificationType) -> bool:
        return bool(getattr(self, notification_type.value))

    def allows_severity(self, severity: Severity) -> bool:
        return bool(getattr(self, f"show_{severity.value}"))


class NotificationSettingsUpdate(BaseModel):
    enabled: Optional[bool] = None
    device_offline: Optional[bool] = None
    device_online: Optional[bool] = None
    sensor_alert: Optional[bool] = None
    sensor_offline: Optional[bool] = None
    control_action: Optional[bool] = None
    auto_mode_changed: Optional[bool] = None
    system_error: Optional[bool] = None
    info: Optional[bool] = None
    show_info: Optional[bool] = None
    show_warning: Optional[bool] = None
    show_critical: Optional[bool] = None
    project_filter: Optional[List[str]] = None
    greenhouse_filter: Optional[List[str]] = None
    quiet_hours_enabled: Optional[bool] = None
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None

    @field_validator('quiet_hours_start', 'quiet_hours_end')
    def validate_hhmm(cls, v):
        if v is not None and not _HHMM.match(v):
            raise ValueError(f"Time {v} must be in HH:MM format")
        return v

    @field_validator('project_filter', 'greenhouse_filter', mode='before')
    def stringify_ids(cls, v):
        if v is None:
            return v
        return [str(item) for item in v]
