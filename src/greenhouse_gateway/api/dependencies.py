# src/greenhouse_gateway/api/dependencies.py
from fastapi import Request, Header, HTTPException
from typing import Annotated, Optional
from fastapi import Depends
from ..storage.gateway_database import GatewayDatabase
from ..adapters.base import UpstreamPlatform
from ..core.control_service import ControlService
from ..core.control_history import ControlHistoryRecorder
from ..core.notification_engine import NotificationEngine
from ..models.directory import User

async def get_db(request: Request) -> GatewayDatabase:
    return request.app.state.components.db

async def get_upstream(request: Request) -> UpstreamPlatform:
    return request.app.state.components.upstream

async def get_control_service(request: Request) -> ControlService:
    return request.app.state.components.control_service

async def get_control_history(request: Request) -> ControlHistoryRecorder:
    return request.app.state.components.control_history

async def get_notification_engine(request: Request) -> NotificationEngine:
    return request.app.state.components.notification_engine

async def get_current_user(
    db: Annotated[GatewayDatabase, Depends(get_db)],
    x_user_id: Annotated[Optional[int], Header()] = None
) -> User:
    # Session handling lives in front of the gateway, it forwards the user id
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    user = await db.directory.get_user(x_user_id)
    if user is None or not user.is_active:
        raise HTTPException(status_code=401, detail="Unknown or inactive user")
    return user

async def require_operator(user: Annotated[User, Depends(get_current_user)]) -> User:
    if not user.is_operator:
        raise HTTPException(status_code=403, detail="Operator role required")
    return user

async def require_admin(user: Annotated[User, Depends(get_current_user)]) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin role required")
    return user

# Type definitions for dependencies
DBDependency = Annotated[GatewayDatabase, Depends(get_db)]
UpstreamDependency = Annotated[UpstreamPlatform, Depends(get_upstream)]
ControlServiceDependency = Annotated[ControlService, Depends(get_control_service)]
ControlHistoryDependency = Annotated[ControlHistoryRecorder, Depends(get_control_history)]
NotificationDependency = Annotated[NotificationEngine, Depends(get_notification_engine)]
CurrentUser = Annotated[User, Depends(get_current_user)]
OperatorUser = Annotated[User, Depends(require_operator)]
AdminUser = Annotated[User, Depends(require_admin)]

def success(data=None) -> dict:
    """Response envelope of every endpoint"""
    return {"success": True, "data": data}

async def ensure_project_access(db: GatewayDatabase, user: User, project_key: str) -> None:
    if not await db.directory.has_project_access(user, project_key):
        raise HTTPException(status_code=403, detail=f"No access to project {project_key}")
