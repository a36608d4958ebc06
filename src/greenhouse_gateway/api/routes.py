# src/greenhouse_gateway/api/routes.py
from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field
from typing import List, Optional
from ..core.key_registry import (
    AIR_TELEMETRY_KEYS,
    ALL_CONTROL_ATTRIBUTES,
    ALL_SOIL_KEYS,
    SYSTEM_TELEMETRY_KEYS,
)
from ..core.rpc_dispatcher import response_payload
from ..models.control import ControlCommand
from ..utils.exceptions import (
    DeviceNotLinkedError,
    DeviceOfflineError,
    GreenhouseGatewayError,
    ProjectNotFoundError,
    UpstreamError,
)
from ..utils.logging import get_logger
from .dependencies import (
    AdminUser,
    ControlServiceDependency,
    CurrentUser,
    DBDependency,
    OperatorUser,
    UpstreamDependency,
    ensure_project_access,
    success,
)

logger = get_logger(__name__)

tb_router = APIRouter(prefix="/tb")


class TestConnectionRequest(BaseModel):
    project: str = Field(min_length=1)


def http_error(error: GreenhouseGatewayError) -> HTTPException:
    if isinstance(error, DeviceOfflineError):
        return HTTPException(status_code=503, detail="Device is offline")
    if isinstance(error, (ProjectNotFoundError, DeviceNotLinkedError)):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, UpstreamError):
        return HTTPException(status_code=502, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


def _split_keys(keys: Optional[str], default: tuple) -> List[str]:
    if not keys:
        return list(default)
    return [key.strip() for key in keys.split(",") if key.strip()]


@tb_router.post("/rpc")
async def send_rpc(
    command: ControlCommand,
    request: Request,
    user: OperatorUser,
    db: DBDependency,
    service: ControlServiceDependency
) -> dict:
    await ensure_project_access(db, user, command.project)
    try:
        result = await service.execute(
            command, user, ip_address=request.client.host if request.client else None
        )
    except GreenhouseGatewayError as e:
        raise http_error(e)
    return success({**response_payload(result), "outcome": result.outcome.value})


@tb_router.get("/device-status")
async def device_status(
    project: str,
    gh: str,
    user: CurrentUser,
    db: DBDependency,
    upstream: UpstreamDependency
) -> dict:
    await ensure_project_access(db, user, project)
    online = await upstream.is_device_online(project, gh)
    return success({
        "online": online,
        "status": "Online" if online else "Offline",
        "statusTh": "ออนไลน์" if online else "ออฟไลน์",
    })


@tb_router.get("/latest")
async def latest_telemetry(
    project: str,
    gh: str,
    user: CurrentUser,
    db: DBDependency,
    upstream: UpstreamDependency,
    keys: Optional[str] = None
) -> dict:
    await ensure_project_access(db, user, project)
    default_keys = AIR_TELEMETRY_KEYS + SYSTEM_TELEMETRY_KEYS + ALL_SOIL_KEYS
    try:
        telemetry = await upstream.get_latest_telemetry(project, gh, _split_keys(keys, default_keys))
    except GreenhouseGatewayError as e:
        raise http_error(e)
    return success(telemetry)


@tb_router.get("/timeseries")
async def timeseries(
    project: str,
    gh: str,
    keys: str,
    startTs: int,
    endTs: int,
    user: CurrentUser,
    db: DBDependency,
    upstream: UpstreamDependency,
    interval: Optional[int] = None,
    agg: Optional[str] = None,
    limit: Optional[int] = None
) -> dict:
    await ensure_project_access(db, user, project)
    if endTs <= startTs:
        raise HTTPException(status_code=400, detail="endTs must be after startTs")
    try:
        data = await upstream.get_timeseries(
            project, gh, _split_keys(keys, ()), startTs, endTs, interval, agg, limit
        )
    except GreenhouseGatewayError as e:
        raise http_error(e)
    return success(data)


@tb_router.get("/attributes")
async def attributes(
    project: str,
    gh: str,
    user: CurrentUser,
    db: DBDependency,
    upstream: UpstreamDependency,
    keys: Optional[str] = None
) -> dict:
    await ensure_project_access(db, user, project)
    try:
        data = await upstream.get_attributes(project, gh, _split_keys(keys, ALL_CONTROL_ATTRIBUTES))
    except GreenhouseGatewayError as e:
        raise http_error(e)
    return success(data)


@tb_router.post("/test-connection")
async def test_connection(
    body: TestConnectionRequest,
    user: AdminUser,
    upstream: UpstreamDependency
) -> dict:
    result = await upstream.test_connection(body.project)
    logger.info(f"{user.username} tested ThingsBoard connection of {body.project}: {result['success']}")
    return success(result)
