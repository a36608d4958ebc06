from fastapi import APIRouter, HTTPException, Query
from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional
from ...models.control import ControlSource
from ...models.directory import User
from ...storage.gateway_database import GatewayDatabase
from ...utils.helpers import to_db_timestamp
from ..dependencies import ControlHistoryDependency, CurrentUser, DBDependency, success

control_history_router = APIRouter(prefix="/control-history")


async def _allowed_projects(db: GatewayDatabase, user: User) -> Optional[List[int]]:
    if user.is_admin:
        return None
    return await db.directory.accessible_project_ids(user.id)


def _filters(project: Optional[str], gh: Optional[str], source: Optional[ControlSource],
             user_id: Optional[int], control_key: Optional[str], start_date: Optional[datetime],
             end_date: Optional[datetime], success_only: Optional[bool]) -> Dict[str, Any]:
    return {
        "project_key": project,
        "gh_key": gh,
        "source": source.value if source else None,
        "user_id": user_id,
        "control_key": control_key,
        "start_date": to_db_timestamp(start_date) if start_date else None,
        "end_date": to_db_timestamp(end_date) if end_date else None,
        "success": success_only,
    }


@control_history_router.get("")
async def list_history(
    user: CurrentUser,
    db: DBDependency,
    history: ControlHistoryDependency,
    project: Optional[str] = None,
    gh: Optional[str] = None,
    source: Optional[ControlSource] = None,
    user_id: Optional[int] = None,
    control_key: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    success_only: Annotated[Optional[bool], Query(alias="success")] = None,
    limit: int = 100,
    offset: int = 0
) -> dict:
    limit = min(max(limit, 1), 500)
    offset = max(offset, 0)
    filters = _filters(project, gh, source, user_id, control_key, start_date, end_date, success_only)
    rows, total = await history.list(filters, await _allowed_projects(db, user), limit, offset)
    return success({"items": rows, "total": total, "limit": limit, "offset": offset})


@control_history_router.get("/stats")
async def history_stats(
    user: CurrentUser,
    db: DBDependency,
    history: ControlHistoryDependency,
    project: Optional[str] = None,
    gh: Optional[str] = None,
    days: int = 30
) -> dict:
    filters = _filters(project, gh, None, None, None, None, None, None)
    stats = await history.stats(filters, await _allowed_projects(db, user), min(max(days, 1), 365))
    return success(stats)


@control_history_router.get("/recent/{greenhouse_id}")
async def recent_history(
    greenhouse_id: int,
    user: CurrentUser,
    db: DBDependency,
    history: ControlHistoryDependency,
    limit: int = 20
) -> dict:
    greenhouse = await db.directory.get_greenhouse_by_id(greenhouse_id)
    if greenhouse is None:
        raise HTTPException(status_code=404, detail=f"Greenhouse {greenhouse_id} not found")
    if not await db.directory.has_project_access(user, greenhouse.project_key):
        raise HTTPException(status_code=403, detail=f"No access to project {greenhouse.project_key}")
    rows = await history.recent(greenhouse_id, min(max(limit, 1), 100))
    return success(rows)
