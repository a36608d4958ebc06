from enum import Enum
from typing import Any, Dict, Optional

from ..storage.audit_db import AuditRepository
from ..utils.logging import get_logger

logger = get_logger(__name__)


class AuditAction(str, Enum):
    RPC_SENT = "RPC_SENT"
    RPC_SUCCESS = "RPC_SUCCESS"
    RPC_FAILED = "RPC_FAILED"


class AuditLogger:
    """Best-effort audit trail, a failed write is logged and dropped"""
    def __init__(self, repository: AuditRepository):
        self.repository = repository

    async def log(self, action: AuditAction, user_id: Optional[int] = None,
                  project_key: Optional[str] = None, gh_key: Optional[str] = None,
                  detail: Optional[Dict[str, Any]] = None) -> bool:
        try:
            await self.repository.insert(
                action.value, user_id=user_id, project_key=project_key, gh_key=gh_key, detail=detail
            )
            return True
        except Exception as e:
            logger.error(f"Failed to write audit entry {action.value}: {e}")
            return False
