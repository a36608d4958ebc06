import json
from typing import Any, Optional

from ..core.audit import AuditAction, AuditLogger
from ..core.control_history import ControlHistoryRecorder
from ..core.key_registry import display_name, resolve_control
from ..core.rpc_dispatcher import RpcDispatcher
from ..models.control import ControlCommand, ControlHistoryEntry, ControlSource, DispatchResult
from ..models.directory import User
from ..storage.directory_db import DirectoryRepository
from ..utils.exceptions import DeviceNotLinkedError, DeviceOfflineError, ProjectNotFoundError, UpstreamHardError
from ..utils.logging import get_logger

logger = get_logger(__name__)


def format_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(',', ':'))
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


class ControlService:
    """
    Inbound control flow of one command:
    dispatch, then history, audit and notifications whatever the outcome.
    """
    def __init__(self, directory: DirectoryRepository, dispatcher: RpcDispatcher,
                 recorder: ControlHistoryRecorder, audit: AuditLogger):
        self.directory = directory
        self.dispatcher = dispatcher
        self.recorder = recorder
        self.audit = audit

    async def execute(self, command: ControlCommand, user: User, ip_address: Optional[str] = None,
                      source: ControlSource = ControlSource.MANUAL) -> DispatchResult:
        """
        Raises:
            ProjectNotFoundError: unknown project key
            DeviceNotLinkedError: unknown greenhouse or no platform device
            DeviceOfflineError: liveness check failed, nothing was sent
            UpstreamHardError: the platform rejected the command
        """
        if await self.directory.get_project_settings(command.project) is None:
            raise ProjectNotFoundError(f"Project {command.project} not found")
        greenhouse = await self.directory.get_greenhouse(command.project, command.gh)
        if greenhouse is None:
            raise DeviceNotLinkedError(f"Greenhouse {command.project}/{command.gh} not found")

        target = resolve_control(command.method, command.params)
        scope = dict(user_id=user.id, project_key=command.project, gh_key=command.gh)
        detail = {'method': command.method, 'params': command.params}

        def history(success: bool, error_message: Optional[str] = None) -> ControlHistoryEntry:
            return ControlHistoryEntry(
                greenhouse_id=greenhouse.id,
                control_key=target.control_key,
                control_name=display_name(target.control_key),
                action=target.action,
                value=format_value(target.value),
                source=source,
                user_id=user.id,
                ip_address=ip_address,
                success=success,
                error_message=error_message
            )

        async def announce() -> None:
            await self.audit.log(AuditAction.RPC_SENT, **scope, detail=detail)

        try:
            result = await self.dispatcher.dispatch(command, before_send=announce)
        except DeviceOfflineError:
            logger.warning(f"{user.username}: {command.method} refused, {command.project}/{command.gh} offline")
            await self.recorder.record(history(False, "Device offline"))
            await self.audit.log(AuditAction.RPC_FAILED, **scope,
                                 detail={**detail, 'reason': 'Device offline'})
            raise
        except UpstreamHardError as e:
            logger.error(f"{user.username}: {command.method} on {command.project}/{command.gh} failed: {e}")
            await self.recorder.record(history(False, str(e)))
            await self.audit.log(AuditAction.RPC_FAILED, **scope,
                                 detail={**detail, 'error': str(e), 'status': e.status})
            raise

        await self.recorder.record(history(True))
        await self.audit.log(AuditAction.RPC_SUCCESS, **scope,
                             detail={**detail, 'outcome': result.outcome.value, 'response': result.response})
        return result
