import asyncio
import re
from typing import Any, Awaitable, Callable, Dict, Optional
from ..adapters.base import UpstreamPlatform
from ..core.key_registry import resolve_confirmation
from ..models.control import ControlCommand, DispatchOutcome, DispatchResult
from ..utils.exceptions import DeviceOfflineError, UpstreamError, UpstreamHardError
from ..utils.logging import get_logger

logger = get_logger(__name__)

_ONE_WAY_SUFFIXES = ("_cmd", "_auto", "_time", "_condition_auto", "_interval_auto")
_MOTOR_STATUS = re.compile(r'^set_motor_\d+_status$')
_SOFT_TIMEOUT_TEXT = re.compile(r'timeout|timed out|504|Bad Gateway|Gateway Time-out', re.IGNORECASE)
SOFT_TIMEOUT_STATUSES = (408, 504)


def is_one_way(method: str) -> bool:
    """Commands whose effect is confirmed through attributes, not an RPC reply"""
    return (
        method.endswith(_ONE_WAY_SUFFIXES)
        or method.startswith("set_global_")
        or bool(_MOTOR_STATUS.match(method))
    )


def is_soft_timeout(error: BaseException) -> bool:
    """Gateway or request timeouts, the device may still have applied the command"""
    status = getattr(error, 'status', None)
    if status in SOFT_TIMEOUT_STATUSES:
        return True
    # message only, error bodies carry epoch-ms timestamps
    return bool(_SOFT_TIMEOUT_TEXT.search(str(error)))


class RpcDispatcher:
    """Sends a control command to a greenhouse controller"""
    def __init__(self, upstream: UpstreamPlatform, config: Dict[str, Any]):
        self.upstream = upstream
        rpc_config = config.get('rpc', {})
        self.default_timeout_ms = int(rpc_config.get('default_timeout_ms', 5000))
        self.liveness_timeout = float(config.get('liveness_timeout', 10))

    async def _check_online(self, command: ControlCommand) -> bool:
        try:
            return await asyncio.wait_for(
                self.upstream.is_device_online(command.project, command.gh),
                timeout=self.liveness_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Liveness check for {command.project}/{command.gh} timed out")
            return False
        except Exception as e:
            logger.warning(f"Liveness check for {command.project}/{command.gh} failed: {e}")
            return False

    async def dispatch(self, command: ControlCommand,
                       before_send: Optional[Callable[[], Awaitable[Any]]] = None) -> DispatchResult:
        """
        Check liveness then send the command.

        `before_send` is awaited once the device is known to be online,
        right before the RPC goes out.

        Raises:
            DeviceOfflineError: the device failed the liveness check, nothing was sent
            UpstreamHardError: the platform rejected the command
        """
        if not await self._check_online(command):
            raise DeviceOfflineError(f"Device {command.project}/{command.gh} is offline")

        one_way = is_one_way(command.method)
        timeout_ms = None if one_way else (command.timeout or self.default_timeout_ms)
        confirmations = resolve_confirmation(command.method, command.params)

        if before_send is not None:
            await before_send()

        try:
            response: Dict[str, Any] = await self.upstream.send_rpc(
                command.project, command.gh, command.method, command.params, timeout_ms
            )
        except UpstreamError as e:
            if is_soft_timeout(e):
                logger.warning(
                    f"RPC {command.method} to {command.project}/{command.gh} timed out, "
                    f"awaiting device sync: {e}"
                )
                return DispatchResult(
                    outcome=DispatchOutcome.SOFT_TIMEOUT,
                    one_way=one_way,
                    response={},
                    confirmations=confirmations
                )
            raise UpstreamHardError(str(e), status=e.status, body=e.body) from e

        return DispatchResult(
            outcome=DispatchOutcome.ACCEPTED_UNCONFIRMED if one_way else DispatchOutcome.ACK_RECEIVED,
            one_way=one_way,
            response=response or {},
            confirmations=confirmations
        )


def describe(result: DispatchResult) -> str:
    if result.outcome == DispatchOutcome.SOFT_TIMEOUT:
        return "command sent, awaiting device sync"
    if result.one_way:
        return "command sent"
    return "command acknowledged"


def response_payload(result: DispatchResult) -> Dict[str, Any]:
    return {"rpcResponse": result.response, "message": describe(result)}
