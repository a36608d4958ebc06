from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Any, Dict, List, Optional
from enum import Enum


class RpcConfirmation(BaseModel):
    """Attribute state that proves an RPC took effect on the device"""
    model_config = ConfigDict(frozen=True)

    attribute: str
    expected_value: Optional[Any] = None


class ControlTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    control_key: str
    action: str
    value: Any = None


class ControlSource(str, Enum):
    MANUAL = "manual"
    SCHEDULE = "schedule"
    AUTOMATION = "automation"
    SCENE = "scene"
    EXTERNAL_API = "external_api"


class ControlCommand(BaseModel):
    """Body of POST /api/tb/rpc"""
    project: str = Field(min_length=1)
    gh: str = Field(min_length=1)
    method: str = Field(min_length=1)
    params: Any = None
    # milliseconds, forwarded to the platform for two-way calls only
    timeout: Optional[int] = Field(default=None, gt=0)


class DispatchOutcome(str, Enum):
    ACK_RECEIVED = "ACK_RECEIVED"
    ACCEPTED_UNCONFIRMED = "ACCEPTED_UNCONFIRMED"
    SOFT_TIMEOUT = "SOFT_TIMEOUT"


class DispatchResult(BaseModel):
    accepted: bool = True
    outcome: DispatchOutcome
    one_way: bool
    response: Dict[str, Any] = Field(default_factory=dict)
    confirmations: List[RpcConfirmation] = Field(default_factory=list)

    @property
    def confirmed(self) -> bool:
        return self.outcome == DispatchOutcome.ACK_RECEIVED


class ControlHistoryEntry(BaseModel):
    id: Optional[int] = None
    greenhouse_id: int
    control_key: str
    control_name: Optional[str] = None
    action: str
    value: Optional[str] = None
    source: ControlSource = ControlSource.MANUAL
    user_id: Optional[int] = None
    ip_address: Optional[str] = None
    success: bool
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
