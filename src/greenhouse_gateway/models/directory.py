from enum import Enum
from typing import Optional
from pydantic import BaseModel


class UserRole(str, Enum):
    SUPERADMIN = "superadmin"
    ADMIN = "admin"
    OPERATOR = "operator"
    VIEWER = "viewer"


ADMIN_ROLES = (UserRole.SUPERADMIN.value, UserRole.ADMIN.value)
OPERATOR_ROLES = ADMIN_ROLES + (UserRole.OPERATOR.value,)


class User(BaseModel):
    id: int
    username: str
    full_name: Optional[str] = None
    role: UserRole
    is_active: bool = True

    @property
    def is_admin(self) -> bool:
        return self.role.value in ADMIN_ROLES

    @property
    def is_operator(self) -> bool:
        return self.role.value in OPERATOR_ROLES


class ProjectSettings(BaseModel):
    """Platform credentials stored per project"""
    id: int
    key: str
    name: str
    tb_base_url: str
    tb_username: str
    tb_password: str


class Greenhouse(BaseModel):
    id: int
    project_id: int
    project_key: str
    project_name: str
    gh_key: str
    name: str
    tb_device_id: Optional[str] = None
