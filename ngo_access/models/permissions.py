from pydantic import BaseModel, field_validator
from datetime import datetime
from typing import Literal
from ngo_access.permissions.catalog import normalize_role


def _require_role(value: str) -> str:
    role = normalize_role(value)
    if role is None:
        raise ValueError("role must not be empty")
    return role


class GrantResponse(BaseModel):
    organization_id: str
    role: str
    permission_id: str
    granted: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None


class GrantUpdate(BaseModel):
    role: str
    permission_id: str
    granted: bool

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, value: str) -> str:
        return _require_role(value)

    @field_validator("permission_id")
    @classmethod
    def _strip_permission_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("permission_id must not be empty")
        return value


class RoleUpdate(BaseModel):
    role: str

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, value: str) -> str:
        return _require_role(value)


class CheckResponse(BaseModel):
    permission_id: str
    allowed: bool


class PeekResponse(BaseModel):
    permission_id: str
    result: Literal["allowed", "denied", "pending"]


class PermissionStatusResponse(BaseModel):
    user_id: str | None
    scope: str | None
    role: str | None
    permission_id: str
    found: bool
    granted: bool
    allowed: bool
    cached_result: Literal["allowed", "denied", "pending"]
    total_grants: int
    role_grants: int
    is_super_admin: bool
    admin_verified: bool
    state: Literal["unresolved", "resolving", "resolved", "stale"]
    grants_cache_age_seconds: float | None


class PermissionCategory(BaseModel):
    key: str
    label: str
    permissions: list[str]


class RoleOption(BaseModel):
    value: str
    label: str


class CatalogResponse(BaseModel):
    categories: list[PermissionCategory]
    roles: list[RoleOption]


class MutationResponse(BaseModel):
    success: bool
    message: str


class RefreshResponse(BaseModel):
    permissions_count: int
