import logging
from fastapi import APIRouter, Depends, HTTPException, Query, status
from ngo_access.models.permissions import (
    CatalogResponse,
    CheckResponse,
    GrantResponse,
    GrantUpdate,
    MutationResponse,
    PeekResponse,
    PermissionCategory,
    PermissionStatusResponse,
    RefreshResponse,
    RoleOption,
    RoleUpdate,
)
from ngo_access.auth import AuthContext, get_current_auth
from ngo_access.observability import log_event
from ngo_access.permissions.catalog import KNOWN_ROLES, PERMISSION_CATEGORIES, ROLE_LABELS
from ngo_access.permissions.dependencies import get_permission_service, require_admin
from ngo_access.permissions.service import PermissionService

router = APIRouter(prefix="/api/permissions", tags=["permissions"])


def _store_failure(operation: str) -> HTTPException:
    log_event("permission_mutation_failed", level=logging.WARNING, operation=operation)
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=f"Failed to {operation}",
    )


@router.get("/catalog", response_model=CatalogResponse)
async def get_catalog(auth: AuthContext = Depends(get_current_auth)):
    """Permission categories and the roles that can be assigned."""
    return CatalogResponse(
        categories=[
            PermissionCategory(key=key, label=label, permissions=list(permission_ids))
            for key, (label, permission_ids) in PERMISSION_CATEGORIES.items()
        ],
        roles=[RoleOption(value=role, label=ROLE_LABELS[role]) for role in KNOWN_ROLES],
    )


@router.get("/grants", response_model=list[GrantResponse])
async def list_grants(service: PermissionService = Depends(get_permission_service)):
    """List the grant rows of the organization (cached)."""
    grants = await service.get_grants()
    return [
        GrantResponse(
            organization_id=g.organization_id,
            role=g.role,
            permission_id=g.permission_id,
            granted=g.granted,
            created_at=g.created_at,
            updated_at=g.updated_at,
        )
        for g in grants
    ]


@router.get("/check/{permission_id}", response_model=CheckResponse)
async def check_permission(permission_id: str, service: PermissionService = Depends(get_permission_service)):
    return CheckResponse(permission_id=permission_id, allowed=await service.check(permission_id))


@router.get("/peek/{permission_id}", response_model=PeekResponse)
async def peek_permission(permission_id: str, service: PermissionService = Depends(get_permission_service)):
    """Best-effort answer from cached state; never calls the store."""
    return PeekResponse(permission_id=permission_id, result=service.peek(permission_id).value)


@router.get("/status/{permission_id}", response_model=PermissionStatusResponse)
async def permission_status(permission_id: str, service: PermissionService = Depends(get_permission_service)):
    report = await service.status(permission_id)
    return PermissionStatusResponse(
        user_id=report.user_id,
        scope=report.scope,
        role=report.role,
        permission_id=report.permission_id,
        found=report.found,
        granted=report.granted,
        allowed=report.allowed,
        cached_result=report.cached_result.value,
        total_grants=report.total_grants,
        role_grants=report.role_grants,
        is_super_admin=report.is_super_admin,
        admin_verified=report.admin_verified,
        state=report.state.value,
        grants_cache_age_seconds=report.grants_cache_age_seconds,
    )


@router.put("/grants", response_model=MutationResponse)
async def update_grant(data: GrantUpdate, service: PermissionService = Depends(require_admin)):
    """Grant or deny a permission for a role."""
    if not await service.update_grant(data.role, data.permission_id, data.granted):
        raise _store_failure("update permission")
    return MutationResponse(success=True, message="Permission updated successfully")


@router.put("/role", response_model=MutationResponse)
async def set_role(data: RoleUpdate, service: PermissionService = Depends(require_admin)):
    """Switch the caller's role."""
    if not await service.set_role(data.role):
        raise _store_failure("update role")
    return MutationResponse(success=True, message=f"Role set to {data.role}")


@router.post("/seed", response_model=MutationResponse)
async def seed_defaults(
    force: bool = Query(False),
    service: PermissionService = Depends(require_admin),
):
    """Write the default grant matrix. Skipped when grants exist, unless forced."""
    if not await service.seed_defaults(force=force):
        raise _store_failure("initialize default permissions")
    return MutationResponse(success=True, message="Default permissions initialized")


@router.post("/reset", response_model=MutationResponse)
async def reset_permissions(service: PermissionService = Depends(require_admin)):
    """Delete every grant of the organization."""
    if not await service.reset():
        raise _store_failure("reset permissions")
    return MutationResponse(success=True, message="Permissions reset successfully")


@router.post("/refresh", response_model=RefreshResponse)
async def refresh_permissions(service: PermissionService = Depends(get_permission_service)):
    """Drop this session's caches and reload from the store."""
    return RefreshResponse(permissions_count=await service.refresh())
