from fastapi import APIRouter, Depends
from ngo_access.models.auth import MeResponse
from ngo_access.permissions.dependencies import get_permission_service
from ngo_access.permissions.service import PermissionService

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.get("/me", response_model=MeResponse)
async def get_me(service: PermissionService = Depends(get_permission_service)):
    """Current principal with its resolved role and granted permissions."""
    permissions = await service.granted_permissions()
    return MeResponse(
        user_id=service.principal.user_id,
        email=service.principal.email,
        scope=await service.scope(),
        role=await service.resolve_role(),
        state=service.state.value,
        permissions=permissions,
    )
