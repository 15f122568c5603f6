from fastapi import Depends, HTTPException, Request, status
from ngo_access.auth import AuthContext, get_current_auth
from ngo_access.observability import log_event
from ngo_access.permissions.catalog import is_admin_role
from ngo_access.permissions.service import PermissionService, PermissionSessions


def get_permission_sessions(request: Request) -> PermissionSessions:
    return request.app.state.permission_sessions


async def get_permission_service(
    auth: AuthContext = Depends(get_current_auth),
    sessions: PermissionSessions = Depends(get_permission_sessions),
) -> PermissionService:
    return sessions.for_principal(auth.principal)


async def require_admin(
    service: PermissionService = Depends(get_permission_service),
) -> PermissionService:
    """Authorization dependency for role and grant management endpoints.

    Reads the stored role on every call. A missing role row or a store error
    is rejected; the unresolvable policy never applies here.
    """
    role = await service.stored_role()
    if not is_admin_role(role):
        log_event("admin_required_denied", user_id=service.user_id, stored_role=role)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return service
