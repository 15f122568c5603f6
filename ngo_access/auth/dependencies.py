from fastapi import Header, HTTPException, Request, status
from ngo_access.auth.context import AuthContext
from ngo_access.auth.identity import IdentityResolver, _extract_bearer_token


def get_identity_resolver(request: Request) -> IdentityResolver:
    return request.app.state.permission_sessions.identity


async def get_current_auth(
    request: Request,
    authorization: str | None = Header(None),
) -> AuthContext:
    """Session JWT auth. Every endpoint of the service requires it."""
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
        )

    principal = get_identity_resolver(request).current_principal(token)
    if not principal:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session",
        )

    return AuthContext(principal=principal, token=token)
