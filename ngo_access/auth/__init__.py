from ngo_access.auth.context import AuthContext, Principal
from ngo_access.auth.dependencies import get_current_auth, get_identity_resolver
from ngo_access.auth.jwt import create_access_token, decode_access_token

__all__ = [
    "AuthContext",
    "Principal",
    "get_current_auth",
    "get_identity_resolver",
    "create_access_token",
    "decode_access_token",
]
