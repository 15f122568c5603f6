from ngo_access.permissions.cache import MISS, SessionMirror, TTLCache
from ngo_access.permissions.events import PermissionEvents, PermissionsChanged, RoleChanged
from ngo_access.permissions.service import (
    CheckResult,
    PermissionService,
    PermissionSessions,
    ResolutionState,
    UnresolvablePolicy,
)
from ngo_access.permissions.store import Grant, PermissionStore

__all__ = [
    "MISS",
    "SessionMirror",
    "TTLCache",
    "PermissionEvents",
    "PermissionsChanged",
    "RoleChanged",
    "CheckResult",
    "PermissionService",
    "PermissionSessions",
    "ResolutionState",
    "UnresolvablePolicy",
    "Grant",
    "PermissionStore",
]
