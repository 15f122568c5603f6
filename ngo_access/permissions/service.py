from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable

from ngo_access.auth.context import Principal
from ngo_access.auth.identity import IdentityResolver
from ngo_access.observability import incr_metric, log_event
from ngo_access.permissions.cache import MISS, SessionMirror, TTLCache
from ngo_access.permissions.catalog import (
    ADMIN,
    BUILTIN_PERMISSIONS,
    is_super_admin_email,
    normalize_role,
)
from ngo_access.permissions.events import (
    Listener,
    PermissionEvent,
    PermissionEvents,
    PermissionsChanged,
    RoleChanged,
)
from ngo_access.permissions.store import Grant, PermissionStore


class UnresolvablePolicy(str, Enum):
    """What to do when a role or an admin grant cannot be resolved."""

    DENY_ALL = "deny_all"
    ALLOW_ADMIN_DEFAULTS = "allow_admin_defaults"


class ResolutionState(str, Enum):
    UNRESOLVED = "unresolved"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    STALE = "stale"


class CheckResult(str, Enum):
    ALLOWED = "allowed"
    DENIED = "denied"
    PENDING = "pending"


@dataclass(frozen=True)
class PermissionStatus:
    user_id: str | None
    scope: str | None
    role: str | None
    permission_id: str
    found: bool
    granted: bool
    allowed: bool
    cached_result: CheckResult
    total_grants: int
    role_grants: int
    is_super_admin: bool
    admin_verified: bool
    state: ResolutionState
    grants_cache_age_seconds: float | None


class PermissionService:
    """Resolves permission checks for one principal session.

    Role and grants are cached separately with their own TTL. A grant edited
    by another session stays invisible here until the grants cache expires or
    ``invalidate()`` is called.
    """

    def __init__(
        self,
        *,
        principal: Principal | None,
        store: PermissionStore,
        identity: IdentityResolver,
        role_cache: TTLCache[str | None],
        grants_cache: TTLCache[tuple[Grant, ...]],
        mirror: SessionMirror | None = None,
        events: PermissionEvents | None = None,
        policy: UnresolvablePolicy = UnresolvablePolicy.ALLOW_ADMIN_DEFAULTS,
        super_admin_emails: Iterable[str] = (),
    ):
        self.principal = principal
        self.store = store
        self.identity = identity
        self.role_cache = role_cache
        self.grants_cache = grants_cache
        self.mirror = mirror if mirror is not None else SessionMirror()
        self.events = events if events is not None else PermissionEvents()
        self.policy = UnresolvablePolicy(policy)
        self.super_admin_emails = list(super_admin_emails)
        self._scope: str | None = None
        self._in_flight = 0

    @property
    def user_id(self) -> str | None:
        return self.principal.user_id if self.principal else None

    @property
    def is_super_admin(self) -> bool:
        email = self.principal.email if self.principal else None
        return is_super_admin_email(email, self.super_admin_emails)

    @property
    def state(self) -> ResolutionState:
        if self._in_flight:
            return ResolutionState.RESOLVING
        role_fresh = self.role_cache.get() is not MISS
        grants_fresh = self.grants_cache.get() is not MISS
        if role_fresh and grants_fresh:
            return ResolutionState.RESOLVED
        if self.role_cache.is_stale or self.grants_cache.is_stale:
            return ResolutionState.STALE
        return ResolutionState.UNRESOLVED

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self.events.subscribe(listener)

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        self._in_flight += 1
        try:
            return await asyncio.to_thread(fn, *args)
        finally:
            self._in_flight -= 1

    def _unresolved_role(self, reason: str) -> str | None:
        incr_metric("permissions.role.unresolved", reason=reason, policy=self.policy.value)
        log_event(
            "role_unresolved",
            level=logging.WARNING,
            user_id=self.user_id,
            reason=reason,
            policy=self.policy.value,
        )
        if self.policy is UnresolvablePolicy.ALLOW_ADMIN_DEFAULTS:
            return ADMIN
        return None

    async def scope(self) -> str | None:
        if self._scope is None:
            self._scope = await self._call(self.identity.scope_id)
        return self._scope

    async def _load_role(self) -> str | None:
        if self.principal is None:
            return self._unresolved_role("unauthenticated")

        scope = await self.scope()
        if self.is_super_admin:
            if scope:
                await self._ensure_role(scope, ADMIN)
            return ADMIN
        if not scope:
            return self._unresolved_role("scope_not_found")

        role = normalize_role(await self._call(self.store.fetch_role, self.principal.user_id, scope))
        if role is None:
            return self._unresolved_role("role_not_found")
        return role

    async def _ensure_role(self, scope: str, role: str) -> bool:
        current = await self._call(self.store.fetch_role, self.principal.user_id, scope)
        if current == role:
            return True
        stored = await self._call(self.store.upsert_role, self.principal.user_id, scope, role)
        log_event("super_admin_role_ensured", user_id=self.user_id, scope=scope, stored=stored)
        return stored

    async def stored_role(self) -> str | None:
        """Role as stored for the principal, read uncached and without the unresolvable policy.

        Super-admins count as ``admin``. A missing row, missing scope or store
        error yields ``None``.
        """
        if self.principal is None:
            return None
        if self.is_super_admin:
            return ADMIN
        scope = await self.scope()
        if not scope:
            return None
        return normalize_role(await self._call(self.store.fetch_role, self.principal.user_id, scope))

    async def resolve_role(self) -> str | None:
        cached = self.role_cache.get()
        if cached is not MISS:
            return cached

        started = self.role_cache.now()
        role = await self._load_role()
        if self.role_cache.set(role, fetched_at=started):
            self.mirror.role = role
            self.mirror.admin_verified = role == ADMIN
        return role

    async def get_grants(self) -> tuple[Grant, ...]:
        cached = self.grants_cache.get()
        if cached is not MISS:
            return cached

        scope = await self.scope()
        if not scope:
            log_event("grants_unavailable", level=logging.WARNING, reason="scope_not_found")
            return ()

        started = self.grants_cache.now()
        grants = tuple(await self._call(self.store.fetch_grants, scope))
        # An empty result means "unresolved", so it is never cached.
        if grants:
            self.grants_cache.set(grants, fetched_at=started)
        return grants

    def _decide(self, role: str, grants: Iterable[Grant], permission_id: str) -> bool:
        matching = [g for g in grants if g.role == role and g.permission_id == permission_id]
        if role == ADMIN:
            if matching:
                return matching[0].granted
            return self.policy is UnresolvablePolicy.ALLOW_ADMIN_DEFAULTS
        return any(g.granted for g in matching)

    async def check(self, permission_id: str) -> bool:
        try:
            role = await self.resolve_role()
            if role is None:
                return False

            grants = await self.get_grants()
            if not grants:
                scope = await self.scope()
                if not scope:
                    return False
                log_event("grants_empty_seeding", level=logging.WARNING, scope=scope)
                await self._call(self.store.bulk_seed_defaults, scope, False)
                self.grants_cache.invalidate()
                grants = await self.get_grants()

            allowed = self._decide(role, grants, permission_id)
        except Exception as exc:
            incr_metric("permissions.check.failed")
            log_event(
                "permission_check_failed",
                level=logging.ERROR,
                user_id=self.user_id,
                permission_id=permission_id,
                error=str(exc),
            )
            return False

        incr_metric("permissions.check", allowed=allowed)
        return allowed

    async def check_all(self, permission_ids: Iterable[str]) -> bool:
        results = await asyncio.gather(*(self.check(pid) for pid in permission_ids))
        return all(results)

    async def check_any(self, permission_ids: Iterable[str]) -> bool:
        results = await asyncio.gather(*(self.check(pid) for pid in permission_ids))
        return any(results)

    def peek(self, permission_id: str) -> CheckResult:
        """Answer from cached state only; ``PENDING`` when a fetch is needed."""
        role = self.role_cache.get()
        if role is MISS:
            role = self.mirror.role
            if role is None:
                return CheckResult.PENDING
        if role is None:
            return CheckResult.DENIED

        grants = self.grants_cache.get()
        if grants is MISS:
            if (
                role == ADMIN
                and self.mirror.admin_verified
                and self.policy is UnresolvablePolicy.ALLOW_ADMIN_DEFAULTS
            ):
                return CheckResult.ALLOWED
            return CheckResult.PENDING

        return CheckResult.ALLOWED if self._decide(role, grants, permission_id) else CheckResult.DENIED

    async def granted_permissions(self) -> list[str]:
        role = await self.resolve_role()
        if role is None:
            return []
        grants = await self.get_grants()
        candidates = {g.permission_id for g in grants} | set(BUILTIN_PERMISSIONS)
        return sorted(pid for pid in candidates if self._decide(role, grants, pid))

    def invalidate(self) -> None:
        self.role_cache.invalidate()
        self.grants_cache.invalidate()

    def _publish(self, *events: PermissionEvent) -> None:
        for event in events:
            self.events.publish(event)

    async def set_role(self, role: str) -> bool:
        new_role = normalize_role(role)
        if new_role is None or self.principal is None:
            return False
        scope = await self.scope()
        if not scope:
            log_event("role_change_aborted", level=logging.WARNING, reason="scope_not_found")
            return False

        previous = self.role_cache.get()
        if previous is MISS:
            previous = self.mirror.role

        stored = await self._call(self.store.upsert_role, self.principal.user_id, scope, new_role)
        if not stored:
            return False

        self.invalidate()
        self.role_cache.set(new_role)
        self.mirror.role = new_role
        self.mirror.admin_verified = new_role == ADMIN
        self._publish(
            RoleChanged(previous_role=previous, new_role=new_role, user_id=self.user_id),
            PermissionsChanged(action="role_change", role=new_role, scope=scope),
        )
        log_event("role_changed", user_id=self.user_id, previous_role=previous, new_role=new_role)
        return True

    async def update_grant(self, role: str, permission_id: str, granted: bool) -> bool:
        scope = await self.scope()
        if not scope:
            log_event("grant_update_aborted", level=logging.WARNING, reason="scope_not_found")
            return False

        stored = await self._call(self.store.upsert_grant, scope, role, permission_id, granted)
        if not stored:
            return False

        self.invalidate()
        self._publish(
            PermissionsChanged(
                action="update",
                role=role,
                permission_id=permission_id,
                granted=granted,
                scope=scope,
            )
        )
        return True

    async def seed_defaults(self, force: bool = False) -> bool:
        scope = await self.scope()
        if not scope:
            return False
        seeded = await self._call(self.store.bulk_seed_defaults, scope, force)
        if not seeded:
            return False
        self.grants_cache.invalidate()
        self._publish(PermissionsChanged(action="seed", scope=scope))
        return True

    async def reset(self) -> bool:
        scope = await self.scope()
        if not scope:
            return False
        deleted = await self._call(self.store.delete_grants, scope)
        if not deleted:
            return False
        self.invalidate()
        self.mirror.clear()
        self._publish(PermissionsChanged(action="reset", scope=scope))
        return True

    async def refresh(self) -> int:
        self.invalidate()
        self.mirror.clear()
        grants = await self.get_grants()
        await self.resolve_role()
        self._publish(PermissionsChanged(action="refresh", permissions_count=len(grants)))
        return len(grants)

    async def verify_super_admin(self) -> bool:
        if not self.is_super_admin:
            return False
        scope = await self.scope()
        if not scope:
            return False
        if not await self._ensure_role(scope, ADMIN):
            return False
        self.invalidate()
        self.role_cache.set(ADMIN)
        self.mirror.role = ADMIN
        self.mirror.admin_verified = True
        return True

    async def status(self, permission_id: str) -> PermissionStatus:
        cached_result = self.peek(permission_id)
        role = await self.resolve_role()
        grants = await self.get_grants()
        role_grants = [g for g in grants if g.role == role]
        row = next((g for g in role_grants if g.permission_id == permission_id), None)
        allowed = await self.check(permission_id)
        return PermissionStatus(
            user_id=self.user_id,
            scope=self._scope,
            role=role,
            permission_id=permission_id,
            found=row is not None,
            granted=bool(row and row.granted),
            allowed=allowed,
            cached_result=cached_result,
            total_grants=len(grants),
            role_grants=len(role_grants),
            is_super_admin=self.is_super_admin,
            admin_verified=self.mirror.admin_verified,
            state=self.state,
            grants_cache_age_seconds=self.grants_cache.age(),
        )


def log_permission_event(event: PermissionEvent) -> None:
    if isinstance(event, RoleChanged):
        log_event(
            "role_change_broadcast",
            user_id=event.user_id,
            previous_role=event.previous_role,
            new_role=event.new_role,
        )
        return
    incr_metric("permissions.changed", action=event.action)
    log_event(
        "permissions_change_broadcast",
        action=event.action,
        role=event.role,
        permission_id=event.permission_id,
        granted=event.granted,
    )


class PermissionSessions:
    """One ``PermissionService`` per principal, sharing store, listeners and settings.

    Each session gets its own event bus, subscribed to the shared listeners.
    The registry is bounded: a session idle for ``idle_seconds`` (by default
    the longer cache TTL, after which both caches have expired anyway) is
    dropped, and past ``max_sessions`` the least recently used one goes first.
    """

    def __init__(
        self,
        *,
        store: PermissionStore,
        identity: IdentityResolver,
        policy: UnresolvablePolicy = UnresolvablePolicy.ALLOW_ADMIN_DEFAULTS,
        role_ttl_seconds: float = 300.0,
        grants_ttl_seconds: float = 30.0,
        super_admin_emails: Iterable[str] = (),
        listeners: Iterable[Listener] = (log_permission_event,),
        max_sessions: int = 1000,
        idle_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.identity = identity
        self.policy = UnresolvablePolicy(policy)
        self.role_ttl_seconds = role_ttl_seconds
        self.grants_ttl_seconds = grants_ttl_seconds
        self.super_admin_emails = list(super_admin_emails)
        self.listeners = list(listeners)
        self.max_sessions = max_sessions
        self.idle_seconds = (
            idle_seconds if idle_seconds is not None else max(role_ttl_seconds, grants_ttl_seconds)
        )
        self._clock = clock
        self._sessions: OrderedDict[str, PermissionService] = OrderedDict()
        self._last_used: dict[str, float] = {}

    @classmethod
    def from_settings(cls, client: Any, settings: Any) -> "PermissionSessions":
        return cls(
            store=PermissionStore(client),
            identity=IdentityResolver(client),
            policy=UnresolvablePolicy(settings.unresolvable_policy),
            role_ttl_seconds=settings.role_cache_ttl_seconds,
            grants_ttl_seconds=settings.grants_cache_ttl_seconds,
            super_admin_emails=settings.super_admin_emails,
            max_sessions=settings.max_permission_sessions,
        )

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._sessions

    def for_principal(self, principal: Principal) -> PermissionService:
        now = self._clock()
        self._evict_idle(now)

        service = self._sessions.get(principal.user_id)
        if service is None or service.principal != principal:
            service = self._new_service(principal)
            self._sessions[principal.user_id] = service

        self._sessions.move_to_end(principal.user_id)
        self._last_used[principal.user_id] = now
        while len(self._sessions) > self.max_sessions:
            oldest = next(iter(self._sessions))
            self.discard(oldest, reason="capacity")
        return service

    def _new_service(self, principal: Principal) -> PermissionService:
        events = PermissionEvents()
        for listener in self.listeners:
            events.subscribe(listener)
        return PermissionService(
            principal=principal,
            store=self.store,
            identity=self.identity,
            role_cache=TTLCache(self.role_ttl_seconds, clock=self._clock),
            grants_cache=TTLCache(self.grants_ttl_seconds, clock=self._clock),
            events=events,
            policy=self.policy,
            super_admin_emails=self.super_admin_emails,
        )

    def _evict_idle(self, now: float) -> None:
        idle = [uid for uid, used in self._last_used.items() if now - used >= self.idle_seconds]
        for user_id in idle:
            self.discard(user_id, reason="idle")

    def discard(self, user_id: str, reason: str = "discarded") -> None:
        if self._sessions.pop(user_id, None) is None:
            return
        self._last_used.pop(user_id, None)
        incr_metric("permissions.sessions.evicted", reason=reason)
        log_event("permission_session_evicted", user_id=user_id, reason=reason)
