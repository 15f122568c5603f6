import asyncio
import threading

from fake_supabase import FakeClock, FakeSupabase

from ngo_access.auth.context import Principal
from ngo_access.auth.identity import IdentityResolver
from ngo_access.permissions.cache import SessionMirror, TTLCache
from ngo_access.permissions.catalog import BUILTIN_PERMISSIONS
from ngo_access.permissions.events import PermissionEvents, PermissionsChanged, RoleChanged
from ngo_access.permissions.service import (
    CheckResult,
    PermissionService,
    PermissionSessions,
    ResolutionState,
    UnresolvablePolicy,
)
from ngo_access.permissions.store import PermissionStore


def _grant(role: str, permission_id: str, granted: bool, org: str = "org-1") -> dict:
    return {"organization_id": org, "role": role, "permission_id": permission_id, "granted": granted}


def _tables(role: str | None = "accountant", grants: list[dict] | None = None) -> dict:
    user_roles = []
    if role:
        user_roles.append(
            {"id": "ur-1", "user_id": "u-1", "organization_id": "org-1", "role": role, "created_at": "2025-01-01T00:00:00+00:00"}
        )
    return {
        "organizations": [{"id": "org-1"}],
        "user_roles": user_roles,
        "permissions": [{"permission_id": pid} for pid in BUILTIN_PERMISSIONS],
        "role_permissions": list(grants or []),
    }


def _service(
    db: FakeSupabase,
    *,
    clock: FakeClock | None = None,
    policy: UnresolvablePolicy = UnresolvablePolicy.ALLOW_ADMIN_DEFAULTS,
    principal: Principal | None = Principal(user_id="u-1", email="u1@example.org"),
    mirror: SessionMirror | None = None,
    super_admin_emails: tuple[str, ...] = (),
) -> PermissionService:
    clock = clock or FakeClock()
    return PermissionService(
        principal=principal,
        store=PermissionStore(db),
        identity=IdentityResolver(db),
        role_cache=TTLCache(300, clock=clock),
        grants_cache=TTLCache(30, clock=clock),
        mirror=mirror,
        policy=policy,
        super_admin_emails=super_admin_emails,
    )


def test_missing_grant_row_denies_non_admin():
    db = FakeSupabase(_tables("accountant", [_grant("accountant", "view_finances", True)]))
    service = _service(db)

    assert asyncio.run(service.check("manage_expenses")) is False
    assert asyncio.run(service.check("view_finances")) is True


def test_explicit_false_grant_denies_non_admin():
    db = FakeSupabase(_tables("donor", [_grant("donor", "view_reports", False)]))

    assert asyncio.run(_service(db).check("view_reports")) is False


def test_empty_grants_seed_defaults_once_then_resolve():
    db = FakeSupabase(_tables("accountant", []))
    service = _service(db)

    assert asyncio.run(service.check("view_finances")) is True
    assert asyncio.run(service.check("manage_expenses")) is False
    upserts = [call for call in db.calls if call == ("role_permissions", "upsert")]
    assert len(upserts) == 1


def test_admin_without_row_is_allowed_by_default():
    db = FakeSupabase(_tables("admin", [_grant("accountant", "view_finances", True)]))

    assert asyncio.run(_service(db).check("delete_users")) is True


def test_admin_explicit_denial_overrides_default():
    db = FakeSupabase(_tables("admin", [_grant("admin", "delete_users", False)]))

    assert asyncio.run(_service(db).check("delete_users")) is False


def test_deny_all_policy_denies_admin_without_row():
    db = FakeSupabase(_tables("admin", [_grant("admin", "view_users", True)]))
    service = _service(db, policy=UnresolvablePolicy.DENY_ALL)

    assert asyncio.run(service.check("view_users")) is True
    assert asyncio.run(service.check("delete_users")) is False


def test_unresolvable_role_follows_policy():
    grants = [_grant("admin", "view_users", True)]

    lenient = _service(FakeSupabase(_tables(None, grants)))
    strict = _service(FakeSupabase(_tables(None, grants)), policy=UnresolvablePolicy.DENY_ALL)

    assert asyncio.run(lenient.resolve_role()) == "admin"
    assert asyncio.run(lenient.check("manage_settings")) is True
    assert asyncio.run(strict.resolve_role()) is None
    assert asyncio.run(strict.check("view_users")) is False


def test_unauthenticated_principal_follows_policy():
    grants = [_grant("admin", "view_users", True)]

    lenient = _service(FakeSupabase(_tables("accountant", grants)), principal=None)
    strict = _service(
        FakeSupabase(_tables("accountant", grants)),
        principal=None,
        policy=UnresolvablePolicy.DENY_ALL,
    )

    assert asyncio.run(lenient.check("view_users")) is True
    assert asyncio.run(strict.check("view_users")) is False


def test_store_error_fails_closed_for_non_admin():
    db = FakeSupabase(_tables("accountant", [_grant("accountant", "view_finances", True)]))
    db.failing_tables.add("role_permissions")

    assert asyncio.run(_service(db).check("view_finances")) is False


def test_missing_scope_denies_everything():
    db = FakeSupabase(_tables("admin", [_grant("admin", "view_users", True)]))
    db.tables["organizations"] = []
    service = _service(db)

    assert asyncio.run(service.check("view_users")) is False
    assert asyncio.run(service.set_role("accountant")) is False


def test_edited_grant_stays_hidden_until_ttl_or_invalidate():
    clock = FakeClock()
    db = FakeSupabase(_tables("accountant", [_grant("accountant", "manage_expenses", False)]))
    service = _service(db, clock=clock)
    assert asyncio.run(service.check("manage_expenses")) is False

    db.tables["role_permissions"][0]["granted"] = True

    clock.advance(10)
    assert asyncio.run(service.check("manage_expenses")) is False

    clock.advance(20)
    assert asyncio.run(service.check("manage_expenses")) is True

    db.tables["role_permissions"][0]["granted"] = False
    service.invalidate()
    assert asyncio.run(service.check("manage_expenses")) is False


def test_update_grant_is_visible_immediately_in_same_session():
    db = FakeSupabase(_tables("admin", [_grant("accountant", "manage_expenses", False)]))
    service = _service(db)
    received = []
    service.subscribe(received.append)

    assert asyncio.run(service.update_grant("accountant", "manage_expenses", True)) is True

    grants = asyncio.run(service.get_grants())
    assert [(g.role, g.permission_id, g.granted) for g in grants] == [("accountant", "manage_expenses", True)]
    assert received == [
        PermissionsChanged(
            action="update",
            role="accountant",
            permission_id="manage_expenses",
            granted=True,
            scope="org-1",
        )
    ]


def test_set_role_invalidates_caches_and_notifies_in_order():
    db = FakeSupabase(_tables("accountant", [_grant("accountant", "view_finances", True)]))
    service = _service(db)
    asyncio.run(service.check("view_finances"))
    order = []
    service.subscribe(lambda event: order.append(("first", type(event).__name__)))
    service.subscribe(lambda event: order.append(("second", type(event).__name__)))

    assert asyncio.run(service.set_role("admin")) is True

    assert order == [
        ("first", "RoleChanged"),
        ("second", "RoleChanged"),
        ("first", "PermissionsChanged"),
        ("second", "PermissionsChanged"),
    ]
    assert service.grants_cache.has_entry is False
    assert service.mirror.role == "admin"
    assert service.mirror.admin_verified is True
    assert [row["role"] for row in db.tables["user_roles"]] == ["admin"]


def test_failing_listener_does_not_block_delivery():
    events = PermissionEvents()
    received = []

    def _broken(_event):
        raise RuntimeError("listener crashed")

    events.subscribe(_broken)
    unsubscribe = events.subscribe(received.append)
    event = RoleChanged(previous_role="donor", new_role="accountant")

    events.publish(event)
    unsubscribe()
    events.publish(event)

    assert received == [event]
    assert events.listener_count == 1


def test_peek_is_pending_until_resolved_and_never_calls_store():
    db = FakeSupabase(_tables("accountant", [_grant("accountant", "view_finances", True)]))
    service = _service(db)

    assert service.peek("view_finances") is CheckResult.PENDING
    assert db.calls == []

    asyncio.run(service.check("view_finances"))
    calls_after_check = list(db.calls)

    assert service.peek("view_finances") is CheckResult.ALLOWED
    assert service.peek("manage_expenses") is CheckResult.DENIED
    assert db.calls == calls_after_check


def test_peek_trusts_verified_admin_flag_only_when_policy_allows():
    mirror = SessionMirror({"temp_user_role": "admin", "admin_verified": "true"})
    lenient = _service(FakeSupabase(_tables("admin")), mirror=mirror)
    strict = _service(
        FakeSupabase(_tables("admin")),
        mirror=SessionMirror(mirror.snapshot()),
        policy=UnresolvablePolicy.DENY_ALL,
    )

    assert lenient.peek("manage_users") is CheckResult.ALLOWED
    assert strict.peek("manage_users") is CheckResult.PENDING


def test_state_moves_through_resolution_lifecycle():
    clock = FakeClock()
    db = FakeSupabase(_tables("accountant", [_grant("accountant", "view_finances", True)]))
    service = _service(db, clock=clock)
    assert service.state is ResolutionState.UNRESOLVED

    asyncio.run(service.check("view_finances"))
    assert service.state is ResolutionState.RESOLVED

    clock.advance(31)
    assert service.state is ResolutionState.STALE

    assert asyncio.run(service.reset()) is True
    assert service.state is ResolutionState.UNRESOLVED
    assert db.tables["role_permissions"] == []


def test_check_all_and_check_any():
    db = FakeSupabase(_tables("donor", [_grant("donor", "view_reports", True), _grant("donor", "view_projects", True)]))
    service = _service(db)

    assert asyncio.run(service.check_all(["view_reports", "view_projects"])) is True
    assert asyncio.run(service.check_all(["view_reports", "edit_reports"])) is False
    assert asyncio.run(service.check_any(["edit_reports", "view_projects"])) is True
    assert asyncio.run(service.check_any(["edit_reports", "delete_reports"])) is False


def test_granted_permissions_for_admin_includes_defaults_minus_denials():
    db = FakeSupabase(_tables("admin", [_grant("admin", "delete_users", False)]))

    granted = asyncio.run(_service(db).granted_permissions())

    assert "delete_users" not in granted
    assert "manage_settings" in granted
    assert len(granted) == len(BUILTIN_PERMISSIONS) - 1


def test_super_admin_email_resolves_admin_and_repairs_store():
    db = FakeSupabase(_tables("accountant", [_grant("admin", "view_users", True)]))
    service = _service(
        db,
        principal=Principal(user_id="u-1", email="Owner@Example.org"),
        super_admin_emails=("owner@example.org",),
    )

    assert asyncio.run(service.resolve_role()) == "admin"
    assert [row["role"] for row in db.tables["user_roles"]] == ["admin"]
    assert asyncio.run(service.verify_super_admin()) is True
    assert service.mirror.admin_verified is True


def test_verify_super_admin_rejects_regular_user():
    db = FakeSupabase(_tables("accountant"))

    assert asyncio.run(_service(db).verify_super_admin()) is False


def test_refresh_reloads_and_reports_count():
    db = FakeSupabase(_tables("accountant", [_grant("accountant", "view_finances", True)]))
    service = _service(db)
    received = []
    service.subscribe(received.append)

    assert asyncio.run(service.refresh()) == 1
    assert received == [PermissionsChanged(action="refresh", permissions_count=1)]


def test_status_reports_row_and_cache_details():
    db = FakeSupabase(_tables("accountant", [_grant("accountant", "manage_expenses", False)]))

    report = asyncio.run(_service(db).status("manage_expenses"))

    assert report.role == "accountant"
    assert report.found is True
    assert report.granted is False
    assert report.allowed is False
    assert report.cached_result is CheckResult.PENDING
    assert report.role_grants == 1
    assert report.state is ResolutionState.RESOLVED


def test_sessions_reuse_service_per_principal():
    db = FakeSupabase(_tables("accountant"))
    sessions = PermissionSessions(store=PermissionStore(db), identity=IdentityResolver(db))
    alice = Principal(user_id="u-1", email="a@example.org")

    first = sessions.for_principal(alice)

    assert sessions.for_principal(alice) is first
    assert sessions.for_principal(Principal(user_id="u-2")) is not first
    assert len(sessions) == 2
    assert first.events.listener_count == 1


def test_sessions_evict_least_recently_used_past_capacity():
    db = FakeSupabase(_tables("accountant"))
    sessions = PermissionSessions(
        store=PermissionStore(db),
        identity=IdentityResolver(db),
        max_sessions=2,
        clock=FakeClock(),
    )
    alice, bob, carol = Principal(user_id="u-a"), Principal(user_id="u-b"), Principal(user_id="u-c")

    first_alice = sessions.for_principal(alice)
    first_bob = sessions.for_principal(bob)
    assert sessions.for_principal(alice) is first_alice
    sessions.for_principal(carol)

    assert len(sessions) == 2
    assert "u-b" not in sessions
    assert sessions.for_principal(alice) is first_alice
    assert sessions.for_principal(bob) is not first_bob


def test_sessions_drop_idle_entries_once_caches_have_expired():
    clock = FakeClock()
    db = FakeSupabase(_tables("accountant"))
    sessions = PermissionSessions(
        store=PermissionStore(db),
        identity=IdentityResolver(db),
        role_ttl_seconds=300,
        grants_ttl_seconds=30,
        clock=clock,
    )
    idle = sessions.for_principal(Principal(user_id="u-a"))
    clock.advance(200)
    active = sessions.for_principal(Principal(user_id="u-b"))

    clock.advance(100)
    assert sessions.for_principal(Principal(user_id="u-b")) is active

    assert "u-a" not in sessions
    assert len(sessions) == 1
    assert sessions.for_principal(Principal(user_id="u-a")) is not idle


class _GatedStore(PermissionStore):
    """Holds the next fetch of ``method`` after it has read the store."""

    def __init__(self, client, method: str):
        super().__init__(client)
        self.method = method
        self.entered = threading.Event()
        self.release = threading.Event()

    def _gate(self, value):
        if not self.entered.is_set():
            self.entered.set()
            self.release.wait(5)
        return value

    def fetch_grants(self, scope):
        grants = super().fetch_grants(scope)
        return self._gate(grants) if self.method == "fetch_grants" else grants

    def fetch_role(self, user_id, scope):
        role = super().fetch_role(user_id, scope)
        return self._gate(role) if self.method == "fetch_role" else role


def _gated_service(db: FakeSupabase, store: PermissionStore, clock: FakeClock) -> PermissionService:
    return PermissionService(
        principal=Principal(user_id="u-1", email="u1@example.org"),
        store=store,
        identity=IdentityResolver(db),
        role_cache=TTLCache(300, clock=clock),
        grants_cache=TTLCache(30, clock=clock),
    )


def test_grant_fetch_started_before_update_does_not_overwrite_cache():
    clock = FakeClock()
    db = FakeSupabase(_tables("accountant", [_grant("accountant", "manage_expenses", False)]))
    store = _GatedStore(db, "fetch_grants")
    service = _gated_service(db, store, clock)

    async def scenario():
        slow = asyncio.create_task(service.get_grants())
        await asyncio.to_thread(store.entered.wait, 5)

        clock.advance(1)
        assert await service.update_grant("accountant", "manage_expenses", True) is True

        store.release.set()
        stale = await slow
        return stale, await service.check("manage_expenses")

    stale, allowed = asyncio.run(scenario())

    assert [g.granted for g in stale] == [False]
    assert allowed is True
    assert [g.granted for g in service.grants_cache.get()] == [True]


def test_role_fetch_started_before_role_change_does_not_overwrite_cache():
    clock = FakeClock()
    db = FakeSupabase(_tables("accountant"))
    store = _GatedStore(db, "fetch_role")
    service = _gated_service(db, store, clock)

    async def scenario():
        slow = asyncio.create_task(service.resolve_role())
        await asyncio.to_thread(store.entered.wait, 5)

        clock.advance(1)
        assert await service.set_role("donor") is True

        store.release.set()
        return await slow

    assert asyncio.run(scenario()) == "accountant"
    assert service.role_cache.get() == "donor"
    assert service.mirror.role == "donor"


def test_reset_clears_session_mirror():
    db = FakeSupabase(_tables("admin", [_grant("admin", "view_users", True)]))
    service = _service(db)
    asyncio.run(service.check("view_users"))
    assert service.mirror.admin_verified is True

    assert asyncio.run(service.reset()) is True

    assert service.mirror.snapshot() == {}
    assert service.peek("view_users") is CheckResult.PENDING


def test_stored_role_ignores_unresolvable_policy():
    missing = _service(FakeSupabase(_tables(None)))
    owner = _service(
        FakeSupabase(_tables(None)),
        principal=Principal(user_id="u-1", email="owner@example.org"),
        super_admin_emails=("owner@example.org",),
    )

    assert asyncio.run(missing.resolve_role()) == "admin"
    assert asyncio.run(missing.stored_role()) is None
    assert asyncio.run(owner.stored_role()) == "admin"
    assert asyncio.run(_service(FakeSupabase(_tables("donor"))).stored_role()) == "donor"
