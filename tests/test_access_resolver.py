import asyncio
from dataclasses import replace

import pytest
from conftest import MockCRMClient, make_principal

from crm_access.schemas.menu_schemas import UserAccess
from crm_access.services.access_resolver import (
    AccessResolver,
    AccessSnapshot,
    AccessSource,
    ResolverRegistry,
    ResolverStatus,
)
from crm_access.services.grant_cache import GrantCacheService
from crm_access.services.route_guard import GuardState, MenuItemGuard
from crm_access.utils.errors import AccessDenied, AuthenticationExpired, ErrorKind, NetworkFailure, UpstreamError


class _FakeRedis:
    def __init__(self):
        self.store = {}

    def ping(self):
        return True

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value

    def delete(self, *keys):
        return sum(1 for key in keys if self.store.pop(key, None) is not None)

    def scan_iter(self, match=None, count=None):
        prefix = (match or "").rstrip("*")
        return [key for key in list(self.store) if key.startswith(prefix)]


async def _wait_for_call(client: MockCRMClient, name: str):
    while name not in client.calls:
        await asyncio.sleep(0)


def _member_client(**kwargs) -> MockCRMClient:
    kwargs.setdefault("role_access", {3: {"SALES": ["CONTACTS", "QUOTES"], "MAIN_NAV": ["DASHBOARD"]}})
    kwargs.setdefault("user_access", UserAccess(permissions=["READ", "WRITE"], roles=["MEMBER"]))
    return MockCRMClient(**kwargs)


def test_lookups_deny_while_loading():
    resolver = AccessResolver(make_principal(), _member_client())
    assert resolver.is_loading
    assert not resolver.has_menu_access("DASHBOARD")
    assert not resolver.has_permission("READ")
    assert resolver.get_menu_items_by_group("SALES") == []
    assert resolver.user_menu == ()


@pytest.mark.asyncio
async def test_member_with_role_sees_granted_active_items():
    client = _member_client()
    resolver = AccessResolver(make_principal(), client)
    snapshot = await resolver.load()

    assert snapshot.status == ResolverStatus.READY
    assert snapshot.error is None
    assert resolver.has_menu_access("CONTACTS")
    assert resolver.has_menu_access("DASHBOARD")
    assert not resolver.has_menu_access("DEALS")
    # granted but inactive
    assert not resolver.has_menu_access("QUOTES")
    assert not resolver.has_menu_access("UNKNOWN")
    assert [group.menu_code for group in resolver.user_menu] == ["MAIN_NAV", "SALES"]
    assert resolver.has_permission("WRITE")
    assert not resolver.has_permission("CONTACTS")
    assert client.calls["get_role_menu_access"] == 1
    assert "get_member_menu_access" not in client.calls


@pytest.mark.asyncio
async def test_member_without_role_uses_legacy_menu_access():
    client = _member_client(member_access={"Sales": ["DEALS"]})
    resolver = AccessResolver(make_principal(role_id=None), client)
    await resolver.load()
    assert resolver.has_menu_access("DEALS")
    assert [item.item_code for item in resolver.get_menu_items_by_group("SALES")] == ["DEALS"]
    assert client.calls["get_member_menu_access"] == 1


@pytest.mark.asyncio
async def test_admin_sees_every_active_item():
    client = _member_client(user_access=UserAccess(permissions=["ALL"], roles=["ADMIN"]))
    resolver = AccessResolver(make_principal(roles=("ADMIN",)), client)
    await resolver.load()
    codes = {item.item_code for item in resolver.get_all_accessible_menu_items()}
    assert codes == {"DASHBOARD", "CONTACTS", "DEALS", "ROLES", "USER_MANAGEMENT"}
    assert resolver.is_admin
    assert "get_role_menu_access" not in client.calls


@pytest.mark.asyncio
async def test_items_by_group_are_sorted():
    client = _member_client(role_access={3: {"SALES": ["DEALS", "CONTACTS"]}})
    resolver = AccessResolver(make_principal(), client)
    await resolver.load()
    assert [item.item_code for item in resolver.get_menu_items_by_group("SALES")] == ["CONTACTS", "DEALS"]


@pytest.mark.asyncio
async def test_timeout_surfaces_as_network_error_and_guard_shows_connection_panel():
    client = _member_client(errors={"get_role_menu_access": NetworkFailure("timed out")})
    resolver = AccessResolver(make_principal(), client)
    snapshot = await resolver.load()

    assert snapshot.error == ErrorKind.NETWORK
    assert not resolver.is_loading
    decision = MenuItemGuard("DASHBOARD").evaluate(snapshot)
    assert decision.state == GuardState.DENIED
    assert decision.reason == ErrorKind.NETWORK


@pytest.mark.asyncio
async def test_forbidden_maps_to_access_denied():
    client = _member_client(errors={"get_user_access": AccessDenied("no", status_code=403)})
    resolver = AccessResolver(make_principal(), client)
    snapshot = await resolver.load()
    assert snapshot.error == ErrorKind.ACCESS_DENIED
    assert snapshot.user_menu == ()


@pytest.mark.asyncio
async def test_expired_token_clears_silently():
    client = _member_client(errors={"get_menu_tree": AuthenticationExpired("401", status_code=401)})
    resolver = AccessResolver(make_principal(), client)
    snapshot = await resolver.load()
    assert snapshot.status == ResolverStatus.READY
    assert snapshot.error is None
    assert snapshot.user_menu == ()


@pytest.mark.asyncio
async def test_other_failure_with_reachable_upstream_serves_account_menu():
    client = _member_client(errors={"get_menu_tree": UpstreamError("500", status_code=500)})
    resolver = AccessResolver(make_principal(), client)
    snapshot = await resolver.load()

    assert snapshot.error == ErrorKind.UNKNOWN
    assert snapshot.source == AccessSource.FALLBACK
    assert [item.item_code for item in resolver.get_menu_items_by_group("ACCOUNT")] == ["PROFILE", "CHANGE_PASSWORD"]
    assert resolver.has_permission("READ")


@pytest.mark.asyncio
async def test_billing_issue_adds_subscription_management_to_fallback():
    client = _member_client(errors={"get_menu_tree": UpstreamError("500", status_code=500)})
    resolver = AccessResolver(replace(make_principal(), billing_status="OVERDUE"), client)
    await resolver.load()

    assert [group.menu_code for group in resolver.user_menu] == ["ACCOUNT", "SUBSCRIPTION"]
    assert resolver.has_menu_access("SUBSCRIPTION_MANAGEMENT")


@pytest.mark.asyncio
async def test_unexpected_failure_settles_as_unknown_error():
    client = _member_client(errors={"get_user_access": RuntimeError("boom")})
    resolver = AccessResolver(make_principal(), client)
    snapshot = await resolver.refresh_access()

    assert snapshot.status == ResolverStatus.ERROR
    assert snapshot.error == ErrorKind.UNKNOWN
    assert snapshot.user_menu == ()
    assert not resolver.is_loading
    assert MenuItemGuard("DASHBOARD").evaluate(snapshot).state == GuardState.REDIRECT


@pytest.mark.asyncio
async def test_malformed_grant_values_do_not_block_resolution():
    client = _member_client(role_access={3: {"SALES": 5, "MAIN_NAV": ["DASHBOARD"]}})
    resolver = AccessResolver(make_principal(), client)
    snapshot = await resolver.refresh_access()

    assert snapshot.status == ResolverStatus.READY
    assert resolver.has_menu_access("DASHBOARD")
    assert not resolver.has_menu_access("DEALS")


@pytest.mark.asyncio
async def test_other_failure_with_unreachable_upstream_is_network():
    client = _member_client(errors={"get_menu_tree": UpstreamError("500", status_code=500)}, healthy=False)
    resolver = AccessResolver(make_principal(), client)
    snapshot = await resolver.load()
    assert snapshot.error == ErrorKind.NETWORK
    assert snapshot.user_menu == ()


@pytest.mark.asyncio
async def test_overlapping_refreshes_share_one_fetch():
    gate = asyncio.Event()
    client = _member_client(gate=gate)
    resolver = AccessResolver(make_principal(), client)

    first = asyncio.create_task(resolver.refresh_access())
    second = asyncio.create_task(resolver.refresh_access())
    await asyncio.sleep(0)
    gate.set()
    one, two = await asyncio.gather(first, second)

    assert client.calls["get_role_menu_access"] == 1
    assert one is two
    assert one.status == ResolverStatus.READY


@pytest.mark.asyncio
async def test_superseding_refresh_discards_older_result():
    gate = asyncio.Event()
    client = _member_client(gate=gate)
    resolver = AccessResolver(make_principal(), client)

    stale = asyncio.create_task(resolver.refresh_access())
    await _wait_for_call(client, "get_role_menu_access")
    client.gate = None
    client._role_access = {3: {"MAIN_NAV": ["DASHBOARD"]}}
    fresh = await resolver.refresh_access(supersede=True)
    gate.set()
    joined = await stale

    assert fresh.generation == 1
    assert resolver.snapshot is fresh
    assert joined is fresh
    assert not resolver.has_menu_access("CONTACTS")


@pytest.mark.asyncio
async def test_logout_discards_in_flight_result():
    gate = asyncio.Event()
    client = _member_client(gate=gate)
    resolver = AccessResolver(make_principal(), client)

    pending = asyncio.create_task(resolver.refresh_access())
    await asyncio.sleep(0)
    resolver.clear()
    gate.set()
    await pending
    await asyncio.sleep(0)

    assert resolver.is_loading
    assert not resolver.has_menu_access("DASHBOARD")


@pytest.mark.asyncio
async def test_subscribers_see_each_published_snapshot():
    resolver = AccessResolver(make_principal(), _member_client())
    seen = []
    unsubscribe = resolver.subscribe(lambda snapshot: seen.append(snapshot.status))
    await resolver.load()
    unsubscribe()
    await resolver.refresh_access()
    assert seen == [ResolverStatus.LOADING, ResolverStatus.READY]


# ============================================================================
# Grant cache
# ============================================================================


@pytest.mark.asyncio
async def test_cache_hit_skips_upstream_and_refresh_bypasses_it():
    cache = GrantCacheService(_FakeRedis(), default_ttl=900)
    principal = make_principal()

    first = AccessResolver(principal, _member_client(), cache)
    await first.load()

    client = _member_client()
    second = AccessResolver(principal, client, cache)
    snapshot = await second.load()
    assert snapshot.source == AccessSource.CACHE
    assert second.has_menu_access("CONTACTS")
    assert client.calls == {}

    refreshed = await second.refresh_access()
    assert refreshed.source == AccessSource.UPSTREAM
    assert client.calls["get_role_menu_access"] == 1


@pytest.mark.asyncio
async def test_failures_are_not_cached_and_logout_invalidates():
    redis = _FakeRedis()
    cache = GrantCacheService(redis)
    principal = make_principal()

    failing = AccessResolver(principal, _member_client(errors={"get_menu_tree": NetworkFailure("down")}), cache)
    await failing.load()
    assert redis.store == {}

    ok = AccessResolver(principal, _member_client(), cache)
    await ok.load()
    assert cache.get(principal.cache_key) is not None
    ok.clear()
    assert cache.get(principal.cache_key) is None


def test_cache_is_a_no_op_without_redis():
    cache = GrantCacheService(None)
    assert not cache.enabled
    assert cache.get("k") is None
    assert cache.set("k", {"a": 1}) is False


def test_snapshot_cache_payload_round_trip():
    snapshot = AccessSnapshot(status=ResolverStatus.READY, permissions=frozenset({"READ"}), roles=("MEMBER",))
    restored = AccessSnapshot.from_cache_payload(snapshot.to_cache_payload())
    assert restored.permissions == snapshot.permissions
    assert restored.roles == snapshot.roles
    assert restored.resolved_at == snapshot.resolved_at


# ============================================================================
# Registry
# ============================================================================


def test_registry_returns_one_resolver_per_principal():
    registry = ResolverRegistry(max_entries=2)
    created = []

    def factory(principal):
        resolver = AccessResolver(principal, _member_client())
        created.append(resolver)
        return resolver

    a = registry.get(make_principal(user_id=1), factory)
    assert registry.get(make_principal(user_id=1, token="renewed"), factory) is a
    assert a.principal.token == "renewed"
    registry.get(make_principal(user_id=2), factory)
    registry.get(make_principal(user_id=3), factory)
    assert len(registry) == 2
    assert registry.peek(make_principal(user_id=1)) is None
    assert len(created) == 3


@pytest.mark.asyncio
async def test_switching_principal_discards_previous_grants():
    client = _member_client(role_access={3: {"SALES": ["CONTACTS"]}, 4: {"MAIN_NAV": ["DASHBOARD"]}})
    resolver = AccessResolver(make_principal(), client)
    await resolver.load()
    assert resolver.has_menu_access("CONTACTS")

    resolver.switch_principal(make_principal(user_id=8, role_id=4, token="token-8"))
    assert resolver.is_loading
    assert client.access_token == "token-8"

    await resolver.load()
    assert resolver.has_menu_access("DASHBOARD")
    assert not resolver.has_menu_access("CONTACTS")


@pytest.mark.asyncio
async def test_marking_registry_stale_re_resolves_revoked_grants():
    client = _member_client(role_access={3: {"ADMINISTRATION": ["ROLES"]}})
    registry = ResolverRegistry()
    principal = make_principal()
    resolver = registry.get(principal, lambda p: AccessResolver(p, client))
    await resolver.load()
    assert resolver.has_menu_access("ROLES")

    client._role_access[3] = {"SALES": ["DEALS"]}
    await registry.get(principal, lambda p: AccessResolver(p, client)).load()
    # still the settled snapshot until something marks it stale
    assert resolver.has_menu_access("ROLES")
    assert client.calls["get_menu_tree"] == 1

    assert registry.invalidate_all() == 1
    assert resolver.is_stale
    snapshot = await resolver.load()

    assert not snapshot.has_menu_access("ROLES")
    assert snapshot.has_menu_access("DEALS")
    assert client.calls["get_menu_tree"] == 2
    assert not resolver.is_stale


@pytest.mark.asyncio
async def test_snapshot_older_than_max_age_is_re_resolved():
    client = _member_client()
    resolver = AccessResolver(make_principal(), client, max_age=60)
    await resolver.load()
    await resolver.load()
    assert client.calls["get_menu_tree"] == 1

    resolver.max_age = 0
    assert resolver.is_stale
    await resolver.load()
    assert client.calls["get_menu_tree"] == 2
