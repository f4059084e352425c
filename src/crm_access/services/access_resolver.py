"""
Access resolver: the single source of truth for what a principal may see.

``AccessResolver`` fetches the catalog tree, the principal's identity record
and its grant map concurrently, combines them into an immutable
``AccessSnapshot`` and answers lookups against that snapshot. Lookups never
raise and deny everything while the resolver is loading or after an error.

Overlapping refreshes share one in-flight fetch. A superseding refresh, a
principal switch or a logout bumps the generation counter so that the
results of older fetches are discarded when they land.

A settled snapshot is reused until it is older than ``max_age`` or the
resolver is marked stale after a role change.
"""

import asyncio
import enum
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

from pydantic import ValidationError

from crm_access.schemas.menu_schemas import Menu, MenuItem, UserAccess, UserMenuGroup
from crm_access.schemas.role_schemas import MenuAccess
from crm_access.services.grant_cache import GrantCacheService
from crm_access.services.menu_tree import MenuTreeIndex, sort_items
from crm_access.services.selection_engine import reconcile
from crm_access.utils.auth import Principal
from crm_access.utils.errors import (
    AccessDenied,
    AccessError,
    AuthenticationExpired,
    ErrorKind,
    NetworkFailure,
)

logger = logging.getLogger(__name__)


class ResolverStatus(enum.StrEnum):
    LOADING = "LOADING"
    READY = "READY"
    ERROR = "ERROR"


class AccessSource(enum.StrEnum):
    NONE = "NONE"
    UPSTREAM = "UPSTREAM"
    CACHE = "CACHE"
    FALLBACK = "FALLBACK"


class AccessBackend(Protocol):
    async def get_menu_tree(self) -> list[Menu]: ...

    async def get_user_access(self, user_id: int | str) -> UserAccess: ...

    async def get_role_menu_access(self, role_id: int | str) -> MenuAccess: ...

    async def get_member_menu_access(self, user_id: int | str) -> MenuAccess: ...

    async def is_healthy(self) -> bool: ...


# ============================================================================
# Snapshot
# ============================================================================


@dataclass(frozen=True)
class AccessSnapshot:
    """Immutable result of one access resolution."""

    status: ResolverStatus = ResolverStatus.LOADING
    user_menu: tuple[UserMenuGroup, ...] = ()
    permissions: frozenset[str] = frozenset()
    roles: tuple[str, ...] = ()
    error: ErrorKind | None = None
    source: AccessSource = AccessSource.NONE
    generation: int = 0
    resolved_at: float = field(default_factory=time.time, compare=False)
    _items: dict[str, MenuItem] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self):
        items = {item.item_code: item for group in self.user_menu for item in group.accessible_menus}
        object.__setattr__(self, "_items", items)

    @property
    def is_loading(self) -> bool:
        return self.status == ResolverStatus.LOADING

    def has_menu_access(self, item_code: str) -> bool:
        if self.is_loading or not isinstance(item_code, str):
            return False
        return item_code in self._items

    def has_permission(self, permission_code: str) -> bool:
        if self.is_loading or not isinstance(permission_code, str):
            return False
        return permission_code in self.permissions

    def has_role(self, role: str) -> bool:
        if self.is_loading or not isinstance(role, str):
            return False
        return role in self.roles

    @property
    def is_admin(self) -> bool:
        return self.has_role("ADMIN") or self.has_role("ADMINISTRATOR")

    def get_item(self, item_code: str) -> MenuItem | None:
        if self.is_loading:
            return None
        return self._items.get(item_code)

    def can_open(self, item_code: str) -> bool:
        """Granted and, when the item names one, holding its required permission."""
        item = self.get_item(item_code)
        if item is None:
            return False
        return not item.requires_permission or self.has_permission(item.requires_permission)

    def get_menu_items_by_group(self, menu_code: str) -> list[MenuItem]:
        if self.is_loading:
            return []
        for group in self.user_menu:
            if group.menu_code == menu_code:
                return sort_items(group.accessible_menus)
        return []

    def get_all_accessible_menu_items(self) -> list[MenuItem]:
        if self.is_loading:
            return []
        return [item for group in self.user_menu for item in group.accessible_menus]

    def to_cache_payload(self) -> dict[str, Any]:
        return {
            "userMenu": [group.model_dump(by_alias=True, mode="json") for group in self.user_menu],
            "permissions": sorted(self.permissions),
            "roles": list(self.roles),
            "resolvedAt": self.resolved_at,
        }

    @classmethod
    def from_cache_payload(cls, payload: dict[str, Any], generation: int = 0) -> "AccessSnapshot":
        resolved_at = payload.get("resolvedAt")
        return cls(
            status=ResolverStatus.READY,
            user_menu=tuple(UserMenuGroup.model_validate(group) for group in payload.get("userMenu") or []),
            permissions=frozenset(payload.get("permissions") or []),
            roles=tuple(payload.get("roles") or []),
            source=AccessSource.CACHE,
            generation=generation,
            resolved_at=float(resolved_at) if isinstance(resolved_at, (int, float)) else time.time(),
        )


def build_user_menu(tree: MenuTreeIndex, grants: MenuAccess | None) -> tuple[UserMenuGroup, ...]:
    """Filter the catalog to granted, active items. ``grants=None`` grants everything."""
    groups = []
    for menu in tree.menus:
        granted = None if grants is None else set(grants.get(menu.menu_code, ()))
        items = [
            item
            for item in tree.items_of(menu.menu_code)
            if item.is_active and (granted is None or item.item_code in granted)
        ]
        if not items:
            continue
        groups.append(
            UserMenuGroup(
                menu_code=menu.menu_code,
                menu_name=menu.menu_name,
                description=menu.description,
                icon=menu.icon,
                sort_order=menu.sort_order,
                accessible_menus=items,
            )
        )
    return tuple(groups)


BILLING_ISSUE_STATUSES = frozenset({"INACTIVE", "OVERDUE"})


def _fallback_menu() -> tuple[UserMenuGroup, ...]:
    items = [
        MenuItem(
            id="profile",
            item_code="PROFILE",
            item_name="Profile",
            url="/profile",
            icon="user",
            sort_order=1,
            requires_permission="READ",
            menu_code="ACCOUNT",
        ),
        MenuItem(
            id="change-password",
            item_code="CHANGE_PASSWORD",
            item_name="Change Password",
            url="/change-password",
            icon="lock",
            sort_order=2,
            requires_permission="READ",
            menu_code="ACCOUNT",
        ),
    ]
    return (
        UserMenuGroup(
            menu_code="ACCOUNT",
            menu_name="Account",
            description="Account management",
            icon="user",
            sort_order=1,
            accessible_menus=items,
        ),
    )


SUBSCRIPTION_GROUP = UserMenuGroup(
    menu_code="SUBSCRIPTION",
    menu_name="Subscription",
    description="Subscription management",
    icon="credit-card",
    sort_order=2,
    accessible_menus=[
        MenuItem(
            id="subscription",
            item_code="SUBSCRIPTION_MANAGEMENT",
            item_name="Manage Subscription",
            url="/subscription",
            icon="credit-card",
            sort_order=1,
            requires_permission="READ",
            menu_code="SUBSCRIPTION",
        )
    ],
)

FALLBACK_MENU = _fallback_menu()
FALLBACK_PERMISSIONS = frozenset({"READ"})


def fallback_menu_for(principal: Principal) -> tuple[UserMenuGroup, ...]:
    """Account menu, plus subscription management when billing needs attention."""
    if (principal.billing_status or "").upper() in BILLING_ISSUE_STATUSES:
        return FALLBACK_MENU + (SUBSCRIPTION_GROUP,)
    return FALLBACK_MENU


# ============================================================================
# Resolver
# ============================================================================


Listener = Callable[[AccessSnapshot], None]


class AccessResolver:
    def __init__(
        self,
        principal: Principal,
        client: AccessBackend,
        cache: GrantCacheService | None = None,
        max_age: float | None = None,
    ):
        self.principal = principal
        self.client = client
        self.cache = cache
        self.max_age = max_age
        self._stale = False
        self._generation = 0
        self._snapshot = AccessSnapshot()
        self._task: asyncio.Task | None = None
        self._listeners: list[Listener] = []

    # -- state --------------------------------------------------------

    @property
    def snapshot(self) -> AccessSnapshot:
        return self._snapshot

    @property
    def is_loading(self) -> bool:
        return self._snapshot.is_loading

    @property
    def error(self) -> ErrorKind | None:
        return self._snapshot.error

    @property
    def user_menu(self) -> tuple[UserMenuGroup, ...]:
        return self._snapshot.user_menu

    @property
    def is_admin(self) -> bool:
        return self._snapshot.is_admin

    def has_menu_access(self, item_code: str) -> bool:
        return self._snapshot.has_menu_access(item_code)

    def has_permission(self, permission_code: str) -> bool:
        return self._snapshot.has_permission(permission_code)

    def has_role(self, role: str) -> bool:
        return self._snapshot.has_role(role)

    def get_menu_items_by_group(self, menu_code: str) -> list[MenuItem]:
        return self._snapshot.get_menu_items_by_group(menu_code)

    def get_all_accessible_menu_items(self) -> list[MenuItem]:
        return self._snapshot.get_all_accessible_menu_items()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _publish(self, snapshot: AccessSnapshot) -> None:
        self._snapshot = snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Access listener failed")

    # -- loading ------------------------------------------------------

    @property
    def is_stale(self) -> bool:
        if self._snapshot.is_loading:
            return False
        if self._stale:
            return True
        return self.max_age is not None and time.time() - self._snapshot.resolved_at >= self.max_age

    def mark_stale(self) -> None:
        """Force the next ``load`` to re-fetch from upstream, skipping the grant cache."""
        self._stale = True

    async def load(self) -> AccessSnapshot:
        """Resolve once, honouring the grant cache.

        A settled snapshot is returned as-is until it goes stale, after which
        grants are fetched again from upstream.
        """
        if not self._snapshot.is_loading:
            if not self.is_stale:
                return self._snapshot
            logger.info("Access for %s is stale, re-resolving", self.principal.cache_key)
            return await self.refresh_access()
        if self._task is None or self._task.done():
            cached = self.cache.get(self.principal.cache_key) if self.cache else None
            if cached is not None:
                try:
                    snapshot = AccessSnapshot.from_cache_payload(cached, self._generation)
                except ValidationError as exc:
                    logger.warning("Ignoring malformed grant cache entry for %s: %s", self.principal.cache_key, exc)
                else:
                    logger.debug("Access for %s served from cache", self.principal.cache_key)
                    self._publish(snapshot)
                    return snapshot
        return await self.refresh_access()

    async def refresh_access(self, supersede: bool = False) -> AccessSnapshot:
        """Re-fetch grants, bypassing the cache.

        Joins a fetch that is already running unless ``supersede`` is set,
        in which case a new fetch is started and the running one's result
        will be discarded.
        """
        if supersede or self._task is None or self._task.done():
            if supersede:
                self._generation += 1
            generation = self._generation
            self._stale = False
            self._publish(AccessSnapshot(generation=generation))
            self._task = asyncio.ensure_future(self._run(generation))
        else:
            logger.debug("Joining in-flight access fetch for %s", self.principal.cache_key)

        # A superseding call may replace the task while we wait.
        while self._task is not None and not self._task.done():
            await asyncio.wait({self._task})
        return self._snapshot

    def switch_principal(self, principal: Principal) -> None:
        self._supersede()
        self.principal = principal
        if hasattr(self.client, "access_token"):
            self.client.access_token = principal.token
        self._publish(AccessSnapshot(generation=self._generation))

    def update_token(self, token: str) -> None:
        """Swap in a renewed bearer token for the same principal."""
        self.principal = replace(self.principal, token=token)
        if hasattr(self.client, "access_token"):
            self.client.access_token = token

    def clear(self) -> None:
        """Logout: drop grants, forget the cached copy, discard in-flight results."""
        self._supersede()
        if self.cache:
            self.cache.invalidate(self.principal.cache_key)
        self._publish(AccessSnapshot(generation=self._generation))

    def _supersede(self) -> None:
        self._generation += 1
        self._task = None

    async def _run(self, generation: int) -> None:
        snapshot = await self._resolve_safely(generation)
        if generation != self._generation:
            logger.info(
                "Discarding superseded access result for %s (generation %d, current %d)",
                self.principal.cache_key,
                generation,
                self._generation,
            )
            return
        if snapshot.source == AccessSource.UPSTREAM and self.cache:
            self.cache.set(self.principal.cache_key, snapshot.to_cache_payload())
        self._publish(snapshot)

    async def _resolve_safely(self, generation: int) -> AccessSnapshot:
        try:
            return await self._resolve(generation)
        except AuthenticationExpired:
            logger.warning("Authentication failed for %s - token expired", self.principal.cache_key)
            if self.cache:
                self.cache.invalidate(self.principal.cache_key)
            return AccessSnapshot(status=ResolverStatus.READY, generation=generation)
        except AccessDenied:
            return AccessSnapshot(status=ResolverStatus.ERROR, error=ErrorKind.ACCESS_DENIED, generation=generation)
        except NetworkFailure as exc:
            logger.warning("Access fetch for %s failed: %s", self.principal.cache_key, exc)
            return AccessSnapshot(status=ResolverStatus.ERROR, error=ErrorKind.NETWORK, generation=generation)
        except AccessError as exc:
            logger.warning("Access fetch for %s failed, checking upstream health: %s", self.principal.cache_key, exc)
        except Exception:
            logger.exception("Unexpected failure resolving access for %s", self.principal.cache_key)
            return AccessSnapshot(status=ResolverStatus.ERROR, error=ErrorKind.UNKNOWN, generation=generation)

        try:
            healthy = await self.client.is_healthy()
        except Exception:
            logger.exception("Health check failed for %s", self.principal.cache_key)
            healthy = False
        if not healthy:
            return AccessSnapshot(status=ResolverStatus.ERROR, error=ErrorKind.NETWORK, generation=generation)

        logger.warning("Upstream reachable but menu access failed; serving basic account menu")
        return AccessSnapshot(
            status=ResolverStatus.ERROR,
            user_menu=fallback_menu_for(self.principal),
            permissions=FALLBACK_PERMISSIONS,
            roles=self.principal.roles or ("MEMBER",),
            error=ErrorKind.UNKNOWN,
            source=AccessSource.FALLBACK,
            generation=generation,
        )

    async def _resolve(self, generation: int) -> AccessSnapshot:
        principal = self.principal
        tree_call = self.client.get_menu_tree()
        access_call = self.client.get_user_access(principal.user_id)

        if principal.is_admin:
            menus, access = await asyncio.gather(tree_call, access_call)
            tree = MenuTreeIndex(menus)
            user_menu = build_user_menu(tree, None)
        else:
            if principal.role_id is not None:
                grant_call = self.client.get_role_menu_access(principal.role_id)
            else:
                logger.info("No roleId for %s, using member menu access", principal.cache_key)
                grant_call = self.client.get_member_menu_access(principal.user_id)
            menus, access, grants = await asyncio.gather(tree_call, access_call, grant_call)
            tree = MenuTreeIndex(menus)
            # Legacy maps may be keyed by menu name; reconcile files items under their owner.
            user_menu = build_user_menu(tree, reconcile(grants, tree).state.menu_access)

        return AccessSnapshot(
            status=ResolverStatus.READY,
            user_menu=user_menu,
            permissions=frozenset(access.permissions),
            roles=tuple(access.roles or principal.roles),
            source=AccessSource.UPSTREAM,
            generation=generation,
        )


# ============================================================================
# Registry
# ============================================================================


class ResolverRegistry:
    """One resolver per principal, shared by navigation, guards and routers."""

    def __init__(self, max_entries: int = 1024):
        self.max_entries = max_entries
        self._resolvers: OrderedDict[str, AccessResolver] = OrderedDict()

    def __len__(self) -> int:
        return len(self._resolvers)

    def get(self, principal: Principal, factory: Callable[[Principal], AccessResolver]) -> AccessResolver:
        key = principal.cache_key
        resolver = self._resolvers.get(key)
        if resolver is None:
            resolver = factory(principal)
            self._resolvers[key] = resolver
            while len(self._resolvers) > self.max_entries:
                evicted_key, _ = self._resolvers.popitem(last=False)
                logger.debug("Evicted resolver for %s", evicted_key)
        else:
            self._resolvers.move_to_end(key)
            if resolver.principal.token != principal.token:
                resolver.update_token(principal.token)
        return resolver

    def peek(self, principal: Principal) -> AccessResolver | None:
        return self._resolvers.get(principal.cache_key)

    def invalidate_all(self) -> int:
        """Mark every resolver stale, e.g. after a role's grants changed."""
        for resolver in self._resolvers.values():
            resolver.mark_stale()
        return len(self._resolvers)

    def discard(self, principal: Principal) -> AccessResolver | None:
        resolver = self._resolvers.pop(principal.cache_key, None)
        if resolver is not None:
            resolver.clear()
        return resolver
