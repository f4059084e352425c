"""
Router for menu-based access.

Serves the caller's resolved access snapshot, the sidebar navigation model
and guard decisions for individual menu items and permissions.
"""

import logging

from fastapi import APIRouter, HTTPException, Query, status
from fastapi_cache.decorator import cache

from crm_access.dependencies.authz import (
    access_resolver_dependency,
    access_snapshot_dependency,
    current_principal_dependency,
    grant_cache_dep,
    registry_dep,
    settings_dep,
)
from crm_access.dependencies.crm_api_client import Settings, get_crm_client_for
from crm_access.schemas.access_schemas import AccessStateResponse, GuardDecisionResponse, MenuGroupItemsResponse
from crm_access.services.access_resolver import AccessResolver, AccessSnapshot, ResolverRegistry
from crm_access.services.grant_cache import GrantCacheService
from crm_access.services.navigation import NavigationView, render_navigation
from crm_access.services.route_guard import MenuItemGuard, PermissionGuard
from crm_access.utils.auth import Principal
from crm_access.utils.errors import AccessError, http_status_for

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/access", tags=["Menu_Access"])


# ============================================================================
# Access state
# ============================================================================


@router.get(
    "/me",
    response_model=AccessStateResponse,
    summary="Current access",
    description="Resolved menu groups, permissions and roles of the caller. Served from the grant cache when fresh.",
)
async def get_my_access(snapshot: AccessSnapshot = access_snapshot_dependency):
    return AccessStateResponse.from_snapshot(snapshot)


@router.post(
    "/refresh",
    response_model=AccessStateResponse,
    summary="Refresh access",
    description="Re-fetch grants from the CRM API, bypassing the cache. Concurrent refreshes share one fetch unless `supersede` is set.",
)
async def refresh_my_access(
    supersede: bool = Query(False, description="Discard any fetch already in progress"),
    resolver: AccessResolver = access_resolver_dependency,
):
    snapshot = await resolver.refresh_access(supersede=supersede)
    return AccessStateResponse.from_snapshot(snapshot)


@router.delete(
    "/session",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Clear access",
    description="Drop the caller's resolved grants and cached copy (logout).",
)
async def clear_my_access(
    principal: Principal = current_principal_dependency,
    registry: ResolverRegistry = registry_dep,
    grant_cache: GrantCacheService = grant_cache_dep,
):
    if registry.discard(principal) is None:
        logger.debug("No resolver to clear for %s", principal.cache_key)
        grant_cache.invalidate(principal.cache_key)


# ============================================================================
# Navigation & catalog
# ============================================================================


@router.get(
    "/navigation",
    response_model=NavigationView,
    summary="Sidebar navigation",
    description="Visible menu groups and items with labels, icons and the active item for `path`.",
)
async def get_navigation(
    path: str = Query("/", description="Current location of the SPA"),
    snapshot: AccessSnapshot = access_snapshot_dependency,
):
    return render_navigation(snapshot.user_menu, path)


@router.get(
    "/menus/tree",
    summary="Menu catalog",
    description="Full menu catalog (all menus and items) as served by the CRM API.",
)
@cache(expire=120)  # Cache for 2 minutes (catalog changes rarely)
async def get_menu_tree(principal: Principal = current_principal_dependency):
    client = get_crm_client_for(principal.token)
    try:
        menus = await client.get_menu_tree()
    except AccessError as e:
        logger.error("Error fetching menu tree: %s", e, exc_info=True)
        raise HTTPException(status_code=http_status_for(e), detail=e.message) from e
    return [menu.model_dump(by_alias=True, mode="json") for menu in menus]


@router.get(
    "/menus/{menu_code}/items",
    response_model=MenuGroupItemsResponse,
    summary="Visible items of a menu group",
)
async def get_menu_group_items(menu_code: str, snapshot: AccessSnapshot = access_snapshot_dependency):
    return MenuGroupItemsResponse(menu_code=menu_code, items=snapshot.get_menu_items_by_group(menu_code))


# ============================================================================
# Guard decisions
# ============================================================================


@router.get(
    "/guard/items/{item_code}",
    response_model=GuardDecisionResponse,
    summary="Evaluate a menu item guard",
    description="Decision the SPA applies before rendering the route bound to `item_code`.",
)
async def evaluate_item_guard(
    item_code: str,
    permission: str | None = Query(None, description="Additional permission code to require"),
    enforce_item_permission: bool = Query(False, alias="enforceItemPermission"),
    allowed_roles: list[str] | None = Query(None, alias="allowedRoles"),
    restricted_roles: list[str] | None = Query(None, alias="restrictedRoles"),
    snapshot: AccessSnapshot = access_snapshot_dependency,
    principal: Principal = current_principal_dependency,
    settings: Settings = settings_dep,
):
    guard = MenuItemGuard(
        item_code,
        permission,
        check_item_permission=enforce_item_permission,
        allowed_roles=allowed_roles or (),
        restricted_roles=restricted_roles or (),
        unauthorized_path=settings.unauthorized_path,
    )
    return GuardDecisionResponse.from_decision(guard.evaluate(snapshot, principal.roles))


@router.get(
    "/guard/permissions/{permission_code}",
    response_model=GuardDecisionResponse,
    summary="Evaluate a permission guard",
)
async def evaluate_permission_guard(
    permission_code: str,
    allowed_roles: list[str] | None = Query(None, alias="allowedRoles"),
    restricted_roles: list[str] | None = Query(None, alias="restrictedRoles"),
    snapshot: AccessSnapshot = access_snapshot_dependency,
    principal: Principal = current_principal_dependency,
    settings: Settings = settings_dep,
):
    guard = PermissionGuard(
        permission_code,
        allowed_roles=allowed_roles or (),
        restricted_roles=restricted_roles or (),
        unauthorized_path=settings.unauthorized_path,
    )
    return GuardDecisionResponse.from_decision(guard.evaluate(snapshot, principal.roles))

