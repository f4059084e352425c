import asyncio
import logging

from fastapi import Depends, HTTPException, status
from fastapi.responses import RedirectResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from crm_access.dependencies.crm_api_client import (
    Settings,
    get_crm_client_for,
    get_grant_cache,
    get_resolver_registry,
    get_settings,
)
from crm_access.external_services.crm_api_client import CRMAPIClient
from crm_access.services.access_resolver import AccessResolver, AccessSnapshot, ResolverRegistry
from crm_access.services.grant_cache import GrantCacheService
from crm_access.services.route_guard import GuardDecision, GuardState, MenuItemGuard, PermissionGuard
from crm_access.utils.auth import Principal, decode_jwt, principal_from_claims
from crm_access.utils.errors import ErrorKind

logger = logging.getLogger(__name__)

bearer = HTTPBearer(auto_error=False)


# Module-level dependency objects to avoid calling Depends() in function defaults
bearer_dep = Depends(bearer)
settings_dep = Depends(get_settings)
registry_dep = Depends(get_resolver_registry)
grant_cache_dep = Depends(get_grant_cache)


class GuardRedirect(Exception):
    """Raised by guard dependencies; turned into a 307 by the app's handler."""

    def __init__(self, location: str):
        super().__init__(location)
        self.location = location


async def redirect_handler(_request, exc: GuardRedirect) -> RedirectResponse:
    return RedirectResponse(exc.location, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


def get_current_principal(cred: HTTPAuthorizationCredentials = bearer_dep) -> Principal:
    if cred is None or cred.scheme.lower() != "bearer":
        raise HTTPException(401, "missing or invalid authorization header", headers={"WWW-Authenticate": "Bearer"})

    # Tolerate a pasted "Bearer <token>" inside the credentials value
    token = cred.credentials
    if isinstance(token, str) and token.lower().startswith("bearer "):
        token = token.split(" ", 1)[1]

    payload = decode_jwt(token)
    if not payload or payload.get("type", "access") != "access":
        raise HTTPException(401, "invalid or expired token", headers={"WWW-Authenticate": "Bearer"})

    principal = principal_from_claims(payload, token)
    if principal is None:
        raise HTTPException(401, "token carries no user", headers={"WWW-Authenticate": "Bearer"})
    return principal


current_principal_dependency = Depends(get_current_principal)


def get_principal_client(principal: Principal = current_principal_dependency) -> CRMAPIClient:
    return get_crm_client_for(principal.token)


principal_client_dependency = Depends(get_principal_client)


def get_access_resolver(
    principal: Principal = current_principal_dependency,
    registry: ResolverRegistry = registry_dep,
    cache: GrantCacheService = grant_cache_dep,
    settings: Settings = settings_dep,
) -> AccessResolver:
    return registry.get(
        principal,
        lambda p: AccessResolver(p, get_crm_client_for(p.token), cache, max_age=settings.grant_cache_ttl),
    )


access_resolver_dependency = Depends(get_access_resolver)


async def get_access_snapshot(
    resolver: AccessResolver = access_resolver_dependency,
    settings: Settings = settings_dep,
) -> AccessSnapshot:
    """Settled snapshot for the caller, or a LOADING one if it does not settle within guard_wait_seconds."""
    try:
        return await asyncio.wait_for(asyncio.shield(resolver.load()), timeout=settings.guard_wait_seconds)
    except TimeoutError:
        logger.warning("Access resolution for %s still running after %.1fs", resolver.principal.cache_key, settings.guard_wait_seconds)
        return resolver.snapshot


access_snapshot_dependency = Depends(get_access_snapshot)


def enforce_decision(decision: GuardDecision, settings: Settings) -> None:
    """Map a guard decision onto the HTTP response a protected endpoint returns."""
    if decision.state == GuardState.GRANTED:
        return
    if decision.state == GuardState.LOADING:
        raise HTTPException(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"state": decision.state.value, "message": "access is still being resolved"},
            headers={"Retry-After": str(max(1, int(settings.guard_wait_seconds)))},
        )
    if decision.state == GuardState.REDIRECT:
        raise GuardRedirect(decision.redirect_to or settings.unauthorized_path)

    detail = {
        "state": decision.state.value,
        "reason": decision.reason.value if decision.reason else None,
        "actions": [action.value for action in decision.actions],
        "message": decision.message,
    }
    if decision.reason == ErrorKind.NETWORK:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)
    raise HTTPException(status.HTTP_403_FORBIDDEN, detail=detail)


def require_menu_access(
    item_code: str,
    permission_code: str | None = None,
    *,
    check_item_permission: bool = False,
    allowed_roles: tuple[str, ...] = (),
    restricted_roles: tuple[str, ...] = (),
):
    def checker(
        snapshot: AccessSnapshot = access_snapshot_dependency,
        principal: Principal = current_principal_dependency,
        settings: Settings = settings_dep,
    ) -> AccessSnapshot:
        guard = MenuItemGuard(
            item_code,
            permission_code,
            check_item_permission=check_item_permission,
            allowed_roles=allowed_roles,
            restricted_roles=restricted_roles,
            unauthorized_path=settings.unauthorized_path,
        )
        enforce_decision(guard.evaluate(snapshot, principal.roles), settings)
        return snapshot

    return checker


def require_permission(
    permission_code: str,
    *,
    allowed_roles: tuple[str, ...] = (),
    restricted_roles: tuple[str, ...] = (),
):
    def checker(
        snapshot: AccessSnapshot = access_snapshot_dependency,
        principal: Principal = current_principal_dependency,
        settings: Settings = settings_dep,
    ) -> AccessSnapshot:
        guard = PermissionGuard(
            permission_code,
            allowed_roles=allowed_roles,
            restricted_roles=restricted_roles,
            unauthorized_path=settings.unauthorized_path,
        )
        enforce_decision(guard.evaluate(snapshot, principal.roles), settings)
        return snapshot

    return checker
