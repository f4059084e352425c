import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable
from time import perf_counter
from typing import Any, TypeVar

import httpx
from pydantic import ValidationError

from crm_access.schemas.menu_schemas import Menu, MenuItem, UserAccess
from crm_access.schemas.role_schemas import MenuAccess, Role, RolePage, RolePayload, RoleSearchParams, normalize_menu_access
from crm_access.utils.errors import (
    AccessDenied,
    AccessError,
    AuthenticationExpired,
    NetworkFailure,
    NotFound,
    PersistenceFailure,
    UpstreamError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_shared_clients: dict[str, httpx.AsyncClient] = {}
_shared_clients_lock = threading.Lock()


def _get_shared_client(base_url: str, timeout: float) -> httpx.AsyncClient:
    with _shared_clients_lock:
        client = _shared_clients.get(base_url)
        if client is None:
            client = httpx.AsyncClient(
                base_url=base_url,
                timeout=httpx.Timeout(timeout, connect=timeout),
                limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
            )
            _shared_clients[base_url] = client
        return client


async def close_shared_clients() -> None:
    with _shared_clients_lock:
        clients = list(_shared_clients.values())
        _shared_clients.clear()
    for client in clients:
        await client.aclose()


class CRMAPIClient:
    """Async client for the upstream CRM API (menu catalog, roles, identity).

    Every call is made on behalf of one principal, whose bearer token is
    forwarded as-is. Identical GET requests that overlap in time share a
    single upstream call.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8080",
        access_token: str | None = None,
        *,
        timeout: float = 15.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self._timeout = httpx.Timeout(timeout, connect=timeout)
        self._client = http_client or _get_shared_client(self.base_url, timeout)
        self._pending: dict[str, asyncio.Task] = {}

    def _get_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def _perform_request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> httpx.Response:
        """Execute an HTTP request, translating failures into AccessError subclasses."""

        started = perf_counter()
        try:
            response = await self._client.request(
                method,
                path,
                headers=self._get_headers(),
                params=params,
                json=json,
                timeout=self._timeout,
                follow_redirects=True,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            elapsed_ms = (perf_counter() - started) * 1000
            status_code = exc.response.status_code
            logger.warning(
                "CRMAPI request failed: method=%s path=%s status=%s elapsed_ms=%.1f",
                method,
                path,
                status_code,
                elapsed_ms,
            )
            raise _error_for_status(status_code, method, path) from exc
        except httpx.HTTPError as exc:
            elapsed_ms = (perf_counter() - started) * 1000
            logger.warning(
                "CRMAPI request error: method=%s path=%s elapsed_ms=%.1f error=%s",
                method,
                path,
                elapsed_ms,
                exc,
            )
            raise NetworkFailure(f"{method} {path} failed: {exc.__class__.__name__}") from exc

        elapsed_ms = (perf_counter() - started) * 1000
        logger.info(
            "CRMAPI request: method=%s path=%s status=%s elapsed_ms=%.1f size_bytes=%s",
            method,
            path,
            response.status_code,
            elapsed_ms,
            len(response.content or b""),
        )
        return response

    async def _deduplicate(self, key: str, request_fn: Callable[[], Awaitable[T]]) -> T:
        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(request_fn())
            self._pending[key] = task
            task.add_done_callback(lambda _t: self._pending.pop(key, None))
        else:
            logger.debug("Reusing pending request for: %s", key)
        return await asyncio.shield(task)

    async def _get_json(self, path: str, *, key: str | None = None) -> Any:
        async def _fetch() -> Any:
            response = await self._perform_request("GET", path)
            return response.json()

        return await self._deduplicate(key or path, _fetch)

    # ------------------------------------------------------------------
    # Menu catalog
    # ------------------------------------------------------------------

    async def get_menu_tree(self) -> list[Menu]:
        data = await self._get_json("/api/v1/menus/tree", key="menu-tree")
        return _parse(lambda: [Menu.model_validate(menu) for menu in data or []], "menu tree")

    async def get_menu_items(self) -> list[MenuItem]:
        data = await self._get_json("/api/v1/menus/items", key="menu-items")
        return _parse(lambda: [MenuItem.model_validate(item) for item in data or []], "menu items")

    # ------------------------------------------------------------------
    # Identity / grants
    # ------------------------------------------------------------------

    async def get_user_access(self, user_id: int | str) -> UserAccess:
        data = await self._get_json(f"/api/v1/member/auth/access/{user_id}", key=f"user-access-{user_id}")
        return _parse(lambda: UserAccess.model_validate(data or {}), "user access")

    async def get_role_menu_access(self, role_id: int | str) -> MenuAccess:
        data = await self._get_json(f"/api/v1/roles/{role_id}/menu-access", key=f"role-menu-access-{role_id}")
        return normalize_menu_access(data if isinstance(data, dict) else {})

    async def get_member_menu_access(self, user_id: int | str) -> MenuAccess:
        data = await self._get_json(f"/api/v1/member/auth/menu-access/{user_id}", key=f"member-menu-access-{user_id}")
        return normalize_menu_access(data if isinstance(data, dict) else {})

    # ------------------------------------------------------------------
    # Role service
    # ------------------------------------------------------------------

    async def get_role(self, role_id: int) -> Role:
        data = await self._get_json(f"/api/v1/roles/{role_id}", key=f"role-{role_id}")
        return _parse(lambda: Role.model_validate(data), "role")

    async def get_roles_paginated(self, params: RoleSearchParams) -> RolePage:
        body = params.model_dump(by_alias=True, exclude_none=True)
        response = await self._perform_request("POST", "/api/v1/roles/search", json=body)
        return _parse(lambda: RolePage.model_validate(response.json()), "role page")

    async def create_role_with_menu_access(self, payload: RolePayload) -> Role:
        response = await self._persist("POST", "/api/v1/roles/with-menu-access", payload.to_wire())
        return _parse(lambda: Role.model_validate(response.json()), "created role")

    async def update_role_with_menu_access(self, role_id: int, payload: RolePayload) -> Role:
        response = await self._persist("PUT", f"/api/v1/roles/{role_id}/with-menu-access", payload.to_wire())
        return _parse(lambda: Role.model_validate(response.json()), "updated role")

    async def delete_role(self, role_id: int) -> None:
        await self._persist("DELETE", f"/api/v1/roles/{role_id}", None)

    async def _persist(self, method: str, path: str, body: Any) -> httpx.Response:
        try:
            return await self._perform_request(method, path, json=body)
        except (UpstreamError, NotFound) as exc:
            raise PersistenceFailure(exc.message, status_code=exc.status_code) from exc

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def is_healthy(self) -> bool:
        try:
            response = await self._perform_request("GET", "/actuator/health")
        except AccessError as exc:
            logger.warning("CRMAPI health check failed: %s", exc)
            return False
        try:
            data = response.json()
        except ValueError:
            return True
        if isinstance(data, dict) and "status" in data:
            return str(data["status"]).upper() == "UP"
        return True


def _error_for_status(status_code: int, method: str, path: str) -> AccessError:
    message = f"{method} {path} returned {status_code}"
    if status_code == 401:
        return AuthenticationExpired(message, status_code=status_code)
    if status_code == 403:
        return AccessDenied(message, status_code=status_code)
    if status_code == 404:
        return NotFound(message, status_code=status_code)
    if status_code in (502, 503, 504):
        return NetworkFailure(message, status_code=status_code)
    return UpstreamError(message, status_code=status_code)


def _parse(build: Callable[[], T], what: str) -> T:
    try:
        return build()
    except (ValidationError, ValueError, TypeError, AttributeError) as exc:
        logger.error("Malformed %s payload from CRM API: %s", what, exc)
        raise UpstreamError(f"malformed {what} payload") from exc
