import asyncio
import os

import pytest
from fastapi_cache import FastAPICache
from fastapi_cache.backends.inmemory import InMemoryBackend

# Tests never talk to Redis or a real CRM API.
os.environ["REDIS_URL"] = ""
os.environ["ENABLE_GRANT_CACHE"] = "false"
os.environ["CRM_API_BASE_URL"] = "http://crm.test"
os.environ["GUARD_WAIT_SECONDS"] = "2"

from crm_access.dependencies import crm_api_client as deps  # noqa: E402
from crm_access.main import app  # noqa: E402
from crm_access.schemas.menu_schemas import Menu, UserAccess  # noqa: E402
from crm_access.schemas.role_schemas import Role, RolePage, normalize_menu_access  # noqa: E402
from crm_access.utils.auth import Principal  # noqa: E402
from crm_access.utils.errors import NotFound  # noqa: E402

# @cache endpoints need an initialised backend even without the app lifespan
FastAPICache.init(InMemoryBackend(), prefix="test-cache")


CATALOG = [
    {
        "id": 1,
        "menuCode": "MAIN_NAV",
        "menuName": "Main",
        "icon": "home",
        "sortOrder": 1,
        "menuItems": [
            {"id": 10, "itemCode": "DASHBOARD", "itemName": "Dashboard", "url": "/dashboard", "icon": "bar-chart-3", "sortOrder": 1},
        ],
    },
    {
        "id": 2,
        "menuCode": "SALES",
        "menuName": "Sales",
        "icon": "trending-up",
        "sortOrder": 2,
        "menuItems": [
            {"id": 21, "itemCode": "DEALS", "itemName": "Deals", "url": "/deals", "icon": "dollar-sign", "sortOrder": 2},
            {"id": 20, "itemCode": "CONTACTS", "itemName": "Contacts", "url": "/contacts", "icon": "users", "sortOrder": 1},
            {
                "id": 22,
                "itemCode": "QUOTES",
                "itemName": "Quotes",
                "url": "/quotes",
                "icon": "quote",
                "sortOrder": 3,
                "isActive": False,
            },
        ],
    },
    {
        "id": 3,
        "menuCode": "ADMINISTRATION",
        "menuName": "Admin",
        "icon": "shield",
        "sortOrder": 3,
        "menuItems": [
            {
                "id": 30,
                "itemCode": "ROLES",
                "itemName": "Roles",
                "url": "/roles",
                "icon": "shield",
                "sortOrder": 1,
                "requiresPermission": "ROLE_MANAGE",
            },
            {"id": 31, "itemCode": "USER_MANAGEMENT", "itemName": "Users", "url": "/user-management", "icon": "users-icon", "sortOrder": 2},
        ],
    },
    {
        "id": 4,
        "menuCode": "MASTERS",
        "menuName": "Masters",
        "icon": "database",
        "sortOrder": 4,
        "menuItems": [],
    },
]


def build_catalog() -> list[Menu]:
    return [Menu.model_validate(menu) for menu in CATALOG]


class MockCRMClient:
    """Hand-written stand-in for CRMAPIClient with call counters and injectable failures."""

    def __init__(
        self,
        *,
        menus=None,
        user_access=None,
        role_access=None,
        member_access=None,
        roles=None,
        healthy=True,
        errors=None,
        gate: asyncio.Event | None = None,
    ):
        self._menus = menus if menus is not None else build_catalog()
        self._user_access = user_access or UserAccess(permissions=["READ"], roles=["MEMBER"])
        self._role_access = dict(role_access or {})
        self._member_access = member_access or {}
        self._roles = roles or {}
        self.healthy = healthy
        self.errors = errors or {}
        self.gate = gate
        self.access_token = "token"
        self.calls: dict[str, int] = {}
        self.saved_payloads = []
        self.deleted = []
        self._next_id = 100

    async def _enter(self, name: str):
        self.calls[name] = self.calls.get(name, 0) + 1
        if self.gate is not None:
            await self.gate.wait()
        error = self.errors.get(name)
        if error is not None:
            raise error

    async def get_menu_tree(self):
        await self._enter("get_menu_tree")
        return list(self._menus)

    async def get_user_access(self, user_id):
        await self._enter("get_user_access")
        return self._user_access

    async def get_role_menu_access(self, role_id):
        await self._enter("get_role_menu_access")
        return normalize_menu_access(self._role_access.get(role_id, {}))

    async def get_member_menu_access(self, user_id):
        await self._enter("get_member_menu_access")
        return normalize_menu_access(self._member_access)

    async def is_healthy(self):
        await self._enter("is_healthy")
        return self.healthy

    async def get_role(self, role_id):
        await self._enter("get_role")
        role = self._roles.get(role_id)
        if role is None:
            raise NotFound(f"role {role_id} not found", status_code=404)
        return role

    async def create_role_with_menu_access(self, payload):
        await self._enter("create_role_with_menu_access")
        self.saved_payloads.append(payload)
        role = Role(id=self._next_id, **payload.model_dump())
        self._roles[role.id] = role
        self._next_id += 1
        return role

    async def update_role_with_menu_access(self, role_id, payload):
        await self._enter("update_role_with_menu_access")
        self.saved_payloads.append(payload)
        role = Role(id=role_id, **payload.model_dump())
        self._roles[role_id] = role
        self._role_access[role_id] = dict(payload.menu_access)
        return role

    async def get_roles_paginated(self, params):
        await self._enter("get_roles_paginated")
        data = list(self._roles.values())
        return RolePage(data=data, page=params.page, size=params.size, total_elements=len(data), total_pages=1)

    async def delete_role(self, role_id):
        await self._enter("delete_role")
        self.deleted.append(role_id)
        self._roles.pop(role_id, None)


def make_principal(user_id=7, role_id=3, roles=("MEMBER",), token="token-7") -> Principal:
    return Principal(user_id=user_id, token=token, role_id=role_id, roles=tuple(roles))


@pytest.fixture
def catalog() -> list[Menu]:
    return build_catalog()


@pytest.fixture(autouse=True)
def reset_app_state():
    """Clear dependency overrides and cached singletons before and after each test."""
    app.dependency_overrides.clear()
    deps.get_resolver_registry.cache_clear()
    deps.get_editor_store.cache_clear()

    yield

    app.dependency_overrides.clear()
    deps.get_resolver_registry.cache_clear()
    deps.get_editor_store.cache_clear()
