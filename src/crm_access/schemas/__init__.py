from .menu_schemas import Menu, MenuItem, UserAccess, UserMenuGroup
from .role_schemas import MenuAccess, Role, RolePage, RolePayload, RoleSearchParams, RoleStatus

__all__ = [
    "Menu",
    "MenuItem",
    "UserAccess",
    "UserMenuGroup",
    "MenuAccess",
    "Role",
    "RolePage",
    "RolePayload",
    "RoleSearchParams",
    "RoleStatus",
]
