"""
Role schemas and the role wire shape.

``menuAccess`` maps a menu code to the item codes the role grants inside that
menu. ``normalize_menu_access`` is the one place that enforces "an empty item
list is the same as an absent key".
"""

import enum
import re
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

ROLE_CODE_PATTERN = re.compile(r"^[A-Z_]+$")
ROLE_CODE_MIN, ROLE_CODE_MAX = 2, 50
ROLE_NAME_MIN, ROLE_NAME_MAX = 2, 100

MenuAccess = dict[str, list[str]]


class RoleStatus(enum.StrEnum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


def normalize_menu_access(menu_access: Mapping[str, Iterable[str]] | None) -> MenuAccess:
    """Drop empty keys, malformed values and duplicate item codes, keeping first-seen order."""
    normalized: MenuAccess = {}
    if not menu_access or not isinstance(menu_access, Mapping):
        return normalized
    for menu_code, item_codes in menu_access.items():
        if not isinstance(menu_code, str) or not menu_code:
            continue
        if not isinstance(item_codes, (list, tuple, set, frozenset)):
            continue
        seen: list[str] = []
        for code in item_codes:
            if isinstance(code, str) and code and code not in seen:
                seen.append(code)
        if seen:
            normalized[menu_code] = seen
    return normalized


def validate_role_fields(role_code: str, role_name: str) -> dict[str, str]:
    """Return field -> message for every rule the role form breaks."""
    errors: dict[str, str] = {}
    code = (role_code or "").strip()
    name = (role_name or "").strip()
    if not (ROLE_CODE_MIN <= len(code) <= ROLE_CODE_MAX):
        errors["roleCode"] = f"Role code must be between {ROLE_CODE_MIN} and {ROLE_CODE_MAX} characters"
    elif not ROLE_CODE_PATTERN.match(code):
        errors["roleCode"] = "Role code must contain only uppercase letters and underscores (e.g., MANAGER_ROLE)"
    if not (ROLE_NAME_MIN <= len(name) <= ROLE_NAME_MAX):
        errors["roleName"] = f"Role name must be between {ROLE_NAME_MIN} and {ROLE_NAME_MAX} characters"
    return errors


class Role(BaseModel):
    """A role as stored by the upstream role service."""

    id: int
    role_code: str = Field(..., alias="roleCode")
    role_name: str = Field(..., alias="roleName")
    description: str | None = None
    status: RoleStatus = RoleStatus.ACTIVE
    is_system_role: bool = Field(False, alias="isSystemRole")
    menu_access: MenuAccess = Field(default_factory=dict, alias="menuAccess")
    user_count: int | None = Field(None, alias="userCount")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("menu_access", mode="before")
    @classmethod
    def _normalize_grants(cls, value: Any) -> MenuAccess:
        return normalize_menu_access(value)


class RolePayload(BaseModel):
    """Body of create/update calls: the persisted wire shape of a role."""

    role_code: str = Field(..., alias="roleCode", min_length=ROLE_CODE_MIN, max_length=ROLE_CODE_MAX, pattern=ROLE_CODE_PATTERN.pattern)
    role_name: str = Field(..., alias="roleName", min_length=ROLE_NAME_MIN, max_length=ROLE_NAME_MAX)
    description: str | None = None
    status: RoleStatus = RoleStatus.ACTIVE
    menu_access: MenuAccess = Field(default_factory=dict, alias="menuAccess")

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class RoleSearchParams(BaseModel):
    page: int = Field(0, ge=0)
    size: int = Field(10, ge=1, le=200)
    sort_by: str = Field("id", alias="sortBy")
    sort_direction: str = Field("asc", alias="sortDirection", pattern="^(asc|desc)$")
    filters: list[dict[str, Any]] | None = None
    logic_expression: str | None = Field(None, alias="logicExpression")

    model_config = ConfigDict(populate_by_name=True)


class RolePage(BaseModel):
    data: list[Role] = Field(default_factory=list)
    page: int = 0
    size: int = 10
    total_elements: int = Field(0, alias="totalElements")
    total_pages: int = Field(0, alias="totalPages")
    has_next: bool = Field(False, alias="hasNext")
    has_previous: bool = Field(False, alias="hasPrevious")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")
